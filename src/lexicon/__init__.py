"""Living Lexicon - scan-to-creature generation service."""

__version__ = "0.1.0"

from lexicon.core.config import LexiconConfig, config
from lexicon.core.orchestrator import ScanOrchestrator, build_orchestrator

__all__ = [
    "LexiconConfig",
    "ScanOrchestrator",
    "build_orchestrator",
    "config",
]
