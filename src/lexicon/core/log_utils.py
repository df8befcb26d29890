"""Structured logging for the scan service.

Modules log through the standard library (``logging.getLogger(__name__)``).
This module adds the two pieces the pipeline needs on top of that:

- :func:`setup_logging` installs a JSON or text formatter on the ``lexicon``
  logger tree.  JSON lines follow the Cloud Logging structured format
  (``severity``, ``message``, ``timestamp`` plus arbitrary fields), which
  container runtimes ingest from stdout without an agent.
- :class:`StructuredLogger` is the logging collaborator handed to the
  orchestrator.  It takes a severity string, a message and keyword fields,
  and never raises: a broken log sink must not fail a scan.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

_SEVERITY_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "NOTICE": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Stdlib level names that differ from Cloud Logging severities.
_LEVEL_TO_SEVERITY: dict[str, str] = {"WARN": "WARNING", "FATAL": "CRITICAL"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line with structured fields merged in."""

    def __init__(self, service: str = "living-lexicon") -> None:
        super().__init__()
        self._service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": _LEVEL_TO_SEVERITY.get(record.levelname, record.levelname),
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }
        fields = getattr(record, "fields", None)
        if fields:
            for key, value in fields.items():
                entry.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} "
            f"[{record.levelname:8s}] {record.name} - {record.getMessage()}"
        )
        fields = getattr(record, "fields", None)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    service: str = "living-lexicon",
) -> None:
    """Configure the ``lexicon`` logger tree.

    Existing handlers are removed first, so calling this again (for example
    once per application startup in tests) never duplicates output.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        log_format: ``"json"`` for structured lines, anything else for text.
        service: Service label added to every JSON line.
    """
    root = logging.getLogger("lexicon")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonFormatter(service=service)
    else:
        formatter = TextFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)


class StructuredLogger:
    """Fire-and-forget structured logging collaborator.

    Args:
        name: Name of the underlying stdlib logger.
    """

    def __init__(self, name: str = "lexicon.pipeline") -> None:
        self._logger = logging.getLogger(name)

    def log(self, severity: str, message: str, **fields: Any) -> None:
        """Write one structured entry.

        Unknown severities are logged at INFO.  Any exception raised while
        formatting or emitting is swallowed.
        """
        try:
            level = _SEVERITY_LEVELS.get(str(severity).upper(), logging.INFO)
            self._logger.log(level, message, extra={"fields": fields})
        except Exception:  # noqa: BLE001
            pass

    def info(self, message: str, **fields: Any) -> None:
        self.log("INFO", message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log("WARNING", message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log("ERROR", message, **fields)

    def stage_event(self, stage: str, elapsed_ms: int, outcome: str, **fields: Any) -> None:
        """Emit the per-stage observability event of a pipeline run."""
        severity = {"failed": "ERROR", "degraded": "WARNING"}.get(outcome, "INFO")
        self.log(
            severity,
            f"Pipeline stage {stage}: {outcome}",
            stage=stage,
            elapsed_ms=elapsed_ms,
            outcome=outcome,
            **fields,
        )
