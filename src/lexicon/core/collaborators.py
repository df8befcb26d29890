"""Collaborator interfaces and the adapter registry.

The orchestrator never talks to a vendor SDK directly.  Each external
service it depends on is a narrow abstract base class defined here, and each
concrete SDK lives behind one of them in :mod:`lexicon.core.adapters`.

Collaborator Kinds
------------------
- **analyzer** (:class:`ImageAnalyzer`): image -> :class:`Analysis`
- **synthesizer** (:class:`ImageSynthesizer`): prompt -> :class:`SynthesizedImage`
- **blob** (:class:`BlobStore`): bytes -> URI, plus signed read URLs
- **document** (:class:`DocumentStore`): per-session records, aggregate
  counters and player profiles
- **speech** (:class:`SpeechSynthesizer`): text -> base64 audio

Error Contract
--------------
Adapters raise :class:`~lexicon.core.errors.UpstreamError` (AI services),
:class:`~lexicon.core.errors.StorageError` (blob store) or
:class:`~lexicon.core.errors.PersistenceError` (document store) for runtime
failures, and :class:`~lexicon.core.errors.ServiceUnavailable` when they are
not configured at all.

Adapter Registry
----------------
Adapters register themselves with :data:`adapter_registry` under a
``(kind, name)`` pair; :func:`build_collaborators` instantiates the ones
selected by the ``*_backend`` configuration fields.

    >>> from lexicon.core.collaborators import adapter_registry
    >>> adapter_registry.list_available("synthesizer")
    ['imagen', 'diffusers']
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from lexicon.core.config import LexiconConfig
    from lexicon.core.models import (
        Analysis,
        Analytics,
        LeaderboardEntry,
        PipelineResult,
        PlayerProfile,
        SynthesizedImage,
    )

logger = logging.getLogger(__name__)


class ImageAnalyzer(ABC):
    """Image-understanding service."""

    name: str = "base"
    model: str = ""

    @abstractmethod
    async def analyze(self, image: bytes, mime_type: str) -> Analysis:
        """Describe the object in *image* as structured attributes."""


class ImageSynthesizer(ABC):
    """Image-synthesis service."""

    name: str = "base"
    model: str = ""

    @abstractmethod
    async def synthesize(self, prompt: str) -> SynthesizedImage:
        """Render a new image from *prompt*."""

    def close(self) -> None:  # noqa: B027
        """Release held resources (GPU memory, connections).  Optional."""


class BlobStore(ABC):
    """Object store for raw scans and generated assets."""

    name: str = "base"

    @abstractmethod
    async def upload(self, data: bytes, object_path: str, content_type: str) -> str:
        """Store *data* at *object_path* and return its storage URI."""

    @abstractmethod
    async def signed_url(self, object_path: str, ttl_s: int) -> str:
        """Return a URL granting read access to *object_path* for *ttl_s*."""


class DocumentStore(ABC):
    """Durable store for results, aggregate counters and player profiles."""

    name: str = "base"

    @abstractmethod
    async def save_record(self, session_id: str, record: PipelineResult) -> None:
        """Persist *record* under *session_id* and bump the aggregate counters."""

    @abstractmethod
    async def list_records(self, session_id: str) -> list[PipelineResult]:
        """Return the session's records, newest first."""

    @abstractmethod
    async def get_analytics(self) -> Analytics:
        """Return the aggregate counters document."""

    @abstractmethod
    async def set_player_name(self, session_id: str, player_name: str) -> PlayerProfile:
        """Attach a display name to a session."""

    @abstractmethod
    async def get_player_profile(self, session_id: str) -> PlayerProfile | None:
        """Return the session's profile, or ``None`` if it has none."""

    @abstractmethod
    async def get_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        """Return the top *limit* players by result count."""


class SpeechSynthesizer(ABC):
    """Text-to-speech service."""

    name: str = "base"
    model: str = ""

    @abstractmethod
    async def speak(self, text: str) -> str:
        """Return base64-encoded audio narrating *text*."""


@dataclass
class Collaborators:
    """The set of collaborators one orchestrator works with.

    ``None`` means the collaborator is not configured.  Missing analyzer,
    synthesizer or document store make scans fail with
    ``ServiceUnavailable``; missing blob stores only degrade the result.
    """

    analyzer: ImageAnalyzer | None = None
    synthesizer: ImageSynthesizer | None = None
    staging_store: BlobStore | None = None
    asset_store: BlobStore | None = None
    document_store: DocumentStore | None = None
    speech: SpeechSynthesizer | None = None

    def close(self) -> None:
        if self.synthesizer is not None:
            self.synthesizer.close()


# An adapter factory takes the config plus keyword options and returns an
# adapter instance.  Classes qualify as factories.
AdapterFactory = Callable[..., Any]


class AdapterRegistry:
    """Registry of collaborator adapters keyed by kind and name.

    Examples
    --------
    Registering and instantiating an adapter:

        >>> adapter_registry.register("blob", "local", LocalBlobStore)
        >>> store = adapter_registry.instantiate("blob", "local", config, bucket="raw")
    """

    KINDS = ("analyzer", "synthesizer", "blob", "document", "speech")

    def __init__(self) -> None:
        self._adapters: dict[str, dict[str, AdapterFactory]] = defaultdict(dict)

    def register(self, kind: str, name: str, factory: AdapterFactory) -> None:
        """Register *factory* as the ``name`` adapter of ``kind``.

        Raises:
            ValueError: If ``kind`` is not a known collaborator kind.
        """
        if kind not in self.KINDS:
            raise ValueError(f"Unknown collaborator kind '{kind}'")
        if name in self._adapters[kind]:
            logger.warning("Overwriting %s adapter registration: %s", kind, name)
        self._adapters[kind][name] = factory
        logger.debug("Registered %s adapter: %s", kind, name)

    def instantiate(self, kind: str, name: str, config: LexiconConfig, **options: Any) -> Any:
        """Create an adapter instance.

        Raises:
            KeyError: If no adapter is registered under ``(kind, name)``.
        """
        factory = self._adapters.get(kind, {}).get(name)
        if factory is None:
            available = ", ".join(self.list_available(kind))
            raise KeyError(
                f"{kind} adapter '{name}' not found. Available adapters: {available}"
            )
        instance = factory(config, **options)
        logger.info("Instantiated %s adapter: %s", kind, name)
        return instance

    def list_available(self, kind: str) -> list[str]:
        return list(self._adapters.get(kind, {}).keys())

    def get_adapter_info(self, kind: str, name: str) -> dict[str, Any] | None:
        factory = self._adapters.get(kind, {}).get(name)
        if factory is None:
            return None
        return {
            "kind": kind,
            "name": name,
            "description": (factory.__doc__ or "").strip().splitlines()[0]
            if factory.__doc__
            else "",
        }


# Global adapter registry instance
adapter_registry = AdapterRegistry()


def build_collaborators(config: LexiconConfig) -> Collaborators:
    """Instantiate the collaborators selected by *config*.

    Backends set to ``"none"`` are left unset.  Construction never contacts
    a remote service: SDK clients are created lazily on first use.
    """
    # Importing the package registers every built-in adapter.
    import lexicon.core.adapters  # noqa: F401

    def _make(kind: str, backend: str, **options: Any) -> Any:
        if backend == "none":
            return None
        return adapter_registry.instantiate(kind, backend, config, **options)

    return Collaborators(
        analyzer=_make("analyzer", config.analyzer_backend),
        synthesizer=_make("synthesizer", config.synthesizer_backend),
        staging_store=_make("blob", config.blob_backend, bucket=config.s3_raw_bucket or "raw"),
        asset_store=_make(
            "blob", config.blob_backend, bucket=config.s3_assets_bucket or "assets"
        ),
        document_store=_make("document", config.document_backend),
        speech=_make("speech", config.speech_backend),
    )
