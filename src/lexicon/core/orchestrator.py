"""Scan pipeline orchestration.

:class:`ScanOrchestrator` turns a scanned image into a persisted
:class:`~lexicon.core.models.PipelineResult`, and serves the gallery read
operations built on the same collaborators and caches.

Pipeline
--------
Each :meth:`ScanOrchestrator.handle_scan` call walks these stages strictly
in order::

    validating -> cache_check -> staging -> analyzing -> synthesizing
        -> persisting_assets -> persisting_record -> cache_update -> completed

Failure policy per stage:

==================  =========================================================
Stage               On failure
==================  =========================================================
validating          ``ValidationFailure`` (400 / 413), nothing else runs
cache_check         cannot fail; a hit returns immediately
staging             logged and swallowed, ``source_image_url`` stays ``None``
analyzing           retried, then ``PipelineFailure``
synthesizing        retried, then ``PipelineFailure``
persisting_assets   logged, the image is embedded as a ``data:`` URI instead
persisting_record   ``PipelineFailure``
==================  =========================================================

A required collaborator that is not configured at all (analyzer,
synthesizer, document store) raises ``ServiceUnavailable`` right after the
cache check, so cached results are still served in degraded mode.

Every stage emits one structured event (stage name, elapsed time, outcome)
through the logging collaborator.

Coalescing
----------
With ``coalesce_inflight`` enabled, a scan whose fingerprint is already
being processed does not start a second pipeline: it awaits the running one
and is answered with ``cache_hit=True, coalesced=True``.  The running
pipeline is shielded, so a caller that disconnects does not cancel the work
other callers are waiting on.  A failure of the running pipeline is raised
to every caller waiting on it.

Concurrency
-----------
The orchestrator is meant to be shared by all request handlers of one event
loop.  Cache operations never yield, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from lexicon.core.cache import TTLCache
from lexicon.core.collaborators import Collaborators, build_collaborators
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import (
    LexiconError,
    PersistenceError,
    PipelineFailure,
    ServiceUnavailable,
    UpstreamError,
    ValidationFailure,
)
from lexicon.core.fingerprint import fingerprint
from lexicon.core.log_utils import StructuredLogger
from lexicon.core.models import (
    Analysis,
    Analytics,
    CacheStats,
    LeaderboardEntry,
    PipelineMetrics,
    PipelineResult,
    PlayerProfile,
    ScanOutcome,
    SynthesizedImage,
)
from lexicon.core.prompt import build_synthesis_prompt
from lexicon.core.retry import retry_async

logger = logging.getLogger(__name__)

T = TypeVar("T")

PLAYER_NAME_MAX_LENGTH = 20
NARRATION_MAX_LENGTH = 2000
LEADERBOARD_DEFAULT_LIMIT = 10
LEADERBOARD_MAX_LIMIT = 50

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


def sniff_mime_type(payload: bytes) -> str:
    """Guess an image content type from its magic bytes (JPEG if unknown)."""
    head = bytes(payload[:12])
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    return "image/jpeg"


def new_id(prefix: str) -> str:
    """Return ``<prefix>_<epoch ms>_<6 hex chars>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


class ScanOrchestrator:
    """Runs scans through the pipeline and serves gallery reads.

    Args:
        collaborators: External services the pipeline calls.
        scan_cache: Scan-dedup cache keyed by image fingerprint.
        collection_cache: Collection-read cache keyed by session id.
        config: Limits, timeouts, retry policy and fingerprint settings.
        log: Structured logging collaborator.
        sleep: Awaitable sleep used between retries.  Tests inject a no-op.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        scan_cache: TTLCache[PipelineResult],
        collection_cache: TTLCache[list[PipelineResult]],
        config: LexiconConfig,
        log: StructuredLogger | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.collaborators = collaborators
        self.scan_cache = scan_cache
        self.collection_cache = collection_cache
        self.config = config
        self.log = log or StructuredLogger()
        self._sleep = sleep
        self._inflight: dict[str, asyncio.Task[PipelineResult]] = {}
        # Bumped whenever a session's cached collection is invalidated.  A read
        # only caches what it fetched if no bump happened while it waited.
        self._collection_generations: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Scan pipeline
    # ------------------------------------------------------------------

    async def handle_scan(
        self,
        image: bytes,
        session_id: str,
        *,
        mime_type: str | None = None,
    ) -> ScanOutcome:
        """Run one scan request through the pipeline.

        Args:
            image: Raw image bytes.
            session_id: Caller-supplied session identifier.
            mime_type: Content type of ``image``; sniffed when omitted.

        Returns:
            The result and whether it was served without running a pipeline.

        Raises:
            ValidationFailure: Missing, wrong-type or oversized input.
            ServiceUnavailable: A required collaborator is not configured.
            PipelineFailure: A fatal stage failed.
        """
        started = time.perf_counter()

        stage_start = time.perf_counter()
        try:
            self._validate_scan(image, session_id)
        except ValidationFailure as exc:
            self.log.stage_event(
                "validating", _elapsed_ms(stage_start), "failed", code=exc.code, error=exc.message
            )
            raise
        self.log.stage_event("validating", _elapsed_ms(stage_start), "ok", session_id=session_id)

        payload = bytes(image)
        mime_type = mime_type or sniff_mime_type(payload)

        stage_start = time.perf_counter()
        key = fingerprint(
            payload,
            sample_windows=self.config.fingerprint_sample_windows,
            window_bytes=self.config.fingerprint_window_bytes,
        )
        cached = self.scan_cache.get(key)
        if cached is not None:
            self.log.stage_event(
                "cache_check", _elapsed_ms(stage_start), "hit", session_id=session_id
            )
            self.log.info(
                "Scan cache hit, returning cached result",
                result_id=cached.id,
                latency_ms=_elapsed_ms(started),
            )
            return ScanOutcome(result=cached, cache_hit=True)

        inflight = self._inflight.get(key) if self.config.coalesce_inflight else None
        if inflight is not None:
            self.log.stage_event(
                "cache_check", _elapsed_ms(stage_start), "coalesced", session_id=session_id
            )
            result = await asyncio.shield(inflight)
            return ScanOutcome(result=result, cache_hit=True, coalesced=True)

        self.log.stage_event("cache_check", _elapsed_ms(stage_start), "miss", session_id=session_id)
        self._require_pipeline_collaborators()

        if not self.config.coalesce_inflight:
            result = await self._run_pipeline(payload, session_id, key, mime_type, started)
            return ScanOutcome(result=result, cache_hit=False)

        task = asyncio.ensure_future(
            self._run_pipeline(payload, session_id, key, mime_type, started)
        )
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._finish_inflight(key, t))
        result = await asyncio.shield(task)
        return ScanOutcome(result=result, cache_hit=False)

    def _finish_inflight(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved when every waiter went away.
        if not task.cancelled():
            task.exception()

    def _validate_scan(self, image: object, session_id: object) -> None:
        if image is None or not isinstance(image, (bytes, bytearray, memoryview)):
            raise ValidationFailure("Image payload required")
        size = image.nbytes if isinstance(image, memoryview) else len(image)
        if size == 0:
            raise ValidationFailure("Image payload required")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationFailure("Session ID required", code="INVALID_SESSION")
        limit = self.config.max_image_bytes
        if size > limit:
            raise ValidationFailure(
                f"Image too large ({size} bytes, max {limit})",
                code="PAYLOAD_TOO_LARGE",
                status_code=413,
            )

    def _require_pipeline_collaborators(self) -> None:
        c = self.collaborators
        if c.analyzer is None:
            raise ServiceUnavailable("Image analysis")
        if c.synthesizer is None:
            raise ServiceUnavailable("Image synthesis")
        if c.document_store is None:
            raise ServiceUnavailable("Document store")

    async def _run_pipeline(
        self,
        image: bytes,
        session_id: str,
        key: str,
        mime_type: str,
        started: float,
    ) -> PipelineResult:
        cfg = self.config
        c = self.collaborators
        latencies: dict[str, int] = {}

        # Staging (best effort)
        source_image_url = await self._stage_raw_scan(image, session_id, mime_type, latencies)

        # Analyzing
        stage_start = time.perf_counter()
        analysis: Analysis = await self._required_stage(
            "analyzing",
            lambda: c.analyzer.analyze(image, mime_type),
            cfg.analysis_timeout_s,
            session_id,
            started,
        )
        latencies["analyzing"] = _elapsed_ms(stage_start)
        self.log.stage_event(
            "analyzing", latencies["analyzing"], "ok", session_id=session_id, name=analysis.name
        )

        # Synthesizing
        prompt = build_synthesis_prompt(analysis)
        stage_start = time.perf_counter()
        synthesized: SynthesizedImage = await self._required_stage(
            "synthesizing",
            lambda: c.synthesizer.synthesize(prompt),
            cfg.synthesis_timeout_s,
            session_id,
            started,
        )
        latencies["synthesizing"] = _elapsed_ms(stage_start)
        self.log.stage_event("synthesizing", latencies["synthesizing"], "ok", session_id=session_id)

        # Persisting assets (best effort, embedded fallback)
        result_id = new_id("r")
        image_url = await self._persist_asset(synthesized, result_id, session_id, latencies)

        models = {}
        if c.analyzer.model:
            models["analyzer"] = c.analyzer.model
        synth_model = synthesized.model or c.synthesizer.model
        if synth_model:
            models["synthesizer"] = synth_model

        result = PipelineResult(
            id=result_id,
            session_id=session_id,
            attributes=analysis,
            image_url=image_url,
            source_image_url=source_image_url,
            created_at=datetime.now(timezone.utc),
            metrics=PipelineMetrics(
                stage_latencies_ms=dict(latencies),
                model_identifiers=models,
                total_latency_ms=_elapsed_ms(started),
            ),
        )

        # Persisting record
        stage_start = time.perf_counter()
        try:
            await asyncio.wait_for(
                c.document_store.save_record(session_id, result), cfg.persistence_timeout_s
            )
        except ServiceUnavailable:
            self.log.stage_event(
                "persisting_record", _elapsed_ms(stage_start), "unavailable", session_id=session_id
            )
            raise
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                exc = PersistenceError(
                    f"Record write timed out after {cfg.persistence_timeout_s}s"
                )
            self._log_failure("persisting_record", exc, session_id, stage_start, started)
            raise PipelineFailure("persisting_record", exc) from exc
        self.log.stage_event(
            "persisting_record", _elapsed_ms(stage_start), "ok", session_id=session_id
        )

        # Cache update
        stage_start = time.perf_counter()
        self.scan_cache.set(key, result)
        self._invalidate_collection(session_id)
        self.log.stage_event("cache_update", _elapsed_ms(stage_start), "ok", session_id=session_id)

        self.log.stage_event(
            "completed",
            _elapsed_ms(started),
            "ok",
            session_id=session_id,
            result_id=result.id,
            name=analysis.name,
        )
        return result

    async def _stage_raw_scan(
        self,
        image: bytes,
        session_id: str,
        mime_type: str,
        latencies: dict[str, int],
    ) -> str | None:
        store = self.collaborators.staging_store
        stage_start = time.perf_counter()
        if store is None:
            self.log.stage_event("staging", 0, "skipped", session_id=session_id)
            return None

        scan_id = new_id("scan")
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        object_path = f"scans/{day}/{scan_id}.{_EXTENSIONS.get(mime_type, 'bin')}"
        try:
            uri = await asyncio.wait_for(
                store.upload(image, object_path, mime_type), self.config.storage_timeout_s
            )
        except Exception as exc:
            latencies["staging"] = _elapsed_ms(stage_start)
            self.log.stage_event(
                "staging",
                latencies["staging"],
                "degraded",
                session_id=session_id,
                error=str(exc) or type(exc).__name__,
            )
            return None

        latencies["staging"] = _elapsed_ms(stage_start)
        self.log.stage_event(
            "staging", latencies["staging"], "ok", session_id=session_id, scan_id=scan_id
        )
        return uri

    async def _persist_asset(
        self,
        synthesized: SynthesizedImage,
        result_id: str,
        session_id: str,
        latencies: dict[str, int],
    ) -> str:
        store = self.collaborators.asset_store
        stage_start = time.perf_counter()
        if store is None:
            self.log.stage_event("persisting_assets", 0, "skipped", session_id=session_id)
            return synthesized.data_uri

        object_path = f"results/{result_id}.{_EXTENSIONS.get(synthesized.mime_type, 'bin')}"
        timeout = self.config.storage_timeout_s
        try:
            await asyncio.wait_for(
                store.upload(synthesized.image_bytes, object_path, synthesized.mime_type),
                timeout,
            )
            url = await asyncio.wait_for(
                store.signed_url(object_path, self.config.signed_url_ttl_s), timeout
            )
        except Exception as exc:
            latencies["persisting_assets"] = _elapsed_ms(stage_start)
            self.log.stage_event(
                "persisting_assets",
                latencies["persisting_assets"],
                "degraded",
                session_id=session_id,
                error=str(exc) or type(exc).__name__,
                fallback="data_uri",
            )
            return synthesized.data_uri

        latencies["persisting_assets"] = _elapsed_ms(stage_start)
        self.log.stage_event(
            "persisting_assets", latencies["persisting_assets"], "ok", session_id=session_id
        )
        return url

    async def _required_stage(
        self,
        stage: str,
        call: Callable[[], Awaitable[T]],
        timeout_s: float,
        session_id: str,
        started: float,
    ) -> T:
        stage_start = time.perf_counter()
        try:
            return await self._with_retry(stage, call, timeout_s)
        except ServiceUnavailable:
            self.log.stage_event(stage, _elapsed_ms(stage_start), "unavailable", session_id=session_id)
            raise
        except Exception as exc:
            self._log_failure(stage, exc, session_id, stage_start, started)
            raise PipelineFailure(stage, exc) from exc

    async def _with_retry(
        self,
        stage: str,
        call: Callable[[], Awaitable[T]],
        timeout_s: float,
    ) -> T:
        async def attempt() -> T:
            try:
                return await asyncio.wait_for(call(), timeout_s)
            except asyncio.TimeoutError as exc:
                raise UpstreamError(f"{stage} timed out after {timeout_s}s") from exc

        def on_failure(attempt_number: int, exc: BaseException, delay_s: float) -> None:
            self.log.warning(
                "Collaborator call retrying",
                stage=stage,
                attempt=attempt_number,
                error=str(exc),
                next_delay_ms=int(delay_s * 1000),
            )

        return await retry_async(
            attempt,
            self.config.retry_max_attempts,
            self.config.retry_initial_delay_ms,
            on_failure=on_failure,
            sleep=self._sleep,
        )

    def _log_failure(
        self,
        stage: str,
        exc: BaseException,
        session_id: str,
        stage_start: float,
        started: float,
    ) -> None:
        self.log.stage_event(
            stage, _elapsed_ms(stage_start), "failed", session_id=session_id, error=str(exc)
        )
        self.log.error(
            "Scan pipeline failure",
            stage=stage,
            session_id=session_id,
            error=str(exc),
            latency_ms=_elapsed_ms(started),
        )

    # ------------------------------------------------------------------
    # Gallery and administrative operations
    # ------------------------------------------------------------------

    @staticmethod
    def _require_session(session_id: object) -> str:
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValidationFailure("Session ID required", code="INVALID_SESSION")
        return session_id

    async def list_collection(self, session_id: str) -> tuple[list[PipelineResult], bool]:
        """Return the session's results (newest first) and whether they were cached."""
        self._require_session(session_id)

        cached = self.collection_cache.get(session_id)
        if cached is not None:
            return list(cached), True

        store = self.collaborators.document_store
        if store is None:
            raise ServiceUnavailable("Document store")
        generation = self._collection_generations.get(session_id, 0)
        try:
            records = await asyncio.wait_for(
                store.list_records(session_id), self.config.persistence_timeout_s
            )
        except asyncio.TimeoutError as exc:
            error = PersistenceError("Collection read timed out")
            self.log.error("Collection retrieval failed", session_id=session_id, error=str(error))
            raise error from exc
        except LexiconError as exc:
            self.log.error("Collection retrieval failed", session_id=session_id, error=str(exc))
            raise

        if self._collection_generations.get(session_id, 0) == generation:
            self.collection_cache.set(session_id, list(records))
        else:
            self.log.info("Collection changed during read, not caching", session_id=session_id)
        self.log.info("Collection retrieved", session_id=session_id, count=len(records))
        return list(records), False

    async def narrate(self, text: str) -> str:
        """Synthesize speech for *text* and return base64 audio."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationFailure("Text required")
        if len(text) > NARRATION_MAX_LENGTH:
            raise ValidationFailure(
                f"Text too long (max {NARRATION_MAX_LENGTH} characters)",
                code="PAYLOAD_TOO_LARGE",
                status_code=413,
            )

        speech = self.collaborators.speech
        if speech is None:
            raise ServiceUnavailable("Text-to-speech")

        start = time.perf_counter()
        try:
            audio = await self._with_retry(
                "speech", lambda: speech.speak(text), self.config.speech_timeout_s
            )
        except LexiconError as exc:
            self.log.error("TTS synthesis failure", error=str(exc))
            raise
        self.log.info("TTS synthesis complete", latency_ms=_elapsed_ms(start))
        return audio

    async def get_analytics(self) -> Analytics:
        store = self.collaborators.document_store
        if store is None:
            return Analytics()
        return await store.get_analytics()

    async def set_player_name(self, session_id: str, player_name: str) -> PlayerProfile:
        """Attach a display name (trimmed, at most 20 characters) to a session."""
        self._require_session(session_id)
        if not isinstance(player_name, str):
            raise ValidationFailure("Player name required")
        sanitized = player_name.strip()[:PLAYER_NAME_MAX_LENGTH]
        if not sanitized:
            raise ValidationFailure("Name cannot be empty")

        store = self.collaborators.document_store
        if store is None:
            raise ServiceUnavailable("Document store")
        profile = await store.set_player_name(session_id, sanitized)
        self.log.info("Player name set", session_id=session_id, player_name=sanitized)
        return profile

    async def get_player_profile(self, session_id: str) -> PlayerProfile:
        self._require_session(session_id)
        store = self.collaborators.document_store
        profile = await store.get_player_profile(session_id) if store is not None else None
        return profile or PlayerProfile(session_id=session_id)

    async def get_leaderboard(self, limit: int | None = None) -> list[LeaderboardEntry]:
        """Top players by result count; *limit* is clamped to 1..50 (default 10)."""
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            limit = LEADERBOARD_DEFAULT_LIMIT
        limit = min(limit, LEADERBOARD_MAX_LIMIT)

        store = self.collaborators.document_store
        if store is None:
            return []
        return await store.get_leaderboard(limit)

    def get_cache_stats(self) -> dict[str, CacheStats]:
        return {
            "scan": self.scan_cache.stats(),
            "collection": self.collection_cache.stats(),
        }

    def _invalidate_collection(self, session_id: str) -> None:
        self._collection_generations[session_id] = (
            self._collection_generations.get(session_id, 0) + 1
        )
        self.collection_cache.invalidate(session_id)

    def flush_caches(self) -> None:
        self.scan_cache.flush_all()
        self.collection_cache.flush_all()
        for session_id in self._collection_generations:
            self._collection_generations[session_id] += 1
        logger.info("Scan and collection caches flushed.")

    def close(self) -> None:
        self.collaborators.close()


def build_orchestrator(config: LexiconConfig | None = None) -> ScanOrchestrator:
    """Build an orchestrator with the collaborators and caches *config* selects."""
    if config is None:
        from lexicon.core.config import config as global_config

        config = global_config

    return ScanOrchestrator(
        collaborators=build_collaborators(config),
        scan_cache=TTLCache(
            config.scan_cache_max_entries, config.scan_cache_ttl_s, name="scan"
        ),
        collection_cache=TTLCache(
            config.collection_cache_max_entries,
            config.collection_cache_ttl_s,
            name="collection",
        ),
        config=config,
        log=StructuredLogger(),
    )
