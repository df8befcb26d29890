"""Shared pytest fixtures for Living Lexicon tests.

The fake collaborators below stand in for Gemini, Imagen, blob storage and
the document store.  Each one counts its calls and can be told to fail, so
tests can assert exactly how often the pipeline reached each service.
"""

from __future__ import annotations

import asyncio
import base64
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest

from lexicon.core.cache import TTLCache
from lexicon.core.collaborators import (
    BlobStore,
    Collaborators,
    DocumentStore,
    ImageAnalyzer,
    ImageSynthesizer,
    SpeechSynthesizer,
)
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import PersistenceError, StorageError, UpstreamError
from lexicon.core.log_utils import StructuredLogger
from lexicon.core.models import (
    Analysis,
    Analytics,
    LeaderboardEntry,
    PipelineResult,
    PlayerProfile,
    SubAttribute,
    SynthesizedImage,
)
from lexicon.core.orchestrator import ScanOrchestrator

# Minimal JPEG-looking payloads; the pipeline never decodes them.
SAMPLE_IMAGE = b"\xff\xd8\xff\xe0" + b"lamp" * 64
OTHER_IMAGE = b"\xff\xd8\xff\xe0" + b"kettle" * 64
GENERATED_IMAGE = b"\xff\xd8\xff\xdbgenerated-creature"


# ---------------------------------------------------------------------------
# Fake collaborators.
# ---------------------------------------------------------------------------


class FakeAnalyzer(ImageAnalyzer):
    """Analyzer returning a fixed analysis.

    Attributes:
        calls: Number of ``analyze`` invocations.
        fail_times: Number of leading calls that raise ``error``.
        delay_s: Seconds to sleep inside every call.
    """

    name = "fake"
    model = "fake-vision-1"

    def __init__(self) -> None:
        self.calls = 0
        self.fail_times = 0
        self.error: Exception = UpstreamError("analyzer exploded")
        self.delay_s = 0.0
        self.analysis = Analysis(
            name="Voltlamp",
            source_label="desk lamp",
            tags=["Electric", "Light"],
            narrative="A lamp that learned to think.",
            sub_attributes=[SubAttribute(name="Flicker", score=42, description="Blinds foes.")],
        )

    async def analyze(self, image: bytes, mime_type: str) -> Analysis:
        self.calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.calls <= self.fail_times:
            raise self.error
        return self.analysis


class FakeSynthesizer(ImageSynthesizer):
    name = "fake"
    model = "fake-render-1"

    def __init__(self) -> None:
        self.calls = 0
        self.fail_times = 0
        self.prompts: list[str] = []
        self.closed = False

    async def synthesize(self, prompt: str) -> SynthesizedImage:
        self.calls += 1
        self.prompts.append(prompt)
        if self.calls <= self.fail_times:
            raise UpstreamError("synthesizer exploded")
        return SynthesizedImage(
            image_bytes=GENERATED_IMAGE,
            encoded=base64.b64encode(GENERATED_IMAGE).decode("ascii"),
            mime_type="image/jpeg",
            model=self.model,
        )

    def close(self) -> None:
        self.closed = True


class FakeBlobStore(BlobStore):
    """In-memory blob store; ``fail_uploads`` makes every upload raise."""

    name = "fake"

    def __init__(self, bucket: str = "bucket") -> None:
        self.bucket = bucket
        self.objects: dict[str, bytes] = {}
        self.fail_uploads = False
        self.upload_calls = 0

    async def upload(self, data: bytes, object_path: str, content_type: str) -> str:
        self.upload_calls += 1
        if self.fail_uploads:
            raise StorageError("bucket unreachable")
        self.objects[object_path] = data
        return f"mem://{self.bucket}/{object_path}"

    async def signed_url(self, object_path: str, ttl_s: int) -> str:
        return f"https://signed.example/{self.bucket}/{object_path}?ttl={ttl_s}"


class FakeDocumentStore(DocumentStore):
    name = "fake"

    def __init__(self) -> None:
        self.records: dict[str, list[PipelineResult]] = {}
        self.players: dict[str, str] = {}
        self.fail_saves = False
        self.save_calls = 0
        self.list_calls = 0

    async def save_record(self, session_id: str, record: PipelineResult) -> None:
        self.save_calls += 1
        if self.fail_saves:
            raise PersistenceError("datastore down")
        self.records.setdefault(session_id, []).insert(0, record)

    async def list_records(self, session_id: str) -> list[PipelineResult]:
        self.list_calls += 1
        return list(self.records.get(session_id, []))

    async def get_analytics(self) -> Analytics:
        total = sum(len(r) for r in self.records.values())
        return Analytics(total_results=total, total_scans=total)

    async def set_player_name(self, session_id: str, player_name: str) -> PlayerProfile:
        self.players[session_id] = player_name
        return PlayerProfile(
            session_id=session_id,
            player_name=player_name,
            result_count=len(self.records.get(session_id, [])),
        )

    async def get_player_profile(self, session_id: str) -> PlayerProfile | None:
        if session_id not in self.players:
            return None
        return PlayerProfile(
            session_id=session_id,
            player_name=self.players[session_id],
            result_count=len(self.records.get(session_id, [])),
        )

    async def get_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        ranked = sorted(
            self.players.items(),
            key=lambda item: -len(self.records.get(item[0], [])),
        )
        return [
            LeaderboardEntry(
                rank=i, player_name=name, result_count=len(self.records.get(sid, []))
            )
            for i, (sid, name) in enumerate(ranked[:limit], start=1)
        ]


class FakeSpeech(SpeechSynthesizer):
    name = "fake"
    model = "fake-tts"

    def __init__(self) -> None:
        self.calls = 0
        self.texts: list[str] = []

    async def speak(self, text: str) -> str:
        self.calls += 1
        self.texts.append(text)
        return base64.b64encode(b"RIFF-audio").decode("ascii")


class ManualClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingLogger(StructuredLogger):
    """StructuredLogger that also keeps every entry for assertions."""

    def __init__(self) -> None:
        super().__init__("lexicon.test")
        self.entries: list[tuple[str, str, dict]] = []

    def log(self, severity: str, message: str, **fields) -> None:
        self.entries.append((severity, message, fields))
        super().log(severity, message, **fields)

    def stages(self) -> list[tuple[str, str]]:
        return [
            (fields["stage"], fields["outcome"])
            for _, _, fields in self.entries
            if "outcome" in fields
        ]


async def _no_sleep(_seconds: float) -> None:
    return None


def make_result(result_id: str = "r_1", session_id: str = "session-a", **overrides) -> PipelineResult:
    """Build a PipelineResult for tests that need one without a pipeline run."""
    data = {
        "id": result_id,
        "session_id": session_id,
        "attributes": Analysis(name="Voltlamp", source_label="desk lamp"),
        "image_url": "https://signed.example/assets/results/r_1.jpg",
        "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return PipelineResult(**data)


# ---------------------------------------------------------------------------
# Fixtures.
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> LexiconConfig:
    """Create a test configuration with temporary directories.

    Retries are immediate, rate limiting is off and no real backend is
    selected.
    """
    return LexiconConfig(
        data_dir=temp_dir / "data",
        assets_dir=temp_dir / "assets",
        models_dir=temp_dir / "models",
        retry_initial_delay_ms=0,
        rate_limit_enabled=False,
        analyzer_backend="none",
        synthesizer_backend="none",
        blob_backend="none",
        document_backend="none",
        speech_backend="none",
        log_format="text",
        device="cpu",
        torch_dtype="float32",
        _env_file=None,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def fake_synthesizer() -> FakeSynthesizer:
    return FakeSynthesizer()


@pytest.fixture
def staging_store() -> FakeBlobStore:
    return FakeBlobStore("raw")


@pytest.fixture
def asset_store() -> FakeBlobStore:
    return FakeBlobStore("assets")


@pytest.fixture
def document_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def fake_speech() -> FakeSpeech:
    return FakeSpeech()


@pytest.fixture
def collaborators(
    fake_analyzer, fake_synthesizer, staging_store, asset_store, document_store, fake_speech
) -> Collaborators:
    return Collaborators(
        analyzer=fake_analyzer,
        synthesizer=fake_synthesizer,
        staging_store=staging_store,
        asset_store=asset_store,
        document_store=document_store,
        speech=fake_speech,
    )


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def orchestrator(
    collaborators: Collaborators,
    test_config: LexiconConfig,
    recording_logger: RecordingLogger,
) -> ScanOrchestrator:
    """Orchestrator wired to fakes, with fresh caches and no retry delay."""
    return ScanOrchestrator(
        collaborators=collaborators,
        scan_cache=TTLCache(test_config.scan_cache_max_entries, test_config.scan_cache_ttl_s),
        collection_cache=TTLCache(
            test_config.collection_cache_max_entries, test_config.collection_cache_ttl_s
        ),
        config=test_config,
        log=recording_logger,
        sleep=_no_sleep,
    )


@pytest.fixture
def test_client(test_config: LexiconConfig, orchestrator: ScanOrchestrator):
    """FastAPI TestClient serving the fake-backed orchestrator."""
    from fastapi.testclient import TestClient

    from lexicon.api.main import create_app

    app = create_app(test_config, orchestrator_factory=lambda cfg: orchestrator)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def sample_image() -> bytes:
    return SAMPLE_IMAGE


@pytest.fixture
def other_image() -> bytes:
    return OTHER_IMAGE


@pytest.fixture
def result_factory():
    """Return :func:`make_result` for building records without a pipeline."""
    return make_result
