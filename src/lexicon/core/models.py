"""Pydantic models for the scan pipeline.

These models describe what flows between the orchestrator and its
collaborators, what gets persisted, and what the HTTP layer returns.

Models
------
SubAttribute
    One named, scored trait of an analysed object (a "move").
Analysis
    Structured output of the image-understanding collaborator.
SynthesizedImage
    Output of the image-synthesis collaborator.
PipelineMetrics
    Per-stage latencies and the model identifiers that produced a result.
PipelineResult
    The immutable record created once per successful pipeline run.
ScanOutcome
    Return value of ``ScanOrchestrator.handle_scan``.
CacheStats, Analytics, PlayerProfile, LeaderboardEntry
    Read models for administrative and gallery endpoints.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

TAG_COUNT = 2


class SubAttribute(BaseModel):
    """A named, scored trait.

    Attributes:
        name: Short trait name.
        score: Strength from 0 to 100; out-of-range values are clamped.
        description: One-sentence flavour text.
    """

    name: str
    score: int = Field(default=0, ge=0, le=100)
    description: str = ""

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value):
        try:
            return max(0, min(100, int(round(float(value)))))
        except (TypeError, ValueError):
            return 0


class Analysis(BaseModel):
    """Structured description of the object in a scanned image.

    Missing fields fall back to neutral placeholders so a sparse model reply
    still yields a displayable record.  ``tags`` always holds exactly
    :data:`TAG_COUNT` entries: extra tags are dropped, missing ones padded.
    """

    name: str = "Unknown Entity"
    source_label: str = "Unknown Matter"
    tags: list[str] = Field(default_factory=lambda: ["Unknown"] * TAG_COUNT)
    narrative: str = "No data recovered."
    sub_attributes: list[SubAttribute] = Field(default_factory=list)

    @field_validator("name", "source_label", "narrative", mode="before")
    @classmethod
    def _blank_to_default(cls, value, info):
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _exactly_two_tags(cls, value):
        tags = [str(t) for t in (value or []) if str(t).strip()]
        tags = tags[:TAG_COUNT]
        while len(tags) < TAG_COUNT:
            tags.append("Unknown")
        return tags


class SynthesizedImage(BaseModel):
    """An image produced by the synthesis collaborator.

    Attributes:
        image_bytes: Raw encoded image (JPEG or PNG).
        encoded: Base64 form of ``image_bytes``, used for the inline fallback.
        mime_type: Content type of ``image_bytes``.
        model: Identifier of the model that produced the image.
    """

    image_bytes: bytes
    encoded: str
    mime_type: str = "image/jpeg"
    model: str = ""

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.encoded}"


class PipelineMetrics(BaseModel):
    """Latency and provenance of one pipeline run."""

    stage_latencies_ms: dict[str, int] = Field(default_factory=dict)
    model_identifiers: dict[str, str] = Field(default_factory=dict)
    total_latency_ms: int = 0


class PipelineResult(BaseModel):
    """The record produced by a successful pipeline run.

    Immutable after creation.  Its lifecycle after persistence belongs to the
    document store.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    attributes: Analysis
    image_url: str
    source_image_url: str | None = None
    created_at: datetime
    metrics: PipelineMetrics = Field(default_factory=PipelineMetrics)


class ScanOutcome(BaseModel):
    """Result of ``handle_scan``.

    Attributes:
        result: The (possibly cached) pipeline result.
        cache_hit: ``True`` when no pipeline ran for this call.
        coalesced: ``True`` when the call waited on a concurrent identical
            scan instead of running its own pipeline.
    """

    result: PipelineResult
    cache_hit: bool
    coalesced: bool = False


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    current_size: int = 0
    evictions: int = 0
    max_entries: int = 0
    ttl_s: float = 0.0


class Analytics(BaseModel):
    """Aggregate counters across all sessions."""

    total_results: int = 0
    total_scans: int = 0
    top_sources: dict[str, int] = Field(default_factory=dict)


class PlayerProfile(BaseModel):
    session_id: str
    player_name: str = "Anonymous"
    result_count: int = 0


class LeaderboardEntry(BaseModel):
    rank: int
    player_name: str
    result_count: int
