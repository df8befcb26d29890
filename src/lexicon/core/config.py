"""Configuration management for the Living Lexicon scan service.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the LEXICON_ prefix,
allowing deployments to swap collaborators and tune the pipeline without code
changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (LEXICON_* prefix)
2. .env file in the project root
3. Default values defined in LexiconConfig

Example .env file:
    LEXICON_ANALYZER_BACKEND=gemini
    LEXICON_SYNTHESIZER_BACKEND=diffusers
    LEXICON_DIFFUSERS_MODEL_ID=stabilityai/sdxl-turbo
    LEXICON_BLOB_BACKEND=local
    LEXICON_SCAN_CACHE_TTL_S=300

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The HTTP layer builds its orchestrator from it; tests construct their own
``LexiconConfig`` pointing at temporary directories.

Cache Tuning
------------
Two caches are configured independently:
- scan cache: longer TTL, small capacity.  Avoids re-running the expensive
  analysis and synthesis stages for an image seen recently.
- collection cache: short TTL, larger capacity.  Absorbs repeated gallery
  reads for the same session.

Fingerprinting
--------------
``fingerprint_sample_windows=0`` hashes the whole payload.  A positive value
hashes only that many windows of ``fingerprint_window_bytes`` each, which is
cheaper but lets two different images that share those windows collide.

Startup Validation
------------------
Invalid values (ports out of range, unknown backends, non-positive limits)
raise a pydantic ``ValidationError`` when the configuration is built.  A
misconfigured service never starts instead of failing per request.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LexiconConfig(BaseSettings):
    """Main configuration for the Living Lexicon scan service.

    Values are loaded from environment variables with the LEXICON_ prefix,
    with fallback to defaults defined here.  Directory fields are created on
    initialisation if they don't exist.

    Attributes
    ----------
    Server:
        server_host, server_port
    Limits:
        max_image_bytes : int
            Largest accepted decoded image payload, inclusive (10 MiB).
    Rate limiting:
        rate_limit_enabled, rate_limit_requests, scan_rate_limit_requests,
        rate_limit_window_s
    Caches:
        scan_cache_ttl_s, scan_cache_max_entries,
        collection_cache_ttl_s, collection_cache_max_entries
    Retry and timeouts:
        retry_max_attempts : int
            Retries after the initial attempt (total calls = 1 + this).
        retry_initial_delay_ms : int
            Delay before the first retry; doubles for every further retry.
        analysis_timeout_s, synthesis_timeout_s, storage_timeout_s,
        persistence_timeout_s, speech_timeout_s
    Backends:
        analyzer_backend, synthesizer_backend, blob_backend,
        document_backend, speech_backend
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LEXICON_",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    server_host: str = Field(default="0.0.0.0", description="Server bind address")
    server_port: int = Field(default=8080, description="Server port", ge=1024, le=65535)
    service_name: str = Field(
        default="living-lexicon",
        description="Service label attached to every structured log line",
    )

    # Request limits
    max_image_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum decoded image size in bytes (inclusive)",
        ge=1,
    )

    # Rate limiting (per client IP, sliding window)
    rate_limit_enabled: bool = Field(default=True, description="Enforce per-client request limits")
    rate_limit_requests: int = Field(
        default=10,
        description="Requests allowed per window on every /api/ route",
        ge=1,
    )
    scan_rate_limit_requests: int = Field(
        default=5,
        description="Scans allowed per window on POST /api/scan",
        ge=1,
    )
    rate_limit_window_s: int = Field(default=60, ge=1)

    # Scan dedup cache
    scan_cache_ttl_s: float = Field(default=300.0, gt=0)
    scan_cache_max_entries: int = Field(default=50, ge=1)

    # Collection read cache
    collection_cache_ttl_s: float = Field(default=60.0, gt=0)
    collection_cache_max_entries: int = Field(default=100, ge=1)

    # Fingerprinting
    fingerprint_sample_windows: int = Field(
        default=0,
        description="Number of sampled windows; 0 hashes the full payload",
        ge=0,
    )
    fingerprint_window_bytes: int = Field(default=64, ge=1)

    # Retry policy
    retry_max_attempts: int = Field(
        default=3,
        description="Retries after the first attempt",
        ge=0,
    )
    retry_initial_delay_ms: int = Field(default=1000, ge=0)

    # Per-stage timeouts
    analysis_timeout_s: float = Field(default=30.0, gt=0)
    synthesis_timeout_s: float = Field(default=60.0, gt=0)
    storage_timeout_s: float = Field(default=30.0, gt=0)
    persistence_timeout_s: float = Field(default=30.0, gt=0)
    speech_timeout_s: float = Field(default=30.0, gt=0)

    coalesce_inflight: bool = Field(
        default=True,
        description="Let concurrent identical scans share one pipeline run",
    )

    # Collaborator selection
    analyzer_backend: Literal["gemini", "none"] = "gemini"
    synthesizer_backend: Literal["imagen", "diffusers", "none"] = "imagen"
    blob_backend: Literal["local", "s3", "none"] = "local"
    document_backend: Literal["json", "none"] = "json"
    speech_backend: Literal["gemini", "none"] = "gemini"

    # Google GenAI (Gemini, Imagen, TTS)
    google_api_key: str = Field(default="", description="API key for the Gemini Developer API")
    use_vertexai: bool = Field(
        default=False,
        description="Route GenAI calls through Vertex AI instead of an API key",
    )
    gcp_project: str = ""
    gcp_location: str = "us-central1"
    gemini_model: str = "gemini-2.0-flash"
    imagen_model: str = "imagen-3.0-generate-001"
    tts_model: str = "gemini-2.5-flash-preview-tts"
    tts_voice: str = "Kore"

    # Local diffusion synthesis
    diffusers_model_id: str = Field(
        default="stabilityai/sdxl-turbo",
        description="HuggingFace model ID used by the diffusers synthesizer",
    )
    device: str = Field(default="cuda", description="Device to run inference on (cuda/cpu)")
    torch_dtype: Literal["bfloat16", "float16", "float32"] = "bfloat16"
    num_inference_steps: int = Field(default=4, ge=1, le=50)
    guidance_scale: float = Field(default=0.0, ge=0.0)
    image_width: int = Field(default=1024, ge=256, le=2048)
    image_height: int = Field(default=1024, ge=256, le=2048)
    enable_attention_slicing: bool = False
    enable_model_cpu_offload: bool = False

    # S3-compatible blob storage
    s3_raw_bucket: str = ""
    s3_assets_bucket: str = ""
    s3_region: str = ""
    s3_endpoint_url: str = ""
    signed_url_ttl_s: int = Field(default=7 * 24 * 60 * 60, ge=1)

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for session records, analytics and player profiles",
    )
    assets_dir: Path = Field(
        default=Path("assets"),
        description="Root directory of the local blob store",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache diffusers models",
    )
    assets_url_prefix: str = Field(
        default="/static/assets",
        description="URL prefix under which local assets are served",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from tests)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.assets_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from LEXICON_* environment variables
# and the .env file.
config = LexiconConfig()
