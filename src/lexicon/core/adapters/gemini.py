"""Google GenAI adapters: Gemini image analysis and Gemini text-to-speech.

Both adapters talk to the ``google-genai`` SDK through its async surface
(``client.aio.models``).  The SDK client is created on first use, never at
construction time, so a service without credentials still starts and only
the calls that need GenAI fail.

Authentication
--------------
- ``LEXICON_GOOGLE_API_KEY``: Gemini Developer API key, or
- ``LEXICON_USE_VERTEXAI=true`` with ``LEXICON_GCP_PROJECT`` and
  ``LEXICON_GCP_LOCATION``: Vertex AI via application default credentials.

With neither configured, calls raise :class:`ServiceUnavailable`.  Any SDK
failure or unusable reply raises :class:`UpstreamError`, which the
orchestrator retries.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any

from pydantic import ValidationError

from lexicon.core.collaborators import (
    ImageAnalyzer,
    SpeechSynthesizer,
    adapter_registry,
)
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import ServiceUnavailable, UpstreamError
from lexicon.core.models import Analysis

logger = logging.getLogger(__name__)

# Structured-output schema for the analysis reply (OpenAPI subset accepted
# by ``response_schema``).
ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "name": {
            "type": "STRING",
            "description": "Creative monster name based on the object.",
        },
        "source_label": {
            "type": "STRING",
            "description": "The object identified in the image.",
        },
        "tags": {
            "type": "ARRAY",
            "items": {"type": "STRING"},
            "description": "Exactly two elemental or thematic types.",
        },
        "narrative": {
            "type": "STRING",
            "description": "A creative lore entry of 2-3 sentences.",
        },
        "sub_attributes": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "name": {"type": "STRING"},
                    "score": {"type": "NUMBER"},
                    "description": {"type": "STRING"},
                },
                "required": ["name", "score", "description"],
            },
        },
    },
    "required": ["name", "source_label", "tags", "narrative", "sub_attributes"],
}

ANALYSIS_INSTRUCTION = (
    "Identify the object in this image and evolve it into a futuristic digital "
    "creature. Return structured JSON with name, source_label (the object you "
    "identified), tags (exactly 2 elemental types), narrative (2-3 sentences, "
    "encyclopedia-entry style) and sub_attributes (3-4 moves with name, score "
    "1-100 and a one-sentence description)."
)

SPEECH_PREFIX = "Neural Scan Report: "


class GenAIClientMixin:
    """Lazy ``google.genai.Client`` construction shared by the GenAI adapters."""

    _client: Any = None
    _config: LexiconConfig

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        cfg = self._config
        if cfg.use_vertexai:
            if not cfg.gcp_project:
                raise ServiceUnavailable("Google GenAI")
            client_kwargs: dict[str, Any] = {
                "vertexai": True,
                "project": cfg.gcp_project,
                "location": cfg.gcp_location,
            }
        elif cfg.google_api_key:
            client_kwargs = {"api_key": cfg.google_api_key}
        else:
            raise ServiceUnavailable("Google GenAI")

        try:
            from google import genai
        except ImportError as exc:
            raise ServiceUnavailable("Google GenAI") from exc

        self._client = genai.Client(**client_kwargs)
        logger.info(
            "Created GenAI client (%s)",
            "vertexai" if cfg.use_vertexai else "api key",
        )
        return self._client


class GeminiAnalyzer(GenAIClientMixin, ImageAnalyzer):
    """Gemini vision analysis with a structured JSON reply."""

    name = "gemini"

    def __init__(self, config: LexiconConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client
        self.model = config.gemini_model

    async def analyze(self, image: bytes, mime_type: str) -> Analysis:
        client = self._get_client()
        from google.genai import types

        start = time.monotonic()
        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image, mime_type=mime_type),
                    ANALYSIS_INSTRUCTION,
                ],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=ANALYSIS_SCHEMA,
                ),
            )
        except Exception as exc:
            raise UpstreamError(f"Gemini analysis failed: {exc}") from exc

        text = getattr(response, "text", None)
        if not text:
            raise UpstreamError("Gemini returned empty analysis.")

        try:
            analysis = Analysis.model_validate(json.loads(text.strip()))
        except (ValueError, ValidationError) as exc:
            raise UpstreamError(f"Gemini returned malformed analysis: {exc}") from exc

        logger.info(
            "Gemini analysis complete in %dms (model=%s)",
            int((time.monotonic() - start) * 1000),
            self.model,
        )
        return analysis


class GeminiSpeech(GenAIClientMixin, SpeechSynthesizer):
    """Gemini text-to-speech with a prebuilt voice."""

    name = "gemini"

    def __init__(self, config: LexiconConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client
        self.model = config.tts_model
        self.voice = config.tts_voice

    async def speak(self, text: str) -> str:
        client = self._get_client()
        from google.genai import types

        try:
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=f"{SPEECH_PREFIX}{text}",
                config=types.GenerateContentConfig(
                    response_modalities=["AUDIO"],
                    speech_config=types.SpeechConfig(
                        voice_config=types.VoiceConfig(
                            prebuilt_voice_config=types.PrebuiltVoiceConfig(
                                voice_name=self.voice,
                            )
                        )
                    ),
                ),
            )
            audio = response.candidates[0].content.parts[0].inline_data.data
        except (AttributeError, IndexError, TypeError) as exc:
            raise UpstreamError("TTS reply contained no audio.") from exc
        except Exception as exc:
            raise UpstreamError(f"TTS synthesis failed: {exc}") from exc

        if not audio:
            raise UpstreamError("TTS reply contained no audio.")
        if isinstance(audio, str):
            return audio
        return base64.b64encode(audio).decode("ascii")


adapter_registry.register("analyzer", "gemini", GeminiAnalyzer)
adapter_registry.register("speech", "gemini", GeminiSpeech)
