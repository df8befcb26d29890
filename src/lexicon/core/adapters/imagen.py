"""Imagen text-to-image synthesis through the ``google-genai`` SDK.

Shares lazy client construction and authentication rules with the Gemini
adapters (see :mod:`lexicon.core.adapters.gemini`).
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any

from lexicon.core.adapters.gemini import GenAIClientMixin
from lexicon.core.collaborators import ImageSynthesizer, adapter_registry
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import UpstreamError
from lexicon.core.models import SynthesizedImage

logger = logging.getLogger(__name__)


class ImagenSynthesizer(GenAIClientMixin, ImageSynthesizer):
    """Imagen square JPEG renders, one image per prompt."""

    name = "imagen"

    def __init__(self, config: LexiconConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client
        self.model = config.imagen_model

    async def synthesize(self, prompt: str) -> SynthesizedImage:
        client = self._get_client()
        from google.genai import types

        logger.info("Generating visual with Imagen (model=%s)", self.model)
        start = time.monotonic()
        try:
            response = await client.aio.models.generate_images(
                model=self.model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    output_mime_type="image/jpeg",
                    aspect_ratio="1:1",
                ),
            )
        except Exception as exc:
            raise UpstreamError(f"Imagen generation failed: {exc}") from exc

        generated = getattr(response, "generated_images", None) or []
        image_bytes = generated[0].image.image_bytes if generated and generated[0].image else None
        if not image_bytes:
            raise UpstreamError("Imagen generation returned no image data.")

        logger.info(
            "Imagen visual generated in %dms",
            int((time.monotonic() - start) * 1000),
        )
        return SynthesizedImage(
            image_bytes=image_bytes,
            encoded=base64.b64encode(image_bytes).decode("ascii"),
            mime_type="image/jpeg",
            model=self.model,
        )


adapter_registry.register("synthesizer", "imagen", ImagenSynthesizer)
