"""Local text-to-image synthesis with HuggingFace diffusers.

:class:`DiffusersSynthesizer` runs a diffusers text-to-image pipeline on the
local GPU (or CPU) as an alternative to the hosted Imagen backend.

Key Responsibilities
--------------------
- **Lazy model loading**: the pipeline is loaded on the first
  :meth:`~DiffusersSynthesizer.synthesize` call, so the service starts
  without torch being imported.
- **Turbo-model enforcement**: models whose HuggingFace ID contains
  ``"turbo"`` (case-insensitive) always run with ``guidance_scale=0.0``.
- **Deterministic generation**: the seed is derived from the prompt, so a
  retried synthesis call reproduces the same image.
- **Off-loop inference**: loading and inference run in a worker thread, one
  call at a time, keeping the event loop responsive.
- **Memory management**: :meth:`~DiffusersSynthesizer.close` drops the
  pipeline and empties the CUDA cache.

Configuration
-------------
``diffusers_model_id``, ``device``, ``torch_dtype``, ``models_dir``,
``num_inference_steps``, ``guidance_scale``, ``image_width``,
``image_height``, ``enable_attention_slicing`` and
``enable_model_cpu_offload`` are read from :class:`LexiconConfig`.

Install the ``diffusion`` extra (``pip install living-lexicon[diffusion]``)
to use this backend.
"""

from __future__ import annotations

import asyncio
import base64
import gc
import hashlib
import io
import logging
import threading

from PIL import Image

from lexicon.core.collaborators import ImageSynthesizer, adapter_registry
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import ServiceUnavailable, UpstreamError
from lexicon.core.models import SynthesizedImage

logger = logging.getLogger(__name__)

_JPEG_QUALITY = 90


def _resolve_dtype(name: str):
    import torch

    return {
        "bfloat16": torch.bfloat16,
        "float16": torch.float16,
        "float32": torch.float32,
    }.get(name, torch.bfloat16)


def prompt_seed(prompt: str) -> int:
    """Derive a stable 32-bit generator seed from *prompt*."""
    digest = hashlib.blake2b(prompt.encode("utf-8"), digest_size=4).digest()
    return int.from_bytes(digest, "big")


def encode_jpeg(image: Image.Image) -> bytes:
    """Encode a PIL image as JPEG, dropping any alpha channel."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=_JPEG_QUALITY)
    return buffer.getvalue()


class DiffusersSynthesizer(ImageSynthesizer):
    """Synthesizer backed by a single in-memory diffusers pipeline.

    Attributes:
        model: HuggingFace identifier of the configured model.
    """

    name = "diffusers"

    def __init__(self, config: LexiconConfig) -> None:
        self._config = config
        self.model = config.diffusers_model_id
        self._pipeline = None
        # diffusers pipelines are not safe for concurrent calls.
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._pipeline is not None

    @property
    def is_turbo(self) -> bool:
        return "turbo" in self.model.lower()

    def load(self) -> None:
        """Load the pipeline if it is not loaded yet.

        Raises:
            ServiceUnavailable: If torch or diffusers is not installed.
            UpstreamError: If the model cannot be loaded.
        """
        if self._pipeline is not None:
            return

        try:
            import torch  # noqa: F401
            from diffusers import AutoPipelineForText2Image
        except ImportError as exc:
            raise ServiceUnavailable("Local image synthesis") from exc

        cfg = self._config
        logger.info(
            "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
            self.model,
            cfg.torch_dtype,
            cfg.device,
            cfg.models_dir,
        )
        try:
            pipeline = AutoPipelineForText2Image.from_pretrained(
                self.model,
                torch_dtype=_resolve_dtype(cfg.torch_dtype),
                cache_dir=str(cfg.models_dir),
            )
            if cfg.enable_model_cpu_offload:
                pipeline.enable_model_cpu_offload()
                logger.info("Model CPU offloading enabled.")
            else:
                pipeline = pipeline.to(cfg.device)
            if cfg.enable_attention_slicing:
                pipeline.enable_attention_slicing()
                logger.info("Attention slicing enabled.")
        except Exception as exc:
            logger.exception("Failed to load model '%s'.", self.model)
            raise UpstreamError(f"Failed to load model {self.model}: {exc}") from exc

        self._pipeline = pipeline
        logger.info("Model '%s' loaded successfully.", self.model)

    def _generate(self, prompt: str) -> bytes:
        cfg = self._config
        with self._lock:
            self.load()
            import torch

            guidance_scale = cfg.guidance_scale
            if self.is_turbo and guidance_scale != 0.0:
                logger.warning(
                    "Turbo model detected ('%s'); forcing guidance_scale from %.1f to 0.0.",
                    self.model,
                    guidance_scale,
                )
                guidance_scale = 0.0

            seed = prompt_seed(prompt)
            generator = torch.Generator(device=cfg.device).manual_seed(seed)
            logger.info(
                "Generating image: %dx%d, %d steps, guidance=%.1f, seed=%d.",
                cfg.image_width,
                cfg.image_height,
                cfg.num_inference_steps,
                guidance_scale,
                seed,
            )
            output = self._pipeline(
                prompt=prompt,
                width=cfg.image_width,
                height=cfg.image_height,
                num_inference_steps=cfg.num_inference_steps,
                guidance_scale=guidance_scale,
                generator=generator,
            )
        return encode_jpeg(output.images[0])

    async def synthesize(self, prompt: str) -> SynthesizedImage:
        try:
            image_bytes = await asyncio.to_thread(self._generate, prompt)
        except (ServiceUnavailable, UpstreamError):
            raise
        except Exception as exc:
            raise UpstreamError(f"Local image synthesis failed: {exc}") from exc

        return SynthesizedImage(
            image_bytes=image_bytes,
            encoded=base64.b64encode(image_bytes).decode("ascii"),
            mime_type="image/jpeg",
            model=self.model,
        )

    def close(self) -> None:
        """Drop the pipeline and free GPU memory.  Safe to call when unloaded."""
        if self._pipeline is None:
            return

        logger.info("Unloading model '%s'.", self.model)
        self._pipeline = None
        gc.collect()
        try:
            import torch

            if torch.cuda.is_available():
                torch.cuda.empty_cache()
        except ImportError:
            pass


adapter_registry.register("synthesizer", "diffusers", DiffusersSynthesizer)
