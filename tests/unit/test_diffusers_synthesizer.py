"""Tests for lexicon.core.adapters.diffusers_synth — local synthesis.

torch and diffusers are imported lazily inside the adapter's methods, so
the tests inject mock modules into ``sys.modules`` instead of patching
attributes.  No model is downloaded and no GPU is touched.
"""

from __future__ import annotations

import io
import sys
from unittest.mock import MagicMock

import pytest
from PIL import Image

from lexicon.core.adapters.diffusers_synth import (
    DiffusersSynthesizer,
    encode_jpeg,
    prompt_seed,
)
from lexicon.core.errors import ServiceUnavailable, UpstreamError


def _create_mock_torch() -> MagicMock:
    mock_torch = MagicMock()
    mock_torch.bfloat16 = "mock_bfloat16"
    mock_torch.float16 = "mock_float16"
    mock_torch.float32 = "mock_float32"

    mock_generator = MagicMock()
    mock_generator.manual_seed.return_value = mock_generator
    mock_torch.Generator.return_value = mock_generator
    mock_torch.cuda.is_available.return_value = True
    return mock_torch


class _MockContext:
    """Inject mock ``torch`` and ``diffusers`` modules into ``sys.modules``.

    The mock pipeline returns a 64x64 RGBA image so the JPEG encoder has an
    alpha channel to drop.
    """

    def __init__(self):
        self.mock_torch = _create_mock_torch()

        self.mock_pipeline = MagicMock()
        output = MagicMock()
        output.images = [Image.new("RGBA", (64, 64), color=(0, 255, 255, 128))]
        self.mock_pipeline.return_value = output
        self.mock_pipeline.to.return_value = self.mock_pipeline

        self.mock_auto_class = MagicMock()
        self.mock_auto_class.from_pretrained.return_value = self.mock_pipeline
        self.mock_diffusers = MagicMock()
        self.mock_diffusers.AutoPipelineForText2Image = self.mock_auto_class

        self._saved: dict = {}

    def __enter__(self):
        for name, module in (("torch", self.mock_torch), ("diffusers", self.mock_diffusers)):
            self._saved[name] = sys.modules.get(name)
            sys.modules[name] = module
        return self

    def __exit__(self, *args):
        for name, module in self._saved.items():
            if module is not None:
                sys.modules[name] = module
            else:
                sys.modules.pop(name, None)


def _config(test_config, **overrides):
    return test_config.model_copy(update=overrides)


class TestHelpers:
    def test_prompt_seed_is_stable(self):
        assert prompt_seed("a creature") == prompt_seed("a creature")
        assert prompt_seed("a creature") != prompt_seed("another creature")
        assert 0 <= prompt_seed("x") < 2**32

    def test_encode_jpeg_drops_alpha(self):
        data = encode_jpeg(Image.new("RGBA", (8, 8)))
        assert data[:2] == b"\xff\xd8"
        assert Image.open(io.BytesIO(data)).mode == "RGB"


class TestDiffusersSynthesizer:
    def test_not_loaded_initially(self, test_config):
        synthesizer = DiffusersSynthesizer(test_config)
        assert synthesizer.is_loaded is False
        assert synthesizer.model == test_config.diffusers_model_id

    async def test_synthesize_returns_jpeg(self, test_config):
        synthesizer = DiffusersSynthesizer(
            _config(test_config, diffusers_model_id="org/some-model", guidance_scale=4.5)
        )
        with _MockContext() as ctx:
            image = await synthesizer.synthesize("a creature")

        assert image.mime_type == "image/jpeg"
        assert image.image_bytes[:2] == b"\xff\xd8"
        assert image.model == "org/some-model"
        kwargs = ctx.mock_pipeline.call_args.kwargs
        assert kwargs["prompt"] == "a creature"
        assert kwargs["guidance_scale"] == 4.5
        assert kwargs["num_inference_steps"] == test_config.num_inference_steps
        ctx.mock_torch.Generator.return_value.manual_seed.assert_called_with(
            prompt_seed("a creature")
        )

    async def test_turbo_forces_zero_guidance(self, test_config):
        synthesizer = DiffusersSynthesizer(
            _config(test_config, diffusers_model_id="Tongyi-MAI/Z-Image-Turbo", guidance_scale=7.0)
        )
        assert synthesizer.is_turbo
        with _MockContext() as ctx:
            await synthesizer.synthesize("a creature")
        assert ctx.mock_pipeline.call_args.kwargs["guidance_scale"] == 0.0

    async def test_pipeline_loaded_once(self, test_config):
        synthesizer = DiffusersSynthesizer(test_config)
        with _MockContext() as ctx:
            await synthesizer.synthesize("one")
            await synthesizer.synthesize("two")
        assert ctx.mock_auto_class.from_pretrained.call_count == 1
        assert synthesizer.is_loaded

    def test_cpu_offload(self, test_config):
        synthesizer = DiffusersSynthesizer(_config(test_config, enable_model_cpu_offload=True))
        with _MockContext() as ctx:
            synthesizer.load()
        ctx.mock_pipeline.enable_model_cpu_offload.assert_called_once()
        ctx.mock_pipeline.to.assert_not_called()

    async def test_missing_libraries(self, test_config, monkeypatch):
        monkeypatch.setitem(sys.modules, "diffusers", None)
        with pytest.raises(ServiceUnavailable):
            await DiffusersSynthesizer(test_config).synthesize("a creature")

    async def test_load_failure(self, test_config):
        synthesizer = DiffusersSynthesizer(test_config)
        with _MockContext() as ctx:
            ctx.mock_auto_class.from_pretrained.side_effect = OSError("repo not found")
            with pytest.raises(UpstreamError, match="repo not found"):
                await synthesizer.synthesize("a creature")
        assert not synthesizer.is_loaded

    async def test_inference_failure(self, test_config):
        synthesizer = DiffusersSynthesizer(test_config)
        with _MockContext() as ctx:
            ctx.mock_pipeline.side_effect = RuntimeError("CUDA out of memory")
            with pytest.raises(UpstreamError, match="out of memory"):
                await synthesizer.synthesize("a creature")

    def test_close_frees_memory(self, test_config):
        synthesizer = DiffusersSynthesizer(test_config)
        with _MockContext() as ctx:
            synthesizer.load()
            synthesizer.close()
            ctx.mock_torch.cuda.empty_cache.assert_called_once()
        assert not synthesizer.is_loaded

    def test_close_when_unloaded_is_noop(self, test_config):
        DiffusersSynthesizer(test_config).close()
