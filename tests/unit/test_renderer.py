"""
Unit tests for the Pillow renderers.
"""

import io
from types import SimpleNamespace

import pytest
from PIL import Image

from imagelift.core.exceptions import RenderError
from imagelift.pipeline.renderer import LanczosRenderer, SimulatedRenderer, create_renderer
from tests.fakes import make_image_bytes


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.fixture(params=[LanczosRenderer, SimulatedRenderer])
def renderer(request):
    return request.param()


class TestRender:
    @pytest.mark.parametrize("target_width", [384, 768])
    def test_output_has_target_width_and_aspect(self, renderer, target_width):
        source = make_image_bytes(64, 48)

        output = decode(renderer.render(source, target_width))

        assert output.format == "JPEG"
        assert output.size == (target_width, target_width * 48 // 64)

    def test_accepts_jpeg_and_webp(self, renderer):
        for fmt in ("JPEG", "WEBP"):
            output = decode(renderer.render(make_image_bytes(40, 40, fmt=fmt), 80))
            assert output.size == (80, 80)

    def test_converts_alpha_images(self, renderer):
        buffer = io.BytesIO()
        Image.new("RGBA", (32, 16), (10, 20, 30, 128)).save(buffer, format="PNG")

        output = decode(renderer.render(buffer.getvalue(), 64))

        assert output.mode == "RGB"
        assert output.size == (64, 32)

    def test_source_bytes_untouched(self, renderer):
        source = make_image_bytes()
        snapshot = bytes(source)

        renderer.render(source, 128)

        assert source == snapshot

    def test_corrupt_input(self, renderer):
        with pytest.raises(RenderError):
            renderer.render(b"definitely not an image", 384)

    def test_empty_input(self, renderer):
        with pytest.raises(RenderError):
            renderer.render(b"", 384)

    def test_invalid_width(self, renderer):
        with pytest.raises(RenderError):
            renderer.render(make_image_bytes(), 0)


class TestFactory:
    def settings(self, renderer_name):
        return SimpleNamespace(
            RENDERER=renderer_name,
            RENDER_JPEG_QUALITY=90,
            RENDER_SHARPEN_RADIUS=2.0,
            RENDER_SHARPEN_PERCENT=120,
            RENDER_SHARPEN_THRESHOLD=2,
            RENDER_BRIGHTNESS=1.0,
            RENDER_SATURATION=1.0,
            SIMULATED_RENDER_DELAY_SECONDS=0.0,
        )

    def test_lanczos_from_settings(self):
        renderer = create_renderer(self.settings("lanczos"))

        assert isinstance(renderer, LanczosRenderer)
        assert renderer.quality == 90
        assert renderer.sharpen_radius == 2.0

    def test_simulated_from_settings(self):
        assert isinstance(create_renderer(self.settings("Simulated")), SimulatedRenderer)

    def test_unknown_renderer(self):
        with pytest.raises(ValueError):
            create_renderer(self.settings("esrgan"))
