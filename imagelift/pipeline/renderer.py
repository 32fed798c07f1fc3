"""
Renderer Implementations

A renderer turns source image bytes into an enhanced derivative of a given
target width. Renderers hold no per-job state, never modify their input,
and raise RenderError instead of returning degraded output.
"""

import io
import time
from abc import ABC, abstractmethod
from typing import Optional

from PIL import Image, ImageEnhance, ImageFilter, ImageOps, UnidentifiedImageError

from imagelift.core.exceptions import RenderError
from imagelift.core.logging import get_logger

logger = get_logger(__name__)


class Renderer(ABC):
    """Render contract used by the pipeline executor."""

    name = "renderer"

    @abstractmethod
    def render(self, source_bytes: bytes, target_width: int) -> bytes:
        """
        Produce an enhanced JPEG of the given width.

        Args:
            source_bytes: Encoded source image (JPEG, PNG or WebP)
            target_width: Width in pixels of the derivative; height keeps the aspect ratio

        Returns:
            Encoded JPEG bytes

        Raises:
            RenderError: corrupt input, unsupported format or resource exhaustion
        """
        pass


def _open_image(source_bytes: bytes) -> Image.Image:
    if not source_bytes:
        raise RenderError("Source image is empty")
    try:
        image = Image.open(io.BytesIO(source_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise RenderError(f"Unsupported or corrupt image: {e}")
    # Honour camera orientation before resizing
    image = ImageOps.exif_transpose(image)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def _target_size(image: Image.Image, target_width: int):
    if target_width <= 0:
        raise RenderError(f"Invalid target width: {target_width}")
    width, height = image.size
    target_height = max(1, round(height * target_width / width))
    return target_width, target_height


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    output_buffer = io.BytesIO()
    image.save(output_buffer, format="JPEG", quality=quality, progressive=True)
    return output_buffer.getvalue()


class LanczosRenderer(Renderer):
    """
    Classical enhancement with Pillow.

    Lanczos upscale to the target width, unsharp mask, a light brightness
    and saturation lift, then autocontrast normalization. Output is a
    progressive JPEG.
    """

    name = "lanczos"

    def __init__(
        self,
        quality: int = 98,
        sharpen_radius: float = 1.5,
        sharpen_percent: int = 150,
        sharpen_threshold: int = 3,
        brightness: float = 1.03,
        saturation: float = 1.08
    ):
        self.quality = quality
        self.sharpen_radius = sharpen_radius
        self.sharpen_percent = sharpen_percent
        self.sharpen_threshold = sharpen_threshold
        self.brightness = brightness
        self.saturation = saturation

    def render(self, source_bytes: bytes, target_width: int) -> bytes:
        start_time = time.time()
        image = _open_image(source_bytes)
        original_size = image.size

        try:
            output_image = image.resize(_target_size(image, target_width), Image.Resampling.LANCZOS)
            output_image = output_image.filter(ImageFilter.UnsharpMask(
                radius=self.sharpen_radius,
                percent=self.sharpen_percent,
                threshold=self.sharpen_threshold
            ))
            output_image = ImageEnhance.Brightness(output_image).enhance(self.brightness)
            output_image = ImageEnhance.Color(output_image).enhance(self.saturation)
            output_image = ImageOps.autocontrast(output_image)
            output_bytes = _encode_jpeg(output_image, self.quality)
        except MemoryError:
            raise RenderError(f"Out of memory rendering width {target_width}")
        except (OSError, ValueError) as e:
            raise RenderError(f"Rendering failed: {e}")

        logger.debug(
            "render_completed",
            renderer=self.name,
            original_dimensions=original_size,
            output_dimensions=output_image.size,
            output_size=len(output_bytes),
            duration_ms=int((time.time() - start_time) * 1000)
        )
        return output_bytes


class SimulatedRenderer(Renderer):
    """Resize-only renderer for development, with an optional artificial delay."""

    name = "simulated"

    def __init__(self, delay_seconds: float = 0.0, quality: int = 85):
        self.delay_seconds = delay_seconds
        self.quality = quality

    def render(self, source_bytes: bytes, target_width: int) -> bytes:
        image = _open_image(source_bytes)
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        output_image = image.resize(_target_size(image, target_width), Image.Resampling.BILINEAR)
        return _encode_jpeg(output_image, self.quality)


def create_renderer(settings, name: Optional[str] = None) -> Renderer:
    """Build the renderer selected by the RENDERER setting."""
    name = (name or settings.RENDERER).lower()
    if name == "lanczos":
        return LanczosRenderer(
            quality=settings.RENDER_JPEG_QUALITY,
            sharpen_radius=settings.RENDER_SHARPEN_RADIUS,
            sharpen_percent=settings.RENDER_SHARPEN_PERCENT,
            sharpen_threshold=settings.RENDER_SHARPEN_THRESHOLD,
            brightness=settings.RENDER_BRIGHTNESS,
            saturation=settings.RENDER_SATURATION
        )
    if name == "simulated":
        return SimulatedRenderer(delay_seconds=settings.SIMULATED_RENDER_DELAY_SECONDS)
    raise ValueError(f"Unknown renderer: {name}")
