"""Image preprocessing pipeline.

Decodes uploaded bytes, applies EXIF orientation, flattens transparency
onto white and letterboxes the result into the classifier's square input
canvas without cropping or distorting it.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from teachlens.errors import InvalidImage

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from teachlens.config import Settings

BACKGROUND = (255, 255, 255)


@dataclass(frozen=True)
class LetterboxGeometry:
    """Exact placement of a W x H image inside a square canvas."""

    target_size: int
    scale: float
    width: float
    height: float
    dx: float
    dy: float

    @classmethod
    def compute(cls, width: int, height: int, target_size: int) -> LetterboxGeometry:
        if width <= 0 or height <= 0:
            raise InvalidImage(f"Image has zero dimension ({width}x{height})")
        scale = min(target_size / width, target_size / height)
        new_width = width * scale
        new_height = height * scale
        return cls(
            target_size=target_size,
            scale=scale,
            width=new_width,
            height=new_height,
            dx=(target_size - new_width) / 2,
            dy=(target_size - new_height) / 2,
        )


def decode_image(image_bytes: bytes, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into a fully loaded, upright PIL image.

    Raises:
        InvalidImage: If the bytes are not a decodable image, the image has a
            zero dimension, or it exceeds ``max_pixels``.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as opened:
            width, height = opened.size
            if width == 0 or height == 0:
                raise InvalidImage(f"Image has zero dimension ({width}x{height})")
            if width * height > max_pixels:
                raise InvalidImage(f"Image is too large ({width}x{height} pixels)")
            # exif_transpose always returns a loaded copy, detached from the buffer
            return ImageOps.exif_transpose(opened)
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise InvalidImage() from exc


def flatten(image: Image.Image) -> Image.Image:
    """Return an RGB copy of ``image`` with any transparency composited onto white."""
    if image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        canvas = Image.new("RGBA", rgba.size, (*BACKGROUND, 255))
        canvas.alpha_composite(rgba)
        rgba.close()
        flat = canvas.convert("RGB")
        canvas.close()
        return flat
    return image.convert("RGB")


def normalize(image: Image.Image, target_size: int) -> Image.Image:
    """Letterbox ``image`` into a white ``target_size`` x ``target_size`` canvas.

    The image is scaled uniformly by ``min(T/W, T/H)`` and centered. Placement
    is derived from the exact (fractional) scale and offsets through an affine
    mapping, so the drawn region is never shifted by rounding the offsets.
    """
    geometry = LetterboxGeometry.compute(image.width, image.height, target_size)
    source = flatten(image)
    if source.size == (target_size, target_size):
        return source

    # Antialiased resample to the nearest whole size, then place it exactly.
    resized_w = max(1, round(geometry.width))
    resized_h = max(1, round(geometry.height))
    resized = source.resize((resized_w, resized_h), Image.Resampling.LANCZOS)
    source.close()
    try:
        sx = resized_w / geometry.width
        sy = resized_h / geometry.height
        return resized.transform(
            (target_size, target_size),
            Image.Transform.AFFINE,
            (sx, 0.0, -geometry.dx * sx, 0.0, sy, -geometry.dy * sy),
            resample=Image.Resampling.BILINEAR,
            fillcolor=BACKGROUND,
        )
    finally:
        resized.close()


def to_input_tensor(image: Image.Image) -> NDArray[np.float32]:
    """Convert a normalized RGB image to a (1, H, W, 3) float32 tensor in [-1, 1]."""
    array = np.asarray(image.convert("RGB"), dtype=np.float32)
    return (array / 127.5 - 1.0)[np.newaxis, ...]


def encode_thumbnail(image: Image.Image, max_side: int) -> str:
    """Encode a small JPEG preview of ``image`` as a self-contained data URL."""
    thumb = flatten(image)
    try:
        thumb.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
        buffer = io.BytesIO()
        thumb.save(buffer, format="JPEG", quality=85)
    finally:
        thumb.close()
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"


class ImageNormalizer:
    """Preprocessing bound to the configured input geometry and limits."""

    def __init__(self, target_size: int, max_pixels: int, thumbnail_size: int) -> None:
        self.target_size = target_size
        self.max_pixels = max_pixels
        self.thumbnail_size = thumbnail_size

    @classmethod
    def from_settings(cls, settings: Settings) -> ImageNormalizer:
        return cls(
            target_size=settings.image_size,
            max_pixels=settings.max_image_pixels,
            thumbnail_size=settings.thumbnail_size,
        )

    def decode(self, image_bytes: bytes) -> Image.Image:
        return decode_image(image_bytes, self.max_pixels)

    def normalize(self, image: Image.Image) -> Image.Image:
        return normalize(image, self.target_size)

    def thumbnail(self, image: Image.Image) -> str:
        return encode_thumbnail(image, self.thumbnail_size)
