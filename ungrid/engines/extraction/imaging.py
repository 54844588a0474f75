"""
Pillow helpers for decoding, encoding and downscaling images.
"""

import io
from typing import Union

from PIL import Image, UnidentifiedImageError

from ungrid.core.exceptions import ValidationError

ImageInput = Union[bytes, Image.Image]


def load_image(data: ImageInput) -> Image.Image:
    """Decode bytes into an RGBA image; pass PIL images through converted."""
    if isinstance(data, Image.Image):
        image = data
    else:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            raise ValidationError(f"Could not decode image: {e}")
    if image.mode != "RGBA":
        image = image.convert("RGBA")
    return image


def to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def normalize_png(data: ImageInput) -> bytes:
    """Decode any supported input and re-encode it as PNG."""
    return to_png_bytes(load_image(data))


def image_mime_type(data: bytes, default: str = "image/png") -> str:
    """MIME type of encoded image bytes, read from the header only."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format, default)
    except (UnidentifiedImageError, OSError):
        return default


def downscale(image: Image.Image, max_size: int) -> Image.Image:
    """Shrink so the long edge is at most ``max_size``; never upscales."""
    width, height = image.size
    if width <= max_size and height <= max_size:
        return image
    scale = min(max_size / width, max_size / height)
    new_size = (max(1, int(width * scale)), max(1, int(height * scale)))
    return image.resize(new_size, Image.Resampling.LANCZOS)
