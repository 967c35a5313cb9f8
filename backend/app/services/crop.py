"""
Percentage-based image cropping.
"""

from __future__ import annotations

import io
import math

from PIL import Image, UnidentifiedImageError

from app.services.errors import WorkflowValidationError


# Modes PNG can store directly; anything else (CMYK, YCbCr, LAB) is converted
# to RGB or RGBA before encoding.
PNG_MODES = frozenset({"1", "L", "LA", "I", "I;16", "I;16B", "P", "RGB", "RGBA"})


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_crop_box(
    width: int,
    height: int,
    x_percent: float,
    y_percent: float,
    width_percent: float,
    height_percent: float,
) -> tuple[int, int, int, int]:
    """
    Pixel rectangle (left, top, crop_width, crop_height) for a percentage crop.

    Offsets are clamped into the image first; extents are then clamped to the
    remaining space and never drop below one pixel.
    """
    left = min(_round_half_up(x_percent * width / 100), max(width - 1, 0))
    top = min(_round_half_up(y_percent * height / 100), max(height - 1, 0))
    crop_width = max(min(_round_half_up(width_percent * width / 100), width - left), 1)
    crop_height = max(min(_round_half_up(height_percent * height / 100), height - top), 1)
    return left, top, crop_width, crop_height


def crop_image_bytes(
    data: bytes,
    x_percent: float,
    y_percent: float,
    width_percent: float,
    height_percent: float,
) -> bytes:
    """Crop encoded image bytes and re-encode the result as PNG."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise WorkflowValidationError(f"Could not read image input: {e}") from e

    left, top, crop_width, crop_height = compute_crop_box(
        image.width, image.height, x_percent, y_percent, width_percent, height_percent
    )
    cropped = image.crop((left, top, left + crop_width, top + crop_height))
    if cropped.mode not in PNG_MODES:
        target = "RGBA" if "A" in cropped.getbands() else "RGB"
        try:
            cropped = cropped.convert(target)
        except ValueError as e:
            raise WorkflowValidationError(
                f"Unsupported image mode {cropped.mode}: {e}"
            ) from e

    buffer = io.BytesIO()
    cropped.save(buffer, format="PNG")
    return buffer.getvalue()
