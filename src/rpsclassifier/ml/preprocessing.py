"""Image preprocessing pipeline.

Decodes an uploaded blob, fixes its orientation, downscales it within the
width/height bounds and returns a batched HxWx3 uint8 array for model input.

The bounds are applied as a cascade: width first, then height on the
already width-scaled image. For tall images the second step can leave the
width well below its bound.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from rpsclassifier.errors import DecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

MAX_WIDTH: int = 400
MAX_HEIGHT: int = 533
DEFAULT_MAX_PIXELS: int = 16_777_216


def scaled_dimensions(
    width: float,
    height: float,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
) -> tuple[float, float]:
    """Return the aspect-preserving size after the width and height passes."""
    if width > max_width:
        height *= max_width / width
        width = max_width
    if height > max_height:
        width *= max_height / height
        height = max_height
    return float(width), float(height)


def target_size(
    width: int,
    height: int,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
) -> tuple[int, int]:
    """Integer (width, height) of the raster the image is drawn onto.

    Fractional sizes are truncated, with a floor of one pixel per side.
    """
    scaled_w, scaled_h = scaled_dimensions(width, height, max_width, max_height)
    return max(1, int(scaled_w)), max(1, int(scaled_h))


def decode_image(data: bytes, max_pixels: int = DEFAULT_MAX_PIXELS) -> Image.Image:
    """Decode raw bytes into an upright RGB Pillow image.

    Raises:
        DecodeError: If the data is not a readable image or exceeds max_pixels.
    """
    if not data:
        raise DecodeError("Empty image data")

    try:
        image = Image.open(io.BytesIO(data))
        if image.width * image.height > max_pixels:
            raise DecodeError(f"Image of {image.width}x{image.height} exceeds {max_pixels} pixels")
        image.load()
    except DecodeError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise DecodeError(str(exc)) from exc
    except (OSError, ValueError, SyntaxError) as exc:
        raise DecodeError(f"Corrupt image data: {exc}") from exc

    image = ImageOps.exif_transpose(image)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def resize_image(image: Image.Image, max_width: int = MAX_WIDTH, max_height: int = MAX_HEIGHT) -> Image.Image:
    """Downscale an image within the bounds, or return it untouched."""
    size = target_size(image.width, image.height, max_width, max_height)
    if size == image.size:
        return image
    return image.resize(size, Image.Resampling.BILINEAR)


def to_batch(image: Image.Image) -> NDArray[np.uint8]:
    """Convert an RGB image to a (1, H, W, 3) uint8 array."""
    pixels = np.asarray(image, dtype=np.uint8)
    return np.expand_dims(pixels, axis=0)


def preprocess_image(
    data: bytes,
    *,
    max_width: int = MAX_WIDTH,
    max_height: int = MAX_HEIGHT,
    max_pixels: int = DEFAULT_MAX_PIXELS,
) -> NDArray[np.uint8]:
    """Run the full pipeline: decode, orient, resize, batch.

    Args:
        data: Raw file bytes (any Pillow-supported format).
        max_width: Width bound applied first.
        max_height: Height bound applied to the width-scaled image.
        max_pixels: Largest accepted source image, in pixels.

    Returns:
        Array of shape (1, height, width, 3), dtype uint8.

    Raises:
        DecodeError: If the blob cannot be decoded.
    """
    image = decode_image(data, max_pixels=max_pixels)
    source_size = image.size
    resized = resize_image(image, max_width, max_height)
    batch = to_batch(resized)
    logger.debug("Preprocessed %sx%s image to shape %s", source_size[0], source_size[1], batch.shape)
    return batch
