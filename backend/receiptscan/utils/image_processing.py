"""Image preprocessing utilities.

Frames sampled from a phone video are usually larger than the model
needs and may carry EXIF orientation. The functions here normalise
orientation, bound the longest edge and re-encode as JPEG. Pillow is
the imaging backend.
"""

from __future__ import annotations

import logging
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)


def preprocess_image(image_data: bytes, max_size: int = 1280, grayscale: bool = False) -> bytes:
    """Prepare an image for inference.

    The image is rotated according to its EXIF orientation, optionally
    converted to grayscale, and resized so the longest edge is at most
    ``max_size`` pixels while maintaining aspect ratio. Undecodable
    input is returned unchanged so the caller can still forward it.

    :param image_data: Raw image bytes
    :param max_size: Maximum size of the longest edge in pixels
    :param grayscale: Convert to single-channel before encoding
    :returns: Processed image bytes in JPEG format
    """
    try:
        with Image.open(BytesIO(image_data)) as img:
            img = ImageOps.exif_transpose(img)
            img = img.convert("L" if grayscale else "RGB")
            width, height = img.size
            max_dim = max(width, height)
            if max_dim > max_size:
                scale = max_size / float(max_dim)
                img = img.resize((int(width * scale), int(height * scale)))
            buf = BytesIO()
            img.save(buf, format="JPEG", quality=90)
            return buf.getvalue()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("preprocess_image: passing through undecodable image (%s)", exc)
        return image_data
