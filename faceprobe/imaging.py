"""Image codec helpers and the crop normalizer."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Tuple

import cv2
import numpy as np

from faceprobe.errors import InvalidImageError
from faceprobe.types import Box

LOGGER = logging.getLogger("faceprobe.imaging")

JPEG_QUALITY = 95


def decode_image(data: bytes, stage: str = "decode") -> np.ndarray:
    """Decode encoded image bytes into a BGR array."""
    if not data:
        raise InvalidImageError("Image bytes cannot be empty", stage=stage)
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise InvalidImageError("Failed to decode image from bytes", stage=stage)
    return image


def encode_jpeg(image: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, encoded = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise InvalidImageError("JPEG encoding failed", stage="encode")
    return encoded.tobytes()


def encode_png(image: np.ndarray) -> bytes:
    ok, encoded = cv2.imencode(".png", image)
    if not ok:
        raise InvalidImageError("PNG encoding failed", stage="encode")
    return encoded.tobytes()


def crop_box(image: np.ndarray, box: Box) -> np.ndarray:
    """Slice an (x, y, w, h) box out of the image; the caller checks bounds."""
    x, y, w, h = box
    return image[y : y + h, x : x + w]


def _target_size(width: int, height: Optional[int]) -> Tuple[int, int]:
    height = width if height is None else height
    if int(width) <= 0 or int(height) <= 0:
        raise ValueError(f"Target size must be positive (got {width}x{height})")
    return int(width), int(height)


def resize_image(image: np.ndarray, width: int, height: Optional[int] = None) -> np.ndarray:
    width, height = _target_size(width, height)
    src_h, src_w = image.shape[:2]
    if src_h == height and src_w == width:
        return image.copy()
    return cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)


def normalize(data: bytes, width: int, height: Optional[int] = None, quality: int = JPEG_QUALITY) -> bytes:
    """Resize encoded crop bytes to exactly width x height and re-encode as JPEG.

    A single size argument yields a square target. Aspect ratio is not
    preserved.
    """
    image = decode_image(data, stage="normalize")
    return encode_jpeg(resize_image(image, width, height), quality=quality)


def normalize_many(
    items: Iterable[bytes],
    width: int,
    height: Optional[int] = None,
    quality: int = JPEG_QUALITY,
) -> List[bytes]:
    """Apply :func:`normalize` with the same target to every element."""
    return [normalize(item, width, height, quality=quality) for item in items]
