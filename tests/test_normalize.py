from __future__ import annotations

import numpy as np
import pytest

cv2 = pytest.importorskip("cv2")

from faceprobe.errors import InvalidImageError
from faceprobe.imaging import normalize, normalize_many


def _encoded(width: int, height: int) -> bytes:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, : width // 2] = (0, 128, 255)
    ok, encoded = cv2.imencode(".jpg", image)
    assert ok
    return encoded.tobytes()


def _shape(data: bytes):
    return cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR).shape[:2]


@pytest.mark.parametrize("width,height", [(31, 77), (300, 120), (200, 200), (12, 12)])
def test_square_target_regardless_of_aspect(width, height):
    assert _shape(normalize(_encoded(width, height), 200)) == (200, 200)


def test_explicit_width_and_height():
    assert _shape(normalize(_encoded(50, 50), 64, 32)) == (32, 64)


def test_output_is_jpeg():
    assert normalize(_encoded(40, 40), 20)[:2] == b"\xff\xd8"


def test_normalize_many_uses_one_target():
    outputs = normalize_many([_encoded(10, 40), _encoded(90, 30)], 48)
    assert [_shape(item) for item in outputs] == [(48, 48), (48, 48)]


def test_rejects_bad_input():
    with pytest.raises(InvalidImageError):
        normalize(b"", 200)
    with pytest.raises(InvalidImageError):
        normalize(b"garbage", 200)
    with pytest.raises(ValueError):
        normalize(_encoded(10, 10), 0)
