from __future__ import annotations

import logging

import numpy as np
import pytest

cv2 = pytest.importorskip("cv2")

from faceprobe.config import ExtractionConfig
from faceprobe.detectors.face_retina import aligned_det_size
from faceprobe.detectors.face_yunet import YuNetBackend
from faceprobe.detectors.regions import (
    IMAGE_SCORE_THRESHOLD,
    VIDEO_SCORE_THRESHOLD,
    RegionDetector,
    backend_factory,
    parse_detection,
)
from faceprobe.errors import DetectorInitError, MediaOpenError


def _row(x, y, w, h, score):
    return [x, y, w, h] + [0.0] * 10 + [score]


class _StaticBackend:
    def __init__(self, rows):
        self.rows = rows

    def detect(self, image):
        return self.rows


class _RecordingFactory:
    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    def __call__(self, size, threshold):
        self.calls.append((size, threshold))
        return _StaticBackend(self.rows)


def _image(width=64, height=48):
    rng = np.random.default_rng(7)
    return rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)


def test_thresholds_are_distinct_constants():
    assert VIDEO_SCORE_THRESHOLD == 0.5
    assert IMAGE_SCORE_THRESHOLD == 0.9
    assert RegionDetector.for_video(_RecordingFactory([])).score_threshold == VIDEO_SCORE_THRESHOLD
    assert RegionDetector.for_image(_RecordingFactory([])).score_threshold == IMAGE_SCORE_THRESHOLD


def test_detect_discards_out_of_bounds_and_small_boxes():
    rows = [
        _row(4, 4, 20, 20, 0.95),  # accepted
        _row(50, 10, 20, 20, 0.95),  # past right edge
        _row(-1, 5, 20, 20, 0.95),  # negative x
        _row(10, 10, 10, 30, 0.95),  # width at minimum
        _row(10, 10, 30, 10, 0.95),  # height at minimum
        _row(5, 5, 11, 11, 0.95),  # accepted
        _row(10, 30, 20, 20, 0.95),  # past bottom edge
    ]
    detector = RegionDetector.for_video(_RecordingFactory(rows))

    regions = detector.detect(_image(64, 48), frame_idx=3)

    assert [region.box for region in regions] == [(4, 4, 20, 20), (5, 5, 11, 11)]
    for region in regions:
        x, y, w, h = region.box
        assert x >= 0 and y >= 0 and x + w <= 64 and y + h <= 48
        assert w > 10 and h > 10
        assert region.frame_idx == 3
        crop = cv2.imdecode(np.frombuffer(region.data, dtype=np.uint8), cv2.IMREAD_COLOR)
        assert crop.shape[:2] == (h, w)


def test_image_threshold_is_stricter_than_video():
    rows = [_row(4, 4, 20, 20, 0.8)]

    video_regions = RegionDetector.for_video(_RecordingFactory(rows)).detect(_image())
    image_regions = RegionDetector.for_image(_RecordingFactory(rows)).detect(_image())

    assert len(video_regions) == 1
    assert image_regions == []


def test_malformed_rows_are_skipped(caplog):
    rows = [
        [1.0, 2.0, 3.0],
        _row(4, 4, float("nan"), 20, 0.95),
        _row(4, 4, 20, 20, 0.95),
    ]
    detector = RegionDetector.for_video(_RecordingFactory(rows))

    with caplog.at_level(logging.WARNING, logger="faceprobe.detectors.regions"):
        regions = detector.detect(_image())

    assert len(regions) == 1
    assert sum("malformed detection row" in record.message for record in caplog.records) == 2


def test_backend_reused_until_dimensions_change():
    factory = _RecordingFactory([])
    detector = RegionDetector.for_video(factory)

    detector.detect(_image(64, 48))
    detector.detect(_image(64, 48))
    assert detector.backend_builds == 1

    detector.detect(_image(80, 48))
    assert detector.backend_builds == 2
    assert [size for size, _ in factory.calls] == [(64, 48), (80, 48)]
    assert all(threshold == VIDEO_SCORE_THRESHOLD for _, threshold in factory.calls)


def test_factory_failure_becomes_detector_init_error():
    def _broken(size, threshold):
        raise RuntimeError("weights missing")

    detector = RegionDetector.for_video(_broken)

    with pytest.raises(DetectorInitError) as excinfo:
        detector.detect(_image())
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_parse_detection_truncates_coordinates():
    box, confidence = parse_detection(_row(4.9, 5.2, 20.7, 21.1, 0.75))
    assert box == (4, 5, 20, 21)
    assert confidence == pytest.approx(0.75)

    with pytest.raises(ValueError):
        parse_detection([1, 2, 3, 4])


def test_detect_bytes_rejects_undecodable_image():
    detector = RegionDetector.for_image(_RecordingFactory([]))
    with pytest.raises(MediaOpenError):
        detector.detect_bytes(b"not an image", item="photo.jpg")


def test_detect_bytes_decodes_still_image():
    ok, encoded = cv2.imencode(".png", _image(64, 48))
    assert ok
    detector = RegionDetector.for_image(_RecordingFactory([_row(2, 2, 30, 30, 0.97)]))

    regions = detector.detect_bytes(encoded.tobytes())

    assert len(regions) == 1
    assert regions[0].confidence == pytest.approx(0.97)


def test_yunet_backend_requires_model_file(tmp_path):
    with pytest.raises(DetectorInitError):
        YuNetBackend(str(tmp_path / "missing.onnx"), (64, 64))


def test_backend_factory_reports_missing_yunet_model(tmp_path):
    config = ExtractionConfig(yunet_model=str(tmp_path / "missing.onnx"))
    detector = RegionDetector.for_video(backend_factory(config))

    with pytest.raises(DetectorInitError):
        detector.detect(_image())


@pytest.mark.parametrize(
    "input_size, expected",
    [((1920, 1080), (1920, 1088)), ((64, 48), (64, 64)), ((10, 10), (32, 32)), ((640, 480), (640, 480))],
)
def test_retina_det_size_rounds_up_to_stride_multiple(input_size, expected):
    assert aligned_det_size(input_size) == expected
