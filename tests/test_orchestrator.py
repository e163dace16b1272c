from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import numpy as np
import pytest

cv2 = pytest.importorskip("cv2")

from faceprobe.analysis.orchestrator import AnalysisMode, AnalysisOrchestrator
from faceprobe.cancel import CancelToken
from faceprobe.config import ExtractionConfig
from faceprobe.errors import EmptyResultError, FaceProbeError, JobCancelled, MediaOpenError, ModelUnavailableError
from faceprobe.types import MediaBlob, MediaKind


def _row(x, y, w, h, score):
    return [x, y, w, h] + [0.0] * 10 + [score]


class _StaticBackend:
    def __init__(self, rows):
        self.rows = rows

    def detect(self, image):
        return self.rows


def _factory(rows):
    def _build(size, threshold):
        return _StaticBackend(rows)

    return _build


class _FixedScorer:
    def __init__(self, value=0.8):
        self.value = value
        self.model_ids = []
        self.threads = set()
        self.shapes = []

    def predict(self, image, model_id):
        self.model_ids.append(model_id)
        self.threads.add(threading.current_thread().name)
        decoded = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_COLOR)
        self.shapes.append(decoded.shape[:2])
        return self.value


class _SequenceScorer:
    def __init__(self, values):
        self._values = list(values)
        self._lock = threading.Lock()

    def predict(self, image, model_id):
        with self._lock:
            return self._values.pop(0)


class _MissingModelScorer:
    def predict(self, image, model_id):
        raise ModelUnavailableError("no such model", stage="score", item=model_id)


def _image_blob(width=96, height=96) -> MediaBlob:
    rng = np.random.default_rng(3)
    image = rng.integers(0, 255, size=(height, width, 3), dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return MediaBlob(data=encoded.tobytes(), kind=MediaKind.IMAGE, name="photo.png")


def _video_blob(tmp_path: Path, frame_count: int, fps: int = 30, size: int = 64) -> MediaBlob:
    path = tmp_path / "clip.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), fps, (size, size))
    for idx in range(frame_count):
        frame = np.full((size, size, 3), (idx * 3) % 255, dtype=np.uint8)
        cv2.rectangle(frame, (16, 16), (48, 48), (255, 255, 255), -1)
        writer.write(frame)
    writer.release()
    return MediaBlob.from_path(path)


def _orchestrator(scorer, rows, **kwargs) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(scorer, config=ExtractionConfig(workers=2), detector_factory=_factory(rows), **kwargs)


def test_mode_properties():
    assert AnalysisMode.VIDEO_NOISE.kind is MediaKind.VIDEO
    assert AnalysisMode.VIDEO_NOISE.noise
    assert not AnalysisMode.IMAGE_DEFAULT.noise
    assert AnalysisMode.for_kind(MediaKind.IMAGE, noise=True) is AnalysisMode.IMAGE_NOISE


def test_image_default_mean_of_equal_scores():
    scorer = _FixedScorer(0.8)
    rows = [_row(4, 4, 30, 30, 0.95), _row(40, 40, 40, 40, 0.99), _row(10, 50, 20, 20, 0.93)]

    result = _orchestrator(scorer, rows).analyze_image_default(_image_blob())

    assert result.score == pytest.approx(0.8)
    assert result.region_count == 3
    assert result.mode == "image-default"
    assert scorer.model_ids == ["default"] * 3
    assert scorer.shapes == [(200, 200)] * 3


def test_image_noise_uses_noise_model():
    scorer = _FixedScorer(0.25)

    result = _orchestrator(scorer, [_row(4, 4, 30, 30, 0.95)]).analyze_image_noise(_image_blob())

    assert result.score == pytest.approx(0.25)
    assert scorer.model_ids == ["noise"]


def test_model_ids_are_configurable():
    scorer = _FixedScorer()
    orchestrator = _orchestrator(scorer, [_row(4, 4, 30, 30, 0.95)], model_ids={"noise": "residual-v2"})

    orchestrator.analyze(_image_blob(), AnalysisMode.IMAGE_NOISE)

    assert scorer.model_ids == ["residual-v2"]


def test_no_regions_reports_empty_result():
    orchestrator = _orchestrator(_FixedScorer(), [_row(4, 4, 30, 30, 0.85)])

    with pytest.raises(EmptyResultError) as excinfo:
        orchestrator.analyze_image_default(_image_blob())
    assert excinfo.value.stage == "aggregate"


def test_video_end_to_end_ten_seconds(tmp_path):
    values = [0.1 * idx for idx in range(10)]
    scorer = _SequenceScorer(values)
    orchestrator = _orchestrator(scorer, [_row(16, 16, 32, 32, 0.9)])

    result = orchestrator.analyze_video_default(_video_blob(tmp_path, frame_count=300))

    assert result.frames_sampled == 10
    assert result.region_count == 10
    assert result.score == pytest.approx(sum(values) / len(values))


def test_video_noise_mode(tmp_path):
    scorer = _FixedScorer(0.6)
    orchestrator = _orchestrator(scorer, [_row(16, 16, 32, 32, 0.9)])

    result = orchestrator.analyze_video_noise(_video_blob(tmp_path, frame_count=60))

    assert result.region_count == 2
    assert result.score == pytest.approx(0.6)
    assert set(scorer.model_ids) == {"noise"}


def test_scorer_runs_off_the_decoding_thread(tmp_path):
    scorer = _FixedScorer()
    orchestrator = _orchestrator(scorer, [_row(16, 16, 32, 32, 0.9)])

    orchestrator.analyze_video_default(_video_blob(tmp_path, frame_count=60))

    assert threading.current_thread().name not in scorer.threads
    assert all(name.startswith("faceprobe-scorer") for name in scorer.threads)


def test_kind_mismatch_is_rejected():
    orchestrator = _orchestrator(_FixedScorer(), [])
    with pytest.raises(MediaOpenError):
        orchestrator.analyze(_image_blob(), AnalysisMode.VIDEO_DEFAULT)


def test_scorer_failure_aborts_request():
    orchestrator = _orchestrator(_MissingModelScorer(), [_row(4, 4, 30, 30, 0.95)])
    with pytest.raises(ModelUnavailableError):
        orchestrator.analyze_image_default(_image_blob())


class _CrashingScorer:
    def predict(self, image, model_id):
        raise RuntimeError("session crashed")


class _CrashingBackend:
    def detect(self, image):
        raise RuntimeError("detector crashed")


def test_unexpected_scorer_error_is_reported_with_stage():
    orchestrator = _orchestrator(_CrashingScorer(), [_row(4, 4, 30, 30, 0.95)])

    with pytest.raises(FaceProbeError) as excinfo:
        orchestrator.analyze(_image_blob(), AnalysisMode.IMAGE_DEFAULT)

    assert excinfo.value.stage == "score"
    assert excinfo.value.item == "photo.png"
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_unexpected_detector_error_is_reported_with_stage(tmp_path):
    orchestrator = AnalysisOrchestrator(
        _FixedScorer(), config=ExtractionConfig(workers=1), detector_factory=lambda size, threshold: _CrashingBackend()
    )

    with pytest.raises(FaceProbeError) as excinfo:
        orchestrator.analyze_image_default(_image_blob())
    assert excinfo.value.stage == "detect"
    assert isinstance(excinfo.value.__cause__, RuntimeError)

    with pytest.raises(FaceProbeError) as excinfo:
        orchestrator.analyze_video_default(_video_blob(tmp_path, frame_count=30))
    assert excinfo.value.stage == "detect"
    assert excinfo.value.item == "clip.avi"


def test_unexpected_normalize_error_is_reported_with_stage(monkeypatch):
    def _broken(data, width, height=None, quality=95):
        raise ValueError("bad resize")

    monkeypatch.setattr("faceprobe.analysis.orchestrator.normalize", _broken)
    orchestrator = _orchestrator(_FixedScorer(), [_row(4, 4, 30, 30, 0.95)])

    with pytest.raises(FaceProbeError) as excinfo:
        orchestrator.analyze_image_default(_image_blob())
    assert excinfo.value.stage == "normalize"
    assert isinstance(excinfo.value.__cause__, ValueError)


def test_unexpected_noise_error_is_reported_with_stage(monkeypatch):
    def _broken(self, data):
        raise RuntimeError("filter crashed")

    monkeypatch.setattr("faceprobe.noise.residual.NoiseExtractor.process", _broken)
    orchestrator = _orchestrator(_FixedScorer(), [_row(4, 4, 30, 30, 0.95)])

    with pytest.raises(FaceProbeError) as excinfo:
        orchestrator.analyze_image_noise(_image_blob())
    assert excinfo.value.stage == "noise"
    assert excinfo.value.item == "photo.png"


def test_cancelled_video_request(tmp_path):
    token = CancelToken()
    token.cancel()
    orchestrator = _orchestrator(_FixedScorer(), [_row(16, 16, 32, 32, 0.9)])

    with pytest.raises(JobCancelled):
        orchestrator.analyze_video_default(_video_blob(tmp_path, frame_count=30), cancel=token)


def test_analyze_async_matches_blocking():
    orchestrator = _orchestrator(_FixedScorer(0.4), [_row(4, 4, 30, 30, 0.95)])
    blob = _image_blob()

    result = asyncio.run(orchestrator.analyze_async(blob, AnalysisMode.IMAGE_DEFAULT))

    assert result.to_dict() == orchestrator.analyze(blob, AnalysisMode.IMAGE_DEFAULT).to_dict()


def test_requests_do_not_share_noise_settings():
    orchestrator = _orchestrator(_FixedScorer(), [_row(4, 4, 30, 30, 0.95)])
    orchestrator.noise.iterations = 5

    orchestrator.analyze_image_noise(_image_blob())

    assert orchestrator.noise.iterations == 5
