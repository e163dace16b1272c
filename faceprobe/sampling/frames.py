"""Interval-based frame sampling over OpenCV video captures."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import cv2

from faceprobe.cancel import CancelToken, check_cancelled
from faceprobe.errors import MediaOpenError
from faceprobe.io_utils import materialized
from faceprobe.types import Frame, MediaBlob, MediaKind

LOGGER = logging.getLogger("faceprobe.sampling")

FALLBACK_FPS = 30.0


def frame_stride(fps: Optional[float], interval_ms: int) -> int:
    """Number of decoded frames between two emitted frames."""
    if fps is None or not math.isfinite(fps) or fps <= 0:
        fps = FALLBACK_FPS
    return max(1, int(round(fps * interval_ms / 1000.0)))


@dataclass
class VideoProbe:
    fps: float
    frame_count: int
    width: int
    height: int
    stride: int


def _capture_fps(cap: "cv2.VideoCapture") -> float:
    fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
    if not math.isfinite(fps) or fps <= 0:
        LOGGER.debug("Video reports no usable fps (%s); using fallback %.1f", fps, FALLBACK_FPS)
        return FALLBACK_FPS
    return fps


class FrameSampler:
    """Lazily yields every ``stride``-th frame of a video in source order."""

    def __init__(self, interval_ms: int = 1000, cancel: Optional[CancelToken] = None) -> None:
        if int(interval_ms) <= 0:
            raise ValueError("interval_ms must be greater than 0")
        self.interval_ms = int(interval_ms)
        self.cancel = cancel

    def sample(self, blob: MediaBlob) -> Iterator[Frame]:
        """Sample a video blob through a private temp file removed on every exit path."""
        if blob.kind is not MediaKind.VIDEO:
            raise MediaOpenError("FrameSampler requires a video blob", stage="sample", item=blob.name)
        if not blob.data:
            raise MediaOpenError("Video bytes cannot be empty", stage="sample", item=blob.name)
        suffix = Path(blob.name).suffix if blob.name and Path(blob.name).suffix else ".mp4"
        with materialized(blob.data, suffix=suffix) as path:
            yield from self._iter_capture(path, blob.name or path.name)

    def sample_path(self, video_path: Path) -> Iterator[Frame]:
        """Sample an on-disk video without copying it."""
        return self._iter_capture(Path(video_path), str(video_path))

    def probe(self, video_path: Path) -> VideoProbe:
        cap = self._open(Path(video_path), str(video_path))
        try:
            fps = _capture_fps(cap)
            return VideoProbe(
                fps=fps,
                frame_count=int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0),
                width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0),
                height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0),
                stride=frame_stride(fps, self.interval_ms),
            )
        finally:
            cap.release()

    @staticmethod
    def _open(path: Path, item: str) -> "cv2.VideoCapture":
        cap = cv2.VideoCapture(str(path))
        if not cap.isOpened():
            cap.release()
            raise MediaOpenError("Unable to open video stream", stage="sample", item=item)
        return cap

    def _iter_capture(self, path: Path, item: str) -> Iterator[Frame]:
        cap = self._open(path, item)
        try:
            fps = _capture_fps(cap)
            stride = frame_stride(fps, self.interval_ms)
            LOGGER.debug(
                "Sampling %s fps=%.2f interval_ms=%d stride=%d", item, fps, self.interval_ms, stride
            )
            frame_idx = -1
            emitted = 0
            while True:
                check_cancelled(self.cancel, stage="sample", item=item)
                ret, image = cap.read()
                if not ret or image is None:
                    break
                frame_idx += 1
                if frame_idx % stride != 0:
                    continue
                emitted += 1
                yield Frame(index=frame_idx, timestamp_ms=(frame_idx / fps) * 1000.0, image=image)
            if frame_idx < 0:
                raise MediaOpenError("Video stream contains no decodable frames", stage="sample", item=item)
            LOGGER.debug("Sampled %d/%d frames from %s", emitted, frame_idx + 1, item)
        finally:
            cap.release()
