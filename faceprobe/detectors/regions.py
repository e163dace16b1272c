"""Face region detection, bounds checking and cropping."""

from __future__ import annotations

import functools
import logging
import math
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from faceprobe.config import ExtractionConfig
from faceprobe.errors import DetectorInitError, InvalidImageError, MediaOpenError
from faceprobe.imaging import JPEG_QUALITY, crop_box, decode_image, encode_jpeg
from faceprobe.types import Box, FaceRegion, Frame, box_within

LOGGER = logging.getLogger("faceprobe.detectors.regions")

# Acceptance thresholds for frames sampled from video and for single images.
# The two call sites use separate values.
VIDEO_SCORE_THRESHOLD = 0.5
IMAGE_SCORE_THRESHOLD = 0.9

# Boxes whose width or height is at or below this are discarded.
MIN_FACE_PX = 10

# Raw detection rows: x, y, w, h, five landmark pairs, score
ROW_WIDTH = 15
SCORE_COLUMN = 14


class DetectorBackend(Protocol):
    def detect(self, image: np.ndarray) -> np.ndarray:
        ...


# Builds a backend for a (width, height) input size and score threshold.
BackendFactory = Callable[[Tuple[int, int], float], DetectorBackend]


def _yunet_factory(config: ExtractionConfig, input_size: Tuple[int, int], threshold: float) -> DetectorBackend:
    from faceprobe.detectors.face_yunet import YuNetBackend

    return YuNetBackend(
        str(config.yunet_model),
        input_size,
        score_threshold=threshold,
        nms_threshold=config.nms_threshold,
        top_k=config.top_k,
    )


def _retina_factory(
    providers: Optional[Sequence[str]], input_size: Tuple[int, int], threshold: float
) -> DetectorBackend:
    from faceprobe.detectors.face_retina import RetinaFaceBackend

    return RetinaFaceBackend(input_size, score_threshold=threshold, providers=providers)


def backend_factory(config: ExtractionConfig, providers: Optional[Sequence[str]] = None) -> BackendFactory:
    """Backend factory for the detector named in ``config``."""
    if config.detector == "retina":
        return functools.partial(_retina_factory, providers)
    return functools.partial(_yunet_factory, config)


def parse_detection(row: Sequence[float]) -> Tuple[Box, float]:
    """Convert one raw detection row to an integer box and its confidence."""
    if len(row) < ROW_WIDTH:
        raise ValueError(f"detection row has {len(row)} columns, expected {ROW_WIDTH}")
    values = [float(v) for v in row[:4]]
    confidence = float(row[SCORE_COLUMN])
    if not all(math.isfinite(v) for v in values) or not math.isfinite(confidence):
        raise ValueError("detection row contains non-finite values")
    x, y, w, h = (int(v) for v in values)
    return (x, y, w, h), confidence


class RegionDetector:
    """Finds faces in one image and returns validated, encoded crops.

    The backend is bound to the image dimensions. It is reused while frames
    keep the same size and rebuilt (never mutated) when the size changes, so a
    detector instance belongs to a single job and must not be shared across
    concurrent workers.
    """

    def __init__(
        self,
        factory: BackendFactory,
        score_threshold: float,
        min_size: int = MIN_FACE_PX,
        jpeg_quality: int = JPEG_QUALITY,
    ) -> None:
        self.factory = factory
        self.score_threshold = float(score_threshold)
        self.min_size = int(min_size)
        self.jpeg_quality = int(jpeg_quality)
        self._backend: Optional[DetectorBackend] = None
        self._backend_size: Optional[Tuple[int, int]] = None
        self.backend_builds = 0

    @classmethod
    def for_video(cls, factory: BackendFactory, **kwargs) -> "RegionDetector":
        return cls(factory, VIDEO_SCORE_THRESHOLD, **kwargs)

    @classmethod
    def for_image(cls, factory: BackendFactory, **kwargs) -> "RegionDetector":
        return cls(factory, IMAGE_SCORE_THRESHOLD, **kwargs)

    def _backend_for(self, width: int, height: int) -> DetectorBackend:
        size = (int(width), int(height))
        if self._backend is None or self._backend_size != size:
            try:
                backend = self.factory(size, self.score_threshold)
            except DetectorInitError:
                raise
            except Exception as exc:
                raise DetectorInitError(f"Detector initialization failed: {exc}", stage="detector_init") from exc
            self._backend = backend
            self._backend_size = size
            self.backend_builds += 1
            LOGGER.debug("Built detector backend for input size %sx%s", width, height)
        return self._backend

    def accepts(self, box: Box, confidence: float, width: int, height: int) -> bool:
        if confidence < self.score_threshold:
            return False
        _, _, w, h = box
        if w <= self.min_size or h <= self.min_size:
            return False
        return box_within(box, width, height)

    def detect(self, image: np.ndarray, frame_idx: int = 0) -> List[FaceRegion]:
        """Detect, validate and crop faces in emission order."""
        height, width = image.shape[:2]
        backend = self._backend_for(width, height)
        raw = backend.detect(image)
        regions: List[FaceRegion] = []
        rejected = 0
        for row_idx, row in enumerate(raw if raw is not None else []):
            try:
                box, confidence = parse_detection(row)
            except (TypeError, ValueError, IndexError) as exc:
                LOGGER.warning("Skipping malformed detection row %d in frame %d: %s", row_idx, frame_idx, exc)
                continue
            if not self.accepts(box, confidence, width, height):
                rejected += 1
                continue
            crop = crop_box(image, box)
            regions.append(
                FaceRegion(
                    box=box,
                    confidence=confidence,
                    data=encode_jpeg(crop, quality=self.jpeg_quality),
                    frame_idx=frame_idx,
                )
            )
        LOGGER.debug(
            "Frame %d: %d faces accepted, %d rejected (threshold=%.2f)",
            frame_idx,
            len(regions),
            rejected,
            self.score_threshold,
        )
        return regions

    def detect_frame(self, frame: Frame) -> List[FaceRegion]:
        return self.detect(frame.image, frame_idx=frame.index)

    def detect_bytes(self, data: bytes, item: Optional[str] = None) -> List[FaceRegion]:
        """Decode an encoded still image and detect faces in it."""
        try:
            image = decode_image(data, stage="detect")
        except InvalidImageError as exc:
            raise MediaOpenError("Unable to decode image", stage="detect", item=item) from exc
        return self.detect(image)
