"""YuNet face detection backend built on OpenCV's FaceDetectorYN."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Tuple

import cv2
import numpy as np

from faceprobe.detectors.regions import ROW_WIDTH
from faceprobe.errors import DetectorInitError

LOGGER = logging.getLogger("faceprobe.detectors.yunet")


class YuNetBackend:
    """One YuNet instance locked to a fixed input size (width, height)."""

    def __init__(
        self,
        model_path: str,
        input_size: Tuple[int, int],
        score_threshold: float = 0.5,
        nms_threshold: float = 0.5,
        top_k: int = 5000,
    ) -> None:
        model = Path(model_path)
        if not model.is_file():
            raise DetectorInitError(f"YuNet model not found: {model}", stage="detector_init")
        if not hasattr(cv2, "FaceDetectorYN"):
            raise DetectorInitError(
                "cv2.FaceDetectorYN is unavailable; install opencv-python>=4.5.4",
                stage="detector_init",
            )
        try:
            self.detector = cv2.FaceDetectorYN.create(
                str(model),
                "",
                tuple(int(v) for v in input_size),
                score_threshold=float(score_threshold),
                nms_threshold=float(nms_threshold),
                top_k=int(top_k),
            )
        except cv2.error as exc:
            raise DetectorInitError(f"Unable to load YuNet model {model}: {exc}", stage="detector_init") from exc
        self.input_size = tuple(int(v) for v in input_size)
        LOGGER.debug(
            "Created YuNet detector input_size=%s score_thresh=%.2f nms=%.2f",
            self.input_size,
            score_threshold,
            nms_threshold,
        )

    def detect(self, image: np.ndarray) -> np.ndarray:
        _, faces = self.detector.detect(image)
        if faces is None:
            return np.empty((0, ROW_WIDTH), dtype=np.float32)
        return np.asarray(faces, dtype=np.float32)
