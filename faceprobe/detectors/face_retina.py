"""RetinaFace detection backend (InsightFace) emitting YuNet-style rows."""

from __future__ import annotations

import logging
import math
import os
from typing import Optional, Sequence, Tuple

import numpy as np

from faceprobe.detectors.regions import ROW_WIDTH, SCORE_COLUMN
from faceprobe.errors import DetectorInitError
from faceprobe.providers import resolve_providers

LOGGER = logging.getLogger("faceprobe.detectors.retina")

# RetinaFace anchor grids assume det_size divisible by the largest stride.
DET_SIZE_MULTIPLE = 32


def aligned_det_size(input_size: Tuple[int, int], multiple: int = DET_SIZE_MULTIPLE) -> Tuple[int, int]:
    """Round each dimension up to a multiple of ``multiple``."""
    width, height = (max(multiple, math.ceil(int(v) / multiple) * multiple) for v in input_size)
    return width, height


class RetinaFaceBackend:
    """Wrapper around the InsightFace RetinaFace detector prepared for one input size."""

    def __init__(
        self,
        input_size: Tuple[int, int],
        score_threshold: float = 0.5,
        providers: Optional[Sequence[str]] = None,
    ) -> None:
        os.environ.setdefault("OMP_NUM_THREADS", "2")
        os.environ.setdefault("MKL_NUM_THREADS", "2")
        os.environ.setdefault("ORT_INTRA_OP_NUM_THREADS", "2")
        try:
            from insightface.app import FaceAnalysis
        except ImportError as exc:  # pragma: no cover - import guard
            raise DetectorInitError(
                "insightface is required for the retina detector. Install it via `pip install insightface`.",
                stage="detector_init",
            ) from exc

        self.input_size = tuple(int(v) for v in input_size)
        self.det_size = aligned_det_size(self.input_size)
        self.providers = resolve_providers(providers)
        try:
            self.app = FaceAnalysis(name="buffalo_l", allowed_modules=["detection"], providers=list(self.providers))
            self.app.prepare(ctx_id=0, det_thresh=float(score_threshold), det_size=self.det_size)
        except Exception as exc:  # insightface raises assorted errors on missing weights
            raise DetectorInitError(f"Unable to load RetinaFace: {exc}", stage="detector_init") from exc
        LOGGER.debug(
            "Created RetinaFace detector input_size=%s det_size=%s det_thresh=%.2f providers=%s",
            self.input_size,
            self.det_size,
            score_threshold,
            self.providers,
        )

    def detect(self, image: np.ndarray) -> np.ndarray:
        """Return one row per face: x, y, w, h, ten landmark coordinates, score."""
        faces = self.app.get(image)
        rows = np.zeros((len(faces), ROW_WIDTH), dtype=np.float32)
        for idx, face in enumerate(faces):
            x1, y1, x2, y2 = (float(v) for v in face.bbox)
            rows[idx, 0:4] = (x1, y1, x2 - x1, y2 - y1)
            if face.kps is not None:
                rows[idx, 4:SCORE_COLUMN] = np.asarray(face.kps, dtype=np.float32).reshape(-1)[:10]
            rows[idx, SCORE_COLUMN] = float(face.det_score)
        return rows
