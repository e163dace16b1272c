"""Scorer interface and an ONNX Runtime implementation."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Sequence

import cv2
import numpy as np

from faceprobe.errors import InvalidImageError, ModelUnavailableError
from faceprobe.imaging import decode_image
from faceprobe.providers import resolve_providers

LOGGER = logging.getLogger("faceprobe.scoring")

DEFAULT_MODEL_ID = "default"
NOISE_MODEL_ID = "noise"


class Scorer(Protocol):
    """Returns a probability in [0, 1] for one normalized crop."""

    def predict(self, image: bytes, model_id: str) -> float:
        ...


def _to_probability(raw: np.ndarray, positive_index: int) -> float:
    values = np.asarray(raw, dtype=np.float64).reshape(-1)
    if values.size == 0:
        raise ValueError("model returned an empty output")
    if values.size == 1:
        value = float(values[0])
        if not 0.0 <= value <= 1.0:
            value = float(1.0 / (1.0 + np.exp(-value)))
        return value
    if np.any(values < 0.0) or np.any(values > 1.0) or not np.isclose(values.sum(), 1.0, atol=1e-3):
        shifted = np.exp(values - values.max())
        values = shifted / shifted.sum()
    return float(np.clip(values[positive_index], 0.0, 1.0))


class OnnxScorer:
    """Loads classifier sessions lazily from ``model_dir`` and scores crops.

    ``model_id`` is either a path to an ``.onnx`` file or a name resolved to
    ``<model_dir>/<model_id>.onnx``. ``positive_index`` selects the class whose
    probability is reported when the model emits several.
    """

    def __init__(
        self,
        model_dir: Path = Path("models"),
        providers: Optional[Sequence[str]] = None,
        positive_index: int = 0,
    ) -> None:
        self.model_dir = Path(model_dir)
        self.providers = resolve_providers(providers)
        self.positive_index = int(positive_index)
        self._sessions: Dict[str, object] = {}
        self._lock = threading.Lock()

    def resolve(self, model_id: str) -> Path:
        candidate = Path(model_id)
        if candidate.suffix.lower() == ".onnx":
            return candidate if candidate.is_absolute() else self.model_dir / candidate
        return self.model_dir / f"{model_id}.onnx"

    def _session(self, model_id: str):
        with self._lock:
            session = self._sessions.get(model_id)
            if session is not None:
                return session
            path = self.resolve(model_id)
            if not path.is_file():
                raise ModelUnavailableError(f"Model file not found: {path}", stage="score", item=model_id)
            try:
                import onnxruntime as ort  # type: ignore
            except ImportError as exc:  # pragma: no cover - import guard
                raise ModelUnavailableError(
                    "onnxruntime is required for OnnxScorer. Install it via `pip install onnxruntime`.",
                    stage="score",
                    item=model_id,
                ) from exc
            options = ort.SessionOptions()
            options.intra_op_num_threads = max(1, int(os.environ.get("ORT_INTRA_OP_NUM_THREADS", "2")))
            try:
                session = ort.InferenceSession(str(path), sess_options=options, providers=list(self.providers))
            except Exception as exc:  # onnxruntime raises its own exception hierarchy
                raise ModelUnavailableError(f"Unable to load model {path}: {exc}", stage="score", item=model_id) from exc
            LOGGER.info("Loaded scorer model %s providers=%s", path, session.get_providers())
            self._sessions[model_id] = session
            return session

    @staticmethod
    def _prepare(image: np.ndarray, shape: Sequence) -> np.ndarray:
        """Convert a BGR image into the model's input tensor (NCHW or NHWC, float32 in [0, 1])."""
        channels_first = len(shape) == 4 and shape[1] in (1, 3)
        height_dim, width_dim = (shape[2], shape[3]) if channels_first else (shape[1], shape[2])
        if isinstance(height_dim, int) and isinstance(width_dim, int):
            if image.shape[:2] != (height_dim, width_dim):
                image = cv2.resize(image, (width_dim, height_dim), interpolation=cv2.INTER_LINEAR)
        rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        if channels_first:
            rgb = np.transpose(rgb, (2, 0, 1))
        return rgb[np.newaxis, ...]

    def predict(self, image: bytes, model_id: str = DEFAULT_MODEL_ID) -> float:
        session = self._session(model_id)
        try:
            decoded = decode_image(image, stage="score")
        except InvalidImageError as exc:
            exc.item = model_id
            raise
        model_input = session.get_inputs()[0]
        tensor = self._prepare(decoded, model_input.shape)
        outputs = session.run(None, {model_input.name: tensor})
        return _to_probability(outputs[0], self.positive_index)
