"""Extraction configuration shared by the analysis and batch pipelines."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from faceprobe.io_utils import load_yaml, normalize_extensions, resolve_path
from faceprobe.types import VIDEO_EXTENSIONS

LOGGER = logging.getLogger("faceprobe.config")

MIN_NOISE_ITERATIONS = 1
MAX_NOISE_ITERATIONS = 10
MIN_NOISE_GAIN = 0.1
MAX_NOISE_GAIN = 100.0

DEFAULT_YUNET_MODEL = "models/face_detection_yunet_2023mar.onnx"
YUNET_MODEL_ENV = "FACEPROBE_YUNET_MODEL"


def clamp_iterations(value: Any) -> int:
    return max(MIN_NOISE_ITERATIONS, min(MAX_NOISE_ITERATIONS, int(value)))


def clamp_gain(value: Any) -> float:
    return max(MIN_NOISE_GAIN, min(MAX_NOISE_GAIN, float(value)))


def default_yunet_model() -> str:
    return os.environ.get(YUNET_MODEL_ENV, DEFAULT_YUNET_MODEL)


@dataclass(frozen=True)
class ExtractionConfig:
    interval_ms: int = 1000
    resolution: int = 200
    noise_iterations: int = 1
    noise_gain: float = 1.0
    equalize_histogram: bool = True
    flush_threshold: int = 100
    noise: bool = False
    detector: str = "yunet"
    yunet_model: Optional[str] = None
    nms_threshold: float = 0.5
    top_k: int = 5000
    jpeg_quality: int = 95
    workers: Optional[int] = None
    extensions: Tuple[str, ...] = VIDEO_EXTENSIONS

    def __post_init__(self) -> None:
        # Out-of-range noise values saturate rather than fail.
        object.__setattr__(self, "noise_iterations", clamp_iterations(self.noise_iterations))
        object.__setattr__(self, "noise_gain", clamp_gain(self.noise_gain))
        object.__setattr__(self, "extensions", tuple(normalize_extensions(self.extensions)))
        if self.yunet_model is None:
            object.__setattr__(self, "yunet_model", default_yunet_model())
        for name in ("interval_ms", "resolution", "flush_threshold"):
            value = getattr(self, name)
            if int(value) <= 0:
                raise ValueError(f"{name} must be greater than 0 (got {value!r})")
        if self.detector not in {"yunet", "retina"}:
            raise ValueError(f"Unknown detector backend {self.detector!r}; expected 'yunet' or 'retina'")
        if not 1 <= int(self.jpeg_quality) <= 100:
            raise ValueError(f"jpeg_quality must be within [1, 100] (got {self.jpeg_quality!r})")
        if self.workers is not None and int(self.workers) < 1:
            raise ValueError(f"workers must be >= 1 (got {self.workers!r})")

    @property
    def worker_count(self) -> int:
        if self.workers is not None:
            return int(self.workers)
        return max(1, os.cpu_count() or 1)

    def with_overrides(self, **overrides: Any) -> "ExtractionConfig":
        """Return a copy with every non-None override applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **values) if values else self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], base_dir: Optional[Path] = None) -> "ExtractionConfig":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                LOGGER.warning("Ignoring unknown config key %r", key)
                continue
            values[key] = value
        if "extensions" in values and values["extensions"] is not None:
            values["extensions"] = tuple(values["extensions"])
        if values.get("yunet_model"):
            values["yunet_model"] = str(resolve_path(str(values["yunet_model"]), base_dir))
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path) -> "ExtractionConfig":
        data = load_yaml(path)
        config = cls.from_mapping(data, base_dir=path.parent)
        LOGGER.info(
            "Loaded extraction config %s interval_ms=%d resolution=%d noise=%s flush_threshold=%d",
            path,
            config.interval_ms,
            config.resolution,
            config.noise,
            config.flush_threshold,
        )
        return config


def load_extraction_config(path: Optional[Path]) -> ExtractionConfig:
    """Load ``path`` when it exists, otherwise fall back to the defaults."""
    if path is None:
        return ExtractionConfig()
    path = Path(path)
    if not path.is_file():
        LOGGER.warning("Config %s not found; using built-in defaults", path)
        return ExtractionConfig()
    return ExtractionConfig.from_yaml(path)
