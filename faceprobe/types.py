"""Common dataclasses and type aliases used across the faceprobe package."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import numpy as np

from faceprobe.io_utils import read_bytes

# Bounding box order: x, y, width, height (integer pixel coordinates)
Box = Tuple[int, int, int, int]

VIDEO_EXTENSIONS: Tuple[str, ...] = (
    ".mp4",
    ".avi",
    ".mkv",
    ".mov",
    ".wmv",
    ".flv",
    ".webm",
    ".m4v",
    ".mpg",
    ".mpeg",
    ".3gp",
    ".ts",
)


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class MediaBlob:
    """Raw media bytes plus their declared kind."""

    data: bytes
    kind: MediaKind
    name: Optional[str] = None

    @classmethod
    def from_path(cls, path: Path, kind: Optional[MediaKind] = None) -> "MediaBlob":
        """Read ``path`` and infer the kind from its extension when not given."""
        path = Path(path)
        if kind is None:
            kind = MediaKind.VIDEO if path.suffix.lower() in VIDEO_EXTENSIONS else MediaKind.IMAGE
        return cls(data=read_bytes(path), kind=kind, name=path.name)

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class Frame:
    """Decoded raster extracted from a video at a given index."""

    index: int
    timestamp_ms: float
    image: np.ndarray

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def channels(self) -> int:
        return 1 if self.image.ndim == 2 else int(self.image.shape[2])


@dataclass(frozen=True)
class FaceRegion:
    """Accepted face box plus its encoded crop."""

    box: Box
    confidence: float
    data: bytes
    frame_idx: int = 0
    residual: bool = False

    @property
    def width(self) -> int:
        return self.box[2]

    @property
    def height(self) -> int:
        return self.box[3]

    def with_data(self, data: bytes, *, residual: bool = True) -> "FaceRegion":
        """Same geometry, transformed pixel content."""
        return replace(self, data=data, residual=residual)


@dataclass
class AnalysisResult:
    """Aggregated score for one analyzed media blob."""

    mode: str
    score: float
    region_count: int
    scores: List[float] = field(default_factory=list)
    frames_sampled: int = 0

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "score": self.score,
            "region_count": self.region_count,
            "frames_sampled": self.frames_sampled,
            "scores": list(self.scores),
        }


@dataclass
class ItemResult:
    """Outcome of extracting one file during a directory run."""

    path: Path
    frames_sampled: int = 0
    crops_written: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "status": "ok" if self.ok else "error",
            "frames": self.frames_sampled,
            "crops": self.crops_written,
            "error_type": type(self.error).__name__ if self.error is not None else None,
            "error": str(self.error) if self.error is not None else None,
        }


def box_within(box: Box, width: int, height: int) -> bool:
    """True when the box lies entirely inside a width x height image."""
    x, y, w, h = box
    return x >= 0 and y >= 0 and x + w <= width and y + h <= height


def mean_score(scores: Iterable[float]) -> float:
    """Arithmetic mean; callers must reject empty inputs first."""
    values = list(scores)
    return float(sum(values) / len(values))
