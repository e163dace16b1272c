"""Error kinds raised by the media-to-feature pipeline."""

from __future__ import annotations

from typing import Optional


class FaceProbeError(Exception):
    """Base error carrying the pipeline stage and item that failed."""

    def __init__(self, message: str, *, stage: Optional[str] = None, item: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.item = item

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        if self.item:
            parts.append(f"{self.item}:")
        parts.append(self.message)
        return " ".join(parts)

    def to_dict(self) -> dict:
        return {
            "error_type": type(self).__name__,
            "stage": self.stage,
            "item": self.item,
            "message": self.message,
        }


class MediaOpenError(FaceProbeError):
    """Video or image bytes cannot be opened or decoded."""


class DetectorInitError(FaceProbeError):
    """Face detection model is missing or cannot be loaded."""


class InvalidImageError(FaceProbeError):
    """Crop bytes are empty or do not decode to an image."""


class EmptyResultError(FaceProbeError):
    """No face regions were produced, so there is nothing to aggregate."""


class StorageError(FaceProbeError):
    """Filesystem read/write failure (media read, temp files, batch flush)."""


class ModelUnavailableError(FaceProbeError):
    """The scorer cannot load the requested model."""


class JobCancelled(FaceProbeError):
    """The job was aborted through its cancel token."""


def as_pipeline_error(exc: BaseException, stage: str, item: Optional[str] = None) -> FaceProbeError:
    """Return ``exc`` unchanged when typed, else a FaceProbeError chained to it."""
    if isinstance(exc, FaceProbeError):
        return exc
    wrapped = FaceProbeError(f"{type(exc).__name__}: {exc}", stage=stage, item=item)
    wrapped.__cause__ = exc
    return wrapped
