"""Cooperative cancellation for long video and directory jobs."""

from __future__ import annotations

import threading
from typing import Optional

from faceprobe.errors import JobCancelled


class CancelToken:
    """Thread-safe flag checked between frames and between files."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Optional[str] = None, item: Optional[str] = None) -> None:
        if self._event.is_set():
            raise JobCancelled(self.reason or "cancelled", stage=stage, item=item)


def check_cancelled(token: Optional[CancelToken], stage: Optional[str] = None, item: Optional[str] = None) -> None:
    """No-op when ``token`` is None."""
    if token is not None:
        token.raise_if_cancelled(stage=stage, item=item)
