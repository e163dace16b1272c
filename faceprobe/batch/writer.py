"""Bounded-memory writer flushing normalized crops to a directory or zip archive."""

from __future__ import annotations

import logging
import threading
import uuid
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional

from faceprobe.errors import StorageError
from faceprobe.io_utils import ensure_dir

LOGGER = logging.getLogger("faceprobe.batch")

DEFAULT_FLUSH_THRESHOLD = 100


def resolve_destination(destination: Path) -> tuple[str, Path]:
    """Return ("zip", path) for ``.zip`` destinations, else ("dir", directory)."""
    destination = Path(destination)
    suffix = destination.suffix.lower()
    if suffix == ".zip":
        return "zip", destination
    if suffix:
        # Any other extension names a directory with the same stem.
        return "dir", destination.with_suffix("")
    return "dir", destination


class BatchWriter:
    """Accumulates encoded crops and writes them out in bounded groups.

    Crops are buffered until the buffer holds more than ``flush_threshold``
    items, then flushed. :meth:`close` flushes the remainder and must run at
    the end of every job (the writer is a context manager). All methods are
    safe to call from several worker threads sharing one destination.
    """

    def __init__(
        self,
        destination: Path,
        flush_threshold: int = DEFAULT_FLUSH_THRESHOLD,
        prefix: str = "face",
    ) -> None:
        if int(flush_threshold) <= 0:
            raise ValueError("flush_threshold must be greater than 0")
        self.mode, self.path = resolve_destination(Path(destination))
        self.flush_threshold = int(flush_threshold)
        self.prefix = prefix
        self._buffer: List[bytes] = []
        self._lock = threading.RLock()
        self.flush_count = 0
        self.items_written = 0
        self.written_names: List[str] = []
        self.closed = False

    def __enter__(self) -> "BatchWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        try:
            self.close()
        except StorageError as flush_exc:
            LOGGER.error("Final flush to %s failed after an earlier error: %s", self.path, flush_exc)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def add(self, crop: bytes) -> int:
        return self.extend([crop])

    def extend(self, crops: Iterable[bytes]) -> int:
        """Buffer crops, flushing once the threshold is exceeded. Returns items flushed."""
        with self._lock:
            if self.closed:
                raise StorageError("BatchWriter is closed", stage="flush", item=str(self.path))
            self._buffer.extend(crops)
            if len(self._buffer) > self.flush_threshold:
                return self.flush()
            return 0

    def flush(self) -> int:
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer
            self._buffer = []
            names = [self._unique_name() for _ in batch]
            try:
                if self.mode == "zip":
                    self._write_zip(batch, names)
                else:
                    self._write_dir(batch, names)
            except (OSError, zipfile.BadZipFile) as exc:
                raise StorageError(f"Failed to save face images: {exc}", stage="flush", item=str(self.path)) from exc
            self.flush_count += 1
            self.items_written += len(batch)
            self.written_names.extend(names)
            LOGGER.info(
                "Flushed %d crops to %s (flush #%d, total=%d)",
                len(batch),
                self.path,
                self.flush_count,
                self.items_written,
            )
            return len(batch)

    def close(self) -> int:
        """Final flush of whatever remains buffered."""
        with self._lock:
            if self.closed:
                return 0
            flushed = self.flush()
            self.closed = True
            return flushed

    def _unique_name(self) -> str:
        return f"{self.prefix}_{uuid.uuid4().hex}.jpg"

    def _write_dir(self, batch: List[bytes], names: List[str]) -> None:
        ensure_dir(self.path)
        for data, name in zip(batch, names):
            (self.path / name).write_bytes(data)

    def _write_zip(self, batch: List[bytes], names: List[str]) -> None:
        ensure_dir(self.path.parent)
        with zipfile.ZipFile(self.path, mode="a", compression=zipfile.ZIP_DEFLATED) as archive:
            for data, name in zip(batch, names):
                archive.writestr(name, data)


def read_back(destination: Path, names: Optional[Iterable[str]] = None) -> dict:
    """Load written crops keyed by name (directory or archive)."""
    mode, path = resolve_destination(Path(destination))
    if mode == "zip":
        with zipfile.ZipFile(path) as archive:
            wanted = list(names) if names is not None else archive.namelist()
            return {name: archive.read(name) for name in wanted}
    wanted = list(names) if names is not None else sorted(p.name for p in path.glob("*.jpg"))
    return {name: (path / name).read_bytes() for name in wanted}
