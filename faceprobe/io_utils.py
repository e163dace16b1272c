"""I/O helpers shared across CLI entrypoints and pipeline modules."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import yaml

from faceprobe.errors import StorageError

LOGGER = logging.getLogger("faceprobe.io")


def ensure_dir(path: Path) -> Path:
    """Create directory (and parents) if it does not exist."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return a dictionary."""
    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    LOGGER.debug("Loaded YAML config %s -> keys=%s", path, list(data.keys()))
    return data


def dump_json(path: Path, data: Any, indent: int = 2) -> None:
    """Write JSON to disk (with dataclass support)."""
    def _default(obj: Any) -> Any:
        if is_dataclass(obj):
            return asdict(obj)
        if isinstance(obj, Path):
            return str(obj)
        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

    with path.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=indent, default=_default)
    LOGGER.debug("Wrote JSON file %s", path)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure application logging if not already configured."""
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def normalize_extensions(extensions: Iterable[str]) -> List[str]:
    """Lower-case extensions and make sure each carries a leading dot."""
    normalized = []
    for ext in extensions:
        ext = str(ext).strip().lower()
        if not ext:
            continue
        normalized.append(ext if ext.startswith(".") else f".{ext}")
    return normalized


def list_media(root: Path, extensions: Iterable[str]) -> List[Path]:
    """Recursively list files under ``root`` whose extension is allowed (case-insensitive)."""
    root = Path(root)
    if not root.is_dir():
        raise StorageError(f"Directory not found: {root}", stage="enumerate", item=str(root))
    allowed = set(normalize_extensions(extensions))
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in allowed)


def read_bytes(path: Path) -> bytes:
    """Read a media file, reporting failures as StorageError."""
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise StorageError(f"Failed to read file: {exc}", stage="read", item=str(path)) from exc


@contextmanager
def materialized(data: bytes, suffix: str = ".mp4") -> Iterator[Path]:
    """Write ``data`` to a private temp file and delete it on every exit path."""
    try:
        fd, name = tempfile.mkstemp(prefix="faceprobe_", suffix=suffix)
    except OSError as exc:
        raise StorageError(f"Unable to create temp file: {exc}", stage="materialize") from exc
    path = Path(name)
    try:
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Temp file write failed: {exc}", stage="materialize", item=str(path)) from exc
        yield path
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:  # pragma: no cover - platform specific
            LOGGER.warning("Unable to delete temp file %s: %s", path, exc)


def resolve_path(path: Optional[str], base_dir: Optional[Path] = None) -> Optional[Path]:
    if path is None:
        return None
    p = Path(path)
    if not p.is_absolute() and base_dir is not None:
        p = base_dir / p
    return p
