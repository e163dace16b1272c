"""ONNX Runtime execution provider selection."""

from __future__ import annotations

import platform
from typing import Optional, Sequence, Tuple


def default_providers() -> Tuple[str, ...]:
    """Choose default ONNX providers based on platform."""
    system = platform.system()
    machine = platform.machine().lower()
    if system == "Darwin" and machine in {"arm64", "aarch64"}:
        return ("CoreMLExecutionProvider", "CPUExecutionProvider")
    return ("CPUExecutionProvider",)


def resolve_providers(providers: Optional[Sequence[str]]) -> Tuple[str, ...]:
    if not providers:
        return default_providers()
    return tuple(str(provider).strip() for provider in providers if provider)
