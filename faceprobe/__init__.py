"""
Core package init for faceprobe.

Face region sampling, noise residual extraction and authenticity scoring for
still images and video.
"""

__all__ = [
    "analysis",
    "batch",
    "detectors",
    "extract",
    "noise",
    "sampling",
    "scoring",
    "cancel",
    "config",
    "errors",
    "imaging",
    "io_utils",
    "types",
]
