"""Median-filter noise residual extraction for face crops."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Sequence

import cv2
import numpy as np

from faceprobe.config import ExtractionConfig, clamp_gain, clamp_iterations
from faceprobe.errors import InvalidImageError
from faceprobe.imaging import decode_image, encode_png

LOGGER = logging.getLogger("faceprobe.noise")

MEDIAN_KERNEL = 3
GAIN_EPSILON = 0.001


@dataclass(frozen=True)
class NoiseSettings:
    iterations: int = 1
    gain: float = 1.0
    equalize_histogram: bool = True


def median_smooth(image: np.ndarray, iterations: int) -> np.ndarray:
    """Apply a 3x3 median filter ``iterations`` times, each pass on the previous output."""
    smoothed = image.copy()
    for _ in range(iterations):
        smoothed = cv2.medianBlur(smoothed, MEDIAN_KERNEL)
    return smoothed


def amplify(noise: np.ndarray, gain: float) -> np.ndarray:
    """Scale in float32 and convert back to uint8 with saturation."""
    scaled = noise.astype(np.float32) * np.float32(gain)
    return cv2.convertScaleAbs(scaled, alpha=1.0, beta=0.0)


def equalize_channels(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2 or image.shape[2] == 1:
        return cv2.equalizeHist(image if image.ndim == 2 else image[:, :, 0])
    channels = [cv2.equalizeHist(channel) for channel in cv2.split(image)]
    return cv2.merge(channels)


def residual(image: np.ndarray, settings: NoiseSettings) -> np.ndarray:
    """Median -> absolute difference -> gain -> per-channel equalization, in that order."""
    smoothed = median_smooth(image, settings.iterations)
    noise = cv2.absdiff(image, smoothed)
    if abs(settings.gain - 1.0) > GAIN_EPSILON:
        noise = amplify(noise, settings.gain)
    if settings.equalize_histogram:
        noise = equalize_channels(noise)
    return noise


class NoiseExtractor:
    """Computes the noise residual of encoded crops.

    Settings are mutable but saturate into their allowed ranges on write:
    iterations in [1, 10], gain in [0.1, 100]. Treat an instance as per-job
    state; use :meth:`copy` to hand each worker its own.
    """

    def __init__(self, iterations: int = 1, gain: float = 1.0, equalize_histogram: bool = True) -> None:
        self._iterations = clamp_iterations(iterations)
        self._gain = clamp_gain(gain)
        self.equalize_histogram = bool(equalize_histogram)

    @classmethod
    def from_config(cls, config: ExtractionConfig) -> "NoiseExtractor":
        return cls(config.noise_iterations, config.noise_gain, config.equalize_histogram)

    @property
    def iterations(self) -> int:
        return self._iterations

    @iterations.setter
    def iterations(self, value: int) -> None:
        self._iterations = clamp_iterations(value)

    @property
    def gain(self) -> float:
        return self._gain

    @gain.setter
    def gain(self, value: float) -> None:
        self._gain = clamp_gain(value)

    def settings(self) -> NoiseSettings:
        return NoiseSettings(self._iterations, self._gain, self.equalize_histogram)

    def copy(self) -> "NoiseExtractor":
        return NoiseExtractor(self._iterations, self._gain, self.equalize_histogram)

    def process(self, data: bytes) -> bytes:
        """Return the PNG-encoded residual of ``data``."""
        settings = self.settings()
        if not data:
            raise InvalidImageError("Image bytes cannot be empty", stage="noise")
        LOGGER.debug(
            "Starting noise analysis iterations=%d gain=%.2f equalize=%s",
            settings.iterations,
            settings.gain,
            settings.equalize_histogram,
        )
        started = time.perf_counter()
        image = decode_image(data, stage="noise")
        encoded = encode_png(residual(image, settings))
        LOGGER.debug("Noise analysis completed in %.1fms", (time.perf_counter() - started) * 1000.0)
        return encoded

    async def process_async(self, data: bytes) -> bytes:
        """Same as :meth:`process`, offloaded to a worker thread."""
        if not data:
            raise InvalidImageError("Image bytes cannot be empty", stage="noise")
        return await asyncio.to_thread(self.process, data)

    def process_many(self, items: Sequence[bytes]) -> List[bytes]:
        return [self.process(item) for item in items]

    async def process_many_async(self, items: Sequence[bytes]) -> List[bytes]:
        return list(await asyncio.gather(*(self.process_async(item) for item in items)))
