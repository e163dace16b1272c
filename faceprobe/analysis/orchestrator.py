"""Per-request analysis pipeline across the four video/image x default/noise modes."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from faceprobe.cancel import CancelToken, check_cancelled
from faceprobe.config import ExtractionConfig
from faceprobe.detectors.regions import BackendFactory, RegionDetector, backend_factory
from faceprobe.errors import EmptyResultError, FaceProbeError, MediaOpenError, as_pipeline_error
from faceprobe.imaging import normalize
from faceprobe.noise.residual import NoiseExtractor
from faceprobe.sampling.frames import FrameSampler
from faceprobe.scoring.scorer import DEFAULT_MODEL_ID, NOISE_MODEL_ID, Scorer
from faceprobe.types import AnalysisResult, FaceRegion, MediaBlob, MediaKind, mean_score

LOGGER = logging.getLogger("faceprobe.analysis")

ANALYSIS_INTERVAL_MS = 1000
ANALYSIS_RESOLUTION = 200


class AnalysisMode(str, Enum):
    VIDEO_DEFAULT = "video-default"
    VIDEO_NOISE = "video-noise"
    IMAGE_DEFAULT = "image-default"
    IMAGE_NOISE = "image-noise"

    @property
    def kind(self) -> MediaKind:
        return MediaKind.VIDEO if self.value.startswith("video") else MediaKind.IMAGE

    @property
    def noise(self) -> bool:
        return self.value.endswith("noise")

    @classmethod
    def for_kind(cls, kind: MediaKind, noise: bool = False) -> "AnalysisMode":
        return cls(f"{MediaKind(kind).value}-{'noise' if noise else 'default'}")


class AnalysisOrchestrator:
    """Composes sampling, detection, residual extraction, normalization and scoring.

    Every call to :meth:`analyze` builds its own :class:`RegionDetector` and
    :class:`NoiseExtractor` copy, so one orchestrator can serve concurrent
    requests. Regions go through noise/normalize on a bounded pool while the
    caller's thread keeps decoding; scoring runs on a dedicated single thread.
    Any stage failure aborts the request and pending work is cancelled.
    """

    def __init__(
        self,
        scorer: Scorer,
        config: Optional[ExtractionConfig] = None,
        detector_factory: Optional[BackendFactory] = None,
        workers: Optional[int] = None,
        model_ids: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.scorer = scorer
        self.config = config or ExtractionConfig()
        self.detector_factory = detector_factory or backend_factory(self.config)
        self.workers = int(workers) if workers else self.config.worker_count
        self.model_ids: Dict[str, str] = {"default": DEFAULT_MODEL_ID, "noise": NOISE_MODEL_ID}
        self.model_ids.update(model_ids or {})
        # Template only; each request works on its own copy.
        self.noise = NoiseExtractor.from_config(self.config)

    def model_id_for(self, mode: AnalysisMode) -> str:
        return self.model_ids["noise" if mode.noise else "default"]

    def _iter_regions(
        self, blob: MediaBlob, mode: AnalysisMode, cancel: Optional[CancelToken]
    ) -> Iterator[Tuple[int, List[FaceRegion]]]:
        if mode.kind is MediaKind.VIDEO:
            detector = RegionDetector.for_video(self.detector_factory, jpeg_quality=self.config.jpeg_quality)
            sampler = FrameSampler(ANALYSIS_INTERVAL_MS, cancel=cancel)
            for frame in sampler.sample(blob):
                try:
                    regions = detector.detect_frame(frame)
                except Exception as exc:
                    raise as_pipeline_error(exc, stage="detect", item=blob.name)
                yield frame.index, regions
            return
        detector = RegionDetector.for_image(self.detector_factory, jpeg_quality=self.config.jpeg_quality)
        check_cancelled(cancel, stage="detect", item=blob.name)
        try:
            regions = detector.detect_bytes(blob.data, item=blob.name)
        except Exception as exc:
            raise as_pipeline_error(exc, stage="detect", item=blob.name)
        yield 0, regions

    def _prepare(self, region: FaceRegion, noise: Optional[NoiseExtractor], item: Optional[str]) -> bytes:
        if noise is not None:
            try:
                region = region.with_data(noise.process(region.data))
            except Exception as exc:
                raise as_pipeline_error(exc, stage="noise", item=item)
        try:
            return normalize(region.data, ANALYSIS_RESOLUTION, quality=self.config.jpeg_quality)
        except Exception as exc:
            raise as_pipeline_error(exc, stage="normalize", item=item)

    def _score(self, crop: "Future[bytes]", model_id: str, item: Optional[str]) -> float:
        data = crop.result()
        try:
            score = float(self.scorer.predict(data, model_id))
        except Exception as exc:
            raise as_pipeline_error(exc, stage="score", item=item)
        if not math.isfinite(score):
            raise FaceProbeError(f"Scorer returned a non-finite value ({score})", stage="score", item=item)
        return score

    def analyze(
        self,
        blob: MediaBlob,
        mode: AnalysisMode,
        cancel: Optional[CancelToken] = None,
    ) -> AnalysisResult:
        mode = AnalysisMode(mode)
        if blob.kind is not mode.kind:
            raise MediaOpenError(
                f"Mode {mode.value} expects {mode.kind.value} input, got {MediaKind(blob.kind).value}",
                stage="analyze",
                item=blob.name,
            )
        noise = self.noise.copy() if mode.noise else None
        model_id = self.model_id_for(mode)
        started = time.perf_counter()
        LOGGER.info("Analysis started mode=%s item=%s bytes=%d", mode.value, blob.name, len(blob))

        region_pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="faceprobe-region")
        scorer_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="faceprobe-scorer")
        pending: List[Future] = []
        scores_futures: List["Future[float]"] = []
        frames = 0
        try:
            for frame_idx, regions in self._iter_regions(blob, mode, cancel):
                frames += 1
                LOGGER.debug("Frame %d yielded %d regions", frame_idx, len(regions))
                for region in regions:
                    crop_future = region_pool.submit(self._prepare, region, noise, blob.name)
                    score_future = scorer_pool.submit(self._score, crop_future, model_id, blob.name)
                    pending.extend((crop_future, score_future))
                    scores_futures.append(score_future)
            scores = [future.result() for future in scores_futures]
        except BaseException:
            for future in pending:
                future.cancel()
            raise
        finally:
            region_pool.shutdown(wait=True, cancel_futures=True)
            scorer_pool.shutdown(wait=True, cancel_futures=True)

        if not scores:
            raise EmptyResultError("No face regions detected", stage="aggregate", item=blob.name)
        result = AnalysisResult(
            mode=mode.value,
            score=mean_score(scores),
            region_count=len(scores),
            scores=scores,
            frames_sampled=frames if mode.kind is MediaKind.VIDEO else 0,
        )
        LOGGER.info(
            "Analysis finished mode=%s item=%s regions=%d score=%.4f in %.1fms",
            mode.value,
            blob.name,
            result.region_count,
            result.score,
            (time.perf_counter() - started) * 1000.0,
        )
        return result

    async def analyze_async(
        self,
        blob: MediaBlob,
        mode: AnalysisMode,
        cancel: Optional[CancelToken] = None,
    ) -> AnalysisResult:
        return await asyncio.to_thread(self.analyze, blob, mode, cancel)

    def analyze_video_default(self, blob: MediaBlob, cancel: Optional[CancelToken] = None) -> AnalysisResult:
        return self.analyze(blob, AnalysisMode.VIDEO_DEFAULT, cancel)

    def analyze_video_noise(self, blob: MediaBlob, cancel: Optional[CancelToken] = None) -> AnalysisResult:
        return self.analyze(blob, AnalysisMode.VIDEO_NOISE, cancel)

    def analyze_image_default(self, blob: MediaBlob) -> AnalysisResult:
        return self.analyze(blob, AnalysisMode.IMAGE_DEFAULT)

    def analyze_image_noise(self, blob: MediaBlob) -> AnalysisResult:
        return self.analyze(blob, AnalysisMode.IMAGE_NOISE)
