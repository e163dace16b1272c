"""Offline face extraction over single videos and directory trees."""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd
from tqdm import tqdm

from faceprobe.batch.writer import BatchWriter
from faceprobe.cancel import CancelToken, check_cancelled
from faceprobe.config import ExtractionConfig
from faceprobe.detectors.regions import BackendFactory, RegionDetector, backend_factory
from faceprobe.errors import DetectorInitError, FaceProbeError, InvalidImageError, as_pipeline_error
from faceprobe.imaging import normalize
from faceprobe.io_utils import ensure_dir, list_media
from faceprobe.noise.residual import NoiseExtractor
from faceprobe.sampling.frames import FrameSampler
from faceprobe.types import FaceRegion, ItemResult

LOGGER = logging.getLogger("faceprobe.extract")

REPORT_COLUMNS = ["path", "status", "frames", "crops", "error_type", "error"]


class FaceExtractor:
    """Samples one video, crops its faces and hands normalized crops to a writer."""

    def __init__(
        self,
        config: ExtractionConfig,
        detector_factory: BackendFactory,
        cancel: Optional[CancelToken] = None,
    ) -> None:
        self.config = config
        self.detector_factory = detector_factory
        self.cancel = cancel

    def _prepare(self, region: FaceRegion, noise: Optional[NoiseExtractor]) -> bytes:
        if noise is not None:
            region = region.with_data(noise.process(region.data))
        return normalize(region.data, self.config.resolution, quality=self.config.jpeg_quality)

    def run(self, video_path: Path, writer: BatchWriter, result: Optional[ItemResult] = None) -> ItemResult:
        """Extract ``video_path`` into ``writer``; counts accumulate on ``result`` as work completes."""
        video_path = Path(video_path)
        result = result or ItemResult(path=video_path)
        detector = RegionDetector.for_video(self.detector_factory, jpeg_quality=self.config.jpeg_quality)
        noise = NoiseExtractor.from_config(self.config) if self.config.noise else None
        sampler = FrameSampler(self.config.interval_ms, cancel=self.cancel)
        skipped = 0
        for frame in sampler.sample_path(video_path):
            result.frames_sampled += 1
            crops: List[bytes] = []
            for region in detector.detect_frame(frame):
                try:
                    crops.append(self._prepare(region, noise))
                except InvalidImageError as exc:
                    skipped += 1
                    LOGGER.warning("Skipping region %s in frame %d of %s: %s", region.box, frame.index, video_path, exc)
            if crops:
                writer.extend(crops)
                result.crops_written += len(crops)
        if skipped:
            LOGGER.warning("%s: %d regions skipped", video_path, skipped)
        return result


class DirectoryWalker:
    """Runs :class:`FaceExtractor` over every matching video below a root.

    Files are processed on a bounded thread pool. Each file yields its own
    :class:`ItemResult` (success or captured error) in enumeration order; a
    failing file never stops the others. Only a detector that cannot be
    initialized aborts the whole run.
    """

    def __init__(
        self,
        config: Optional[ExtractionConfig] = None,
        detector_factory: Optional[BackendFactory] = None,
        extensions: Optional[Sequence[str]] = None,
        workers: Optional[int] = None,
        progress: bool = True,
    ) -> None:
        self.config = config or ExtractionConfig()
        if extensions is not None:
            self.config = self.config.with_overrides(extensions=tuple(extensions))
        self.detector_factory = detector_factory or backend_factory(self.config)
        self.workers = int(workers) if workers else self.config.worker_count
        self.progress = progress

    def iter_media(self, root: Path) -> List[Path]:
        files = list_media(Path(root), self.config.extensions)
        LOGGER.info("Found %d media files under %s", len(files), root)
        return files

    def run(self, root: Path, destination: Path, cancel: Optional[CancelToken] = None) -> List[ItemResult]:
        files = self.iter_media(root)
        if not files:
            LOGGER.warning("No files matching %s under %s", ", ".join(self.config.extensions), root)
        return self.run_files(files, destination, cancel=cancel)

    def run_files(
        self,
        files: Iterable[Path],
        destination: Path,
        cancel: Optional[CancelToken] = None,
    ) -> List[ItemResult]:
        files = [Path(p) for p in files]
        extractor = FaceExtractor(self.config, self.detector_factory, cancel=cancel)
        results = [ItemResult(path=path) for path in files]
        started = time.perf_counter()
        with BatchWriter(destination, flush_threshold=self.config.flush_threshold) as writer:
            workers = max(1, min(self.workers, len(files) or 1))
            pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="faceprobe-file")
            futures: Dict[Future, int] = {}
            try:
                futures = {
                    pool.submit(self._run_one, extractor, writer, results[idx], cancel): idx
                    for idx in range(len(files))
                }
                progress = tqdm(
                    as_completed(futures), total=len(futures), desc="Extracting", unit="file", disable=not self.progress
                )
                for future in progress:
                    future.result()
            except DetectorInitError:
                for future in futures:
                    future.cancel()
                raise
            finally:
                pool.shutdown(wait=True, cancel_futures=True)

        failed = sum(1 for result in results if not result.ok)
        LOGGER.info(
            "Extraction finished: %d files, %d failed, %d crops in %d flushes to %s (%.1fs)",
            len(results),
            failed,
            writer.items_written,
            writer.flush_count,
            writer.path,
            time.perf_counter() - started,
        )
        return results

    @staticmethod
    def _run_one(
        extractor: FaceExtractor,
        writer: BatchWriter,
        result: ItemResult,
        cancel: Optional[CancelToken],
    ) -> ItemResult:
        try:
            check_cancelled(cancel, stage="walk", item=str(result.path))
            extractor.run(result.path, writer, result)
        except DetectorInitError:
            raise
        except FaceProbeError as exc:
            result.error = exc
            LOGGER.error("Extraction failed for %s: %s", result.path, exc)
            return result
        except Exception as exc:
            result.error = as_pipeline_error(exc, stage="extract", item=str(result.path))
            LOGGER.exception("Unexpected error extracting %s", result.path)
            return result
        LOGGER.info(
            "Extracted %s frames=%d crops=%d", result.path, result.frames_sampled, result.crops_written
        )
        return result


def write_report(results: Iterable[ItemResult], path: Path) -> pd.DataFrame:
    """Write per-file results as CSV and return the frame."""
    path = Path(path)
    df = pd.DataFrame([result.to_dict() for result in results], columns=REPORT_COLUMNS)
    ensure_dir(path.parent)
    df.to_csv(path, index=False)
    LOGGER.info("Wrote extraction report %s (%d rows)", path, len(df))
    return df
