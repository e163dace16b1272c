#!/usr/bin/env python3
"""CLI for extracting normalized face crops (optionally noise residuals) from videos."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from faceprobe.config import load_extraction_config
from faceprobe.errors import FaceProbeError
from faceprobe.extract.walker import DirectoryWalker, write_report
from faceprobe.io_utils import setup_logging


LOGGER = logging.getLogger("scripts.extract")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract face crops from a video or a directory of videos")
    parser.add_argument("input", type=Path, help="Video file or directory searched recursively")
    parser.add_argument(
        "output",
        type=Path,
        help="Destination directory, or a .zip path to write a single archive",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/extraction.yaml"),
        help="Path to extraction configuration YAML",
    )
    parser.add_argument("--interval-ms", type=int, default=None, help="Sampling interval in milliseconds")
    parser.add_argument("--resolution", type=int, default=None, help="Square output size in pixels")
    parser.add_argument(
        "--noise",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Write noise residuals instead of plain crops",
    )
    parser.add_argument("--noise-iterations", type=int, default=None, help="Median filter passes (1-10)")
    parser.add_argument("--noise-gain", type=float, default=None, help="Residual gain (0.1-100)")
    parser.add_argument(
        "--equalize",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Histogram-equalize residual channels",
    )
    parser.add_argument("--flush-threshold", type=int, default=None, help="Crops buffered before each write")
    parser.add_argument("--detector", choices=["yunet", "retina"], default=None, help="Face detector backend")
    parser.add_argument("--yunet-model", type=str, default=None, help="Path to the YuNet ONNX model")
    parser.add_argument(
        "--extensions",
        nargs="+",
        default=None,
        help="Video extensions to include when INPUT is a directory",
    )
    parser.add_argument("--workers", type=int, default=None, help="Files processed in parallel (default: CPU count)")
    parser.add_argument("--report", type=Path, default=None, help="Optional CSV report of per-file results")
    parser.add_argument("--no-progress", action="store_true", help="Disable the progress bar")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_extraction_config(args.config).with_overrides(
            interval_ms=args.interval_ms,
            resolution=args.resolution,
            noise=args.noise,
            noise_iterations=args.noise_iterations,
            noise_gain=args.noise_gain,
            equalize_histogram=args.equalize,
            flush_threshold=args.flush_threshold,
            detector=args.detector,
            yunet_model=args.yunet_model,
            workers=args.workers,
            extensions=tuple(args.extensions) if args.extensions else None,
        )
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    walker = DirectoryWalker(config, progress=not args.no_progress)
    try:
        if args.input.is_dir():
            results = walker.run(args.input, args.output)
        elif args.input.is_file():
            results = walker.run_files([args.input], args.output)
        else:
            raise SystemExit(f"Input not found: {args.input}")
    except FaceProbeError as exc:
        raise SystemExit(f"Extraction failed: {exc}") from exc

    if args.report is not None:
        write_report(results, args.report)

    failed = [result for result in results if not result.ok]
    total_crops = sum(result.crops_written for result in results)
    LOGGER.info("Wrote %d crops from %d files to %s", total_crops, len(results) - len(failed), args.output)
    if failed:
        for result in failed:
            LOGGER.error("Failed: %s (%s)", result.path, result.error)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
