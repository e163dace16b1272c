#!/usr/bin/env python3
"""CLI scoring a single image or video and printing the aggregated result as JSON."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from faceprobe.analysis.orchestrator import AnalysisMode, AnalysisOrchestrator
from faceprobe.config import load_extraction_config
from faceprobe.errors import FaceProbeError
from faceprobe.io_utils import dump_json, ensure_dir, read_bytes, setup_logging
from faceprobe.scoring.scorer import OnnxScorer
from faceprobe.types import MediaBlob, MediaKind, VIDEO_EXTENSIONS


LOGGER = logging.getLogger("scripts.analyze")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Score the authenticity of faces in an image or video")
    parser.add_argument("media", type=Path, help="Image or video file to analyze")
    parser.add_argument(
        "--mode",
        choices=["default", "noise"],
        default="default",
        help="Score plain crops or their noise residuals",
    )
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in MediaKind],
        default=None,
        help="Override media kind detection (inferred from extension)",
    )
    parser.add_argument("--model-dir", type=Path, default=Path("models"), help="Directory holding <model_id>.onnx")
    parser.add_argument("--default-model", type=str, default=None, help="Model id used by default mode")
    parser.add_argument("--noise-model", type=str, default=None, help="Model id used by noise mode")
    parser.add_argument(
        "--providers",
        nargs="+",
        default=None,
        help="ONNX Runtime execution providers (default: platform preference)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/extraction.yaml"),
        help="Path to extraction configuration YAML (detector and noise settings)",
    )
    parser.add_argument("--detector", choices=["yunet", "retina"], default=None, help="Face detector backend")
    parser.add_argument("--yunet-model", type=str, default=None, help="Path to the YuNet ONNX model")
    parser.add_argument("--workers", type=int, default=None, help="Region workers (default: CPU count)")
    parser.add_argument("--output", type=Path, default=None, help="Also write the JSON result to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = load_extraction_config(args.config).with_overrides(
            detector=args.detector,
            yunet_model=args.yunet_model,
            workers=args.workers,
        )
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    if args.kind is not None:
        kind = MediaKind(args.kind)
    else:
        kind = MediaKind.VIDEO if args.media.suffix.lower() in VIDEO_EXTENSIONS else MediaKind.IMAGE
    mode = AnalysisMode.for_kind(kind, noise=args.mode == "noise")

    model_ids = {}
    if args.default_model:
        model_ids["default"] = args.default_model
    if args.noise_model:
        model_ids["noise"] = args.noise_model

    scorer = OnnxScorer(args.model_dir, providers=args.providers)
    orchestrator = AnalysisOrchestrator(scorer, config=config, model_ids=model_ids)
    try:
        blob = MediaBlob(data=read_bytes(args.media), kind=kind, name=args.media.name)
        result = orchestrator.analyze(blob, mode)
    except FaceProbeError as exc:
        LOGGER.error("Analysis of %s failed: %s", args.media, exc)
        raise SystemExit(f"{type(exc).__name__}: {exc}") from exc

    payload = {"media": str(args.media), **result.to_dict()}
    if args.output is not None:
        ensure_dir(args.output.parent)
        dump_json(args.output, payload)
        LOGGER.info("Wrote analysis result to %s", args.output)
    print(json.dumps(payload, indent=2))


if __name__ == "__main__":
    main()
