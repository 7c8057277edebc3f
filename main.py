"""
Hold Segmentation CLI Entrypoint.

Responsibility:
    Parse command-line arguments, configure the application, submit
    every given image as a job to the worker pool, wait for the results
    and write them out.

Usage:
    python main.py wall.jpg                          # One image
    python main.py photos/*.heic --workers 2         # Several images, 2 workers
    python main.py wall.jpg --save-overlay --output-path out/
    python main.py wall.jpg --config my_config.yaml

This module is the executable entry point. It should not be imported
by other modules.
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

# Configure logging before importing local modules
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("main")

import cv2

from holdseg.config import AppConfig, load_config, validate_config
from holdseg.errors import HoldsegError
from holdseg.jobs import JobManager, JobStatus
from holdseg.serializer import save_json
from holdseg.visualizer import decode_for_display, draw_polygons


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Hold Segmentation: batch CLI",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "images",
        nargs="+",
        help="Image files to segment (JPEG, PNG, HEIC, ...).",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path to YAML configuration file.",
    )
    parser.add_argument(
        "--model",
        type=str,
        help="Path to the .onnx model. Overrides config.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        help="Maximum number of worker processes. Overrides config.",
    )
    parser.add_argument(
        "--confidence",
        type=float,
        help="Detection confidence threshold (0.0 - 1.0). Overrides config.",
    )
    parser.add_argument(
        "--iou",
        type=float,
        help="NMS IoU threshold (0.0 - 1.0). Overrides config.",
    )
    parser.add_argument(
        "--backend",
        type=str,
        choices=["cpu", "cuda"],
        help="Compute backend preference. Overrides config.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=600.0,
        help="Seconds to wait for all jobs before giving up.",
    )
    parser.add_argument(
        "--output-path",
        type=str,
        default="output/",
        help="Directory for predictions.json and overlays.",
    )
    parser.add_argument(
        "--save-overlay",
        action="store_true",
        help="Also write each image with its outlines drawn.",
    )

    return parser.parse_args()


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Apply CLI overrides on top of the loaded configuration."""
    if args.model is not None:
        config = replace(config, model=replace(config.model, model_path=args.model))
    if args.backend is not None:
        config = replace(config, model=replace(config.model, backend=args.backend))
    if args.confidence is not None:
        config = replace(config, detection=replace(config.detection, confidence_threshold=args.confidence))
    if args.iou is not None:
        config = replace(config, detection=replace(config.detection, iou_threshold=args.iou))
    if args.workers is not None:
        config = replace(config, pool=replace(config.pool, max_workers=args.workers))
    return config


def main() -> int:
    """Submit all images, wait for them, and write the results."""
    args = parse_args()

    # 1. Load Configuration (CLI args > ENV > YAML > Defaults)
    try:
        config = apply_overrides(load_config(args.config), args)
        validate_config(config)
        logging.getLogger().setLevel(config.logging.level)
        logger.info("Configuration active for this run.")
    except Exception as e:
        logger.error("Configuration error: %s", e)
        return 1

    output_dir = Path(args.output_path)
    output_dir.mkdir(parents=True, exist_ok=True)

    # 2. Read inputs
    payloads = {}
    for path in args.images:
        try:
            payloads[path] = Path(path).read_bytes()
        except OSError as e:
            logger.error("Cannot read %s: %s", path, e)
            return 1

    # 3. Submit and wait
    start_time = time.perf_counter()
    results = {}
    with JobManager(config) as jobs:
        job_ids = {path: jobs.submit(data) for path, data in payloads.items()}
        logger.info("Submitted %d jobs.", len(job_ids))

        deadline = time.monotonic() + args.timeout
        try:
            for path, job_id in job_ids.items():
                remaining = max(0.0, deadline - time.monotonic())
                results[path] = jobs.wait(job_id, timeout=remaining)
        except KeyboardInterrupt:
            logger.info("Interrupted by user.")
            return 1

    # 4. Write outputs
    failed = 0
    for path, view in results.items():
        if view.status is not JobStatus.DONE:
            failed += 1
            logger.error("%s: %s (%s)", path, view.error_message or view.status.value, view.error_kind)
            continue

        logger.info("%s: %d polygons", path, len(view.result))
        if args.save_overlay:
            try:
                image = decode_for_display(payloads[path], config.preprocess)
            except HoldsegError as e:
                logger.warning("Cannot render overlay for %s: %s", path, e)
                continue
            overlay_file = output_dir / f"{Path(path).stem}_overlay.jpg"
            cv2.imwrite(str(overlay_file), draw_polygons(image, view.result.polygons))
            logger.debug("Saved overlay to %s", overlay_file)

    save_json({Path(p).name: v for p, v in results.items()}, str(output_dir / "predictions.json"))

    elapsed = time.perf_counter() - start_time
    logger.info(
        "Processing finished. Images: %d, failed: %d, elapsed: %.2fs.",
        len(results), failed, elapsed,
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
