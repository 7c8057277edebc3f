"""
Serialization of job outcomes.

Responsibility:
    Export per-image results to a JSON file for downstream consumption
    or offline analysis.

Non-goals:
    - No rendering, display, or inference logic.
    - No streaming output; writes the complete file at once.
"""

import json
import logging
from pathlib import Path
from typing import Dict

from holdseg.jobs import JobView

logger = logging.getLogger(__name__)


def save_json(results: Dict[str, JobView], output_path: str) -> None:
    """Export job outcomes, keyed by source image, to a JSON file.

    Output schema:
        {
            "images": [
                {
                    "source": "wall.jpg",
                    "status": "done",
                    "predictions": [[x0, y0, x1, y1, ...], ...],
                    "imageSize": {"width": ..., "height": ...}
                },
                {
                    "source": "broken.jpg",
                    "status": "error",
                    "error": "...",
                    "errorKind": "DecodeError"
                }
            ],
            "total_images": N,
            "total_polygons": M
        }

    Args:
        results: Mapping of source name → final JobView.
        output_path: Path to the output JSON file.

    Raises:
        OSError: If the output path is not writable.
    """
    _ensure_parent_dir(output_path)

    images = []
    total_polygons = 0

    for source in sorted(results.keys()):
        view = results[source]
        if view.result is not None:
            total_polygons += len(view.result)
        images.append({"source": source, **view.to_dict()})

    payload = {
        "images": images,
        "total_images": len(images),
        "total_polygons": total_polygons,
    }

    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)

    logger.info(
        "JSON output saved: %s (%d images, %d polygons)",
        output_path, len(images), total_polygons,
    )


def _ensure_parent_dir(path: str) -> None:
    """Create parent directories if they don't exist."""
    parent = Path(path).parent
    parent.mkdir(parents=True, exist_ok=True)
