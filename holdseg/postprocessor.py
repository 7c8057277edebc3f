"""
Postprocessing for the segmentation pipeline.

Responsibility:
    Turn the two raw model outputs into accepted polygons:
    decode → non-maximum suppression → mask reconstruction and
    polygon post-processing.

Non-goals:
    - No drawing, saving, or display logic.
    - No model loading or inference.
"""

import logging
from typing import List

from holdseg.config import AppConfig
from holdseg.decoder import decode_detections
from holdseg.detection import Polygon
from holdseg.geometry import Letterbox
from holdseg.masks import mask_to_polygon, reshape_prototypes
from holdseg.model_loader import ModelOutputs
from holdseg.nms import non_max_suppression

logger = logging.getLogger(__name__)


def postprocess(
    outputs: ModelOutputs,
    letterbox: Letterbox,
    config: AppConfig,
) -> List[Polygon]:
    """Parse raw model outputs into accepted polygons.

    Args:
        outputs: Detection and prototype tensors from one inference call.
        letterbox: Geometry of the preprocessed input.
        config: Application configuration (thresholds and mask filters).

    Returns:
        Polygons in original-image pixels, highest confidence first.
        Rejected detections are dropped without error.

    Raises:
        ModelError: If either tensor does not match the configured layout.
    """
    prototypes = reshape_prototypes(outputs.prototypes, config.model)
    candidates = decode_detections(
        outputs.detections,
        config.model,
        config.detection.confidence_threshold,
    )
    kept = non_max_suppression(candidates, config.detection.iou_threshold)

    polygons: List[Polygon] = []
    for index in kept:
        polygon = mask_to_polygon(candidates[index], prototypes, letterbox, config.mask)
        if polygon is not None:
            polygons.append(polygon)

    logger.info(
        "Postprocess: %d candidates, %d after NMS, %d polygons accepted",
        len(candidates), len(kept), len(polygons),
    )
    return polygons
