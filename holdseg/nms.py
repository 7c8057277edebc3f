"""
Greedy non-maximum suppression.

Candidates are visited in descending confidence order; ties keep their
original order, so the result is deterministic for a given input.
"""

from typing import List, Sequence

import numpy as np

from holdseg.detection import Detection
from holdseg.geometry import iou_many


def non_max_suppression(detections: Sequence[Detection], iou_threshold: float) -> List[int]:
    """Return indices (into ``detections``) of the boxes to keep.

    A candidate is dropped when its IoU with an already kept, higher
    ranked box is strictly greater than ``iou_threshold``. Kept indices
    are returned in ranking order.
    """
    if not detections:
        return []

    boxes = np.array([d.box for d in detections], dtype=np.float64)
    scores = np.array([d.confidence for d in detections], dtype=np.float64)

    # Stable sort on the negated score gives descending order with ties in input order.
    order = np.argsort(-scores, kind="stable")

    kept: List[int] = []
    while order.size > 0:
        current = int(order[0])
        kept.append(current)
        rest = order[1:]
        if rest.size == 0:
            break
        overlaps = iou_many(boxes[current], boxes[rest])
        order = rest[overlaps <= iou_threshold]

    return kept
