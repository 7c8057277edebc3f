"""
Detection decoding.

Responsibility:
    Parse the raw detection tensor into Detection candidates: confidence
    thresholding, center-to-corner box conversion and mask-coefficient
    extraction.

Hard-coded:
    - Tensor layout: [1, 4 + 1 + K, A] (or [4 + 1 + K, A]), channel-major.
      Row 0..3 are cx, cy, w, h in model-input pixels, row 4 is the
      single-class confidence and rows 5..5+K are the mask coefficients.
      Every row holds one value per anchor, so all x-centers are
      contiguous, then all y-centers, and so on.

Non-goals:
    - No suppression (see nms) and no mask work (see masks).
    - No mapping into original-image space; boxes stay in model space.
"""

from typing import List

import numpy as np

from holdseg.config import ModelConfig
from holdseg.detection import Detection
from holdseg.errors import ModelError
from holdseg.geometry import xywh_to_xyxy

# Rows before the mask coefficients: cx, cy, w, h, confidence
_BOX_ROWS = 4
_HEADER_ROWS = _BOX_ROWS + 1


def _as_channel_major(raw: np.ndarray, num_mask_coeffs: int) -> np.ndarray:
    """Validate and squeeze the raw tensor to (5 + K, A)."""
    arr = np.asarray(raw)
    if arr.ndim == 3:
        if arr.shape[0] != 1:
            raise ModelError(
                f"Expected a single-image detection tensor, got batch of {arr.shape[0]}."
            )
        arr = arr[0]
    if arr.ndim != 2:
        raise ModelError(
            f"Detection tensor must be 2D or 3D, got shape {np.shape(raw)}."
        )

    expected_rows = _HEADER_ROWS + num_mask_coeffs
    if arr.shape[0] != expected_rows:
        raise ModelError(
            f"Detection tensor has {arr.shape[0]} rows per anchor, expected "
            f"{expected_rows} (4 box + 1 confidence + {num_mask_coeffs} coefficients)."
        )
    return arr


def decode_detections(
    raw: np.ndarray,
    config: ModelConfig,
    confidence_threshold: float,
) -> List[Detection]:
    """Extract candidate detections from the raw detection tensor.

    Args:
        raw: Detection tensor, [1, 5 + K, A] or [5 + K, A].
        config: ModelConfig providing K (num_mask_coeffs).
        confidence_threshold: Anchors scoring below this are dropped.

    Returns:
        Detections in ascending anchor order, boxes in model-input space.

    Raises:
        ModelError: If the tensor shape does not match the configured layout.
    """
    arr = _as_channel_major(raw, config.num_mask_coeffs)

    confidences = arr[_BOX_ROWS]
    anchors = np.flatnonzero(confidences >= confidence_threshold)
    if anchors.size == 0:
        return []

    boxes = xywh_to_xyxy(arr[:_BOX_ROWS, anchors].T)
    coeffs = np.ascontiguousarray(arr[_HEADER_ROWS:, anchors].T, dtype=np.float32)

    return [
        Detection(
            box=tuple(float(v) for v in boxes[i]),
            confidence=float(confidences[anchor]),
            anchor_index=int(anchor),
            mask_coefficients=coeffs[i],
        )
        for i, anchor in enumerate(anchors)
    ]
