"""
Mask reconstruction and polygon post-processing.

Responsibility:
    For one kept detection, rebuild its instance mask from the prototype
    masks, crop it to the detection box, extract the dominant outline,
    reject implausible shapes, then smooth and slightly expand the
    outline and map it back into original-image pixels.

Hard-coded:
    - Prototype layout: [1, K, M, M] or [K, M, M], M x M covering the
      whole S x S model input (letterbox padding included).
    - Masks are binarized at > 0 (the logit midpoint).

Non-goals:
    - No decoding or suppression.
    - No rendering.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from holdseg.config import MaskConfig, ModelConfig
from holdseg.detection import Detection, Polygon
from holdseg.errors import ModelError
from holdseg.geometry import Letterbox, allocate_grid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaskStats:
    """Shape measurements used by the acceptance filters.

    Attributes:
        contour: (N, 2) int array, outline in mask-grid cells.
        contour_area: Area enclosed by the outline, in cells.
        mask_area: Positive cells of the cropped mask before opening.
        rect_width / rect_height: Sides of the minimum-area rectangle.
    """

    contour: np.ndarray
    contour_area: float
    mask_area: int
    rect_width: float
    rect_height: float

    @property
    def aspect_ratio(self) -> float:
        if self.rect_width == 0 or self.rect_height == 0:
            return 0.0
        return max(self.rect_width / self.rect_height, self.rect_height / self.rect_width)


def reshape_prototypes(raw: np.ndarray, config: ModelConfig) -> np.ndarray:
    """Validate the prototype tensor and return it as a (K, M, M) float32 array.

    Raises:
        ModelError: If the shape does not match num_mask_coeffs x mask_size².
    """
    arr = np.asarray(raw)
    if arr.ndim == 4:
        if arr.shape[0] != 1:
            raise ModelError(
                f"Expected a single-image prototype tensor, got batch of {arr.shape[0]}."
            )
        arr = arr[0]

    expected = (config.num_mask_coeffs, config.mask_size, config.mask_size)
    if arr.shape != expected:
        raise ModelError(
            f"Prototype tensor shape {np.shape(raw)} does not match expected "
            f"(1, {expected[0]}, {expected[1]}, {expected[2]})."
        )

    protos = np.ascontiguousarray(arr, dtype=np.float32)
    protos.setflags(write=False)
    return protos


def reconstruct_mask(coefficients: np.ndarray, prototypes: np.ndarray) -> np.ndarray:
    """Linear combination of the prototype masks.

    mask[r, c] = sum_k coefficients[k] * prototypes[k, r, c]
    """
    coeffs = np.asarray(coefficients, dtype=np.float32)
    if coeffs.shape[0] != prototypes.shape[0]:
        raise ModelError(
            f"Got {coeffs.shape[0]} mask coefficients for {prototypes.shape[0]} prototypes."
        )
    return np.tensordot(coeffs, prototypes, axes=(0, 0)).astype(np.float32, copy=False)


def crop_mask(
    mask: np.ndarray,
    box: Tuple[float, float, float, float],
    input_size: int,
) -> np.ndarray:
    """Keep only the cells inside ``box`` and binarize them.

    Args:
        mask: (M, M) mask logits.
        box: ``(x1, y1, x2, y2)`` in model-input pixels.
        input_size: Side length S of the model input.

    Returns:
        (M, M) uint8 array of 0/1.
    """
    rows, cols = mask.shape
    scale_x = cols / input_size
    scale_y = rows / input_size
    x1, y1, x2, y2 = box

    col1 = min(cols, max(0, int(math.floor(x1 * scale_x))))
    row1 = min(rows, max(0, int(math.floor(y1 * scale_y))))
    col2 = min(cols, max(0, int(math.ceil(x2 * scale_x))))
    row2 = min(rows, max(0, int(math.ceil(y2 * scale_y))))

    binary = allocate_grid(rows, cols, dtype=np.uint8)
    if col2 > col1 and row2 > row1:
        binary[row1:row2, col1:col2] = mask[row1:row2, col1:col2] > 0
    return binary


def extract_contour(binary: np.ndarray, kernel_size: int = 3) -> Optional[Tuple[np.ndarray, float]]:
    """Open the mask and return its largest external outline.

    Returns:
        ``(contour, area)`` with contour as an (N, 2) int array, or None
        if the opened mask has no outline of positive area.
    """
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (kernel_size, kernel_size))
    opened = cv2.morphologyEx(binary * 255, cv2.MORPH_OPEN, kernel)

    contours, _ = cv2.findContours(opened, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    best = None
    best_area = 0.0
    for contour in contours:
        area = cv2.contourArea(contour)
        if area > best_area:
            best = contour
            best_area = area

    if best is None:
        return None
    return best.reshape(-1, 2), float(best_area)


def measure_mask(binary: np.ndarray, contour: np.ndarray, contour_area: float) -> MaskStats:
    """Collect the measurements the acceptance filters need."""
    (_, _), (rect_w, rect_h), _ = cv2.minAreaRect(contour.reshape(-1, 1, 2).astype(np.int32))
    return MaskStats(
        contour=contour,
        contour_area=contour_area,
        mask_area=int(np.count_nonzero(binary)),
        rect_width=float(rect_w),
        rect_height=float(rect_h),
    )


def passes_filters(stats: MaskStats, mask_size: int, config: MaskConfig) -> bool:
    """Area and elongation checks.

    Rejects degenerate rectangles, masks larger than ``max_area_ratio``
    of the grid, and masks above ``min_area_ratio`` whose min-area
    rectangle is more elongated than ``max_aspect_ratio``.
    """
    if stats.rect_width == 0 or stats.rect_height == 0:
        return False

    area_ratio = stats.mask_area / float(mask_size * mask_size)
    if area_ratio > config.max_area_ratio:
        return False

    if area_ratio > config.min_area_ratio and stats.aspect_ratio > config.max_aspect_ratio:
        return False

    return True


def gaussian_weights(radius: int, sigma: float) -> np.ndarray:
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    return np.exp(-0.5 * (offsets / sigma) ** 2)


def smooth_ring(points: np.ndarray, radius: int = 2, sigma: float = 0.75) -> np.ndarray:
    """Circular Gaussian moving average over a closed ring of points.

    The window wraps around, so the first and last points are smoothed
    with their neighbours across the seam. x and y are filtered
    independently.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] == 0 or radius == 0:
        return pts.copy()

    weights = gaussian_weights(radius, sigma)
    out = np.zeros_like(pts)
    for weight, offset in zip(weights, range(-radius, radius + 1)):
        # roll by -offset puts pts[i + offset] at position i
        out += weight * np.roll(pts, -offset, axis=0)
    return out / weights.sum()


def expand_ring(points: np.ndarray, reference: np.ndarray, distance: float) -> np.ndarray:
    """Push every point ``distance`` further from the centroid of ``reference``.

    Points sitting exactly on the centroid are left where they are.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] == 0 or distance == 0:
        return pts.copy()

    centroid = np.asarray(reference, dtype=np.float64).reshape(-1, 2).mean(axis=0)
    vectors = pts - centroid
    lengths = np.hypot(vectors[:, 0], vectors[:, 1])

    unit = np.zeros_like(vectors)
    moving = lengths > 0
    unit[moving] = vectors[moving] / lengths[moving, np.newaxis]
    return pts + unit * distance


def mask_to_polygon(
    detection: Detection,
    prototypes: np.ndarray,
    letterbox: Letterbox,
    config: MaskConfig,
) -> Optional[Polygon]:
    """Run the full mask chain for one detection.

    Returns:
        The accepted Polygon in original-image pixels, or None if the
        detection has no usable outline or fails a filter.
    """
    mask_size = prototypes.shape[-1]
    mask = reconstruct_mask(detection.mask_coefficients, prototypes)
    binary = crop_mask(mask, detection.box, letterbox.input_size)

    found = extract_contour(binary, config.morph_kernel_size)
    if found is None:
        logger.debug("Anchor %d: no contour after opening", detection.anchor_index)
        return None
    contour, contour_area = found

    stats = measure_mask(binary, contour, contour_area)
    if not passes_filters(stats, mask_size, config):
        logger.debug(
            "Anchor %d rejected (mask_area=%d, rect=%.1fx%.1f)",
            detection.anchor_index, stats.mask_area, stats.rect_width, stats.rect_height,
        )
        return None

    grid_to_model = letterbox.input_size / float(mask_size)
    raw_points = letterbox.model_to_image(contour.astype(np.float64) * grid_to_model)

    smoothed = smooth_ring(raw_points, config.smoothing_radius, config.smoothing_sigma)
    expanded = expand_ring(smoothed, raw_points, config.expansion_ratio * letterbox.diagonal)

    return Polygon.from_array(letterbox.clip(expanded), detection.confidence)
