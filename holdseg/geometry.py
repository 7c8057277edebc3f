"""
Geometry helpers shared by the decoder, the suppressor and the mask
post-processing.

Boxes are ``(x1, y1, x2, y2)`` corner form unless a function says
otherwise. Point sets are ``(N, 2)`` float arrays of ``(x, y)``.
"""

import math
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np


def xywh_to_xyxy(boxes: np.ndarray) -> np.ndarray:
    """Convert center-form ``(cx, cy, w, h)`` boxes to corner form.

    Works on any array whose last axis has length 4.
    """
    boxes = np.asarray(boxes, dtype=np.float32)
    out = np.empty_like(boxes)
    half_w = boxes[..., 2] / 2
    half_h = boxes[..., 3] / 2
    out[..., 0] = boxes[..., 0] - half_w
    out[..., 1] = boxes[..., 1] - half_h
    out[..., 2] = boxes[..., 0] + half_w
    out[..., 3] = boxes[..., 1] + half_h
    return out


def box_area(boxes: np.ndarray) -> np.ndarray:
    boxes = np.asarray(boxes, dtype=np.float64)
    return np.clip(boxes[..., 2] - boxes[..., 0], 0, None) * np.clip(
        boxes[..., 3] - boxes[..., 1], 0, None
    )


def iou(box_a: Sequence[float], box_b: Sequence[float]) -> float:
    """Intersection over union of two corner-form boxes.

    Returns 0.0 when the boxes do not overlap or both are degenerate.
    """
    ax1, ay1, ax2, ay2 = map(float, box_a[:4])
    bx1, by1, bx2, by2 = map(float, box_b[:4])

    inter_w = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    inter_h = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = inter_w * inter_h
    if inter <= 0.0:
        return 0.0

    area_a = max(0.0, ax2 - ax1) * max(0.0, ay2 - ay1)
    area_b = max(0.0, bx2 - bx1) * max(0.0, by2 - by1)
    union = area_a + area_b - inter
    if union <= 0.0:
        return 0.0
    return inter / union


def iou_many(box: Sequence[float], boxes: np.ndarray) -> np.ndarray:
    """Vectorized IoU of one box against an ``(N, 4)`` array of boxes."""
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    if boxes.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)
    x1, y1, x2, y2 = map(float, box[:4])

    inter_w = np.clip(np.minimum(x2, boxes[:, 2]) - np.maximum(x1, boxes[:, 0]), 0, None)
    inter_h = np.clip(np.minimum(y2, boxes[:, 3]) - np.maximum(y1, boxes[:, 1]), 0, None)
    inter = inter_w * inter_h

    union = box_area(np.array([x1, y1, x2, y2])) + box_area(boxes) - inter
    out = np.zeros_like(inter)
    np.divide(inter, union, out=out, where=(union > 0) & (inter > 0))
    return out


def allocate_grid(rows: int, cols: int, dtype=np.float32) -> np.ndarray:
    """Allocate a zeroed, C-contiguous ``rows x cols`` buffer."""
    if rows <= 0 or cols <= 0:
        raise ValueError(f"Grid dimensions must be positive, got {rows}x{cols}.")
    return np.zeros((rows, cols), dtype=dtype)


def polygon_area(points: np.ndarray) -> float:
    """Enclosed area of a closed ring (shoelace formula)."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] < 3:
        return 0.0
    x = pts[:, 0]
    y = pts[:, 1]
    return 0.5 * abs(float(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))))


def polygon_bounds(points: np.ndarray) -> Tuple[float, float, float, float]:
    """Axis-aligned ``(x1, y1, x2, y2)`` bounds of a point set."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if pts.shape[0] == 0:
        return 0.0, 0.0, 0.0, 0.0
    return (
        float(pts[:, 0].min()),
        float(pts[:, 1].min()),
        float(pts[:, 0].max()),
        float(pts[:, 1].max()),
    )


@dataclass(frozen=True)
class Letterbox:
    """How an original image was fitted into the square model input.

    Attributes:
        input_size: Side length S of the model input.
        original_width / original_height: Decoded, orientation-corrected size.
        resize_width / resize_height: Size after aspect-preserving resize.
        pad_left / pad_top: Padding added before the resized image.
    """

    input_size: int
    original_width: int
    original_height: int
    resize_width: int
    resize_height: int
    pad_left: int
    pad_top: int

    @classmethod
    def fit(cls, width: int, height: int, size: int) -> "Letterbox":
        """Compute the resize and symmetric padding for a ``width x height`` image.

        The larger side becomes ``size``; odd leftovers go to the
        right/bottom padding.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {width}x{height}.")

        aspect = width / height
        if aspect > 1:
            resize_width = size
            resize_height = int(math.floor(size / aspect + 0.5))
        else:
            resize_width = int(math.floor(size * aspect + 0.5))
            resize_height = size
        resize_width = min(size, max(1, resize_width))
        resize_height = min(size, max(1, resize_height))

        return cls(
            input_size=size,
            original_width=width,
            original_height=height,
            resize_width=resize_width,
            resize_height=resize_height,
            pad_left=(size - resize_width) // 2,
            pad_top=(size - resize_height) // 2,
        )

    @property
    def pad_right(self) -> int:
        return self.input_size - self.resize_width - self.pad_left

    @property
    def pad_bottom(self) -> int:
        return self.input_size - self.resize_height - self.pad_top

    @property
    def diagonal(self) -> float:
        """Diagonal of the original image in pixels."""
        return math.hypot(self.original_width, self.original_height)

    def model_to_image(self, points: np.ndarray) -> np.ndarray:
        """Map model-input-space points back into original-image pixels."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        out = np.empty_like(pts)
        out[:, 0] = (pts[:, 0] - self.pad_left) * (self.original_width / self.resize_width)
        out[:, 1] = (pts[:, 1] - self.pad_top) * (self.original_height / self.resize_height)
        return out

    def clip(self, points: np.ndarray) -> np.ndarray:
        """Clamp image-space points to ``[0, width] x [0, height]``."""
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2).copy()
        np.clip(pts[:, 0], 0.0, float(self.original_width), out=pts[:, 0])
        np.clip(pts[:, 1], 0.0, float(self.original_height), out=pts[:, 1])
        return pts
