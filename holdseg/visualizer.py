"""
Visualization of predicted hold outlines.

Responsibility:
    Draw polygons and optional confidence labels onto an image. This is
    a pure rendering module: it produces an annotated copy and performs
    no I/O.

Non-goals:
    - No file writing, window management, or display logic.
    - No inference logic.
"""

from typing import Sequence, Tuple

import cv2
import numpy as np

from holdseg.config import PreprocessConfig
from holdseg.detection import Polygon
from holdseg.preprocessor import decode_image

# Cosmetic rendering constants
_FONT = cv2.FONT_HERSHEY_SIMPLEX
_FONT_SCALE = 0.5
_FONT_THICKNESS = 1
_LABEL_PADDING = 4


def draw_polygons(
    image: np.ndarray,
    polygons: Sequence[Polygon],
    color: Tuple[int, int, int] = (0, 255, 0),
    thickness: int = 2,
    show_confidence: bool = True,
) -> np.ndarray:
    """Draw closed polygon outlines onto a BGR image.

    Args:
        image: Input BGR image (not modified; a copy is returned).
        polygons: Outlines in the image's pixel coordinates.
        color: BGR outline color.
        thickness: Line thickness in pixels.
        show_confidence: Whether to label each outline with its score.

    Returns:
        A new BGR numpy array with the outlines drawn.
    """
    annotated = image.copy()

    for polygon in polygons:
        if len(polygon) < 2:
            continue
        pts = np.round(polygon.to_array()).astype(np.int32).reshape(-1, 1, 2)
        cv2.polylines(annotated, [pts], isClosed=True, color=color,
                      thickness=thickness, lineType=cv2.LINE_AA)

        if show_confidence:
            label = f"{polygon.confidence:.2f}"
            x = int(pts[:, 0, 0].min())
            y = max(int(pts[:, 0, 1].min()) - _LABEL_PADDING, _LABEL_PADDING * 3)
            cv2.putText(
                annotated,
                label,
                (x, y),
                _FONT,
                _FONT_SCALE,
                color,
                _FONT_THICKNESS,
                cv2.LINE_AA,
            )

    return annotated


def decode_for_display(image_bytes: bytes, config: PreprocessConfig = PreprocessConfig()) -> np.ndarray:
    """Decode upload bytes into a BGR array with orientation applied.

    Uses the same decoder as the pipeline so overlays line up with the
    predicted coordinates.
    """
    image = decode_image(image_bytes, config).convert("RGB")
    return cv2.cvtColor(np.asarray(image), cv2.COLOR_RGB2BGR)
