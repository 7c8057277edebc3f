"""
Data transfer objects for the inference pipeline.

    Detection     : intermediate candidate produced by the decoder. Lives
                    only inside one pipeline run.
    Polygon       : an accepted outline in original-image pixels.
    PredictionSet : everything one job produces.

Non-goals:
    - No rendering logic.
    - No file I/O.
    - No coordinate transformation (that belongs in geometry/masks).
"""

from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np


@dataclass(frozen=True, eq=False)
class Detection:
    """A candidate detection in model-input space.

    Attributes:
        box: ``(x1, y1, x2, y2)`` in model-input pixels.
        confidence: Score in [0.0, 1.0].
        anchor_index: Column of the raw tensor this candidate came from.
        mask_coefficients: Fixed-length weights over the prototype masks.
    """

    box: Tuple[float, float, float, float]
    confidence: float
    anchor_index: int
    mask_coefficients: np.ndarray = field(repr=False)

    @property
    def width(self) -> float:
        return self.box[2] - self.box[0]

    @property
    def height(self) -> float:
        return self.box[3] - self.box[1]


@dataclass(frozen=True)
class Polygon:
    """A closed outline in original-image pixels.

    ``points`` is the boundary in traversal order; the ring closes from
    the last point back to the first.
    """

    points: Tuple[Tuple[float, float], ...]
    confidence: float = 0.0

    @classmethod
    def from_array(cls, points: np.ndarray, confidence: float = 0.0) -> "Polygon":
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return cls(
            points=tuple((float(x), float(y)) for x, y in pts),
            confidence=float(confidence),
        )

    def flat(self) -> List[float]:
        """Return ``[x0, y0, x1, y1, ...]``."""
        return [coord for point in self.points for coord in point]

    def to_array(self) -> np.ndarray:
        return np.asarray(self.points, dtype=np.float64).reshape(-1, 2)

    def __len__(self) -> int:
        return len(self.points)


@dataclass(frozen=True)
class PredictionSet:
    """All polygons found in one image plus the image size."""

    polygons: Tuple[Polygon, ...]
    image_width: int
    image_height: int

    def to_dict(self) -> dict:
        """Return a plain dict suitable for JSON serialization."""
        return {
            "predictions": [p.flat() for p in self.polygons],
            "imageSize": {"width": self.image_width, "height": self.image_height},
        }

    def __len__(self) -> int:
        return len(self.polygons)
