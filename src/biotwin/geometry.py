"""Small 2D geometry helpers shared by the gesture and mask pipelines."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

Point2 = tuple[float, float]

# 8-neighbourhood in clockwise order for image coordinates (y grows downward),
# starting at east.
COMPASS: tuple[tuple[int, int], ...] = (
    (1, 0),    # E
    (1, 1),    # SE
    (0, 1),    # S
    (-1, 1),   # SW
    (-1, 0),   # W
    (-1, -1),  # NW
    (0, -1),   # N
    (1, -1),   # NE
)


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Euclidean distance between the first two coordinates of a and b."""
    return math.hypot(float(a[0]) - float(b[0]), float(a[1]) - float(b[1]))


def angle_between(a: Sequence[float], b: Sequence[float]) -> float:
    """Angle (radians) of the vector a → b."""
    return math.atan2(float(b[1]) - float(a[1]), float(b[0]) - float(a[0]))


def normalize_to_unit(x: float, y: float, width: int, height: int) -> Point2:
    """Map pixel coordinates to [-1, 1] with the top row at +1."""
    return (x / width) * 2.0 - 1.0, 1.0 - (y / height) * 2.0


@dataclass
class Contour:
    """Closed polyline in normalized coordinates, shape (n, 2)."""
    points: np.ndarray

    def __post_init__(self):
        self.points = np.asarray(self.points, dtype=np.float32).reshape(-1, 2)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_polygon(self) -> bool:
        return len(self.points) >= 3

    def bounds(self) -> tuple[float, float, float, float]:
        """(min_x, min_y, max_x, max_y) of the contour points."""
        if len(self.points) == 0:
            return 0.0, 0.0, 0.0, 0.0
        lo = self.points.min(axis=0)
        hi = self.points.max(axis=0)
        return float(lo[0]), float(lo[1]), float(hi[0]), float(hi[1])

    def to_list(self, digits: int = 4) -> list[list[float]]:
        return [[round(float(x), digits), round(float(y), digits)] for x, y in self.points]
