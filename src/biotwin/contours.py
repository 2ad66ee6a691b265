"""Boundary tracing and polyline simplification for thresholded masks.

ContourTracer follows region boundaries (Moore-neighbour style) on a
coarse grid sampled every `stride` pixels; ContourSimplifier thins the
resulting polylines with a greedy distance tolerance.
"""

from __future__ import annotations

import logging

import numpy as np

from biotwin.geometry import COMPASS, Contour, normalize_to_unit
from biotwin.mask import binarize

logger = logging.getLogger("biotwin.contours")

TRACE_STRIDE = 4
MAX_TRACE_STEPS = 500
MIN_CLOSING_POINTS = 5
MIN_CONTOUR_POINTS = 10
SIMPLIFY_TOLERANCE = 0.02


class ContourTracer:
    """Extracts closed boundary polylines from a mask at a threshold.

    The mask is binarized and sampled every `stride` cells. Every grid
    cell whose value disagrees with its right or bottom neighbour is a
    boundary candidate; from each unvisited foreground candidate a trace
    walks clockwise around the region, keeping the target cell inside the
    region and its outward neighbour outside.

    Traces stop when no direction qualifies, after `max_steps` moves, or
    when they return to a visited cell once more than
    `min_closing_points` points were collected. Traces shorter than
    `min_points` are discarded as noise.
    """

    def __init__(
        self,
        stride: int = TRACE_STRIDE,
        max_steps: int = MAX_TRACE_STEPS,
        min_closing_points: int = MIN_CLOSING_POINTS,
        min_points: int = MIN_CONTOUR_POINTS,
    ):
        if stride < 1:
            raise ValueError("stride must be >= 1")
        self.stride = stride
        self.max_steps = max_steps
        self.min_closing_points = min_closing_points
        self.min_points = min_points

    def trace(self, mask: np.ndarray, threshold: float) -> list[Contour]:
        """Return all contours found in the mask, in scan order."""
        mask = np.asarray(mask)
        if mask.ndim != 2 or mask.size == 0:
            return []

        height, width = mask.shape
        grid = binarize(mask, threshold)[:: self.stride, :: self.stride]

        visited: set[tuple[int, int]] = set()
        contours: list[Contour] = []

        for gy, gx in self._edge_cells(grid):
            start = self._foreground_of_pair(grid, gx, gy)
            if start is None or start in visited:
                continue

            cells = self._follow(grid, start, visited)
            if len(cells) < self.min_points:
                logger.debug("Dropped %d-point trace at %s", len(cells), start)
                continue

            points = [
                normalize_to_unit(cx * self.stride, cy * self.stride, width, height)
                for cx, cy in cells
            ]
            contours.append(Contour(np.array(points, dtype=np.float32)))

        return contours

    @staticmethod
    def _edge_cells(grid: np.ndarray) -> np.ndarray:
        """Grid cells that differ from their in-bounds right or bottom neighbour."""
        edges = np.zeros_like(grid, dtype=bool)
        edges[:, :-1] |= grid[:, :-1] != grid[:, 1:]
        edges[:-1, :] |= grid[:-1, :] != grid[1:, :]
        return np.argwhere(edges)

    @staticmethod
    def _foreground_of_pair(grid: np.ndarray, gx: int, gy: int):
        rows, cols = grid.shape
        for x, y in ((gx, gy), (gx + 1, gy), (gx, gy + 1)):
            if x < cols and y < rows and grid[y, x]:
                return int(x), int(y)
        return None

    def _follow(
        self,
        grid: np.ndarray,
        start: tuple[int, int],
        visited: set[tuple[int, int]],
    ) -> list[tuple[int, int]]:
        rows, cols = grid.shape

        def inside(x: int, y: int) -> bool:
            return 0 <= x < cols and 0 <= y < rows and bool(grid[y, x])

        cells = [start]
        visited.add(start)
        x, y = start
        heading = 0  # east

        for _ in range(self.max_steps):
            step = None
            for turn in range(8):
                d = (heading + 6 + turn) % 8
                dx, dy = COMPASS[d]
                tx, ty = x + dx, y + dy
                ox, oy = COMPASS[(d + 6) % 8]
                if inside(tx, ty) and not inside(tx + ox, ty + oy):
                    step = (d, tx, ty)
                    break

            if step is None:
                break

            heading, x, y = step
            if (x, y) in visited and len(cells) > self.min_closing_points:
                break

            cells.append((x, y))
            visited.add((x, y))

        return cells


def simplify_contour(points: np.ndarray, tolerance: float = SIMPLIFY_TOLERANCE) -> np.ndarray:
    """Greedy distance-threshold simplification.

    Keeps the first point, then every point farther than `tolerance`
    from the last kept point, and always the final point. Single pass,
    deterministic and idempotent for a fixed tolerance.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(pts) <= 2:
        return pts.copy()

    kept = [0]
    last = pts[0]
    for i in range(1, len(pts) - 1):
        if float(np.hypot(*(pts[i] - last))) > tolerance:
            kept.append(i)
            last = pts[i]
    kept.append(len(pts) - 1)
    return pts[kept]


class ContourSimplifier:
    """Applies simplify_contour and drops results that are not polygons."""

    def __init__(self, tolerance: float = SIMPLIFY_TOLERANCE):
        self.tolerance = tolerance

    def __call__(self, contour: Contour) -> Contour:
        return Contour(simplify_contour(contour.points, self.tolerance))

    def simplify_all(self, contours: list[Contour]) -> list[Contour]:
        simplified = [self(c) for c in contours]
        return [c for c in simplified if c.is_polygon]
