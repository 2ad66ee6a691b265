"""Tests for contour tracing and simplification."""

import numpy as np
import pytest

from biotwin.contours import ContourSimplifier, ContourTracer, simplify_contour
from biotwin.geometry import Contour
from conftest import make_square_mask


class TestContourTracer:
    def test_zero_mask_has_no_contours(self):
        assert ContourTracer().trace(np.zeros((64, 64), dtype=np.float32), 0.0) == []

    def test_square_yields_polygon_in_range(self):
        contours = ContourTracer().trace(make_square_mask(), threshold=0.3)
        assert len(contours) >= 1

        simplified = ContourSimplifier().simplify_all(contours)
        assert simplified
        for contour in simplified:
            assert len(contour) >= 3
            assert np.all(contour.points >= -1.0)
            assert np.all(contour.points <= 1.0)

    def test_square_contour_hugs_the_square(self):
        contour = ContourTracer().trace(make_square_mask(), threshold=0.3)[0]
        min_x, min_y, max_x, max_y = contour.bounds()
        # pixels 16..47 of 64 map to [-0.5, 0.5) with the top row at +1
        assert min_x == pytest.approx(-0.5)
        assert max_x == pytest.approx(0.375)
        assert max_y == pytest.approx(0.5)
        assert min_y == pytest.approx(-0.375)

    def test_all_foreground_mask_has_no_boundary(self):
        mask = np.ones((32, 32), dtype=np.float32)
        assert ContourTracer().trace(mask, threshold=0.3) == []

    def test_tiny_region_is_dropped(self):
        mask = np.zeros((64, 64), dtype=np.float32)
        mask[20:24, 20:24] = 1.0
        assert ContourTracer().trace(mask, threshold=0.3) == []

    def test_two_regions(self):
        mask = np.zeros((128, 64), dtype=np.float32)
        mask[8:40, 16:48] = 1.0
        mask[80:112, 16:48] = 1.0
        contours = ContourTracer().trace(mask, threshold=0.3)
        assert len(contours) == 2
        assert contours[0].bounds()[3] > contours[1].bounds()[3]

    def test_max_steps_bounds_length(self):
        tracer = ContourTracer(stride=1, max_steps=20, min_points=1)
        contours = tracer.trace(make_square_mask(), threshold=0.3)
        assert all(len(c) <= 21 for c in contours)

    def test_invalid_stride(self):
        with pytest.raises(ValueError):
            ContourTracer(stride=0)

    def test_non_2d_input(self):
        assert ContourTracer().trace(np.zeros(16), 0.0) == []


class TestSimplifier:
    def test_idempotent(self):
        contours = ContourTracer().trace(make_square_mask(), threshold=0.3)
        simplifier = ContourSimplifier(tolerance=0.2)
        once = simplifier(contours[0])
        twice = simplifier(once)
        np.testing.assert_array_equal(once.points, twice.points)

    def test_keeps_endpoints(self):
        pts = np.array([[0, 0], [0.001, 0], [0.5, 0], [0.501, 0], [1.0, 0]], dtype=np.float32)
        out = simplify_contour(pts, tolerance=0.02)
        np.testing.assert_array_equal(out[0], pts[0])
        np.testing.assert_array_equal(out[-1], pts[-1])
        assert len(out) == 3

    def test_short_input_unchanged(self):
        pts = np.array([[0, 0], [1, 1]], dtype=np.float32)
        np.testing.assert_array_equal(simplify_contour(pts), pts)

    def test_simplify_all_drops_degenerate(self):
        line = Contour(np.array([[0, 0], [0.001, 0], [0.002, 0]], dtype=np.float32))
        square = Contour(np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=np.float32))
        kept = ContourSimplifier(tolerance=0.02).simplify_all([line, square])
        assert len(kept) == 1
        assert len(kept[0]) == 4
