"""
test_coordinates.py - Unit tests for the isometric projection

Tests:
- Known projections of tile corners
- Inverse mapping and hit testing
- Tile geometry helpers
- Vectorized variants agree with the scalar ones
"""

import numpy as np
import pytest

from deficity import CoordinateTransform, center_cell, in_bounds


@pytest.fixture
def iso():
    return CoordinateTransform()


class TestProjection:

    def test_origin(self, iso):
        assert iso.grid_to_screen(0, 0) == (0, 0)

    def test_known_points(self, iso):
        assert iso.grid_to_screen(1, 0) == (48, 32)
        assert iso.grid_to_screen(0, 1) == (-48, 32)
        assert iso.grid_to_screen(2, 2) == (0, 128)

    def test_inverse(self, iso):
        for col, row in [(0, 0), (3, 7), (12, 1)]:
            assert iso.screen_to_grid(*iso.grid_to_screen(col, row)) == pytest.approx((col, row))

    def test_hit_test_inside_tile(self, iso):
        """A point just below the top vertex belongs to that tile."""
        sx, sy = iso.tile_center(4, 5)
        assert iso.screen_to_cell(sx, sy) == (4, 5)

    def test_custom_tile_size(self):
        iso = CoordinateTransform(tile_width=64, tile_height=32)
        assert iso.grid_to_screen(1, 0) == (32, 16)

    def test_invalid_tile_size(self):
        with pytest.raises(ValueError):
            CoordinateTransform(tile_width=0)


class TestTileGeometry:

    def test_center_is_half_a_tile_down(self, iso):
        assert iso.tile_center(0, 0) == (0, 32)

    def test_diamond(self, iso):
        assert iso.tile_diamond(0, 0) == [(0, 0), (48, 32), (0, 64), (-48, 32)]


class TestVectorized:

    def test_many_matches_scalar(self, iso):
        cells = np.array([[0, 0], [1, 0], [3, 7], [12, 12]])
        screen = iso.grid_to_screen_many(cells)
        assert screen.shape == (4, 2)
        for (col, row), (sx, sy) in zip(cells, screen):
            assert (sx, sy) == pytest.approx(iso.grid_to_screen(col, row))

    def test_many_inverse(self, iso):
        cells = np.array([[2, 9], [5, 5]], dtype=float)
        back = iso.screen_to_grid_many(iso.grid_to_screen_many(cells))
        np.testing.assert_allclose(back, cells)


class TestBounds:

    @pytest.mark.parametrize("x,y,expected", [
        (0, 0, True), (12, 12, True), (13, 0, False), (0, 13, False), (-1, 5, False),
    ])
    def test_in_bounds(self, x, y, expected):
        assert in_bounds(x, y, 13) is expected

    def test_center_cell(self):
        assert center_cell(13) == (7, 7)
        assert center_cell(10) == (5, 5)
