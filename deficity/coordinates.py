"""
coordinates.py - Grid <-> isometric screen mapping

Pure geometry: bijection between integer grid cells and screen points for
an isometric (2:1 diamond) projection, plus the bounds predicate.

    screen_x = (col - row) * tile_width / 2
    screen_y = (col + row) * tile_height / 2

The batch variants operate on numpy arrays for rendering many tiles at once.
"""

from __future__ import annotations
from dataclasses import dataclass
import math
from typing import List, Tuple

import numpy as np

from .core import Cell, DEFAULT_GRID_SIZE


Point = Tuple[float, float]


def in_bounds(x: int, y: int, grid_size: int = DEFAULT_GRID_SIZE) -> bool:
    """True iff 0 <= x < grid_size and 0 <= y < grid_size."""
    return 0 <= x < grid_size and 0 <= y < grid_size


def center_cell(grid_size: int = DEFAULT_GRID_SIZE) -> Cell:
    """Cell the camera centres on when a city is first shown."""
    mid = math.ceil(grid_size / 2)
    return (mid, mid)


@dataclass(frozen=True, slots=True)
class CoordinateTransform:
    """
    Isometric projection with a fixed tile footprint.

    Attributes:
        tile_width: Width of a tile diamond in pixels
        tile_height: Height of a tile diamond in pixels
    """
    tile_width: float = 96
    tile_height: float = 64

    def __post_init__(self):
        if self.tile_width <= 0 or self.tile_height <= 0:
            raise ValueError(
                f"Tile dimensions must be positive, got {self.tile_width}x{self.tile_height}"
            )

    def grid_to_screen(self, col: float, row: float) -> Point:
        """Top vertex of the tile at (col, row) in screen space."""
        return (
            (col - row) * self.tile_width / 2,
            (col + row) * self.tile_height / 2,
        )

    def screen_to_grid(self, sx: float, sy: float) -> Point:
        """Exact (fractional) inverse of grid_to_screen()."""
        a = sx / (self.tile_width / 2)
        b = sy / (self.tile_height / 2)
        return ((a + b) / 2, (b - a) / 2)

    def screen_to_cell(self, sx: float, sy: float) -> Cell:
        """Integer cell whose diamond contains the screen point (for hit testing)."""
        col, row = self.screen_to_grid(sx, sy)
        return (math.floor(col), math.floor(row))

    def tile_center(self, col: int, row: int) -> Point:
        sx, sy = self.grid_to_screen(col, row)
        return (sx, sy + self.tile_height / 2)

    def tile_diamond(self, col: int, row: int) -> List[Point]:
        """Vertices of the tile outline: top, right, bottom, left."""
        sx, sy = self.grid_to_screen(col, row)
        half_w = self.tile_width / 2
        half_h = self.tile_height / 2
        return [
            (sx, sy),
            (sx + half_w, sy + half_h),
            (sx, sy + self.tile_height),
            (sx - half_w, sy + half_h),
        ]

    def grid_to_screen_many(self, cells: np.ndarray) -> np.ndarray:
        """
        Vectorized grid_to_screen().

        Args:
            cells: Array of shape (n, 2) holding (col, row) pairs

        Returns:
            Array of shape (n, 2) holding (screen_x, screen_y) pairs
        """
        cells = np.asarray(cells, dtype=float).reshape(-1, 2)
        col, row = cells[:, 0], cells[:, 1]
        return np.column_stack((
            (col - row) * self.tile_width / 2,
            (col + row) * self.tile_height / 2,
        ))

    def screen_to_grid_many(self, points: np.ndarray) -> np.ndarray:
        """Vectorized screen_to_grid(); shape (n, 2) in, shape (n, 2) out."""
        points = np.asarray(points, dtype=float).reshape(-1, 2)
        a = points[:, 0] / (self.tile_width / 2)
        b = points[:, 1] / (self.tile_height / 2)
        return np.column_stack(((a + b) / 2, (b - a) / 2))
