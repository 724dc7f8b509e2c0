"""Geometry primitives: points and immutable polylines.

A :class:`Path` is one continuous pen stroke.  It always holds at least
two points; anything shorter is not drawable and never becomes a Path.
Coordinates are millimetres unless a caller states image pixels.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Sequence

from plotter_control.errors import InputError, NoDrawablePathsError


class Point(NamedTuple):
    """2D point (mm, or image pixels where noted)."""

    x: float
    y: float

    def distance_to(self, other: Point) -> float:
        return math.hypot(other.x - self.x, other.y - self.y)


PointLike = Sequence[float]


def as_point(p: PointLike) -> Point:
    """Coerce an ``(x, y)`` pair (tuple, list, numpy row) into a Point."""
    if len(p) < 2:
        raise InputError(f"Point needs x and y, got {p!r}")
    x, y = float(p[0]), float(p[1])
    if not (math.isfinite(x) and math.isfinite(y)):
        raise InputError(f"Point coordinates must be finite, got ({x}, {y})")
    return Point(x, y)


def polyline_length(points: Sequence[Point]) -> float:
    """Cumulative Euclidean length of an ordered point sequence."""
    return sum(
        math.hypot(b.x - a.x, b.y - a.y)
        for a, b in zip(points, points[1:])
    )


@dataclass(frozen=True, slots=True)
class Path:
    """Ordered sequence of >= 2 points drawn as one pen-down stroke.

    Parameters
    ----------
    points : tuple[Point, ...]
        Vertices in drawing order.
    """

    points: tuple[Point, ...]

    def __post_init__(self) -> None:
        if len(self.points) < 2:
            raise ValueError(
                f"Path requires at least 2 points, got {len(self.points)}"
            )

    @classmethod
    def from_points(cls, points: Iterable[PointLike]) -> Path:
        return cls(tuple(as_point(p) for p in points))

    @property
    def start(self) -> Point:
        return self.points[0]

    @property
    def end(self) -> Point:
        return self.points[-1]

    @property
    def length(self) -> float:
        """Euclidean length of the stroke."""
        return polyline_length(self.points)

    def __len__(self) -> int:
        return len(self.points)


def require_drawable(paths: Sequence[Path]) -> Sequence[Path]:
    """Return *paths* unchanged, or raise when nothing is left to draw.

    Raises
    ------
    NoDrawablePathsError
        If *paths* is empty.
    """
    if not paths:
        raise NoDrawablePathsError()
    return paths
