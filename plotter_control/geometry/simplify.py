"""Polyline simplification for traced and hand-drawn paths.

Each raw path goes through three steps:

1. consecutive duplicate points are collapsed,
2. Douglas-Peucker reduction bounded by ``tolerance`` (shapely,
   without topology preservation so open strokes keep their endpoints),
3. a length check: with ``remove_noise`` set, strokes shorter than
   ``min_path_length`` are dropped.

Paths left with fewer than two points are always dropped.  Running the
simplifier twice with the same tolerance gives the same output.
"""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from shapely.geometry import LineString

from plotter_control.geometry.paths import Path, Point, PointLike, as_point

logger = logging.getLogger(__name__)


def dedupe_consecutive(points: Sequence[Point], eps: float = 1e-9) -> list[Point]:
    """Collapse runs of identical consecutive points."""
    out: list[Point] = []
    for p in points:
        if out and abs(p.x - out[-1].x) <= eps and abs(p.y - out[-1].y) <= eps:
            continue
        out.append(p)
    return out


def simplify_path(
    raw_points: Iterable[PointLike],
    tolerance: float = 0.5,
    min_path_length: float = 1.0,
    remove_noise: bool = True,
) -> Path | None:
    """Simplify one raw polyline.

    Parameters
    ----------
    raw_points : iterable of (x, y)
        Ordered input points.
    tolerance : float
        Maximum perpendicular deviation allowed by the reduction.
    min_path_length : float
        Noise threshold, applied only when *remove_noise* is set.
    remove_noise : bool
        Drop strokes shorter than *min_path_length*.

    Returns
    -------
    Path or None
        ``None`` when the stroke is dropped.
    """
    points = dedupe_consecutive([as_point(p) for p in raw_points])
    if len(points) < 2:
        return None

    if tolerance > 0 and len(points) > 2:
        reduced = LineString(points).simplify(tolerance, preserve_topology=False)
        points = dedupe_consecutive([Point(x, y) for x, y in reduced.coords])
        if len(points) < 2:
            return None

    path = Path(tuple(points))
    if remove_noise and path.length < min_path_length:
        return None
    return path


def simplify_paths(
    raw_paths: Iterable[Iterable[PointLike]],
    tolerance: float = 0.5,
    min_path_length: float = 1.0,
    remove_noise: bool = True,
) -> list[Path]:
    """Simplify a batch of raw polylines, keeping input order.

    An empty result is returned as-is; callers that need something to
    draw pass it through :func:`~plotter_control.geometry.paths.require_drawable`.
    """
    out: list[Path] = []
    total = 0
    for raw in raw_paths:
        total += 1
        path = simplify_path(raw, tolerance, min_path_length, remove_noise)
        if path is not None:
            out.append(path)
    logger.debug(
        "Simplified %d paths -> %d (tol=%.3f, min_len=%.3f, noise=%s)",
        total, len(out), tolerance, min_path_length, remove_noise,
    )
    return out


def simplify_from_config(raw_paths: Iterable[Iterable[PointLike]], cfg) -> list[Path]:
    """Simplify with the ``simplify`` section of a MachineConfig."""
    return simplify_paths(
        raw_paths,
        tolerance=cfg.simplify.tolerance_mm,
        min_path_length=cfg.simplify.min_path_length_mm,
        remove_noise=cfg.simplify.remove_noise,
    )
