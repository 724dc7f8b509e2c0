"""
Geometry module.

Point and Path types, polyline simplification, and the input sources that
fit traced outlines, canvas strokes and glyph text into the working area.
"""

from plotter_control.geometry.paths import Path, Point, require_drawable
from plotter_control.geometry.simplify import simplify_path, simplify_paths

__all__ = ["Path", "Point", "require_drawable", "simplify_path", "simplify_paths"]
