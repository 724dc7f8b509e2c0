"""End-to-end job builders: source data in, motion program out.

Each builder runs the same chain::

    source -> fit into the work area (mm) -> simplify -> [color layers]
           -> MotionProgramGenerator -> MotionProgram

and raises :class:`~plotter_control.errors.NoDrawablePathsError` when
nothing survives simplification, so an empty program is never queued.

Usage::

    cfg = load_config()
    program = build_image_job(outlines, cfg, image=Image.open("cat.png"))
    queue.enqueue(program, JobType.IMAGE, name="cat")
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence, Union

import numpy as np
from PIL import Image

from plotter_control.configs.loader import MachineConfig
from plotter_control.errors import NoDrawablePathsError
from plotter_control.gcode.generator import MotionProgram, MotionProgramGenerator
from plotter_control.geometry.paths import Path, Point, require_drawable
from plotter_control.geometry.simplify import simplify_from_config, simplify_paths
from plotter_control.geometry.sources import (
    FitTransform,
    GlyphFont,
    RawPath,
    TextSettings,
    canvas_strokes_to_paths,
    fit_paths,
    text_to_paths,
)
from plotter_control.layers.classifier import (
    assign_layers,
    classify_image,
    sample_pixels,
    thresholds_from_config,
)

logger = logging.getLogger(__name__)


def _image_size(image: Union[Image.Image, np.ndarray]) -> tuple[int, int]:
    if isinstance(image, np.ndarray):
        return int(image.shape[1]), int(image.shape[0])
    return image.size


def _to_sample_space(
    paths_mm: Sequence[Path],
    transform: FitTransform,
    sx: float,
    sy: float,
) -> list[Path]:
    """Map mm paths back to pixel coordinates of the downscaled sample."""
    out = []
    for path in paths_mm:
        points = []
        for p in path.points:
            src = transform.invert(p)
            points.append(Point(src.x * sx, src.y * sy))
        out.append(Path(tuple(points)))
    return out


def build_image_job(
    outlines: Sequence[RawPath],
    config: MachineConfig,
    image: Optional[Union[Image.Image, np.ndarray]] = None,
    title: str = "",
) -> MotionProgram:
    """Program for traced outlines of a raster image.

    Parameters
    ----------
    outlines : sequence of point lists
        Vector outlines in image pixel coordinates.
    config : MachineConfig
        Work area, simplification, color and pen settings.
    image : PIL.Image or ndarray, optional
        The source raster.  When given, paths are grouped into color
        layers with a pen-change pause between layers; otherwise the
        program uses a single pen.
    title : str
        Header label.
    """
    wa = config.work_area
    fitted, transform = fit_paths(outlines, wa.width_mm, wa.height_mm)
    paths_mm = require_drawable(simplify_from_config(fitted, config))
    generator = MotionProgramGenerator(config)

    if image is None:
        return generator.generate(paths_mm, title)

    width, height = _image_size(image)
    sample = sample_pixels(image, config.color.sample_size_px)
    sy = sample.shape[0] / float(height)
    sx = sample.shape[1] / float(width)
    paths_px = _to_sample_space(paths_mm, transform, sx, sy)

    classification = classify_image(sample, thresholds_from_config(config))
    layers = assign_layers(paths_px, classification, paths_mm)
    if not layers:
        raise NoDrawablePathsError("Nothing to draw: every path lies on background")
    logger.info("Image job: %s", ", ".join(
        f"{layer.color_name}={len(layer.paths)}" for layer in layers
    ))
    return generator.generate_layers(layers, title)


def build_drawing_job(
    strokes: Sequence[Any],
    config: MachineConfig,
    title: str = "",
) -> MotionProgram:
    """Program for freehand canvas strokes (point lists or path commands)."""
    wa = config.work_area
    fitted, _ = canvas_strokes_to_paths(strokes, wa.width_mm, wa.height_mm)
    paths = require_drawable(simplify_from_config(fitted, config))
    return MotionProgramGenerator(config).generate(paths, title)


def build_text_job(
    text: str,
    font: Union[GlyphFont, Mapping[str, Any]],
    config: MachineConfig,
    settings: Optional[TextSettings] = None,
    title: str = "",
) -> MotionProgram:
    """Program for text laid out from a single-stroke glyph font.

    Short glyph strokes (dots, accents) are kept: noise removal is off
    for text.
    """
    if not isinstance(font, GlyphFont):
        font = GlyphFont.from_dict(font)
    settings = settings or TextSettings()
    wa = config.work_area
    raw = text_to_paths(text, font, settings, wa.width_mm, wa.height_mm)
    paths = require_drawable(simplify_paths(
        raw,
        tolerance=config.simplify.tolerance_mm,
        min_path_length=config.simplify.min_path_length_mm,
        remove_noise=False,
    ))
    return MotionProgramGenerator(config).generate(paths, title or text.splitlines()[0])
