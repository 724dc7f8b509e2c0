"""Input sources: fit raw outlines, canvas strokes and glyph text into mm.

Three producers feed the simplifier:

* traced outlines (image pixels) and freehand canvas strokes (canvas
  pixels) are fitted into the working area by :class:`FitTransform`,
* text is laid out from a single-stroke glyph font by
  :func:`text_to_paths`.

All output coordinates are millimetres, origin (0, 0), clamped to the
working area.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Sequence

from plotter_control.errors import InputError
from plotter_control.geometry.paths import Point, PointLike, as_point

logger = logging.getLogger(__name__)

RawPath = Sequence[PointLike]

# Samples taken along each Bezier segment of a canvas stroke.
BEZIER_SAMPLES = 8


# ---------------------------------------------------------------------------
# Fit transform
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FitTransform:
    """Uniform scale + translation from source space into the work area.

    ``mm = (src - min) * scale`` per axis, then rounded to 0.01 mm and
    clamped to ``[0, width] x [0, height]``.  The aspect ratio of the
    source is preserved.
    """

    min_x: float
    min_y: float
    scale: float
    width_mm: float
    height_mm: float

    @classmethod
    def fit(
        cls,
        raw_paths: Iterable[RawPath],
        width_mm: float,
        height_mm: float,
    ) -> FitTransform:
        """Compute the transform fitting every point of *raw_paths*.

        Raises
        ------
        InputError
            If there are no points or the points have no extent.
        """
        xs: list[float] = []
        ys: list[float] = []
        for path in raw_paths:
            for p in path:
                pt = as_point(p)
                xs.append(pt.x)
                ys.append(pt.y)
        if not xs:
            raise InputError("No points to fit into the working area")

        min_x, max_x = min(xs), max(xs)
        min_y, max_y = min(ys), max(ys)
        span_x = max_x - min_x
        span_y = max_y - min_y

        scales = []
        if span_x > 0:
            scales.append(width_mm / span_x)
        if span_y > 0:
            scales.append(height_mm / span_y)
        if not scales:
            raise InputError("Input points have no extent (single location)")

        return cls(min_x, min_y, min(scales), width_mm, height_mm)

    def apply(self, p: PointLike) -> Point:
        x = round((float(p[0]) - self.min_x) * self.scale, 2)
        y = round((float(p[1]) - self.min_y) * self.scale, 2)
        return Point(
            min(max(x, 0.0), self.width_mm),
            min(max(y, 0.0), self.height_mm),
        )

    def apply_path(self, path: RawPath) -> list[Point]:
        return [self.apply(p) for p in path]

    def invert(self, p: PointLike) -> Point:
        """Map a mm point back to source space (for pixel sampling)."""
        return Point(
            float(p[0]) / self.scale + self.min_x,
            float(p[1]) / self.scale + self.min_y,
        )


def fit_paths(
    raw_paths: Sequence[RawPath],
    width_mm: float,
    height_mm: float,
) -> tuple[list[list[Point]], FitTransform]:
    """Fit traced outlines into the working area.

    Returns the fitted point lists (not yet simplified) and the transform
    used, so callers can map back to image pixels.
    """
    transform = FitTransform.fit(raw_paths, width_mm, height_mm)
    fitted = [transform.apply_path(p) for p in raw_paths if len(p) > 0]
    logger.debug(
        "Fitted %d paths (scale=%.4f mm/unit, origin=(%.2f, %.2f))",
        len(fitted), transform.scale, transform.min_x, transform.min_y,
    )
    return fitted, transform


# ---------------------------------------------------------------------------
# Canvas strokes
# ---------------------------------------------------------------------------


def _cubic(p0, p1, p2, p3, n: int) -> list[Point]:
    out = []
    for i in range(1, n + 1):
        t = i / n
        u = 1.0 - t
        out.append(Point(
            u**3 * p0[0] + 3 * u**2 * t * p1[0] + 3 * u * t**2 * p2[0] + t**3 * p3[0],
            u**3 * p0[1] + 3 * u**2 * t * p1[1] + 3 * u * t**2 * p2[1] + t**3 * p3[1],
        ))
    return out


def _quadratic(p0, p1, p2, n: int) -> list[Point]:
    out = []
    for i in range(1, n + 1):
        t = i / n
        u = 1.0 - t
        out.append(Point(
            u**2 * p0[0] + 2 * u * t * p1[0] + t**2 * p2[0],
            u**2 * p0[1] + 2 * u * t * p1[1] + t**2 * p2[1],
        ))
    return out


def parse_stroke_commands(commands: Sequence[Sequence[Any]]) -> list[list[Point]]:
    """Flatten a canvas path command list into polylines.

    Parameters
    ----------
    commands : sequence
        ``[["M", x, y], ["L", x, y], ["Q", cx, cy, x, y], ...]`` with
        absolute coordinates.  Supported: M, L, H, V, C, Q, Z.  Each ``M``
        starts a new sub-path.

    Raises
    ------
    InputError
        On an unknown command letter or a malformed argument list.
    """
    subpaths: list[list[Point]] = []
    current: list[Point] = []
    x = y = 0.0
    start = Point(0.0, 0.0)

    for cmd in commands:
        if not cmd:
            continue
        op = str(cmd[0]).upper()
        try:
            args = [float(v) for v in cmd[1:]]
            if op == "M":
                if current:
                    subpaths.append(current)
                x, y = args[0], args[1]
                start = Point(x, y)
                current = [start]
            elif op == "L":
                x, y = args[0], args[1]
                current.append(Point(x, y))
            elif op == "H":
                x = args[0]
                current.append(Point(x, y))
            elif op == "V":
                y = args[0]
                current.append(Point(x, y))
            elif op == "C":
                current.extend(_cubic(
                    (x, y), args[0:2], args[2:4], args[4:6], BEZIER_SAMPLES
                ))
                x, y = args[4], args[5]
            elif op == "Q":
                current.extend(_quadratic(
                    (x, y), args[0:2], args[2:4], BEZIER_SAMPLES
                ))
                x, y = args[2], args[3]
            elif op == "Z":
                if current:
                    current.append(start)
                x, y = start
            else:
                raise InputError(f"Unsupported canvas path command {op!r}")
        except (IndexError, TypeError, ValueError) as exc:
            raise InputError(f"Malformed canvas path command {list(cmd)!r}") from exc

    if current:
        subpaths.append(current)
    return subpaths


def canvas_strokes_to_paths(
    strokes: Sequence[Any],
    width_mm: float,
    height_mm: float,
) -> tuple[list[list[Point]], FitTransform]:
    """Convert freehand canvas strokes into fitted mm polylines.

    Each stroke is either a point list ``[(x, y), ...]`` or a command
    list accepted by :func:`parse_stroke_commands`.
    """
    raw: list[list[Point]] = []
    for stroke in strokes:
        if stroke and isinstance(stroke[0], (list, tuple)) and stroke[0] and isinstance(stroke[0][0], str):
            raw.extend(parse_stroke_commands(stroke))
        else:
            raw.append([as_point(p) for p in stroke])
    raw = [p for p in raw if p]
    if not raw:
        raise InputError("Canvas contains no strokes")
    return fit_paths(raw, width_mm, height_mm)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


Alignment = Literal["left", "center", "right"]


@dataclass(frozen=True)
class Glyph:
    """One character: advance width and strokes in font units (Y down)."""

    width: float
    paths: tuple[tuple[Point, ...], ...] = ()


@dataclass(frozen=True)
class GlyphFont:
    """Single-stroke font as supplied by the font store."""

    line_height: float
    chars: Mapping[str, Glyph] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GlyphFont:
        """Build from ``{"lineHeight": h, "chars": {c: {"width", "paths"}}}``."""
        try:
            line_height = float(data["lineHeight"])
            chars = {
                str(c): Glyph(
                    width=float(g["width"]),
                    paths=tuple(
                        tuple(as_point(p) for p in stroke)
                        for stroke in g.get("paths", [])
                    ),
                )
                for c, g in data["chars"].items()
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise InputError(f"Invalid glyph font: {exc}") from exc
        if line_height <= 0:
            raise InputError(f"Glyph font lineHeight must be positive, got {line_height}")
        return cls(line_height=line_height, chars=chars)

    @property
    def has_lowercase(self) -> bool:
        return any(c.islower() for c in self.chars)


@dataclass(frozen=True)
class TextSettings:
    """Layout settings.  ``size`` and ``spacing`` in mm."""

    size: float = 10.0
    spacing: float = 2.0
    line_spacing: float = 1.5
    alignment: Alignment = "left"

    def __post_init__(self) -> None:
        if self.size <= 0:
            raise InputError(f"Text size must be positive, got {self.size}")
        if self.line_spacing <= 0:
            raise InputError(f"Line spacing must be positive, got {self.line_spacing}")
        if self.alignment not in ("left", "center", "right"):
            raise InputError(
                f"alignment must be 'left', 'center' or 'right', got {self.alignment!r}"
            )


@dataclass(frozen=True)
class TextBounds:
    width: float
    height: float
    max_width: float
    max_height: float

    @property
    def exceeds_limits(self) -> bool:
        return self.width > self.max_width or self.height > self.max_height


def _prepare_text(text: str, font: GlyphFont) -> list[str]:
    if not font.has_lowercase:
        text = text.upper()
    return text.split("\n")


def _line_width(line: str, font: GlyphFont, scale: float, spacing: float) -> float:
    width = 0.0
    for ch in line:
        glyph = font.chars.get(ch)
        width += (glyph.width * scale if glyph else 0.0) + spacing
    return max(width - spacing, 0.0) if line else 0.0


def measure_text(
    text: str,
    font: GlyphFont,
    settings: TextSettings,
    width_mm: float,
    height_mm: float,
) -> TextBounds:
    """Measure the laid-out size of *text* in mm."""
    lines = _prepare_text(text, font)
    scale = settings.size / font.line_height
    width = max(
        (_line_width(line, font, scale, settings.spacing) for line in lines),
        default=0.0,
    )
    # top of the first line to the bottom of the last
    height = settings.size + (len(lines) - 1) * settings.size * settings.line_spacing
    return TextBounds(width, height, width_mm, height_mm)


def text_to_paths(
    text: str,
    font: GlyphFont,
    settings: TextSettings,
    width_mm: float,
    height_mm: float,
) -> list[list[Point]]:
    """Lay out *text* as mm polylines inside the working area.

    The first line sits at the top of the area; glyph Y (down in font
    units) is flipped to machine Y (up).  Unknown characters advance by
    ``settings.spacing``.  Alignment is relative to the area width.

    Raises
    ------
    InputError
        If the text is empty or the layout does not fit the area.
    """
    if not text.strip():
        raise InputError("Text is empty")

    bounds = measure_text(text, font, settings, width_mm, height_mm)
    if bounds.exceeds_limits:
        raise InputError(
            f"Text dimensions ({bounds.width:.1f}mm x {bounds.height:.1f}mm) "
            f"exceed the working area ({width_mm:g}mm x {height_mm:g}mm); "
            f"reduce font size or text length"
        )

    lines = _prepare_text(text, font)
    scale = settings.size / font.line_height
    advance_y = settings.size * settings.line_spacing
    out: list[list[Point]] = []

    for index, line in enumerate(lines):
        # bottom of the glyph box, first line on top
        base_y = height_mm - settings.size - index * advance_y
        line_width = _line_width(line, font, scale, settings.spacing)
        if settings.alignment == "center":
            cursor_x = (width_mm - line_width) / 2.0
        elif settings.alignment == "right":
            cursor_x = width_mm - line_width
        else:
            cursor_x = 0.0

        for ch in line:
            glyph = font.chars.get(ch)
            if glyph is None:
                cursor_x += settings.spacing
                continue
            for stroke in glyph.paths:
                if len(stroke) < 2:
                    continue
                out.append([
                    Point(
                        round(cursor_x + p.x * scale, 3),
                        round(base_y + (font.line_height - p.y) * scale, 3),
                    )
                    for p in stroke
                ])
            cursor_x += glyph.width * scale + settings.spacing

    logger.debug(
        "Laid out %d lines -> %d strokes (%.1f x %.1f mm)",
        len(lines), len(out), bounds.width, bounds.height,
    )
    return out
