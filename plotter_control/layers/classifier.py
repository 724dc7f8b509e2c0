"""Color layer classification of traced paths.

Pixels of a reduced-resolution copy of the source image are labelled by
an ordered list of rules (first match wins):

1. background, when every channel exceeds ``background_min``,
2. a palette color, when its channel exceeds ``channel_min`` and beats
   both other channels by more than ``dominance_margin``,
3. otherwise the darkest palette entry (black).  This is a catch-all,
   not a nearest-color search.

Each path then votes at five fixed positions along its points and joins
the layer of the winning color.  Paths whose samples all fall on
background (or off the image) are dropped.

Usage::

    sample = sample_pixels(image, cfg.color.sample_size_px)
    classification = classify_image(sample, thresholds_from_config(cfg))
    layers = assign_layers(paths_px, classification)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
from PIL import Image

from plotter_control.geometry.paths import Path, Point

logger = logging.getLogger(__name__)

BACKGROUND = -1
"""Label stored in the classification map for background pixels."""

SAMPLE_FRACTIONS = (0.0, 0.25, 0.5, 0.75, 1.0)


# ---------------------------------------------------------------------------
# Palette and thresholds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaletteColor:
    """A pen color available to the plotter."""

    name: str
    rgb: tuple[int, int, int]

    @property
    def hex(self) -> str:
        return "#{:02x}{:02x}{:02x}".format(*self.rgb)

    @property
    def darkness(self) -> int:
        """Ink coverage as 765 minus the channel sum; pure black is 765."""
        return 765 - sum(self.rgb)


DEFAULT_PALETTE: tuple[PaletteColor, ...] = (
    PaletteColor("red", (255, 0, 0)),
    PaletteColor("green", (0, 255, 0)),
    PaletteColor("blue", (0, 0, 255)),
    PaletteColor("black", (0, 0, 0)),
)


@dataclass(frozen=True)
class ClassifierThresholds:
    """Channel thresholds on the 0-255 scale."""

    background_min: int = 250
    channel_min: int = 100
    dominance_margin: int = 50


def thresholds_from_config(cfg) -> ClassifierThresholds:
    """Build thresholds from the ``color`` section of a MachineConfig."""
    return ClassifierThresholds(
        background_min=cfg.color.background_min,
        channel_min=cfg.color.channel_min,
        dominance_margin=cfg.color.dominance_margin,
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

# Vectorised predicate over int16 channel planes (r, g, b) -> bool mask.
Predicate = Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]


@dataclass(frozen=True)
class ColorRule:
    """``predicate`` selects pixels that receive ``label``."""

    label: int
    predicate: Predicate
    name: str = ""


_CHANNELS = {(255, 0, 0): 0, (0, 255, 0): 1, (0, 0, 255): 2}


def _dominance(channel: int, t: ClassifierThresholds) -> Predicate:
    others = [c for c in range(3) if c != channel]

    def predicate(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
        planes = (r, g, b)
        v = planes[channel]
        return (
            (v > t.channel_min)
            & (v > planes[others[0]] + t.dominance_margin)
            & (v > planes[others[1]] + t.dominance_margin)
        )

    return predicate


def build_rules(
    palette: Sequence[PaletteColor] = DEFAULT_PALETTE,
    thresholds: ClassifierThresholds = ClassifierThresholds(),
) -> tuple[list[ColorRule], int]:
    """Return the ordered rule list and the default (darkest) label.

    Palette entries whose RGB is a pure primary get a dominance rule on
    that channel; other entries only ever receive pixels as the default.
    """
    if not palette:
        raise ValueError("palette must not be empty")

    t = thresholds
    rules = [
        ColorRule(
            BACKGROUND,
            lambda r, g, b: (
                (r > t.background_min) & (g > t.background_min) & (b > t.background_min)
            ),
            "background",
        )
    ]
    for index, color in enumerate(palette):
        channel = _CHANNELS.get(color.rgb)
        if channel is not None:
            rules.append(ColorRule(index, _dominance(channel, t), color.name))

    # first of equally dark entries wins
    default = max(range(len(palette)), key=lambda i: palette[i].darkness)
    return rules, default


def apply_rules(pixels: np.ndarray, rules: Sequence[ColorRule], default: int) -> np.ndarray:
    """Label every pixel of an ``(H, W, 3)`` array; first matching rule wins."""
    px = np.asarray(pixels)
    if px.ndim != 3 or px.shape[2] < 3:
        raise ValueError(f"Expected (H, W, 3) pixel array, got shape {px.shape}")

    r = px[..., 0].astype(np.int16)
    g = px[..., 1].astype(np.int16)
    b = px[..., 2].astype(np.int16)

    labels = np.full(px.shape[:2], default, dtype=np.int16)
    unassigned = np.ones(px.shape[:2], dtype=bool)
    for rule in rules:
        hit = rule.predicate(r, g, b) & unassigned
        labels[hit] = rule.label
        unassigned &= ~hit
    return labels


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@dataclass
class ColorClassification:
    """Per-pixel labels of a pixel sample.

    ``labels[y, x]`` is a palette index or :data:`BACKGROUND`.
    ``counts[i]`` is the number of pixels labelled with palette index i.
    """

    labels: np.ndarray
    palette: tuple[PaletteColor, ...]
    counts: list[int]

    @property
    def width(self) -> int:
        return int(self.labels.shape[1])

    @property
    def height(self) -> int:
        return int(self.labels.shape[0])

    def label_at(self, x: float, y: float) -> int | None:
        """Label under the rounded position, or None outside the image."""
        xi = int(round(x))
        yi = int(round(y))
        if 0 <= xi < self.width and 0 <= yi < self.height:
            return int(self.labels[yi, xi])
        return None


def sample_pixels(image: Image.Image | np.ndarray, max_edge: int = 300) -> np.ndarray:
    """Downscale *image* so its longest edge is at most *max_edge*.

    Returns an ``(H, W, 3)`` uint8 array.  Images already small enough
    are not enlarged.
    """
    if isinstance(image, np.ndarray):
        image = Image.fromarray(np.asarray(image, dtype=np.uint8))
    img = image.convert("RGB")
    w, h = img.size
    longest = max(w, h)
    if longest > max_edge:
        scale = max_edge / float(longest)
        new_size = (max(1, round(w * scale)), max(1, round(h * scale)))
        img = img.resize(new_size, Image.Resampling.BILINEAR)
    return np.asarray(img, dtype=np.uint8)


def classify_image(
    pixels: np.ndarray,
    thresholds: ClassifierThresholds = ClassifierThresholds(),
    palette: Sequence[PaletteColor] = DEFAULT_PALETTE,
) -> ColorClassification:
    """Label every pixel of a pixel sample."""
    rules, default = build_rules(palette, thresholds)
    labels = apply_rules(pixels, rules, default)
    counts = [int(np.count_nonzero(labels == i)) for i in range(len(palette))]
    logger.debug(
        "Color distribution: %s",
        ", ".join(f"{c.name}={n}" for c, n in zip(palette, counts)),
    )
    return ColorClassification(labels=labels, palette=tuple(palette), counts=counts)


def classify_pixel(
    rgb: Sequence[int],
    thresholds: ClassifierThresholds = ClassifierThresholds(),
    palette: Sequence[PaletteColor] = DEFAULT_PALETTE,
) -> str:
    """Name of the class of a single RGB triple (``"background"`` or a color)."""
    px = np.array([[list(rgb)[:3]]], dtype=np.uint8)
    label = int(classify_image(px, thresholds, palette).labels[0, 0])
    return "background" if label == BACKGROUND else palette[label].name


# ---------------------------------------------------------------------------
# Layer assignment
# ---------------------------------------------------------------------------


@dataclass
class Layer:
    """Paths sharing one pen color, plotted before the next pen change."""

    color_name: str
    rgb: tuple[int, int, int]
    pixel_count: int
    paths: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "colorName": self.color_name,
            "rgb": list(self.rgb),
            "pixelCount": self.pixel_count,
            "pathCount": len(self.paths),
        }


def sample_points(points: Sequence[Point]) -> list[Point]:
    """The five vote positions: ``points[floor(n * f)]`` clamped to the end."""
    n = len(points)
    return [points[min(int(n * f), n - 1)] for f in SAMPLE_FRACTIONS]


def vote_color(
    points: Sequence[Point],
    classification: ColorClassification,
) -> int | None:
    """Winning palette index for a path, or None when nothing votes.

    Ties go to the color that received its first vote earliest.
    """
    votes: dict[int, int] = {}
    for p in sample_points(points):
        label = classification.label_at(p.x, p.y)
        if label is None or label == BACKGROUND:
            continue
        votes[label] = votes.get(label, 0) + 1
    if not votes:
        return None

    best, best_votes = None, 0
    for label, count in votes.items():
        if count > best_votes:
            best, best_votes = label, count
    return best


def assign_layers(
    paths_px: Sequence[Path],
    classification: ColorClassification,
    paths_out: Sequence[Path] | None = None,
) -> list[Layer]:
    """Group paths into color layers.

    Parameters
    ----------
    paths_px : sequence of Path
        Paths in pixel coordinates of the classification sample.
    classification : ColorClassification
        Result of :func:`classify_image`.
    paths_out : sequence of Path, optional
        Paths to place in the layers (e.g. the same strokes in mm), index
        aligned with *paths_px*.  Defaults to *paths_px*.

    Returns
    -------
    list[Layer]
        One layer per color with at least one path, in palette order.
    """
    if paths_out is not None and len(paths_out) != len(paths_px):
        raise ValueError("paths_out must be index-aligned with paths_px")
    targets = paths_out if paths_out is not None else paths_px

    buckets: dict[int, list[Path]] = {}
    dropped = 0
    for src, dst in zip(paths_px, targets):
        label = vote_color(src.points, classification)
        if label is None:
            dropped += 1
            continue
        buckets.setdefault(label, []).append(dst)

    layers = [
        Layer(
            color_name=color.name,
            rgb=color.rgb,
            pixel_count=classification.counts[i],
            paths=buckets[i],
        )
        for i, color in enumerate(classification.palette)
        if buckets.get(i)
    ]
    logger.info(
        "Assigned %d paths to %d layers (%d on background dropped)",
        len(paths_px) - dropped, len(layers), dropped,
    )
    return layers


def render_layer_preview(classification: ColorClassification, color_name: str) -> Image.Image:
    """Preview raster: pixels of one class painted on white."""
    names = [c.name for c in classification.palette]
    if color_name not in names:
        raise KeyError(f"Unknown palette color {color_name!r}")
    index = names.index(color_name)
    canvas = np.full((classification.height, classification.width, 3), 255, dtype=np.uint8)
    canvas[classification.labels == index] = classification.palette[index].rgb
    return Image.fromarray(canvas)
