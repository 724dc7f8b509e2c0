"""Color layer classification of traced paths."""

from plotter_control.layers.classifier import (
    ClassifierThresholds,
    ColorClassification,
    Layer,
    PaletteColor,
    assign_layers,
    classify_image,
    classify_pixel,
    render_layer_preview,
    sample_pixels,
)

__all__ = [
    "ClassifierThresholds",
    "ColorClassification",
    "Layer",
    "PaletteColor",
    "assign_layers",
    "classify_image",
    "classify_pixel",
    "render_layer_preview",
    "sample_pixels",
]
