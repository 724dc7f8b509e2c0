"""
Plotter Control Package.

Drawing job execution engine for a GRBL-driven pen plotter. Turns traced
outlines, canvas strokes and glyph text into motion programs, streams them
to the device one acknowledged line at a time, and keeps a persistent
queue of drawing jobs so exactly one drives the machine at a time.

Subpackages:
    geometry: Path types, simplification, input-source fitting
    layers: Color layer classification of traced paths
    job_ir: Motion instruction vocabulary
    gcode: Motion program generation and statistics
    hardware: Serial transport, device link, notification events
    jobs: Job queue and its persistence
    configs: Machine configuration loading and validation
    utils: Atomic file writes and structured logging
    scripts: Command-line entrypoints

Modules:
    pipeline: Source data to motion program builders
    errors: Shared error hierarchy
"""

__all__ = [
    "geometry",
    "layers",
    "job_ir",
    "gcode",
    "hardware",
    "jobs",
    "configs",
]
