"""Base exceptions shared across the engine.

Every engine error carries a machine-readable ``code`` so that callers
(HTTP layer, CLI, notification transport) can report a rejection without
parsing the message text.
"""

from __future__ import annotations


class PlotterError(Exception):
    """Base exception for all plotter-control errors."""

    code = "plotter_error"

    def to_dict(self) -> dict[str, str]:
        """Return ``{"code": ..., "message": ...}`` for transport."""
        return {"code": self.code, "message": str(self)}


class InputError(PlotterError):
    """Source data cannot be turned into a drawing (reported, never retried)."""

    code = "input_error"


class NoDrawablePathsError(InputError):
    """Simplification / classification left nothing to draw."""

    code = "no_drawable_paths"

    def __init__(self, message: str = "Nothing to draw: no drawable paths") -> None:
        super().__init__(message)


class OutOfBoundsError(InputError):
    """A commanded position lies outside the device working area."""

    code = "out_of_bounds"
