"""Motion instructions -- the vocabulary between paths and motion text.

Every instruction is an immutable, slotted dataclass with **semantic**
names (``PenDown``, not ``G1 Z0``) and **millimetre** coordinates in
machine space (origin at the working-area corner).

The generator lowers paths into instructions; rendering to GRBL text
happens only in :mod:`plotter_control.gcode.generator`.  Instructions
round-trip through plain dicts so a queued job can be persisted.
"""

from __future__ import annotations

from abc import ABC
from dataclasses import asdict, dataclass, fields
from typing import Any

# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Instruction(ABC):
    """Base class for all motion instructions."""

    pass


# ---------------------------------------------------------------------------
# Motion
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Move(Instruction):
    """Travel move with the pen raised.

    Parameters
    ----------
    x, y : float
        Target position in mm.
    """

    x: float
    y: float


@dataclass(frozen=True, slots=True)
class Draw(Instruction):
    """Feed move with the pen on the paper.

    Parameters
    ----------
    x, y : float
        End-point in mm.
    feed : float | None
        Feed override (mm/min).  ``None`` keeps the modal feed.
    """

    x: float
    y: float
    feed: float | None = None


# ---------------------------------------------------------------------------
# Pen
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PenUp(Instruction):
    """Lift the pen to travel height."""

    pass


@dataclass(frozen=True, slots=True)
class PenDown(Instruction):
    """Lower the pen onto the paper."""

    pass


# ---------------------------------------------------------------------------
# Modal / annotations
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SetFeed(Instruction):
    """Set the modal feed rate (mm/min)."""

    rate: float

    def __post_init__(self) -> None:
        if self.rate <= 0:
            raise ValueError(f"SetFeed rate must be positive, got {self.rate}")


@dataclass(frozen=True, slots=True)
class Comment(Instruction):
    """Free text; rendered as a comment line, never transmitted."""

    text: str


@dataclass(frozen=True, slots=True)
class ManualPause(Instruction):
    """Program stop for an operator action (pen change between layers)."""

    message: str = ""


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


INSTRUCTION_TYPES: dict[str, type[Instruction]] = {
    cls.__name__: cls
    for cls in (Move, Draw, PenUp, PenDown, SetFeed, Comment, ManualPause)
}


def instruction_to_dict(instr: Instruction) -> dict[str, Any]:
    """``Move(1, 2)`` -> ``{"op": "Move", "x": 1, "y": 2}``."""
    data = asdict(instr)
    if isinstance(instr, Draw) and instr.feed is None:
        data.pop("feed")
    return {"op": type(instr).__name__, **data}


def instruction_from_dict(data: dict[str, Any]) -> Instruction:
    """Inverse of :func:`instruction_to_dict`.

    Raises
    ------
    ValueError
        On an unknown ``op`` or unexpected fields.
    """
    payload = dict(data)
    name = payload.pop("op", None)
    cls = INSTRUCTION_TYPES.get(name)
    if cls is None:
        raise ValueError(f"Unknown instruction op {name!r}")
    allowed = {f.name for f in fields(cls)}
    unknown = set(payload) - allowed
    if unknown:
        raise ValueError(f"{name} got unexpected fields {sorted(unknown)}")
    return cls(**payload)
