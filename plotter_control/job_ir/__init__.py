"""
Motion instruction module.

Defines the motion vocabulary as immutable dataclasses.  This vocabulary
is the contract between simplified paths and motion-program rendering.

All coordinates are in millimetres, machine-space.
"""

from plotter_control.job_ir.instructions import (
    Comment,
    Draw,
    Instruction,
    ManualPause,
    Move,
    PenDown,
    PenUp,
    SetFeed,
    instruction_from_dict,
    instruction_to_dict,
)

__all__ = [
    "Comment",
    "Draw",
    "Instruction",
    "ManualPause",
    "Move",
    "PenDown",
    "PenUp",
    "SetFeed",
    "instruction_from_dict",
    "instruction_to_dict",
]
