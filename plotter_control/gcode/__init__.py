"""
Motion program module.

Lowers simplified paths into motion instructions, measures them, and
renders GRBL program text.
"""

from plotter_control.gcode.generator import (
    MotionProgram,
    MotionProgramGenerator,
    ProgramStats,
    build_recovery_program,
    format_estimated_time,
    optimize_path_order,
)

__all__ = [
    "MotionProgram",
    "MotionProgramGenerator",
    "ProgramStats",
    "build_recovery_program",
    "format_estimated_time",
    "optimize_path_order",
]
