"""Motion program generator -- paths to instructions to GRBL text.

Paths (mm, machine space) are lowered into :mod:`~plotter_control.job_ir`
instructions, bounds-checked against the working area, and measured.
Rendering to text happens in :meth:`MotionProgram.to_lines`; the
instruction list is what gets persisted with a queued job.

Program layout::

    ; comment header
    G21                 units: mm
    G90                 absolute positioning
    F<feed>             modal feed
    G1 Z<up> F<feed>    pen up
    ... per path: G0 to start, pen down, G1 moves, pen up
    ... between layers: M0 ; change pen
    G1 Z<up> F<feed>    footer: pen up
    G0 X0 Y0            return to origin
    M2                  end of program

Feed rates are mm/min end to end.  Pen moves use the drawing feed so the
modal ``F`` word never changes under a ``G1`` draw.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from io import StringIO
from typing import Any, Sequence

from plotter_control.configs.loader import MachineConfig
from plotter_control.errors import NoDrawablePathsError, OutOfBoundsError
from plotter_control.geometry.paths import Path, Point
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

logger = logging.getLogger(__name__)

PREAMBLE = ("G21", "G90")
POSTAMBLE = ("M2",)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _f(rate: float) -> str:
    """``F`` word for a feed rate in mm/min."""
    return f"F{rate:g}"


def _c(value: float) -> str:
    return f"{value:.3f}"


def is_transmittable(line: str) -> bool:
    """True for lines that are sent to the device (not blank, not comment)."""
    stripped = line.strip()
    return bool(stripped) and not stripped.startswith(";")


def format_estimated_time(minutes: float) -> str:
    """Human-readable duration: ``"42s"`` under a minute, else ``"3.5 min"``."""
    if minutes < 1.0:
        return f"{round(minutes * 60.0)}s"
    return f"{minutes:.1f} min"


def optimize_path_order(
    paths: Sequence[Path],
    start: Point = Point(0.0, 0.0),
) -> list[Path]:
    """Greedy nearest-neighbour ordering by path start point.

    Starting at *start*, repeatedly pick the unvisited path whose first
    point is closest to the current pen position (the end of the last
    path).  Paths are never reversed.
    """
    remaining = list(paths)
    ordered: list[Path] = []
    pos = start
    while remaining:
        best = min(
            range(len(remaining)),
            key=lambda i: pos.distance_to(remaining[i].start),
        )
        path = remaining.pop(best)
        ordered.append(path)
        pos = path.end
    return ordered


# ---------------------------------------------------------------------------
# Program
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProgramStats:
    """Distances in mm, time in minutes."""

    path_count: int
    line_count: int
    drawing_distance: float
    move_distance: float
    estimated_time: float

    @property
    def total_distance(self) -> float:
        return self.drawing_distance + self.move_distance

    def to_dict(self) -> dict[str, Any]:
        return {
            "pathCount": self.path_count,
            "lineCount": self.line_count,
            "drawingDistance": round(self.drawing_distance, 2),
            "moveDistance": round(self.move_distance, 2),
            "totalDistance": round(self.total_distance, 2),
            "estimatedTime": round(self.estimated_time, 2),
            "estimatedTimeText": format_estimated_time(self.estimated_time),
        }


@dataclass
class MotionProgram:
    """Ordered instructions plus what is needed to render them.

    ``instructions`` exclude the fixed preamble (G21/G90) and postamble
    (M2); :meth:`to_lines` adds them.
    """

    instructions: list[Instruction]
    feed_rate: float
    pen_up_z: float
    pen_down_z: float
    header: tuple[str, ...] = ()
    stats: ProgramStats | None = None

    # -- rendering --------------------------------------------------------

    def render_instruction(self, instr: Instruction) -> str:
        if isinstance(instr, Move):
            return f"G0 X{_c(instr.x)} Y{_c(instr.y)}"
        if isinstance(instr, Draw):
            line = f"G1 X{_c(instr.x)} Y{_c(instr.y)}"
            if instr.feed is not None:
                line += f" {_f(instr.feed)}"
            return line
        if isinstance(instr, PenUp):
            return f"G1 Z{_c(self.pen_up_z)} {_f(self.feed_rate)}"
        if isinstance(instr, PenDown):
            return f"G1 Z{_c(self.pen_down_z)} {_f(self.feed_rate)}"
        if isinstance(instr, SetFeed):
            return _f(instr.rate)
        if isinstance(instr, Comment):
            return f"; {instr.text}"
        if isinstance(instr, ManualPause):
            return f"M0 ; {instr.message}" if instr.message else "M0"
        raise TypeError(f"Unsupported instruction: {type(instr).__name__}")

    def to_lines(self) -> list[str]:
        """Every rendered line, comments included."""
        lines = [f"; {h}" for h in self.header]
        lines.extend(PREAMBLE)
        lines.extend(self.render_instruction(i) for i in self.instructions)
        lines.extend(POSTAMBLE)
        return lines

    def to_text(self) -> str:
        """Newline-terminated program text."""
        buf = StringIO()
        for line in self.to_lines():
            buf.write(line)
            buf.write("\n")
        return buf.getvalue()

    def transmittable_lines(self) -> list[str]:
        return [line.strip() for line in self.to_lines() if is_transmittable(line)]

    # -- persistence ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "feedRate": self.feed_rate,
            "penUpZ": self.pen_up_z,
            "penDownZ": self.pen_down_z,
            "header": list(self.header),
            "instructions": [instruction_to_dict(i) for i in self.instructions],
            "stats": self.stats.to_dict() if self.stats else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MotionProgram:
        program = cls(
            instructions=[instruction_from_dict(d) for d in data["instructions"]],
            feed_rate=float(data["feedRate"]),
            pen_up_z=float(data["penUpZ"]),
            pen_down_z=float(data["penDownZ"]),
            header=tuple(data.get("header") or ()),
        )
        program.stats = measure_program(program)
        return program


def measure_program(program: MotionProgram, origin: Point = Point(0.0, 0.0)) -> ProgramStats:
    """Distance accounting over an instruction list.

    Every Move segment counts as travel, every Draw segment as drawing,
    both measured from the previous XY position (starting at *origin*).
    """
    pos = origin
    drawing = 0.0
    travel = 0.0
    paths = 0
    for instr in program.instructions:
        if isinstance(instr, Move):
            target = Point(instr.x, instr.y)
            travel += pos.distance_to(target)
            pos = target
        elif isinstance(instr, Draw):
            target = Point(instr.x, instr.y)
            drawing += pos.distance_to(target)
            pos = target
        elif isinstance(instr, PenDown):
            paths += 1

    line_count = sum(1 for line in program.to_lines() if is_transmittable(line))
    return ProgramStats(
        path_count=paths,
        line_count=line_count,
        drawing_distance=drawing,
        move_distance=travel,
        estimated_time=(drawing + travel) / program.feed_rate,
    )


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class MotionProgramGenerator:
    """Convert simplified paths to a :class:`MotionProgram`.

    Parameters
    ----------
    config : MachineConfig
        Validated machine configuration (work area, pen heights, feeds).
    feed_rate : float, optional
        Drawing feed (mm/min); defaults to ``motion.feed_rate_mm_min``.
    optimize_order : bool, optional
        Apply nearest-neighbour ordering within each layer; defaults to
        ``motion.optimize_order``.
    """

    def __init__(
        self,
        config: MachineConfig,
        feed_rate: float | None = None,
        optimize_order: bool | None = None,
    ) -> None:
        self._cfg = config
        self._feed = float(feed_rate if feed_rate is not None else config.motion.feed_rate_mm_min)
        if self._feed <= 0:
            raise ValueError(f"feed_rate must be positive, got {self._feed}")
        self._optimize = (
            config.motion.optimize_order if optimize_order is None else optimize_order
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def generate(self, paths: Sequence[Path], title: str = "") -> MotionProgram:
        """Program for a single-pen drawing.

        Raises
        ------
        NoDrawablePathsError
            If *paths* is empty.
        OutOfBoundsError
            If any commanded XY is outside the working area.
        """
        return self._build([(None, list(paths))], title)

    def generate_layers(self, layers: Sequence[Any], title: str = "") -> MotionProgram:
        """Program for color layers, with a pen-change pause between layers.

        *layers* are objects with ``color_name`` and ``paths`` (see
        :class:`plotter_control.layers.classifier.Layer`).
        """
        groups = [(layer.color_name, list(layer.paths)) for layer in layers if layer.paths]
        return self._build(groups, title)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _build(
        self,
        groups: list[tuple[str | None, list[Path]]],
        title: str,
    ) -> MotionProgram:
        groups = [(name, paths) for name, paths in groups if paths]
        if not groups:
            raise NoDrawablePathsError()

        instructions: list[Instruction] = [SetFeed(self._feed), PenUp()]
        pos = Point(0.0, 0.0)

        for index, (name, paths) in enumerate(groups):
            if name is not None:
                if index > 0:
                    instructions.append(ManualPause(f"Change pen to {name}"))
                instructions.append(Comment(f"Layer {index + 1}: {name} ({len(paths)} paths)"))
            if self._optimize:
                paths = optimize_path_order(paths, pos)
            for path in paths:
                instructions.extend(self._path_instructions(path))
                pos = path.end

        # footer
        instructions.append(PenUp())
        instructions.append(Move(0.0, 0.0))

        wa = self._cfg.work_area
        header = (
            f"Generated by plotter_control{': ' + title if title else ''}",
            f"Feed={self._feed:g} mm/min, Pen up={self._cfg.pen.up_z:g}, "
            f"Pen down={self._cfg.pen.down_z:g}, Area={wa.width_mm:g}x{wa.height_mm:g} mm",
        )
        program = MotionProgram(
            instructions=instructions,
            feed_rate=self._feed,
            pen_up_z=self._cfg.pen.up_z,
            pen_down_z=self._cfg.pen.down_z,
            header=header,
        )
        program.stats = measure_program(program)
        logger.info(
            "Generated program: %d paths, %d lines, %.1f mm draw, %.1f mm travel, ~%s",
            program.stats.path_count,
            program.stats.line_count,
            program.stats.drawing_distance,
            program.stats.move_distance,
            format_estimated_time(program.stats.estimated_time),
        )
        return program

    def _path_instructions(self, path: Path) -> list[Instruction]:
        for p in path.points:
            self._validate_xy(p.x, p.y)
        out: list[Instruction] = [Move(path.start.x, path.start.y), PenDown()]
        out.extend(Draw(p.x, p.y) for p in path.points[1:])
        out.append(PenUp())
        return out

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_xy(self, x: float, y: float) -> None:
        """Reject positions outside the working area.

        Raises
        ------
        OutOfBoundsError
            If either coordinate is out of bounds.
        """
        wa = self._cfg.work_area
        if not (math.isfinite(x) and math.isfinite(y)):
            raise OutOfBoundsError(f"Non-finite position ({x}, {y})")
        if x < 0 or x > wa.width_mm:
            raise OutOfBoundsError(
                f"X={x:.3f} mm outside work area [0, {wa.width_mm:.1f}]"
            )
        if y < 0 or y > wa.height_mm:
            raise OutOfBoundsError(
                f"Y={y:.3f} mm outside work area [0, {wa.height_mm:.1f}]"
            )


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def build_recovery_program(
    pen_up_z: float,
    feed_rate: float,
    pen_is_up: bool = False,
) -> list[str]:
    """Minimal safe sequence after an aborted job.

    Unlock the controller (``$X``), raise the pen unless it is already up,
    and travel back to the origin.  Returned as transmittable lines.
    """
    lines = ["$X"]
    if not pen_is_up:
        lines.append(f"G1 Z{_c(pen_up_z)} {_f(feed_rate)}")
    lines.append(f"G0 X0 Y0 {_f(feed_rate)}")
    return lines


def parse_program_text(text: str) -> list[str]:
    """Transmittable lines of an arbitrary program text, stripped."""
    return [line.strip() for line in text.splitlines() if is_transmittable(line)]
