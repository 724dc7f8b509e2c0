#!/usr/bin/env python3
"""
Run Job Script.

Build a motion program from a path file, traced outlines or text, then
print it, queue it, or stream it to the plotter.

Usage:
    python -m plotter_control.scripts.run_job --paths strokes.yaml --dry-run
    python -m plotter_control.scripts.run_job --paths outlines.json --image cat.png
    python -m plotter_control.scripts.run_job --text "HELLO" --font font.json --size 12
    python -m plotter_control.scripts.run_job --program job.gcode --port /dev/ttyUSB0
    python -m plotter_control.scripts.run_job --paths strokes.yaml --enqueue
    python -m plotter_control.scripts.run_job --process-queue
    python -m plotter_control.scripts.run_job --recover

Path files are YAML or JSON: either a list of point lists, or a mapping
``{"paths": [[[x, y], ...], ...]}``.  Points are source pixels; they are
fitted into the work area.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any, Callable

from PIL import Image

from plotter_control.configs.loader import ConfigError, MachineConfig, load_config
from plotter_control.errors import InputError, PlotterError
from plotter_control.gcode.generator import MotionProgram, format_estimated_time
from plotter_control.geometry.sources import TextSettings
from plotter_control.hardware.device_link import DeviceLink, StreamControl, program_lines
from plotter_control.hardware.events import (
    CompleteEvent,
    ErrorEvent,
    JobEvent,
    NotificationBus,
    PenChangeEvent,
    ProgressEvent,
    StatusEvent,
)
from plotter_control.jobs.job_queue import JobQueue, JobType, QueuePreconditionError
from plotter_control.jobs.persistence import QueueStore
from plotter_control.pipeline import build_drawing_job, build_image_job, build_text_job
from plotter_control.utils import fs
from plotter_control.utils.logging_config import install_excepthook, setup_from_config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


def load_path_file(path: str) -> list[Any]:
    """Point lists from a YAML / JSON path file."""
    data = fs.load_yaml(path)
    if isinstance(data, dict):
        data = data.get("paths")
    if not isinstance(data, list):
        raise InputError(f"{path}: expected a list of paths or a mapping with 'paths'")
    return data


def build_program(args: argparse.Namespace, config: MachineConfig) -> tuple[MotionProgram, JobType]:
    if args.text is not None:
        if not args.font:
            raise InputError("--text requires --font")
        settings = TextSettings(
            size=args.size,
            spacing=args.spacing,
            line_spacing=args.line_spacing,
            alignment=args.align,
        )
        font = fs.load_yaml(args.font)
        return build_text_job(args.text.replace("\\n", "\n"), font, config, settings), JobType.TEXT

    paths = load_path_file(args.paths)
    title = Path(args.paths).stem
    if args.image:
        with Image.open(args.image) as image:
            image.load()
            return build_image_job(paths, config, image=image, title=title), JobType.IMAGE
    return build_drawing_job(paths, config, title=title), JobType.DRAWING


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def print_event(event: Any) -> None:
    """Console progress for bus events."""
    percent = None
    if isinstance(event, JobEvent):
        percent, event = event.percent, event.event
    if isinstance(event, ProgressEvent):
        pct = percent if percent is not None else 100.0 * (event.current - 1) / event.total
        print(f"\rLine {event.current}/{event.total} ({pct:.1f}%)", end="", flush=True)
    elif isinstance(event, CompleteEvent):
        print(f"\nComplete: {event.total_lines} lines in {event.total_time_seconds:.1f}s")
    elif isinstance(event, ErrorEvent):
        print(f"\nError [{event.kind}]: {event.message}")
    elif isinstance(event, StatusEvent):
        print(f"\n{event.message}")


def operator_prompt(resume: Callable[[], None]) -> Callable[[Any], None]:
    """Listener that waits for Enter at each pen change, then resumes.

    Queue runs also relay the change wrapped in a ``JobEvent``; only the
    bare event prompts.
    """
    def on_event(event: Any) -> None:
        if isinstance(event, PenChangeEvent):
            input(f"\n{event.message}. Press Enter to continue... ")
            resume()
    return on_event


def print_stats(program: MotionProgram) -> None:
    stats = program.stats
    if stats is None:
        return
    print(
        f"Paths: {stats.path_count}  Lines: {stats.line_count}  "
        f"Draw: {stats.drawing_distance:.1f} mm  Travel: {stats.move_distance:.1f} mm  "
        f"Time: ~{format_estimated_time(stats.estimated_time)}"
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_queue(config: MachineConfig, bus: NotificationBus) -> int:
    """Process every pending job over one persistent connection."""
    link = DeviceLink.from_config(config, bus=bus)
    box = DeviceLink.auxiliary_from_config(config, bus=bus) if config.auxiliary.enabled else None
    queue = JobQueue(link, box, QueueStore.from_config(config), bus=bus)
    bus.subscribe(operator_prompt(queue.resume))
    failed = 0
    try:
        link.open()
        if box is not None:
            box.open()
        while queue.status_summary()["pending"]:
            job = queue.process_next()
            if job.error:
                failed += 1
                print(f"\nJob {job.id} failed: {job.error}")
    except QueuePreconditionError as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        link.close()
        if box is not None:
            box.close()
    return 1 if failed else 0


def stream(config: MachineConfig, bus: NotificationBus, program: Any) -> None:
    """Send one program directly, pausing at each pen change for the operator."""
    control = StreamControl()
    DeviceLink.from_config(config, bus=bus).send_program(
        program, control, listener=operator_prompt(control.resume),
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Build, queue or stream a plotter job",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--port",
        type=str,
        help="Serial port override",
    )

    # Job source
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--paths", "-p", type=str, help="YAML/JSON path file")
    source.add_argument("--text", "-t", type=str, help="Text to write (\\n for new lines)")
    source.add_argument("--program", type=str, help="Existing program file to send")
    source.add_argument("--recover", action="store_true", help="Unlock, pen up, return home")
    source.add_argument("--process-queue", action="store_true", help="Run all pending queued jobs")

    # Source options
    parser.add_argument("--image", type=str, help="Source raster for color layers (with --paths)")
    parser.add_argument("--font", type=str, help="Glyph font file (with --text)")
    parser.add_argument("--size", type=float, default=10.0, help="Text size in mm")
    parser.add_argument("--spacing", type=float, default=2.0, help="Letter spacing in mm")
    parser.add_argument("--line-spacing", type=float, default=1.5, help="Line spacing multiplier")
    parser.add_argument("--align", choices=("left", "center", "right"), default="left")

    # Execution mode
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the program and its stats, don't send",
    )
    parser.add_argument("--output", "-o", type=str, help="Also write the program text here")
    parser.add_argument(
        "--enqueue",
        action="store_true",
        help="Add the job to the persistent queue instead of sending it",
    )

    args = parser.parse_args()

    # Load config
    try:
        config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error loading config: {e}")
        sys.exit(1)
    if args.port:
        config = dataclasses.replace(
            config, connection=dataclasses.replace(config.connection, port=args.port),
        )

    setup_from_config(config.logging, app="run_job")
    install_excepthook()

    bus = NotificationBus()
    bus.subscribe(print_event)

    try:
        if args.recover:
            link = DeviceLink.from_config(config, bus=bus)
            link.recover()
            return

        if args.process_queue:
            sys.exit(run_queue(config, bus))

        if args.program:
            with open(args.program, "r", encoding="utf-8") as f:
                lines = program_lines(f.read())
            if args.dry_run:
                print("\n".join(lines))
                print(f"{len(lines)} lines")
                return
            stream(config, bus, lines)
            return

        program, job_type = build_program(args, config)
        print_stats(program)
        if args.output:
            fs.atomic_write_text(args.output, program.to_text())
            print(f"Program written to: {args.output}")

        if args.dry_run:
            print("\n--- Program ---")
            print(program.to_text(), end="")
            print("--- End program ---")
            return

        if args.enqueue:
            link = DeviceLink.from_config(config, bus=bus)
            queue = JobQueue(link, store=QueueStore.from_config(config), bus=bus)
            name = Path(args.paths).stem if args.paths else args.text[:32]
            job = queue.enqueue(program, job_type, name=name)
            print(f"Queued job {job.id} ({len(queue)} in queue)")
            return

        stream(config, bus, program)

    except KeyboardInterrupt:
        print("\nJob interrupted.")
        sys.exit(1)
    except PlotterError as e:
        print(f"\nError [{e.code}]: {e}")
        logger.debug("Job failed", exc_info=True)
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(f"\nError: {e}")
        logger.exception("Job failed")
        sys.exit(1)


if __name__ == "__main__":
    main()
