"""Ack-paced streaming link to a GRBL pen plotter.

Handles:
    - Opening the serial port (transient per send, or persistent)
    - A settle delay after opening (the controller resets on port open)
    - Strict one-line-in-flight streaming: write a line, wait for an ack
    - Pause / resume / cancel between lines through :class:`StreamControl`
    - Pen changes (``M0`` lines) held as an engine pause, never sent
    - Mid-stream disconnect detection (reader failure or health poll)
    - Recovery data: last acknowledged line and last commanded position
    - A single-command channel that shares the wire with streaming

Threads per open connection:
    reader   dispatches inbound lines to the active stream / command
    health   polls the transport and fires link-closed into the stream

The send loop runs in the caller's thread.  All timings come from
``MachineConfig.connection``.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Iterable, Sequence

from plotter_control.configs.loader import ConnectionConfig, MachineConfig
from plotter_control.errors import InputError, PlotterError
from plotter_control.gcode.generator import (
    MotionProgram,
    build_recovery_program,
    is_transmittable,
)
from plotter_control.hardware.events import (
    CompleteEvent,
    ErrorEvent,
    LogEvent,
    NotificationBus,
    PenChangeEvent,
    ProgressEvent,
    StatusEvent,
)
from plotter_control.hardware.transport import (
    TransportError,
    TransportFactory,
    serial_transport_factory,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DeviceLinkError(PlotterError):
    """Base exception for all device link errors."""

    code = "device_error"


class DeviceConnectionError(DeviceLinkError):
    """The port could not be opened."""

    code = "connection_failed"


class DeviceWriteError(DeviceLinkError):
    """A line could not be written; the stream is aborted."""

    code = "write_failed"


class DeviceDisconnected(DeviceLinkError):
    """The link dropped mid-operation."""

    code = "disconnected"


class AckTimeout(DeviceLinkError):
    """No acknowledgment arrived within ``ack_timeout_s``."""

    code = "ack_timeout"


class StreamCancelled(DeviceLinkError):
    """The stream was cancelled or superseded by a newer send."""

    code = "cancelled"


class LinkBusy(DeviceLinkError):
    """Another operation holds the wire."""

    code = "link_busy"


# ---------------------------------------------------------------------------
# Inbound line classification
# ---------------------------------------------------------------------------

_CORRUPTION = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\ufffd]|\?{3,}")
_AXIS_WORD = re.compile(r"([XYZ])\s*(-?\d+(?:\.\d*)?|-?\.\d+)")
_MANUAL_PAUSE = re.compile(r"^M0?0(?![0-9])\s*(?:;\s*(.*))?$", re.IGNORECASE)

AckPredicate = Callable[[str], bool]


def default_is_ack(line: str) -> bool:
    """GRBL replies ``ok``; some firmware builds answer ``done``."""
    low = line.lower()
    return "ok" in low or "done" in low


def is_corrupted(line: str) -> bool:
    """Control characters or ``???`` runs indicate line noise."""
    return bool(_CORRUPTION.search(line))


def parse_axis_words(line: str) -> dict[str, float]:
    """``"G1 X10 Y-2.5 F1500"`` -> ``{"x": 10.0, "y": -2.5}``."""
    code = line.split(";", 1)[0].upper()
    return {axis.lower(): float(value) for axis, value in _AXIS_WORD.findall(code)}


def manual_pause_message(line: str) -> str | None:
    """Operator message of an ``M0`` line, or None for any other line."""
    match = _MANUAL_PAUSE.match(line.strip())
    if match is None:
        return None
    return (match.group(1) or "").strip() or "Manual pause"


def program_lines(program: MotionProgram | str | Iterable[str]) -> list[str]:
    """Transmittable, stripped lines of a program in any accepted form."""
    if isinstance(program, MotionProgram):
        raw: Iterable[str] = program.to_lines()
    elif isinstance(program, str):
        raw = program.splitlines()
    else:
        raw = program
    return [line.strip() for line in raw if is_transmittable(line)]


# ---------------------------------------------------------------------------
# Connection state
# ---------------------------------------------------------------------------


class LinkState(Enum):
    DISCONNECTED = auto()
    OPENING = auto()
    OPEN = auto()
    SENDING = auto()


@dataclass
class DeviceConnection:
    """Port identity plus the recovery data of the last stream.

    ``last_position`` and ``last_successful_line`` survive a disconnect;
    only a successful recovery or a fresh send resets them.

    ``pen_confirmed_up`` is true only when the last Z the device
    acknowledged was pen-up and no Z move has been written since.  A fresh
    process starts with it false: the pen height is unknown.
    """

    port: str
    baud_rate: int
    is_open: bool = False
    last_position: dict[str, float] = field(
        default_factory=lambda: {"x": 0.0, "y": 0.0, "z": 0.0}
    )
    last_successful_line: int = 0
    is_drawing: bool = False
    pen_confirmed_up: bool = False


@dataclass(frozen=True)
class StreamResult:
    total_lines: int
    total_time_s: float


# ---------------------------------------------------------------------------
# Stream control token
# ---------------------------------------------------------------------------


class StreamControl:
    """Pause / resume / cancel for one stream, checked between lines.

    A paused stream finishes the line already in flight, then waits.
    Cancel wakes a paused stream and aborts one awaiting an ack.
    """

    def __init__(self) -> None:
        self._running = threading.Event()
        self._running.set()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._on_cancel: Callable[[], None] | None = None

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._running.set()
        with self._lock:
            hook = self._on_cancel
        if hook is not None:
            hook()

    def wait_if_paused(
        self,
        abort: Callable[[], bool] | None = None,
        poll_s: float = 0.1,
    ) -> None:
        """Block while paused; returns early on cancel or when *abort* is true."""
        while not self._running.wait(poll_s):
            if self._cancelled.is_set() or (abort is not None and abort()):
                return

    def _bind(self, hook: Callable[[], None] | None) -> None:
        with self._lock:
            self._on_cancel = hook


# ---------------------------------------------------------------------------
# Stream session state machine
# ---------------------------------------------------------------------------


class SessionState(Enum):
    IDLE = auto()
    SENDING = auto()
    AWAITING_ACK = auto()
    CLOSED = auto()


class StreamSession:
    """One send-program operation.

    Driven by the ``send_next`` command and two events: ``on_inbound``
    (a line that may be an ack) and ``on_link_closed``.  Only a session
    in ``AWAITING_ACK`` advances on an ack; acks seen in any other state
    are reported back as not consumed.
    """

    def __init__(
        self,
        lines: Sequence[str],
        is_ack: AckPredicate = default_is_ack,
        on_ack: Callable[[int, str], None] | None = None,
    ) -> None:
        self.lines = list(lines)
        self.is_ack = is_ack
        self._on_ack = on_ack
        self._cond = threading.Condition()
        self.state = SessionState.IDLE
        self.acked = 0
        self._error: DeviceLinkError | None = None

    @property
    def total(self) -> int:
        return len(self.lines)

    @property
    def done(self) -> bool:
        return self.acked >= self.total

    @property
    def error(self) -> DeviceLinkError | None:
        return self._error

    def send_next(self, write: Callable[[str], None], ack_timeout: float) -> str:
        """Write the next line and block until it is acknowledged.

        Raises
        ------
        DeviceWriteError
            If *write* fails.
        AckTimeout
            If no ack arrives within *ack_timeout* seconds.
        DeviceLinkError
            The reason the session was closed (disconnect, cancel).
        """
        with self._cond:
            if self.state is SessionState.CLOSED:
                raise self._error or StreamCancelled("Stream closed")
            if self.done:
                raise IndexError("No lines left to send")
            line = self.lines[self.acked]
            self.state = SessionState.SENDING
            try:
                write(line)
            except (TransportError, OSError) as exc:
                self._close(DeviceWriteError(f"Write failed on line {self.acked + 1}: {exc}"))
                raise self._error from exc
            if self.state is SessionState.CLOSED:
                # closed from inside write (cancel hook on this thread)
                raise self._error
            self.state = SessionState.AWAITING_ACK

            acked = self._cond.wait_for(
                lambda: self.state is not SessionState.AWAITING_ACK,
                timeout=ack_timeout,
            )
            if self.state is SessionState.CLOSED:
                raise self._error
            if not acked:
                self._close(AckTimeout(
                    f"No ack for line {self.acked + 1} ({line!r}) within {ack_timeout:g}s"
                ))
                raise self._error
            return line

    def handle_locally(self) -> str:
        """Count the next line as done without transmitting it."""
        with self._cond:
            if self.state is SessionState.CLOSED:
                raise self._error or StreamCancelled("Stream closed")
            if self.done:
                raise IndexError("No lines left to send")
            line = self.lines[self.acked]
            self.acked += 1
            if self._on_ack is not None:
                self._on_ack(self.acked, line)
            return line

    def on_inbound(self, line: str) -> bool:
        """Feed one inbound line; True when it acknowledged the pending line."""
        with self._cond:
            if self.state is not SessionState.AWAITING_ACK or not self.is_ack(line):
                return False
            self.acked += 1
            if self._on_ack is not None:
                self._on_ack(self.acked, self.lines[self.acked - 1])
            self.state = SessionState.IDLE
            self._cond.notify_all()
            return True

    def on_link_closed(self, error: DeviceLinkError) -> None:
        with self._cond:
            self._close(error)

    def _close(self, error: DeviceLinkError) -> None:
        if self.state is SessionState.CLOSED:
            return
        self._error = error
        self.state = SessionState.CLOSED
        self._cond.notify_all()


class _CommandCollector:
    """Gathers inbound lines for a single command until ack or window end."""

    def __init__(self, is_ack: AckPredicate) -> None:
        self.is_ack = is_ack
        self.lines: list[str] = []
        self.acked = threading.Event()

    def feed(self, line: str) -> None:
        self.lines.append(line)
        if self.is_ack(line):
            self.acked.set()


# ---------------------------------------------------------------------------
# Device link
# ---------------------------------------------------------------------------


class DeviceLink:
    """Serial link to one device.

    Parameters
    ----------
    config : ConnectionConfig
        Port, baud rate and timings.
    bus : NotificationBus, optional
        Receives status / progress / log / complete / error events.
    transport_factory : callable, optional
        ``(port, baud) -> Transport``; defaults to pyserial.
    is_ack : callable, optional
        Ack predicate for inbound lines.
    pen_up_z, recovery_feed : float
        Used to synthesise the recovery program.
    name : str
        Short label for logs (``"cnc"``, ``"box"``).

    Examples
    --------
    >>> link = DeviceLink.from_config(load_config())
    >>> link.send_program(program)            # transient: opens, streams, closes
    >>> link.open(); link.send_command("$X")  # persistent
    """

    def __init__(
        self,
        config: ConnectionConfig,
        bus: NotificationBus | None = None,
        transport_factory: TransportFactory | None = None,
        is_ack: AckPredicate | None = None,
        pen_up_z: float = -2.3,
        recovery_feed: float = 1500.0,
        name: str = "cnc",
    ) -> None:
        self._cfg = config
        self.bus = bus if bus is not None else NotificationBus()
        self._factory = transport_factory or serial_transport_factory
        self.is_ack = is_ack or default_is_ack
        self.pen_up_z = pen_up_z
        self.recovery_feed = recovery_feed
        self.name = name

        self.connection = DeviceConnection(port=config.port, baud_rate=config.baud_rate)
        self.connection.last_position["z"] = pen_up_z
        self.state = LinkState.DISCONNECTED

        self._transport = None
        self._persistent = False
        self._state_lock = threading.RLock()
        self._wire = threading.Lock()
        self._stop = threading.Event()
        self._reader: threading.Thread | None = None
        self._health: threading.Thread | None = None

        self._session: StreamSession | None = None
        self._collector: _CommandCollector | None = None
        self._t0 = time.monotonic()

    @classmethod
    def from_config(
        cls,
        cfg: MachineConfig,
        bus: NotificationBus | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> DeviceLink:
        return cls(
            cfg.connection,
            bus=bus,
            transport_factory=transport_factory,
            pen_up_z=cfg.pen.up_z,
            recovery_feed=cfg.motion.recovery_feed_mm_min,
        )

    @classmethod
    def auxiliary_from_config(
        cls,
        cfg: MachineConfig,
        bus: NotificationBus | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> DeviceLink:
        """Link to the auxiliary (paper box) controller."""
        conn = ConnectionConfig(
            port=cfg.auxiliary.port,
            baud_rate=cfg.auxiliary.baud_rate,
            settle_s=cfg.connection.settle_s,
            ack_timeout_s=cfg.connection.ack_timeout_s,
            completion_grace_s=cfg.connection.completion_grace_s,
            health_interval_s=cfg.connection.health_interval_s,
            reopen_delay_s=cfg.connection.reopen_delay_s,
            command_response_window_s=cfg.connection.command_response_window_s,
        )
        return cls(conn, bus=bus, transport_factory=transport_factory, name="box")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.connection.is_open

    @property
    def is_streaming(self) -> bool:
        return self._session is not None

    def _elapsed_ms(self) -> int:
        return int((time.monotonic() - self._t0) * 1000)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open a persistent connection (kept open across operations).

        Raises
        ------
        DeviceConnectionError
            If the port cannot be opened.
        """
        with self._state_lock:
            self._persistent = True
            if self.connection.is_open:
                return
            self._open_transport()

    def close(self) -> None:
        """Close the connection and leave persistent mode."""
        with self._state_lock:
            self._persistent = False
        if self._session is not None:
            self._session.on_link_closed(DeviceDisconnected("Link closed by request"))
        self._close_transport("closed")

    def _open_transport(self) -> None:
        self.state = LinkState.OPENING
        transport = self._factory(self._cfg.port, self._cfg.baud_rate)
        try:
            transport.open()
        except (TransportError, OSError, ValueError) as exc:
            self.state = LinkState.DISCONNECTED
            self._publish(ErrorEvent(
                f"Failed to open {self._cfg.port}: {exc}",
                self._elapsed_ms(), DeviceConnectionError.code,
            ))
            raise DeviceConnectionError(
                f"Failed to open {self._cfg.port}: {exc}"
            ) from exc

        self._transport = transport
        self._stop = threading.Event()
        self.connection.is_open = True
        self.state = LinkState.OPEN

        self._reader = threading.Thread(
            target=self._reader_loop, args=(transport, self._stop),
            name=f"{self.name}-reader", daemon=True,
        )
        self._health = threading.Thread(
            target=self._health_loop, args=(transport, self._stop),
            name=f"{self.name}-health", daemon=True,
        )
        self._reader.start()
        self._health.start()

        logger.info("[%s] Connected to %s", self.name, self._cfg.port)
        self._publish(StatusEvent(f"Connected to {self._cfg.port}", self._elapsed_ms()))

        if self._cfg.settle_s > 0:
            logger.debug("[%s] Waiting %.1fs for controller reset", self.name, self._cfg.settle_s)
            time.sleep(self._cfg.settle_s)

    def _close_transport(self, reason: str) -> None:
        with self._state_lock:
            transport, self._transport = self._transport, None
            self._stop.set()
            was_open = self.connection.is_open
            self.connection.is_open = False
            self.connection.is_drawing = False
            self.state = LinkState.DISCONNECTED
        if transport is not None:
            try:
                transport.close()
            except (TransportError, OSError) as exc:
                logger.warning("[%s] Error closing port: %s", self.name, exc)
        current = threading.current_thread()
        for thread in (self._reader, self._health):
            if thread is not None and thread is not current and thread.is_alive():
                thread.join(timeout=1.0)
        if was_open:
            logger.info("[%s] Link %s", self.name, reason)
            self._publish(StatusEvent(f"Link {reason}", self._elapsed_ms()))

    def _link_lost(self, transport: Any, detail: str) -> None:
        """Reader or health thread saw the device vanish."""
        with self._state_lock:
            if transport is not self._transport:
                return
        error = DeviceDisconnected(
            f"Device disconnected: {detail} "
            f"(last acknowledged line {self.connection.last_successful_line})"
        )
        logger.error("[%s] %s", self.name, error)
        self._publish(ErrorEvent(str(error), self._elapsed_ms(), error.code))
        session = self._session
        if session is not None:
            session.on_link_closed(error)
        self._close_transport("lost")

    # ------------------------------------------------------------------
    # Background threads
    # ------------------------------------------------------------------

    def _reader_loop(self, transport: Any, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                line = transport.readline(0.1)
            except (TransportError, OSError) as exc:
                if not stop.is_set():
                    self._link_lost(transport, f"read failed: {exc}")
                return
            if line:
                self._dispatch_inbound(line)

    def _health_loop(self, transport: Any, stop: threading.Event) -> None:
        while not stop.wait(self._cfg.health_interval_s):
            if not transport.is_alive():
                self._link_lost(transport, "health check failed")
                return

    def _dispatch_inbound(self, line: str) -> None:
        session = self._session
        index = session.acked if session is not None else 0

        if is_corrupted(line):
            logger.warning("[%s] Corrupted data received (check USB cable): %r", self.name, line)
            self._publish(LogEvent(
                f"Corrupted data received: {line!r}", self._elapsed_ms(), index, "warning",
            ))
            return

        if line.lower().startswith("error:"):
            logger.warning("[%s] Device error after line %d: %s", self.name, index, line)
            self._publish(LogEvent(line, self._elapsed_ms(), index, "warning"))
        else:
            logger.debug("[%s] << %s", self.name, line)
            self._publish(LogEvent(line, self._elapsed_ms(), index))

        collector = self._collector
        if collector is not None:
            collector.feed(line)
        if session is not None and not session.on_inbound(line) and self.is_ack(line):
            logger.debug("[%s] Ack while not awaiting one: %s", self.name, line)

    def _on_line_acked(self, number: int, line: str) -> None:
        words = parse_axis_words(line)
        with self._state_lock:
            self.connection.last_successful_line = number
            self.connection.last_position.update(words)
            if "z" in words:
                self.connection.pen_confirmed_up = self._is_pen_up(words["z"])

    def _write(self, transport: Any, line: str) -> None:
        # a Z move in flight leaves the pen height unknown until its ack
        if "z" in parse_axis_words(line):
            with self._state_lock:
                self.connection.pen_confirmed_up = False
        transport.write_line(line)

    def _is_pen_up(self, z: float) -> bool:
        return abs(float(z) - self.pen_up_z) < 1e-6

    def _publish(self, event: Any) -> None:
        self.bus.publish(event)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def send_program(
        self,
        program: MotionProgram | str | Iterable[str],
        control: StreamControl | None = None,
        listener: Callable[[Any], None] | None = None,
    ) -> StreamResult:
        """Stream a program one acknowledged line at a time.

        Parameters
        ----------
        program : MotionProgram | str | iterable of str
            Program to send; blank and ``;`` comment lines are skipped.
        control : StreamControl, optional
            Pause / resume / cancel token checked between lines.
        listener : callable, optional
            Receives every event of this stream in addition to the bus.

        Returns
        -------
        StreamResult
            Line count and wall time.

        Raises
        ------
        InputError
            If the program has no transmittable lines.
        DeviceConnectionError, DeviceWriteError, DeviceDisconnected,
        AckTimeout, StreamCancelled
            On the corresponding failure; the link is closed.
        """
        lines = program_lines(program)
        if not lines:
            raise InputError("Program has no transmittable lines")
        control = control if control is not None else StreamControl()

        superseded = self._supersede_active()
        if not self._wire.acquire(timeout=self._cfg.ack_timeout_s + 1.0):
            raise LinkBusy("Another operation holds the link")

        session = StreamSession(lines, self.is_ack, self._on_line_acked)
        emit = self._emitter(listener)
        try:
            with self._state_lock:
                self._session = session
                self.connection.last_successful_line = 0
            control._bind(lambda: session.on_link_closed(StreamCancelled("Stream cancelled")))

            transient = False
            if not self.connection.is_open:
                if superseded and self._cfg.reopen_delay_s > 0:
                    time.sleep(self._cfg.reopen_delay_s)
                self._open_transport()
                transient = not self._persistent

            return self._stream(session, control, emit, transient)
        finally:
            control._bind(None)
            with self._state_lock:
                if self._session is session:
                    self._session = None
            self._wire.release()

    def _supersede_active(self) -> bool:
        session = self._session
        if session is None:
            return False
        logger.warning("[%s] New send requested; closing the active stream", self.name)
        session.on_link_closed(StreamCancelled("Superseded by a new send"))
        return True

    def _emitter(self, listener: Callable[[Any], None] | None) -> Callable[[Any], None]:
        def emit(event: Any, to_bus: bool = True) -> None:
            if to_bus:
                self._publish(event)
            if listener is not None:
                try:
                    listener(event)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Stream listener error: %s", exc)
        return emit

    def _stream(
        self,
        session: StreamSession,
        control: StreamControl,
        emit: Callable[[Any], None],
        transient: bool,
    ) -> StreamResult:
        self._t0 = time.monotonic()
        started = self._t0
        total = session.total
        transport = self._transport
        self.state = LinkState.SENDING
        self.connection.is_drawing = True
        logger.info("[%s] Streaming %d lines (%s)", self.name, total,
                    "transient" if transient else "persistent")
        emit(StatusEvent(f"Sending {total} lines", self._elapsed_ms()))

        try:
            while not session.done:
                if control.is_paused:
                    emit(StatusEvent("Paused", self._elapsed_ms()))
                    control.wait_if_paused(lambda: session.state is SessionState.CLOSED)
                    if not control.is_cancelled:
                        emit(StatusEvent("Resumed", self._elapsed_ms()))
                if control.is_cancelled:
                    session.on_link_closed(StreamCancelled("Stream cancelled"))

                if session.state is not SessionState.CLOSED:
                    next_line = session.lines[session.acked]
                    emit(ProgressEvent(session.acked + 1, total, next_line, self._elapsed_ms()))
                    message = manual_pause_message(next_line)
                    if message is not None:
                        # held here rather than on the device: M0 never acks
                        session.handle_locally()
                        control.pause()
                        logger.info("[%s] Waiting for operator: %s", self.name, message)
                        emit(PenChangeEvent(message, self._elapsed_ms()))
                        continue
                session.send_next(lambda line: self._write(transport, line), self._cfg.ack_timeout_s)

        except DeviceLinkError as exc:
            if not isinstance(exc, DeviceDisconnected):
                logger.error("[%s] Stream aborted: %s", self.name, exc)
                emit(ErrorEvent(str(exc), self._elapsed_ms(), exc.code))
                self._close_transport("closed after failure")
            else:
                # already on the bus from the reader / health thread
                emit(ErrorEvent(str(exc), self._elapsed_ms(), exc.code), to_bus=False)
            raise

        total_time = time.monotonic() - started
        self.connection.is_drawing = False
        self.state = LinkState.OPEN
        logger.info("[%s] Program complete: %d lines in %.1fs", self.name, total, total_time)
        emit(CompleteEvent(total, round(total_time, 3), self._elapsed_ms()))

        if transient:
            if self._cfg.completion_grace_s > 0:
                time.sleep(self._cfg.completion_grace_s)
            self._close_transport("closed")
        return StreamResult(total, total_time)

    # ------------------------------------------------------------------
    # Single command channel
    # ------------------------------------------------------------------

    def send_command(self, command: str, response_window_s: float | None = None) -> list[str]:
        """Send one line and collect the replies.

        Replies are gathered until an ack or the response window ends.
        A link that is not open is opened for this command only.

        Raises
        ------
        LinkBusy
            If a program stream (or another command) holds the wire.
        """
        command = command.strip()
        if not command:
            raise InputError("Empty command")
        if not self._wire.acquire(blocking=False):
            raise LinkBusy("Cannot send a command while a program is streaming")

        window = response_window_s if response_window_s is not None else self._cfg.command_response_window_s
        collector = _CommandCollector(self.is_ack)
        transient = False
        try:
            if not self.connection.is_open:
                self._open_transport()
                transient = not self._persistent
            self._collector = collector
            logger.info("[%s] >> %s", self.name, command)
            try:
                self._write(self._transport, command)
            except (TransportError, OSError) as exc:
                error = DeviceWriteError(f"Write failed for {command!r}: {exc}")
                self._publish(ErrorEvent(str(error), self._elapsed_ms(), error.code))
                self._close_transport("closed after failure")
                raise error from exc
            collector.acked.wait(window)
            return list(collector.lines)
        finally:
            self._collector = None
            if transient and self.connection.is_open:
                self._close_transport("closed")
            self._wire.release()

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def get_last_position(self) -> dict[str, Any]:
        """Recovery data of the last stream."""
        with self._state_lock:
            pos = dict(self.connection.last_position)
            return {
                "x": pos.get("x", 0.0),
                "y": pos.get("y", 0.0),
                "z": pos.get("z", self.pen_up_z),
                "lastSuccessfulLine": self.connection.last_successful_line,
                "isDrawing": self.connection.is_drawing,
            }

    def recover(self, position: dict[str, float] | None = None) -> StreamResult:
        """Bring the tool back to a safe state after an aborted job.

        Sends unlock, pen up and a return to origin, then resets the
        recovery data.  The aborted job is not resumed.

        The pen-up line is skipped only when the pen is confirmed up: the
        device acknowledged a pen-up Z and no Z move was written after it,
        or the caller passes a *position* whose ``z`` is pen-up.
        """
        if position is not None:
            pos = position
            pen_is_up = self._is_pen_up(pos.get("z", 0.0))
        else:
            pos = self.get_last_position()
            with self._state_lock:
                pen_is_up = self.connection.pen_confirmed_up
        lines = build_recovery_program(self.pen_up_z, self.recovery_feed, pen_is_up=pen_is_up)
        logger.warning(
            "[%s] Recovery from (%.2f, %.2f, %.2f): %s",
            self.name, pos.get("x", 0.0), pos.get("y", 0.0), pos.get("z", 0.0),
            " | ".join(lines),
        )
        result = self.send_program(lines)
        with self._state_lock:
            self.connection.last_position = {"x": 0.0, "y": 0.0, "z": self.pen_up_z}
            self.connection.last_successful_line = 0
            self.connection.is_drawing = False
            self.connection.pen_confirmed_up = True
        self._publish(StatusEvent("Recovery complete", self._elapsed_ms()))
        return result
