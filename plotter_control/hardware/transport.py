"""Line-oriented serial transport.

:class:`SerialTransport` wraps a pyserial port: bytes in, text lines out.
The device link talks only to the :class:`Transport` interface, so tests
swap in a scripted fake without touching a real port.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable

import serial

logger = logging.getLogger(__name__)


class TransportError(OSError):
    """Port-level failure (open, write, read, or device unplugged)."""

    pass


class Transport(ABC):
    """Minimal half-duplex line transport."""

    @abstractmethod
    def open(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def write_line(self, line: str) -> None:
        """Write *line* plus a newline terminator."""

    @abstractmethod
    def readline(self, timeout: float) -> str | None:
        """Next complete inbound line (stripped), or None on timeout."""

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    def is_alive(self) -> bool:
        """Health probe; defaults to :attr:`is_open`."""
        return self.is_open


TransportFactory = Callable[[str, int], Transport]


class SerialTransport(Transport):
    """pyserial-backed transport.

    Parameters
    ----------
    port : str
        Device path (``/dev/ttyUSB0``, ``COM3``).
    baud_rate : int
        Line speed.
    write_timeout : float
        Seconds before a blocked write fails.
    """

    def __init__(self, port: str, baud_rate: int, write_timeout: float = 0.5) -> None:
        self.port = port
        self.baud_rate = baud_rate
        self.write_timeout = write_timeout
        self._ser: serial.Serial | None = None
        self._buf = b""
        self._write_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        try:
            self._ser = serial.Serial(
                self.port,
                baudrate=self.baud_rate,
                timeout=0.1,
                write_timeout=self.write_timeout,
            )
        except (serial.SerialException, ValueError) as exc:
            raise TransportError(f"Cannot open {self.port}: {exc}") from exc

        # Some boards reset on DTR; keep the lines low where supported.
        try:
            self._ser.dtr = False
            self._ser.rts = False
        except (serial.SerialException, OSError) as exc:
            logger.debug("DTR/RTS not supported on %s: %s", self.port, exc)

        try:
            self._ser.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            logger.debug("Input buffer reset failed on %s: %s", self.port, exc)
        self._buf = b""
        logger.info("Opened %s @ %d baud", self.port, self.baud_rate)

    def close(self) -> None:
        ser, self._ser = self._ser, None
        self._buf = b""
        if ser is None:
            return
        try:
            ser.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning("Error closing %s: %s", self.port, exc)
        logger.info("Closed %s", self.port)

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def is_alive(self) -> bool:
        """Probe the port; unplugged USB adapters fail on ``in_waiting``."""
        if not self.is_open:
            return False
        try:
            self._ser.in_waiting  # noqa: B018
        except (serial.SerialException, OSError):
            return False
        return True

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write_line(self, line: str) -> None:
        if self._ser is None:
            raise TransportError(f"{self.port} is not open")
        payload = (line.rstrip("\r\n") + "\n").encode("ascii", errors="replace")
        try:
            with self._write_lock:
                self._ser.write(payload)
                self._ser.flush()
        except (serial.SerialException, serial.SerialTimeoutException, OSError) as exc:
            raise TransportError(f"Write to {self.port} failed: {exc}") from exc

    def readline(self, timeout: float) -> str | None:
        deadline = time.monotonic() + timeout
        while True:
            if b"\n" in self._buf:
                raw, self._buf = self._buf.split(b"\n", 1)
                text = raw.decode("utf-8", errors="replace").strip()
                if text:
                    return text
                continue
            if time.monotonic() >= deadline:
                return None
            ser = self._ser
            if ser is None:
                raise TransportError(f"{self.port} is not open")
            try:
                # whatever is buffered, else block for one byte up to the port timeout
                chunk = ser.read(ser.in_waiting or 1)
            except (serial.SerialException, OSError) as exc:
                raise TransportError(f"Read from {self.port} failed: {exc}") from exc
            if chunk:
                self._buf += chunk


def serial_transport_factory(port: str, baud_rate: int) -> Transport:
    return SerialTransport(port, baud_rate)
