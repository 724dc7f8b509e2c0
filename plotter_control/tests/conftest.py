"""Shared fixtures: a scripted fake device and a fast machine config."""

from __future__ import annotations

import queue
from typing import Any, Callable

import pytest

from plotter_control.configs.loader import MachineConfig, build_config
from plotter_control.hardware.events import NotificationBus
from plotter_control.hardware.transport import Transport, TransportError


# ---------------------------------------------------------------------------
# Fake device
# ---------------------------------------------------------------------------


Responder = Callable[[str], list[str]]


def always_ok(line: str) -> list[str]:
    return ["ok"]


class FakeTransport(Transport):
    """In-memory transport; replies come from the owning device's responder."""

    def __init__(self, device: FakeDevice, port: str, baud: int) -> None:
        self.device = device
        self.port = port
        self.baud = baud
        self.written: list[str] = []
        self._inbox: queue.Queue[str] = queue.Queue()
        self._open = False
        self._dropped = False

    def open(self) -> None:
        if self.device.fail_open:
            raise TransportError(f"could not open port {self.port}")
        self._open = True

    def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def is_alive(self) -> bool:
        return self._open and not self._dropped

    def write_line(self, line: str) -> None:
        if not self._open or self._dropped:
            raise TransportError("port closed")
        if self.device.fail_writes:
            raise TransportError("write failed")
        self.written.append(line)
        self.device.written.append(line)
        for reply in self.device.responder(line):
            self._inbox.put(reply)

    def readline(self, timeout: float) -> str | None:
        if self._dropped:
            raise TransportError("device unplugged")
        try:
            return self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def inject(self, line: str) -> None:
        """Unsolicited inbound line (telemetry, late ack)."""
        self._inbox.put(line)

    def drop(self) -> None:
        """Simulate the USB cable being pulled."""
        self._dropped = True


class FakeDevice:
    """Transport factory recording every connection it hands out."""

    def __init__(self, responder: Responder = always_ok) -> None:
        self.responder = responder
        self.transports: list[FakeTransport] = []
        self.written: list[str] = []
        self.fail_open = False
        self.fail_writes = False

    def __call__(self, port: str, baud: int) -> FakeTransport:
        transport = FakeTransport(self, port, baud)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture()
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture()
def aux_device() -> FakeDevice:
    return FakeDevice()


# ---------------------------------------------------------------------------
# Config / bus
# ---------------------------------------------------------------------------


FAST_CONFIG: dict[str, Any] = {
    "connection": {
        "port": "/dev/fake0",
        "settle_s": 0,
        "ack_timeout_s": 0.5,
        "completion_grace_s": 0,
        "health_interval_s": 0.05,
        "reopen_delay_s": 0,
        "command_response_window_s": 0.3,
    },
    "auxiliary": {"enabled": True, "port": "/dev/fake1"},
    "work_area": {"width_mm": 100.0, "height_mm": 100.0},
    "pen": {"up_z": -2.3, "down_z": 0.0},
    "motion": {"feed_rate_mm_min": 1500, "optimize_order": False},
    "simplify": {"tolerance_mm": 0.1, "min_path_length_mm": 1.0},
    "logging": {"level": "DEBUG", "file": ""},
}


@pytest.fixture()
def config() -> MachineConfig:
    return build_config(FAST_CONFIG)


@pytest.fixture()
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture()
def events(bus: NotificationBus) -> list[Any]:
    """Every event published on *bus*, in order."""
    seen: list[Any] = []
    bus.subscribe(seen.append)
    return seen
