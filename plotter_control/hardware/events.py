"""Notification events and the in-process bus that relays them.

Observers (web socket bridge, CLI progress printer, tests) subscribe a
callback and receive every published event.  A failing observer is
logged and skipped; it never disturbs other observers or the sender.

Every event has ``to_dict()`` producing the payload for the external
transport, with a ``type`` key naming the event.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class _Event:
    type: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        payload = {_camel(k): v for k, v in asdict(self).items()}
        return {"type": self.type, **payload}


@dataclass(frozen=True)
class StatusEvent(_Event):
    """Link or stream state change (connected, paused, closed, ...)."""

    type: ClassVar[str] = "status"
    message: str
    elapsed_ms: int = 0


@dataclass(frozen=True)
class ProgressEvent(_Event):
    """Emitted immediately before line *current* (1-based) is written."""

    type: ClassVar[str] = "progress"
    current: int
    total: int
    line: str
    elapsed_ms: int = 0


@dataclass(frozen=True)
class LogEvent(_Event):
    """One inbound device line, or an engine note about the link."""

    type: ClassVar[str] = "log"
    message: str
    elapsed_ms: int = 0
    line_index: int = 0
    level: str = "info"


@dataclass(frozen=True)
class CompleteEvent(_Event):
    type: ClassVar[str] = "complete"
    total_lines: int
    total_time_seconds: float
    elapsed_ms: int = 0


@dataclass(frozen=True)
class ErrorEvent(_Event):
    """Fatal stream or link failure; ``kind`` is the error code."""

    type: ClassVar[str] = "error"
    message: str
    elapsed_ms: int = 0
    kind: str = "device_error"


@dataclass(frozen=True)
class PenChangeEvent(_Event):
    """The stream reached a manual pause; it stays paused until resumed."""

    type: ClassVar[str] = "pen_change"
    message: str
    elapsed_ms: int = 0


@dataclass(frozen=True)
class QueueChangedEvent(_Event):
    type: ClassVar[str] = "queue_changed"
    action: str
    count: int


DeviceEvent = Union[
    StatusEvent, ProgressEvent, LogEvent, CompleteEvent, ErrorEvent, PenChangeEvent,
]


@dataclass(frozen=True)
class JobEvent:
    """A device event scoped to the queued job that caused it."""

    job_id: str
    percent: float
    event: DeviceEvent

    @property
    def type(self) -> str:
        return f"job_{self.event.type}"

    def to_dict(self) -> dict[str, Any]:
        payload = self.event.to_dict()
        payload["type"] = self.type
        payload["jobId"] = self.job_id
        payload["percent"] = round(self.percent, 1)
        return payload


Event = Union[DeviceEvent, QueueChangedEvent, JobEvent]
Callback = Callable[[Any], None]


class NotificationBus:
    """Thread-safe observer relay.

    Examples
    --------
    >>> bus = NotificationBus()
    >>> token = bus.subscribe(lambda ev: print(ev.to_dict()))
    >>> bus.publish(StatusEvent("connected"))
    {'type': 'status', 'message': 'connected', 'elapsedMs': 0}
    >>> bus.unsubscribe(token)
    True
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, Callback] = {}
        self._ids = itertools.count(1)

    def subscribe(self, callback: Callback) -> int:
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def publish(self, event: Any) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Notification callback error on %s: %s",
                    getattr(event, "type", type(event).__name__), exc,
                )

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
