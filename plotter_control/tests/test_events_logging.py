"""Tests for the notification bus, event payloads and logging context."""

from __future__ import annotations

import json
import logging
import logging.handlers
from pathlib import Path
from typing import Any

import pytest

from plotter_control.configs.loader import LoggingConfig, MachineConfig
from plotter_control.errors import PlotterError
from plotter_control.hardware.device_link import DeviceLink
from plotter_control.hardware.events import (
    CompleteEvent,
    ErrorEvent,
    JobEvent,
    LogEvent,
    NotificationBus,
    ProgressEvent,
    QueueChangedEvent,
    StatusEvent,
)
from plotter_control.jobs.job_queue import JobQueue, JobType
from plotter_control.pipeline import build_drawing_job
from plotter_control.utils import logging_config
from plotter_control.utils.logging_config import ContextFormatter, get_context, pop_context, push_context

from conftest import FakeDevice


class TestEventPayloads:
    def test_camel_case_keys(self) -> None:
        assert ProgressEvent(3, 10, "G1 X1 Y1", 250).to_dict() == {
            "type": "progress",
            "current": 3,
            "total": 10,
            "line": "G1 X1 Y1",
            "elapsedMs": 250,
        }
        assert CompleteEvent(10, 1.5, 900).to_dict()["totalTimeSeconds"] == 1.5
        assert LogEvent("ok", 5, 2).to_dict()["lineIndex"] == 2
        assert ErrorEvent("gone", kind="disconnected").to_dict()["kind"] == "disconnected"
        assert QueueChangedEvent("added", 1).to_dict() == {
            "type": "queue_changed", "action": "added", "count": 1,
        }

    def test_job_event_wraps(self) -> None:
        event = JobEvent("abc", 33.333, StatusEvent("Paused", 10))
        assert event.type == "job_status"
        assert event.to_dict() == {
            "type": "job_status",
            "message": "Paused",
            "elapsedMs": 10,
            "jobId": "abc",
            "percent": 33.3,
        }

    def test_error_codes(self) -> None:
        assert PlotterError("boom").to_dict() == {"code": "plotter_error", "message": "boom"}


class TestNotificationBus:
    def test_subscribe_and_unsubscribe(self) -> None:
        bus = NotificationBus()
        seen: list[Any] = []
        token = bus.subscribe(seen.append)
        bus.publish(StatusEvent("one"))
        assert bus.unsubscribe(token)
        assert not bus.unsubscribe(token)
        bus.publish(StatusEvent("two"))
        assert [e.message for e in seen] == ["one"]
        assert len(bus) == 0

    def test_failing_observer_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        bus = NotificationBus()
        seen: list[Any] = []

        def broken(event: Any) -> None:
            raise RuntimeError("observer bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        with caplog.at_level(logging.ERROR):
            bus.publish(StatusEvent("still delivered"))
        assert len(seen) == 1
        assert "observer bug" in caplog.text

    def test_empty_bus_is_kept_by_link_and_queue(self, config: MachineConfig) -> None:
        bus = NotificationBus()
        link = DeviceLink.from_config(config, bus=bus, transport_factory=FakeDevice())
        queue = JobQueue(link)
        assert link.bus is bus
        assert queue.bus is bus

        # subscribers added after wiring still hear the link
        seen: list[Any] = []
        bus.subscribe(seen.append)
        link.send_program(["G21", "G90"])
        assert any(isinstance(e, CompleteEvent) for e in seen)


class TestLoggingContext:
    def teardown_method(self) -> None:
        pop_context()

    def test_push_pop(self) -> None:
        push_context(app="test")
        push_context(job="3f2a")
        assert get_context() == {"app": "test", "job": "3f2a"}
        pop_context(["job"])
        assert get_context() == {"app": "test"}

    def test_json_formatter_includes_context(self) -> None:
        push_context(job="3f2a")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "Sending %d", (12,), None)
        payload = json.loads(ContextFormatter("json").format(record))
        assert payload["msg"] == "Sending 12"
        assert payload["job"] == "3f2a"
        assert payload["lvl"] == "INFO"

    def test_human_formatter(self) -> None:
        push_context(app="run_job")
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "hello", (), None)
        line = ContextFormatter("human", use_color=False).format(record)
        assert line.endswith("| app=run_job | hello")
        assert "WARNING" in line

    def test_setup_from_config_writes_file(self, tmp_path: Path) -> None:
        cfg = LoggingConfig(level="INFO", format="json", file=str(tmp_path / "log" / "p.log"))
        root = logging.getLogger()
        saved = list(root.handlers), root.level
        handlers: list[logging.Handler] = []
        try:
            handlers = logging_config.setup_from_config(cfg, app="test")
            assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in handlers)
            logging.getLogger("plotter_control.test").info("to file")
            for h in handlers:
                h.flush()
            line = (tmp_path / "log" / "p.log").read_text().strip().splitlines()[-1]
            assert json.loads(line)["msg"] == "to file"
        finally:
            for h in handlers:
                root.removeHandler(h)
                h.close()
            for h in saved[0]:
                if h not in root.handlers:
                    root.addHandler(h)
            root.setLevel(saved[1])

    def test_queue_tags_job_while_running(
        self, config: MachineConfig, device: FakeDevice, bus: NotificationBus
    ) -> None:
        link = DeviceLink.from_config(config, bus=bus, transport_factory=device)
        queue = JobQueue(link)
        program = build_drawing_job([[(0, 0), (50, 50)]], config)
        job = queue.enqueue(program, JobType.DRAWING)
        tags: list[Any] = []
        bus.subscribe(lambda e: tags.append(get_context().get("job")) if isinstance(e, JobEvent) else None)

        link.open()
        try:
            queue.process_next()
        finally:
            link.close()
        assert tags and set(tags) == {job.id[:8]}
        assert "job" not in get_context()
