"""Tests for the job queue state machine and dispatcher."""

from __future__ import annotations

import threading
from pathlib import Path as FsPath
from typing import Any

import pytest

from plotter_control.configs.loader import MachineConfig
from plotter_control.gcode.generator import MotionProgram, MotionProgramGenerator
from plotter_control.geometry.paths import Path
from plotter_control.hardware.device_link import DeviceLink
from plotter_control.hardware.events import (
    JobEvent,
    NotificationBus,
    PenChangeEvent,
    ProgressEvent,
    QueueChangedEvent,
)
from plotter_control.jobs.job_queue import (
    ConcurrencyViolation,
    JobNotFoundError,
    JobQueue,
    JobStatus,
    JobType,
    QueueOperationError,
    QueuePreconditionError,
)
from plotter_control.jobs.persistence import QueueStore
from plotter_control.layers.classifier import Layer

from conftest import FakeDevice


@pytest.fixture()
def program(config: MachineConfig) -> MotionProgram:
    square = Path.from_points([(10, 10), (20, 10), (20, 20), (10, 20), (10, 10)])
    return MotionProgramGenerator(config).generate([square], title="square")


@pytest.fixture()
def link(config: MachineConfig, device: FakeDevice, bus: NotificationBus) -> DeviceLink:
    link = DeviceLink.from_config(config, bus=bus, transport_factory=device)
    yield link
    link.close()


@pytest.fixture()
def box(config: MachineConfig, aux_device: FakeDevice, bus: NotificationBus) -> DeviceLink:
    box = DeviceLink.auxiliary_from_config(config, bus=bus, transport_factory=aux_device)
    yield box
    box.close()


@pytest.fixture()
def queue(link: DeviceLink, box: DeviceLink) -> JobQueue:
    return JobQueue(link, box)


@pytest.fixture()
def ready(queue: JobQueue, link: DeviceLink, box: DeviceLink) -> JobQueue:
    """Queue whose device and auxiliary controller are connected."""
    link.open()
    box.open()
    return queue


def _changes(events: list[Any]) -> list[str]:
    return [e.action for e in events if isinstance(e, QueueChangedEvent)]


# ---------------------------------------------------------------------------
# List operations
# ---------------------------------------------------------------------------


class TestListOperations:
    def test_enqueue(self, queue: JobQueue, program: MotionProgram, events: list[Any]) -> None:
        job = queue.enqueue(program, JobType.DRAWING, name="square")
        assert job.status is JobStatus.PENDING
        assert job.id and job.created_at
        assert queue.list_jobs() == [job]
        assert _changes(events) == ["added"]
        assert events[-1].count == 1

    def test_enqueue_accepts_type_name(self, queue: JobQueue, program: MotionProgram) -> None:
        assert queue.enqueue(program, "text").type is JobType.TEXT

    def test_reorder(self, queue: JobQueue, program: MotionProgram) -> None:
        a, b, c = (queue.enqueue(program, JobType.IMAGE, name=n) for n in "abc")
        queue.reorder(0, 2)
        assert [j.name for j in queue.list_jobs()] == ["b", "c", "a"]
        queue.reorder(2, 0)
        assert [j.id for j in queue.list_jobs()] == [a.id, b.id, c.id]

    def test_reorder_out_of_range(self, queue: JobQueue, program: MotionProgram) -> None:
        queue.enqueue(program, JobType.IMAGE)
        with pytest.raises(QueueOperationError) as info:
            queue.reorder(0, 5)
        assert info.value.code == "index_out_of_range"

    def test_reorder_rejects_non_pending(self, queue: JobQueue, program: MotionProgram) -> None:
        first = queue.enqueue(program, JobType.IMAGE, name="a")
        queue.enqueue(program, JobType.IMAGE, name="b")
        first.status = JobStatus.FAILED
        with pytest.raises(QueueOperationError) as info:
            queue.reorder(1, 0)
        assert info.value.code == "not_pending"
        assert [j.name for j in queue.list_jobs()] == ["a", "b"]

    def test_remove(self, queue: JobQueue, program: MotionProgram) -> None:
        job = queue.enqueue(program, JobType.IMAGE)
        assert queue.remove(job.id) is job
        assert len(queue) == 0

    def test_remove_unknown(self, queue: JobQueue) -> None:
        with pytest.raises(JobNotFoundError) as info:
            queue.remove("nope")
        assert info.value.code == "not_found"

    def test_clear(self, queue: JobQueue, program: MotionProgram, events: list[Any]) -> None:
        queue.enqueue(program, JobType.IMAGE)
        queue.enqueue(program, JobType.TEXT)
        assert queue.clear() == 2
        assert queue.list_jobs() == []
        assert _changes(events)[-1] == "cleared"

    def test_retry_requires_failed(self, queue: JobQueue, program: MotionProgram) -> None:
        job = queue.enqueue(program, JobType.IMAGE)
        with pytest.raises(QueueOperationError) as info:
            queue.retry(job.id)
        assert info.value.code == "not_failed"

    def test_status_summary_idle(self, queue: JobQueue, program: MotionProgram) -> None:
        queue.enqueue(program, JobType.IMAGE)
        assert queue.status_summary() == {
            "total": 1,
            "pending": 1,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "isProcessing": False,
            "currentJobId": None,
        }

    def test_controls_need_a_running_job(self, queue: JobQueue) -> None:
        for action in (queue.pause, queue.resume, queue.cancel):
            with pytest.raises(QueueOperationError) as info:
                action()
            assert info.value.code == "not_processing"


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestProcessNext:
    def test_all_unmet_preconditions_reported(
        self, queue: JobQueue, events: list[Any]
    ) -> None:
        with pytest.raises(QueuePreconditionError) as info:
            queue.process_next()
        assert info.value.reasons == [
            "device not connected",
            "auxiliary controller not connected",
            "no pending jobs",
        ]
        assert info.value.to_dict()["code"] == "precondition_failed"
        assert _changes(events) == []

    def test_precondition_leaves_job_pending(
        self, queue: JobQueue, link: DeviceLink, program: MotionProgram
    ) -> None:
        job = queue.enqueue(program, JobType.IMAGE)
        link.open()
        with pytest.raises(QueuePreconditionError) as info:
            queue.process_next()
        assert info.value.reasons == ["auxiliary controller not connected"]
        assert job.status is JobStatus.PENDING

    def test_auxiliary_optional(
        self, link: DeviceLink, program: MotionProgram
    ) -> None:
        queue = JobQueue(link, auxiliary=None)
        queue.enqueue(program, JobType.IMAGE)
        link.open()
        assert queue.process_next().status is JobStatus.COMPLETED

    def test_success_removes_job(
        self,
        ready: JobQueue,
        program: MotionProgram,
        device: FakeDevice,
        events: list[Any],
    ) -> None:
        job = ready.enqueue(program, JobType.DRAWING)
        done = ready.process_next()

        assert done is job
        assert done.status is JobStatus.COMPLETED
        assert ready.list_jobs() == []
        assert device.written == program.transmittable_lines()
        assert _changes(events) == ["added", "processing", "completed"]

        job_events = [e for e in events if isinstance(e, JobEvent)]
        assert job_events and all(e.job_id == job.id for e in job_events)
        assert job_events[-1].type == "job_complete"
        assert job_events[-1].percent == pytest.approx(100.0)
        percents = [e.percent for e in job_events if isinstance(e.event, ProgressEvent)]
        assert percents == sorted(percents)
        assert job_events[0].to_dict()["jobId"] == job.id

    def test_first_pending_in_order(self, ready: JobQueue, program: MotionProgram) -> None:
        a = ready.enqueue(program, JobType.IMAGE, name="a")
        b = ready.enqueue(program, JobType.IMAGE, name="b")
        ready.reorder(1, 0)
        assert ready.process_next() is b
        assert [j.id for j in ready.list_jobs()] == [a.id]

    def test_failure_keeps_job(
        self, ready: JobQueue, program: MotionProgram, device: FakeDevice, events: list[Any]
    ) -> None:
        lines = program.transmittable_lines()
        device.responder = lambda line: [] if line == lines[5] else ["ok"]
        job = ready.enqueue(program, JobType.DRAWING)

        result = ready.process_next()

        assert result.status is JobStatus.FAILED
        assert "No ack" in result.error
        assert result.current_line == 5
        assert ready.list_jobs() == [job]
        assert _changes(events)[-1] == "failed"
        assert ready.status_summary()["failed"] == 1

    def test_retry_after_failure(
        self, ready: JobQueue, program: MotionProgram, device: FakeDevice, link: DeviceLink
    ) -> None:
        device.responder = lambda line: []
        job = ready.enqueue(program, JobType.DRAWING)
        ready.process_next()
        assert job.status is JobStatus.FAILED

        ready.retry(job.id)
        assert job.status is JobStatus.PENDING
        assert job.error is None

        device.responder = lambda line: ["ok"]
        link.open()
        assert ready.process_next().status is JobStatus.COMPLETED

    def test_concurrent_process_next_rejected(
        self, ready: JobQueue, program: MotionProgram, bus: NotificationBus
    ) -> None:
        ready.enqueue(program, JobType.IMAGE)
        ready.enqueue(program, JobType.IMAGE)
        rejected: list[Exception] = []

        def on_event(event: Any) -> None:
            if isinstance(event, JobEvent) and isinstance(event.event, ProgressEvent) \
                    and event.event.current == 2:
                try:
                    ready.process_next()
                except ConcurrencyViolation as exc:
                    rejected.append(exc)

        bus.subscribe(on_event)
        ready.process_next()
        assert len(rejected) == 1
        assert rejected[0].code == "already_processing"
        assert [j.status for j in ready.list_jobs()] == [JobStatus.PENDING]

    def test_mutations_rejected_while_processing(
        self, ready: JobQueue, program: MotionProgram, bus: NotificationBus
    ) -> None:
        job = ready.enqueue(program, JobType.IMAGE)
        seen: dict[str, Any] = {}

        def on_event(event: Any) -> None:
            if isinstance(event, JobEvent) and isinstance(event.event, ProgressEvent) \
                    and event.event.current == 2:
                seen["summary"] = ready.status_summary()
                for name, call in (("remove", lambda: ready.remove(job.id)),
                                   ("clear", ready.clear)):
                    try:
                        call()
                    except QueueOperationError as exc:
                        seen[name] = exc.code

        bus.subscribe(on_event)
        ready.process_next()
        assert seen["remove"] == "job_processing"
        assert seen["clear"] == "job_processing"
        assert seen["summary"]["isProcessing"] is True
        assert seen["summary"]["currentJobId"] == job.id
        assert seen["summary"]["processing"] == 1

    def test_cancel_fails_the_job(
        self, ready: JobQueue, program: MotionProgram, bus: NotificationBus
    ) -> None:
        ready.enqueue(program, JobType.IMAGE)

        def on_event(event: Any) -> None:
            if isinstance(event, JobEvent) and isinstance(event.event, ProgressEvent) \
                    and event.event.current == 3:
                ready.cancel()

        bus.subscribe(on_event)
        job = ready.process_next()
        assert job.status is JobStatus.FAILED
        assert "cancelled" in job.error.lower()
        assert job.current_line == 2

    def test_pen_change_waits_for_queue_resume(
        self, ready: JobQueue, config: MachineConfig, device: FakeDevice, bus: NotificationBus
    ) -> None:
        layers = [
            Layer("red", (255, 0, 0), 10, [Path.from_points([(10, 10), (20, 10)])]),
            Layer("blue", (0, 0, 255), 10, [Path.from_points([(10, 30), (20, 30)])]),
        ]
        program = MotionProgramGenerator(config).generate_layers(layers)
        # a device parked on M0 would never answer; it must not be sent
        device.responder = lambda line: [] if line.startswith("M0") else ["ok"]
        ready.enqueue(program, JobType.IMAGE)
        changes: list[str] = []

        def on_event(event: Any) -> None:
            if isinstance(event, JobEvent) and isinstance(event.event, PenChangeEvent):
                changes.append(event.event.message)
                # operator takes longer than the ack timeout
                threading.Timer(0.8, ready.resume).start()

        bus.subscribe(on_event)
        job = ready.process_next()

        assert job.status is JobStatus.COMPLETED
        assert changes == ["Change pen to blue"]
        assert not any(line.startswith("M0") for line in device.written)


# ---------------------------------------------------------------------------
# Persistence integration
# ---------------------------------------------------------------------------


class TestQueuePersistence:
    def test_queue_survives_restart(
        self, link: DeviceLink, program: MotionProgram, tmp_path: FsPath
    ) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        first = JobQueue(link, store=store)
        a = first.enqueue(program, JobType.IMAGE, name="a")
        b = first.enqueue(program, JobType.TEXT, name="b")
        first.reorder(1, 0)

        second = JobQueue(link, store=QueueStore(tmp_path / "queue.yaml"))
        jobs = second.list_jobs()
        assert [j.id for j in jobs] == [b.id, a.id]
        assert jobs[0].type is JobType.TEXT
        assert jobs[1].program.transmittable_lines() == program.transmittable_lines()
        assert jobs[1].program.stats == program.stats

    def test_interrupted_job_marked_failed(
        self, link: DeviceLink, program: MotionProgram, tmp_path: FsPath
    ) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        queue = JobQueue(link, store=store)
        job = queue.enqueue(program, JobType.IMAGE)
        job.status = JobStatus.PROCESSING
        store.save([j.to_dict() for j in queue.list_jobs()])

        reloaded = JobQueue(link, store=QueueStore(tmp_path / "queue.yaml"))
        (restored,) = reloaded.list_jobs()
        assert restored.status is JobStatus.FAILED
        assert restored.error == "interrupted"

    def test_failed_save_leaves_job_pending(
        self,
        link: DeviceLink,
        program: MotionProgram,
        tmp_path: FsPath,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        queue = JobQueue(link, store=store)
        job = queue.enqueue(program, JobType.IMAGE)
        link.open()

        def disk_full(items: list[dict[str, Any]]) -> None:
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(store, "save", disk_full)
        with pytest.raises(OSError):
            queue.process_next()

        assert job.status is JobStatus.PENDING
        assert job.started_at is None
        summary = queue.status_summary()
        assert summary["processing"] == 0
        assert summary["pending"] == 1
        monkeypatch.undo()
        assert queue.clear() == 1

    def test_failed_save_after_device_failure_keeps_job_failed(
        self,
        link: DeviceLink,
        program: MotionProgram,
        device: FakeDevice,
        tmp_path: FsPath,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        store = QueueStore(tmp_path / "queue.yaml")
        queue = JobQueue(link, store=store)
        queue.enqueue(program, JobType.IMAGE)
        link.open()
        device.responder = lambda line: []
        saves: list[int] = []
        real_save = store.save

        def save(items: list[dict[str, Any]]) -> None:
            saves.append(len(items))
            if len(saves) > 1:
                raise OSError(28, "No space left on device")
            real_save(items)

        monkeypatch.setattr(store, "save", save)
        job = queue.process_next()

        assert job.status is JobStatus.FAILED
        assert "No ack" in job.error
        assert queue.status_summary()["processing"] == 0
        assert len(saves) == 2
