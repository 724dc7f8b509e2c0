"""Persistent job queue feeding one device at a time.

Per-job states::

    pending -> processing -> completed   (removed right away)
                          -> failed      (kept; retry() puts it back)

Exactly one job is processing at any instant.  ``process_next`` runs the
stream in the caller's thread behind a non-blocking guard, so a second
concurrent call is rejected instead of queued up.

Every mutation is saved through :class:`QueueStore` (when one is given)
and announced on the bus as a :class:`QueueChangedEvent`.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from plotter_control.errors import PlotterError
from plotter_control.gcode.generator import MotionProgram
from plotter_control.hardware.device_link import DeviceLink, StreamControl
from plotter_control.hardware.events import (
    CompleteEvent,
    JobEvent,
    NotificationBus,
    ProgressEvent,
    QueueChangedEvent,
)
from plotter_control.jobs.persistence import QueueStore
from plotter_control.utils.logging_config import pop_context, push_context

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class QueueError(PlotterError):
    """Base exception for queue operations."""

    code = "queue_error"


class QueuePreconditionError(QueueError):
    """``process_next`` cannot start; every unmet condition is listed."""

    code = "precondition_failed"

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("Cannot process queue: " + "; ".join(self.reasons))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(super().to_dict())
        payload["reasons"] = list(self.reasons)
        return payload


class ConcurrencyViolation(QueueError):
    """``process_next`` called while another call is still running."""

    code = "already_processing"


class QueueOperationError(QueueError):
    """A list operation was rejected; ``code`` names the reason."""

    def __init__(self, reason: str, message: str) -> None:
        self.code = reason
        super().__init__(message)


class JobNotFoundError(QueueError):
    code = "not_found"


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    DRAWING = "drawing"


@dataclass
class Job:
    """One queued unit of work wrapping a motion program."""

    program: MotionProgram
    type: JobType
    name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    created_at: str = field(default_factory=_now)
    current_line: int = 0
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def line_count(self) -> int:
        if self.program.stats is not None:
            return self.program.stats.line_count
        return len(self.program.transmittable_lines())

    @property
    def percent(self) -> float:
        total = self.line_count
        return 100.0 * self.current_line / total if total else 0.0

    def summary(self) -> dict[str, Any]:
        """Listing view: everything except the instruction list."""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "createdAt": self.created_at,
            "currentLine": self.current_line,
            "error": self.error,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "stats": self.program.stats.to_dict() if self.program.stats else None,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.summary()
        del payload["stats"]
        payload["program"] = self.program.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            program=MotionProgram.from_dict(data["program"]),
            type=JobType(data["type"]),
            name=data.get("name") or "",
            id=data["id"],
            status=JobStatus(data["status"]),
            created_at=data["createdAt"],
            current_line=int(data.get("currentLine") or 0),
            error=data.get("error"),
            started_at=data.get("startedAt"),
            finished_at=data.get("finishedAt"),
        )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class JobQueue:
    """Ordered jobs plus the dispatcher that sends them to the device.

    Parameters
    ----------
    link : DeviceLink
        CNC link; must be open (persistent) for ``process_next``.
    auxiliary : DeviceLink, optional
        Paper box controller that must also be connected.  ``None`` when
        the machine has none (``auxiliary.enabled: false``).
    store : QueueStore, optional
        Persistence; ``None`` keeps the queue in memory only.
    bus : NotificationBus, optional
        Receives queue-changed and job-scoped events; defaults to the
        link's bus.

    Examples
    --------
    >>> queue = JobQueue(link, box, QueueStore("data/queue.yaml"))
    >>> job = queue.enqueue(program, JobType.DRAWING, name="sketch")
    >>> queue.process_next()
    """

    def __init__(
        self,
        link: DeviceLink,
        auxiliary: Optional[DeviceLink] = None,
        store: Optional[QueueStore] = None,
        bus: Optional[NotificationBus] = None,
    ) -> None:
        self.link = link
        self.auxiliary = auxiliary
        self.store = store
        self.bus = bus if bus is not None else link.bus

        self._lock = threading.RLock()
        self._guard = threading.Lock()
        self._jobs: list[Job] = []
        self._current: Optional[Job] = None
        self._control: Optional[StreamControl] = None

        if store is not None:
            self._jobs = [Job.from_dict(item) for item in store.load()]
            if any(job.status is JobStatus.FAILED and job.error == "interrupted" for job in self._jobs):
                self._save()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self.store is not None:
            self.store.save([job.to_dict() for job in self._jobs])

    def _changed(self, action: str) -> None:
        self.bus.publish(QueueChangedEvent(action, len(self._jobs)))

    def _index_of(self, job_id: str) -> int:
        for index, job in enumerate(self._jobs):
            if job.id == job_id:
                return index
        raise JobNotFoundError(f"Job {job_id} not found")

    @property
    def is_processing(self) -> bool:
        return self._current is not None

    # ------------------------------------------------------------------
    # List operations
    # ------------------------------------------------------------------

    def enqueue(self, program: MotionProgram, job_type: JobType | str, name: str = "") -> Job:
        """Append a pending job and return it."""
        job = Job(program=program, type=JobType(job_type), name=name)
        with self._lock:
            self._jobs.append(job)
            self._save()
        logger.info("Queued %s job %s (%d lines)", job.type.value, job.id, job.line_count)
        self._changed("added")
        return job

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return list(self._jobs)

    def get(self, job_id: str) -> Job:
        with self._lock:
            return self._jobs[self._index_of(job_id)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def reorder(self, from_index: int, to_index: int) -> None:
        """Move the pending job at *from_index* to *to_index*.

        Raises
        ------
        QueueOperationError
            ``index_out_of_range`` or ``not_pending``; the order is unchanged.
        """
        with self._lock:
            count = len(self._jobs)
            for index in (from_index, to_index):
                if not 0 <= index < count:
                    raise QueueOperationError(
                        "index_out_of_range",
                        f"Index {index} out of range for {count} jobs",
                    )
            for index in (from_index, to_index):
                if self._jobs[index].status is not JobStatus.PENDING:
                    raise QueueOperationError(
                        "not_pending",
                        f"Job at index {index} is {self._jobs[index].status.value}; "
                        "only pending jobs can be reordered",
                    )
            job = self._jobs.pop(from_index)
            self._jobs.insert(to_index, job)
            self._save()
        logger.info("Moved job %s from %d to %d", job.id, from_index, to_index)
        self._changed("reordered")

    def remove(self, job_id: str) -> Job:
        """Delete one job that is not processing."""
        with self._lock:
            index = self._index_of(job_id)
            job = self._jobs[index]
            if job.status is JobStatus.PROCESSING:
                raise QueueOperationError(
                    "job_processing", f"Job {job_id} is processing; cancel it first",
                )
            del self._jobs[index]
            self._save()
        logger.info("Removed job %s", job_id)
        self._changed("removed")
        return job

    def clear(self) -> int:
        """Delete every job; rejected while one is processing."""
        with self._lock:
            if any(job.status is JobStatus.PROCESSING for job in self._jobs):
                raise QueueOperationError(
                    "job_processing", "Cannot clear the queue while a job is processing",
                )
            removed = len(self._jobs)
            self._jobs = []
            self._save()
        logger.info("Cleared %d jobs", removed)
        self._changed("cleared")
        return removed

    def retry(self, job_id: str) -> Job:
        """Put a failed job back to pending."""
        with self._lock:
            job = self._jobs[self._index_of(job_id)]
            if job.status is not JobStatus.FAILED:
                raise QueueOperationError(
                    "not_failed", f"Job {job_id} is {job.status.value}; only failed jobs can be retried",
                )
            job.status = JobStatus.PENDING
            job.error = None
            job.current_line = 0
            job.started_at = None
            job.finished_at = None
            self._save()
        logger.info("Job %s reset to pending", job_id)
        self._changed("retried")
        return job

    def status_summary(self) -> dict[str, Any]:
        with self._lock:
            counts = {status: 0 for status in JobStatus}
            for job in self._jobs:
                counts[job.status] += 1
            current = self._current
            return {
                "total": len(self._jobs),
                "pending": counts[JobStatus.PENDING],
                "processing": counts[JobStatus.PROCESSING],
                "completed": counts[JobStatus.COMPLETED],
                "failed": counts[JobStatus.FAILED],
                "isProcessing": current is not None,
                "currentJobId": current.id if current is not None else None,
            }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _unmet_preconditions(self) -> list[str]:
        reasons = []
        if not self.link.is_open:
            reasons.append("device not connected")
        if self.auxiliary is not None and not self.auxiliary.is_open:
            reasons.append("auxiliary controller not connected")
        if not any(job.status is JobStatus.PENDING for job in self._jobs):
            reasons.append("no pending jobs")
        return reasons

    def process_next(self) -> Job:
        """Send the first pending job to the device and wait for it.

        Returns the job in its terminal state: ``completed`` (already
        removed from the queue) or ``failed`` (kept, with ``error``).

        Raises
        ------
        ConcurrencyViolation
            If another ``process_next`` is running.
        QueuePreconditionError
            If the device or auxiliary controller is not connected, or
            nothing is pending.  The queue is left unchanged.
        """
        if not self._guard.acquire(blocking=False):
            raise ConcurrencyViolation("A job is already being processed")
        try:
            with self._lock:
                reasons = self._unmet_preconditions()
                if reasons:
                    raise QueuePreconditionError(reasons)
                job = next(j for j in self._jobs if j.status is JobStatus.PENDING)
                before = (job.started_at, job.current_line, job.error)
                job.status = JobStatus.PROCESSING
                job.started_at = _now()
                job.current_line = 0
                job.error = None
                try:
                    self._save()
                except Exception:
                    # nothing was sent; the job stays pending
                    job.status = JobStatus.PENDING
                    job.started_at, job.current_line, job.error = before
                    raise
                control = StreamControl()
                self._current = job
                self._control = control
            self._changed("processing")
            return self._run(job, control)
        finally:
            with self._lock:
                self._current = None
                self._control = None
            self._guard.release()

    def _run(self, job: Job, control: StreamControl) -> Job:
        push_context(job=job.id[:8])
        logger.info("Processing job %s (%d lines)", job.id, job.line_count)
        try:
            self.link.send_program(job.program, control, listener=self._relay(job))
        except PlotterError as exc:
            self._finish_failed(job, exc)
            return job
        except Exception as exc:
            self._finish_failed(job, exc)
            raise
        finally:
            pop_context(["job"])

        with self._lock:
            job.status = JobStatus.COMPLETED
            job.finished_at = _now()
            job.current_line = job.line_count
            self._jobs.remove(job)
            self._save()
        logger.info("Job %s completed", job.id)
        self._changed("completed")
        return job

    def _finish_failed(self, job: Job, exc: Exception) -> None:
        with self._lock:
            job.status = JobStatus.FAILED
            job.error = str(exc)
            job.finished_at = _now()
            job.current_line = self.link.connection.last_successful_line
            try:
                self._save()
            except OSError as save_exc:
                # the device failure is the error the caller needs; a
                # reload marks the job interrupted instead
                logger.error("Could not persist failure of job %s: %s", job.id, save_exc)
        logger.error("Job %s failed at line %d: %s", job.id, job.current_line, exc)
        self._changed("failed")

    def _relay(self, job: Job) -> Callable[[Any], None]:
        def relay(event: Any) -> None:
            if isinstance(event, ProgressEvent):
                job.current_line = event.current - 1
            elif isinstance(event, CompleteEvent):
                job.current_line = event.total_lines
            self.bus.publish(JobEvent(job.id, job.percent, event))
        return relay

    # ------------------------------------------------------------------
    # Control of the job in flight
    # ------------------------------------------------------------------

    def _active_control(self) -> StreamControl:
        with self._lock:
            control = self._control
        if control is None:
            raise QueueOperationError("not_processing", "No job is processing")
        return control

    def pause(self) -> None:
        self._active_control().pause()
        logger.info("Pause requested")

    def resume(self) -> None:
        self._active_control().resume()
        logger.info("Resume requested")

    def cancel(self) -> None:
        self._active_control().cancel()
        logger.warning("Cancel requested")
