"""
Job queue module.

Ordered, persisted jobs and the dispatcher that streams one of them to
the device at a time.
"""

from plotter_control.jobs.job_queue import (
    ConcurrencyViolation,
    Job,
    JobNotFoundError,
    JobQueue,
    JobStatus,
    JobType,
    QueueError,
    QueueOperationError,
    QueuePreconditionError,
)
from plotter_control.jobs.persistence import QueueStore

__all__ = [
    "ConcurrencyViolation",
    "Job",
    "JobNotFoundError",
    "JobQueue",
    "JobStatus",
    "JobType",
    "QueueError",
    "QueueOperationError",
    "QueuePreconditionError",
    "QueueStore",
]
