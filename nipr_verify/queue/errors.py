"""
Queue Exceptions
"""

from typing import Optional

from .models import Job


class QueueError(Exception):
    """Base class for queue failures."""


class AcquisitionError(QueueError):
    """Claiming or reclaiming a job failed; no job was mutated."""


class ExecutionError(QueueError):
    """The automation executor raised or reported failure for a job."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class DuplicateSubmissionError(QueueError):
    """The user already has a pending or processing job."""

    def __init__(self, existing: Job):
        super().__init__(
            f"User {existing.user_id} already has job {existing.id} "
            f"({existing.status})"
        )
        self.existing = existing


class JobNotFoundError(QueueError):
    """No such job, or it belongs to someone else."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id
