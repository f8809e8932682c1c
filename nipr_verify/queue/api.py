"""
Queue API

Public entry-points for submitting verification requests and polling
their status.  Import these in ``main.py`` or any other entry-point.

Example::

    from nipr_verify.queue.api import SubmissionGatekeeper

    gatekeeper = SubmissionGatekeeper(worker, executor)
    outcome = gatekeeper.submit("user-42", verification)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional

from nipr_verify.utils import short_id

from .errors import AcquisitionError, DuplicateSubmissionError, ExecutionError
from .models import AutomationResult, Job, VerificationInput
from .worker import Executor, UserDataSink, Worker, run_executor

logger = logging.getLogger(__name__)

INLINE = "inline"
QUEUED = "queued"
DIRECT = "direct"


@dataclass
class SubmissionResult:
    """Outcome of a submission.

    ``mode`` is ``inline`` (leased and running now, by this request or by
    a concurrent worker tick), ``queued`` (waiting, see ``position``) or
    ``direct`` (the store was unavailable and the automation ran
    synchronously; ``result`` holds its outcome).
    """

    mode: str
    job: Optional[Job] = None
    position: Optional[int] = None
    result: Optional[AutomationResult] = None
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.job is not None:
            return self.job.status
        return "completed" if self.error is None else "failed"

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"mode": self.mode, "status": self.status}
        if self.job is not None:
            payload["jobId"] = self.job.id
        if self.mode == QUEUED:
            payload["position"] = self.position
        if self.mode == DIRECT:
            payload["success"] = self.error is None
            if self.result is not None:
                payload["files"] = self.result.files
                payload["carriers"] = self.result.carriers
            if self.error is not None:
                payload["error"] = self.error
        return payload


class SubmissionGatekeeper:
    """Admits new verification requests.

    Enforces one active job per user, runs the request immediately when
    the queue is idle and otherwise leaves it pending behind the jobs
    already waiting.

    Args:
        worker:     Queue worker; *None* puts the gatekeeper in no-queue
                    mode where every request runs synchronously.
        executor:   Used directly in no-queue mode.
        on_success: Persistence collaborator for no-queue mode.
    """

    def __init__(
        self,
        worker: Optional[Worker],
        executor: Optional[Executor] = None,
        on_success: Optional[UserDataSink] = None,
    ) -> None:
        self.worker = worker
        self.executor = executor or (worker.executor if worker else None)
        self.on_success = on_success or (worker.on_success if worker else None)

    def submit(self, user_id: str, verification: VerificationInput) -> SubmissionResult:
        """Admit a request from *user_id*.

        Raises:
            DuplicateSubmissionError: the user already has an active job.
        """
        if self.worker is None:
            return self.run_direct(user_id, verification)

        store = self.worker.store
        try:
            existing = store.active_job_for_user(user_id)
            if existing is not None:
                raise DuplicateSubmissionError(existing)
            job = store.create(user_id, verification)
        except sqlite3.Error as exc:
            logger.error("Job store unavailable, running without queue: %s", exc)
            return self.run_direct(user_id, verification)

        try:
            claimed = self.worker.lease.claim_job(job.id)
        except AcquisitionError as exc:
            logger.warning("Inline claim for job %s failed: %s", short_id(job.id), exc)
            claimed = None

        if claimed is not None:
            logger.info("Queue idle, running job %s inline", short_id(job.id))
            self.worker.dispatch(claimed)
            return SubmissionResult(mode=INLINE, job=claimed)

        position = self.worker.positions.position_of(job.id)
        if position is None:
            # A concurrent tick leased it between insert and claim.
            current = store.get(job.id)
            logger.info(
                "Job %s already picked up by a running worker (%s)",
                short_id(job.id),
                current.status,
            )
            return SubmissionResult(mode=INLINE, job=current)

        logger.info("Queued job %s at position %s", short_id(job.id), position)
        if self.worker.positions.queue_depth()["processing"] == 0:
            # Older jobs are waiting but nobody is working on them.
            self.worker.chainer.trigger()
        return SubmissionResult(mode=QUEUED, job=job, position=position)

    def run_direct(self, user_id: str, verification: VerificationInput) -> SubmissionResult:
        """Run the automation synchronously, bypassing the queue."""
        if self.executor is None:
            raise ExecutionError("No automation executor configured")

        logger.info("Running verification for user %s without queue", user_id)
        try:
            result = run_executor(self.executor, verification, _log_progress)
        except ExecutionError as exc:
            logger.error("Direct verification for user %s failed: %s", user_id, exc)
            return SubmissionResult(mode=DIRECT, error=str(exc))

        if self.on_success is not None and result.carriers:
            try:
                self.on_success(user_id, result)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to save NIPR data for user %s: %s", user_id, exc)
        return SubmissionResult(mode=DIRECT, result=result)

    def job_status(self, user_id: str, job_id: str) -> Dict[str, Any]:
        """Status payload for *job_id*, scoped to its owner.

        Raises:
            JobNotFoundError: unknown job, or owned by another user.
        """
        if self.worker is None:
            raise AcquisitionError("Job store unavailable")
        job = self.worker.store.get_for_user(job_id, user_id)
        position = self.worker.positions.position_of(job.id)
        return job.status_view(position)


def _log_progress(percent: int, message: str = "") -> None:
    logger.info("Direct run progress %d%% %s", percent, message)
