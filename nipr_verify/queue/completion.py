"""
Completion Recorder

Moves a leased job to its terminal state.  Every write is fenced on the
lease that produced it: ``status='processing'`` plus the ``attempts``
number the worker was given when it claimed the job.  A late result from
a worker whose lease was reclaimed (and possibly re-claimed by another
run) matches neither and is dropped, as is a retry of a completion that
already landed.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Iterable, Optional

from nipr_verify.utils import short_id, to_iso, utc_now

from .models import Job
from .store import JobStore

logger = logging.getLogger(__name__)

COMPLETED_MESSAGE = "Verification complete"
FAILED_MESSAGE = "Verification failed"

# Matches any lease when the caller passes no attempt number.
_LEASE_FENCE = "AND (:attempt IS NULL OR attempts = :attempt)"


class CompletionRecorder:
    """Writes results and progress for leased jobs."""

    def __init__(self, store: JobStore) -> None:
        self.store = store

    def complete(
        self,
        job_id: str,
        success: bool,
        files: Optional[Iterable[str]] = None,
        carriers: Optional[Iterable[str]] = None,
        error_message: Optional[str] = None,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Job]:
        """Record the outcome of *job_id*.

        *attempt* is the ``attempts`` value of the caller's lease.  Workers
        always pass it; operators settling a job by hand may leave it out.

        Returns the updated job, or *None* if the job was not processing
        under that lease (already terminal, reclaimed, re-claimed by
        another run, or unknown) and nothing was written.
        """
        stamp = to_iso(now or utc_now())
        updated = self.store.write(
            f"""
            UPDATE nipr_jobs
            SET status           = :status,
                started_at       = NULL,
                locked_until     = NULL,
                result_files     = :files,
                result_carriers  = :carriers,
                error_message    = :error,
                progress         = CASE WHEN :success THEN 100 ELSE progress END,
                progress_message = :message,
                completed_at     = :now,
                updated_at       = :now
            WHERE id = :job_id
              AND status = 'processing'
              {_LEASE_FENCE}
            RETURNING *
            """,
            {
                "job_id": job_id,
                "attempt": attempt,
                "status": "completed" if success else "failed",
                "files": json.dumps(list(files or [])),
                "carriers": json.dumps(list(carriers or [])),
                "error": None if success else (error_message or "Unknown error"),
                "success": 1 if success else 0,
                "message": COMPLETED_MESSAGE if success else FAILED_MESSAGE,
                "now": stamp,
            },
        )
        if not updated:
            logger.warning(
                "Ignoring completion for job %s: lease no longer held", short_id(job_id)
            )
            return None

        job = updated[0]
        if success:
            logger.info(
                "Job %s completed (%d files, %d carriers)",
                short_id(job_id),
                len(job.result_files),
                len(job.result_carriers),
            )
        else:
            logger.error("Job %s failed: %s", short_id(job_id), job.error_message)
        return job

    def update_progress(
        self,
        job_id: str,
        progress: int,
        message: str = "",
        attempt: Optional[int] = None,
    ) -> bool:
        """Checkpoint executor progress.  Only applies under the caller's lease.

        Progress is a display value; a failed write is logged and
        reported as *False* rather than interrupting the automation.
        """
        value = max(0, min(100, int(progress)))
        try:
            updated = self.store.write(
                f"""
                UPDATE nipr_jobs
                SET progress         = :progress,
                    progress_message = :message,
                    updated_at       = :now
                WHERE id = :job_id
                  AND status = 'processing'
                  {_LEASE_FENCE}
                RETURNING *
                """,
                {
                    "progress": value,
                    "message": message,
                    "now": to_iso(utc_now()),
                    "job_id": job_id,
                    "attempt": attempt,
                },
            )
        except sqlite3.Error as exc:
            logger.warning("Progress update for job %s failed: %s", short_id(job_id), exc)
            return False
        return bool(updated)
