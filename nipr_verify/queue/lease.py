"""
Lease Manager

The single authority on which job is in flight.  A lease is the pair
``status='processing'`` + ``locked_until``; it is taken by an atomic
conditional UPDATE and given back either by the completion recorder or,
when the worker holding it died, by :meth:`LeaseManager.reclaim_stale`.

Every operation here is one SQL statement, so two invocations racing
for the queue can never both win the same job.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from nipr_verify.config import DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS
from nipr_verify.utils import short_id, to_iso, utc_now

from .errors import AcquisitionError
from .models import Job
from .store import JobStore

logger = logging.getLogger(__name__)

STARTING_MESSAGE = "Starting verification..."
REQUEUED_MESSAGE = "Re-queued after a stalled attempt"

_CLAIM_SET = """
    SET status           = 'processing',
        started_at       = :now,
        locked_until     = :until,
        attempts         = attempts + 1,
        progress         = 0,
        progress_message = :message,
        error_message    = NULL,
        updated_at       = :now
"""

_NOTHING_PROCESSING = """
    NOT EXISTS (SELECT 1 FROM nipr_jobs AS busy WHERE busy.status = 'processing')
"""


class LeaseManager:
    """Claims and reclaims job leases.

    Args:
        store:         The shared :class:`JobStore`.
        lease_seconds: Lease length; must exceed the invocation cap.
        max_attempts:  Claims allowed before a stalled job is failed.
    """

    def __init__(
        self,
        store: JobStore,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.store = store
        self.lease_duration = timedelta(seconds=lease_seconds)
        self.max_attempts = max_attempts

    def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        """Release every expired lease.  Returns how many jobs were touched.

        Jobs that still have attempts left go back to ``pending`` at their
        original ``created_at``; jobs that have used them all are failed.
        """
        stamp = to_iso(now or utc_now())
        try:
            dead = self.store.write(
                """
                UPDATE nipr_jobs
                SET status        = 'failed',
                    started_at    = NULL,
                    locked_until  = NULL,
                    error_message = :error,
                    completed_at  = :now,
                    updated_at    = :now
                WHERE status = 'processing'
                  AND locked_until < :now
                  AND attempts >= :max_attempts
                RETURNING *
                """,
                {
                    "now": stamp,
                    "max_attempts": self.max_attempts,
                    "error": (
                        f"Exceeded maximum attempts ({self.max_attempts}) "
                        "without completing"
                    ),
                },
            )
            requeued = self.store.write(
                """
                UPDATE nipr_jobs
                SET status           = 'pending',
                    started_at       = NULL,
                    locked_until     = NULL,
                    progress         = 0,
                    progress_message = :message,
                    updated_at       = :now
                WHERE status = 'processing'
                  AND locked_until < :now
                RETURNING *
                """,
                {"now": stamp, "message": REQUEUED_MESSAGE},
            )
        except sqlite3.Error as exc:
            raise AcquisitionError(f"Could not release stale leases: {exc}") from exc

        for job in dead:
            logger.warning(
                "Job %s dead-lettered after %d attempts", short_id(job.id), job.attempts
            )
        for job in requeued:
            logger.info(
                "Released stale lease on job %s (attempt %d/%d)",
                short_id(job.id),
                job.attempts,
                self.max_attempts,
            )
        return len(dead) + len(requeued)

    def claim_next_pending(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically lease the oldest pending job.

        Returns *None*, without writing anything, when nothing is pending
        or another job already holds the lease.
        """
        claimed = self._claim(
            f"""
            UPDATE nipr_jobs
            {_CLAIM_SET}
            WHERE id = (
                    SELECT id FROM nipr_jobs
                    WHERE status = 'pending'
                    ORDER BY created_at ASC, rowid ASC
                    LIMIT 1
                )
              AND status = 'pending'
              AND {_NOTHING_PROCESSING}
            RETURNING *
            """,
            {},
            now,
        )
        return claimed[0] if claimed else None

    def claim_job(self, job_id: str, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically lease *job_id* if it is next in line and the queue is idle.

        Used for inline processing of a fresh submission: succeeds only
        when the job is pending, nothing is processing and no older job is
        waiting, so it never jumps the queue.
        """
        claimed = self._claim(
            f"""
            UPDATE nipr_jobs
            {_CLAIM_SET}
            WHERE id = :job_id
              AND status = 'pending'
              AND {_NOTHING_PROCESSING}
              AND NOT EXISTS (
                    SELECT 1 FROM nipr_jobs AS older
                    WHERE older.status = 'pending'
                      AND (older.created_at < nipr_jobs.created_at
                           OR (older.created_at = nipr_jobs.created_at
                               AND older.rowid < nipr_jobs.rowid))
                )
            RETURNING *
            """,
            {"job_id": job_id},
            now,
        )
        return claimed[0] if claimed else None

    def _claim(self, sql: str, params: dict, now: Optional[datetime]) -> List[Job]:
        moment = now or utc_now()
        params = dict(
            params,
            now=to_iso(moment),
            until=to_iso(moment + self.lease_duration),
            message=STARTING_MESSAGE,
        )
        try:
            claimed = self.store.write(sql, params)
        except sqlite3.Error as exc:
            raise AcquisitionError(f"Could not acquire job: {exc}") from exc
        for job in claimed:
            logger.info(
                "Leased job %s until %s (attempt %d)",
                short_id(job.id),
                job.locked_until,
                job.attempts,
            )
        return claimed
