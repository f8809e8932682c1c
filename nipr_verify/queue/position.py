"""
Queue Position Estimator

Read-only views of the queue used for display and monitoring.  Nothing
here feeds scheduling decisions.
"""

from typing import Dict, Optional

from .models import STATUSES
from .store import JobStore


class QueuePosition:
    """Ranks pending jobs and counts jobs per status."""

    def __init__(self, store: JobStore) -> None:
        self.store = store

    def position_of(self, job_id: str) -> Optional[int]:
        """1-based rank of *job_id* among pending jobs; *None* if not pending."""
        rows = self.store.query(
            """
            SELECT COUNT(*) AS ahead
            FROM nipr_jobs AS target
            JOIN nipr_jobs AS other
              ON other.status = 'pending'
             AND (other.created_at < target.created_at
                  OR (other.created_at = target.created_at
                      AND other.rowid <= target.rowid))
            WHERE target.id = ?
              AND target.status = 'pending'
            """,
            (job_id,),
        )
        rank = rows[0]["ahead"] if rows else 0
        return rank or None

    def queue_depth(self) -> Dict[str, int]:
        """Count of jobs in every status, zero-filled."""
        counts = {status: 0 for status in STATUSES}
        rows = self.store.query(
            "SELECT status, COUNT(*) AS n FROM nipr_jobs GROUP BY status"
        )
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    def has_pending(self) -> bool:
        rows = self.store.query(
            "SELECT 1 FROM nipr_jobs WHERE status = 'pending' LIMIT 1"
        )
        return bool(rows)
