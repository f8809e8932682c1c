"""
SQLite-Backed Job Store

Provides durable persistence for verification Jobs using a local SQLite
database.  The database, table and indexes are created automatically on
first use.

The store itself holds no policy.  Lease transitions live in
:mod:`.lease`, terminal transitions in :mod:`.completion`; both go
through :meth:`JobStore.write` so that every state change is one
statement committed on its own.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from nipr_verify.config import DEFAULT_DB_PATH
from nipr_verify.utils import short_id, to_iso, utc_now

from .errors import DuplicateSubmissionError, JobNotFoundError
from .models import ACTIVE_STATUSES, Job, PENDING, VerificationInput

logger = logging.getLogger(__name__)


class JobStore:
    """CRUD interface for :class:`Job` rows backed by SQLite.

    Args:
        db_path: Path to the SQLite database file.  Parent directories
                 are created automatically if they don't exist.
        timeout: Seconds to wait on a locked database before failing.
    """

    _CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS nipr_jobs (
        id               TEXT PRIMARY KEY,
        user_id          TEXT NOT NULL,
        last_name        TEXT NOT NULL,
        npn              TEXT NOT NULL,
        ssn_last4        TEXT NOT NULL,
        dob              TEXT NOT NULL,
        status           TEXT NOT NULL DEFAULT 'pending'
                         CHECK (status IN ('pending', 'processing',
                                           'completed', 'failed')),
        started_at       TEXT,
        locked_until     TEXT,
        attempts         INTEGER NOT NULL DEFAULT 0,
        result_files     TEXT NOT NULL DEFAULT '[]',
        result_carriers  TEXT NOT NULL DEFAULT '[]',
        error_message    TEXT,
        progress         INTEGER NOT NULL DEFAULT 0,
        progress_message TEXT NOT NULL DEFAULT '',
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL,
        completed_at     TEXT
    );
    """

    _CREATE_INDEXES = (
        "CREATE INDEX IF NOT EXISTS idx_nipr_jobs_status_created "
        "ON nipr_jobs (status, created_at)",
        # One active job per user.
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_nipr_jobs_user_active "
        "ON nipr_jobs (user_id) WHERE status IN ('pending', 'processing')",
        # One job in flight, globally.
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_nipr_jobs_one_processing "
        "ON nipr_jobs (status) WHERE status = 'processing'",
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            db_path, timeout=timeout, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
        self._conn.execute(self._CREATE_TABLE)
        for statement in self._CREATE_INDEXES:
            self._conn.execute(statement)
        self._conn.commit()
        logger.info("JobStore initialised (%s)", db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Low-level access (used by the lease / completion components)
    # ------------------------------------------------------------------

    def write(self, sql: str, params: Any = ()) -> List[Job]:
        """Run one mutating statement in its own transaction.

        Rows produced by a ``RETURNING`` clause are decoded into Jobs.
        The transaction is rolled back if the statement fails.
        """
        with self._lock:
            try:
                cursor = self._conn.execute(sql, params)
                rows = cursor.fetchall() if cursor.description else []
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return [Job.from_row(dict(r)) for r in rows]

    def query(self, sql: str, params: Any = ()) -> List[sqlite3.Row]:
        """Run a read-only statement."""
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        verification: VerificationInput,
        now: Optional[datetime] = None,
    ) -> Job:
        """Insert a new pending job for *user_id*.

        Raises:
            DuplicateSubmissionError: the user already has an active job.
        """
        stamp = to_iso(now or utc_now())
        job = Job(
            user_id=user_id,
            last_name=verification.last_name,
            npn=verification.npn,
            ssn_last4=verification.ssn_last4,
            dob=verification.dob,
            status=PENDING,
            created_at=stamp,
            updated_at=stamp,
        )
        try:
            self.write(
                """
                INSERT INTO nipr_jobs
                    (id, user_id, last_name, npn, ssn_last4, dob,
                     status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.user_id,
                    job.last_name,
                    job.npn,
                    job.ssn_last4,
                    job.dob,
                    job.status,
                    job.created_at,
                    job.updated_at,
                ),
            )
        except sqlite3.IntegrityError:
            existing = self.active_job_for_user(user_id)
            if existing is None:
                raise
            raise DuplicateSubmissionError(existing)
        logger.info("Created job %s (user=%s)", short_id(job.id), user_id)
        return job

    def get(self, job_id: str) -> Job:
        """Return the job with *job_id* or raise :class:`JobNotFoundError`."""
        rows = self.query("SELECT * FROM nipr_jobs WHERE id = ?", (job_id,))
        if not rows:
            raise JobNotFoundError(job_id)
        return Job.from_row(dict(rows[0]))

    def get_for_user(self, job_id: str, user_id: str) -> Job:
        """Like :meth:`get` but only if *user_id* owns the job."""
        rows = self.query(
            "SELECT * FROM nipr_jobs WHERE id = ? AND user_id = ?",
            (job_id, user_id),
        )
        if not rows:
            raise JobNotFoundError(job_id)
        return Job.from_row(dict(rows[0]))

    def active_job_for_user(self, user_id: str) -> Optional[Job]:
        """The user's pending/processing job, if any."""
        placeholders = ", ".join("?" for _ in ACTIVE_STATUSES)
        rows = self.query(
            f"""
            SELECT * FROM nipr_jobs
            WHERE user_id = ? AND status IN ({placeholders})
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (user_id, *ACTIVE_STATUSES),
        )
        if not rows:
            return None
        return Job.from_row(dict(rows[0]))

    def list(
        self,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Job]:
        """Return jobs, newest first, optionally filtered."""
        clauses = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.query(
            f"SELECT * FROM nipr_jobs {where} ORDER BY created_at DESC, rowid DESC",
            params,
        )
        return [Job.from_row(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "JobStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
