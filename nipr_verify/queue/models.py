"""
Queue Job Model

Defines the Job dataclass used throughout the queue system to represent
a single NIPR verification request, plus the input and result shapes
exchanged with the automation executor.
"""

import json
import re
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from nipr_verify.utils import to_iso, utc_now

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED)
ACTIVE_STATUSES = (PENDING, PROCESSING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

_SSN_LAST4 = re.compile(r"^\d{4}$")
_DOB = re.compile(r"^\d{2}/\d{2}/\d{4}$")
_NPN = re.compile(r"^\d+$")


@dataclass
class VerificationInput:
    """Identity fields needed to look a producer up on NIPR."""

    last_name: str
    npn: str
    ssn_last4: str
    dob: str

    def validate(self) -> List[str]:
        """Return a list of validation problems (empty when valid)."""
        missing = [
            name for name, value in (
                ("lastName", self.last_name),
                ("npn", self.npn),
                ("ssn", self.ssn_last4),
                ("dob", self.dob),
            )
            if not value
        ]
        if missing:
            return ["Missing required fields: " + ", ".join(missing)]

        problems = []
        if not _SSN_LAST4.match(self.ssn_last4):
            problems.append("SSN must be exactly 4 digits")
        if not _DOB.match(self.dob):
            problems.append("DOB must be in MM/DD/YYYY format")
        if not _NPN.match(self.npn):
            problems.append("NPN must be numeric")
        return problems

    @classmethod
    def from_request(cls, data: Dict[str, Any]) -> "VerificationInput":
        """Build from a camelCase request body."""
        return cls(
            last_name=str(data.get("lastName") or "").strip(),
            npn=str(data.get("npn") or "").strip(),
            ssn_last4=str(data.get("ssn") or "").strip(),
            dob=str(data.get("dob") or "").strip(),
        )


@dataclass
class AutomationResult:
    """Outcome reported by an automation executor."""

    success: bool
    message: str = ""
    files: List[str] = field(default_factory=list)
    carriers: List[str] = field(default_factory=list)
    licensed_states: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Job:
    """One verification request and its lease state.

    Attributes:
        user_id:          Owner of the request.
        last_name, npn, ssn_last4, dob: Executor input.
        id:               Unique job identifier (UUID4 hex string).
        status:           One of: pending, processing, completed, failed.
        started_at:       When the current lease was taken (processing only).
        locked_until:     Lease expiry (processing only).
        attempts:         How many times the job has been claimed.
        result_files:     Paths of downloaded artifacts.
        result_carriers:  Carrier names extracted from the report.
        error_message:    Failure reason for ``failed`` jobs.
        progress:         0-100.
        progress_message: Human-readable step description.
        created_at:       Queue order key.
        updated_at:       Last write.
        completed_at:     Set iff status is terminal.
    """

    user_id: str
    last_name: str
    npn: str
    ssn_last4: str
    dob: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = PENDING
    started_at: Optional[str] = None
    locked_until: Optional[str] = None
    attempts: int = 0
    result_files: List[str] = field(default_factory=list)
    result_carriers: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    progress: int = 0
    progress_message: str = ""
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))
    completed_at: Optional[str] = None

    # ------------------------------------------------------------------
    # Serialization helpers
    # ------------------------------------------------------------------

    @property
    def input(self) -> VerificationInput:
        return VerificationInput(
            last_name=self.last_name,
            npn=self.npn,
            ssn_last4=self.ssn_last4,
            dob=self.dob,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        """Return a plain dict representation of the job."""
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        """Construct a Job from a DB row, decoding the JSON list columns."""
        data = dict(row)
        for key in ("result_files", "result_carriers"):
            raw = data.get(key)
            data[key] = json.loads(raw) if raw else []
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)

    def status_view(self, position: Optional[int] = None) -> Dict[str, Any]:
        """The payload returned to the owning user when polling."""
        message = self.progress_message
        if not message and self.status == PENDING:
            message = "Waiting in queue..."
        return {
            "id": self.id,
            "status": self.status,
            "position": position,
            "progress": self.progress or 0,
            "progressMessage": message,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "resultFiles": self.result_files,
            "resultCarriers": self.result_carriers,
            "errorMessage": self.error_message,
        }
