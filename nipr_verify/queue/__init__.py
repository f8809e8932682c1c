"""
NIPR Verification Queue System

Provides a durable, SQLite-backed, lease-locked job queue that runs one
NIPR verification at a time across short-lived worker invocations.
"""

from .models import AutomationResult, Job, VerificationInput
from .store import JobStore
from .lease import LeaseManager
from .completion import CompletionRecorder
from .position import QueuePosition
from .chainer import SelfTriggerChainer
from .dispatch import BackgroundDispatcher, InlineDispatcher
from .worker import TickResult, Worker
from .api import SubmissionGatekeeper, SubmissionResult
from .errors import (
    AcquisitionError,
    DuplicateSubmissionError,
    ExecutionError,
    JobNotFoundError,
    QueueError,
)

__all__ = [
    "AutomationResult",
    "Job",
    "VerificationInput",
    "JobStore",
    "LeaseManager",
    "CompletionRecorder",
    "QueuePosition",
    "SelfTriggerChainer",
    "BackgroundDispatcher",
    "InlineDispatcher",
    "TickResult",
    "Worker",
    "SubmissionGatekeeper",
    "SubmissionResult",
    "AcquisitionError",
    "DuplicateSubmissionError",
    "ExecutionError",
    "JobNotFoundError",
    "QueueError",
]
