"""
Shared pytest fixtures for the NIPR queue tests
"""

from datetime import datetime, timezone

import pytest

from nipr_verify.config import QueueSettings
from nipr_verify.queue import AutomationResult, JobStore, VerificationInput, Worker

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


def make_input(npn: str = "1234567") -> VerificationInput:
    return VerificationInput(last_name="Doe", npn=npn, ssn_last4="1234", dob="01/31/1980")


class FakeExecutor:
    """Records calls and returns (or raises) a canned outcome."""

    def __init__(self, result=None, error=None):
        self.result = result or AutomationResult(
            success=True,
            message="ok",
            files=["receipt.pdf", "report.pdf"],
            carriers=["Acme Life", "Globe Mutual"],
            licensed_states=["TX", "OK"],
        )
        self.error = error
        self.calls = []

    def __call__(self, verification, progress):
        self.calls.append(verification)
        progress(50, "Halfway there")
        if self.error is not None:
            raise self.error
        return self.result


class FakeChainer:
    """Counts continuation triggers instead of sending HTTP requests."""

    enabled = True

    def __init__(self):
        self.triggers = 0

    def trigger(self):
        self.triggers += 1
        return None


class RecordingDispatcher:
    """Holds submitted runs so tests can inspect the in-flight state."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))

    def run_all(self):
        pending, self.submitted = self.submitted, []
        return [fn(*args, **kwargs) for fn, args, kwargs in pending]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def settings(db_path):
    return QueueSettings(db_path=db_path, lease_seconds=600, max_attempts=3)


@pytest.fixture
def store(db_path):
    job_store = JobStore(db_path)
    yield job_store
    job_store.close()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def chainer():
    return FakeChainer()


@pytest.fixture
def worker(store, executor, settings, chainer):
    return Worker(store, executor, settings=settings, chainer=chainer)
