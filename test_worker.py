"""
Worker loop tests: execute, record, persist, chain
"""

import asyncio
import threading
from datetime import timedelta

from conftest import FakeChainer, FakeExecutor, RecordingDispatcher, make_input
from nipr_verify.config import QueueSettings
from nipr_verify.queue import AutomationResult, LeaseManager, Worker
from nipr_verify.queue.models import COMPLETED, FAILED, PENDING, PROCESSING
from nipr_verify.utils import utc_now


def test_idle_tick(worker, executor, chainer):
    tick = worker.process_next()

    assert tick.idle
    assert tick.to_dict() == {"triggered": False, "idle": True}
    assert executor.calls == []
    assert chainer.triggers == 0


def test_successful_job_is_completed_and_persisted(store, settings, chainer):
    saved = []
    worker = Worker(
        store,
        FakeExecutor(),
        settings=settings,
        chainer=chainer,
        on_success=lambda user_id, result: saved.append((user_id, result.carriers)),
    )
    created = store.create("u1", make_input())

    tick = worker.process_next()

    assert tick.job_id == created.id
    assert tick.status == COMPLETED
    job = store.get(created.id)
    assert job.status == COMPLETED
    assert job.result_files == ["receipt.pdf", "report.pdf"]
    assert job.result_carriers == ["Acme Life", "Globe Mutual"]
    assert saved == [("u1", ["Acme Life", "Globe Mutual"])]
    assert chainer.triggers == 0


def test_executor_exception_marks_job_failed(store, settings, chainer):
    worker = Worker(
        store,
        FakeExecutor(error=TimeoutError("network timeout")),
        settings=settings,
        chainer=chainer,
    )
    created = store.create("u1", make_input())

    tick = worker.process_next()

    assert tick.status == FAILED
    job = store.get(created.id)
    assert job.status == FAILED
    assert job.error_message == "network timeout"
    assert job.completed_at is not None
    assert store.list(status=PROCESSING) == []


def test_reported_failure_marks_job_failed(store, settings, chainer):
    executor = FakeExecutor(
        result=AutomationResult(success=False, message="NIPR automation failed",
                                error="Producer not found")
    )
    worker = Worker(store, executor, settings=settings, chainer=chainer)
    created = store.create("u1", make_input())

    worker.process_next()

    assert store.get(created.id).error_message == "Producer not found"


def test_async_executor_is_awaited(store, settings, chainer):
    async def executor(verification, progress):
        progress(10, "async step")
        return AutomationResult(success=True, files=[f"{verification.npn}.pdf"])

    worker = Worker(store, executor, settings=settings, chainer=chainer)
    created = store.create("u1", make_input(npn="555"))

    worker.process_next()

    assert store.get(created.id).result_files == ["555.pdf"]


def test_progress_is_visible_while_running(store, settings, chainer):
    seen = {}

    def executor(verification, progress):
        progress(42, "Filling billing details")
        job = store.list(status=PROCESSING)[0]
        seen["progress"] = (job.progress, job.progress_message)
        return AutomationResult(success=True)

    store.create("u1", make_input())
    Worker(store, executor, settings=settings, chainer=chainer).process_next()

    assert seen["progress"] == (42, "Filling billing details")


def test_chains_when_jobs_remain(store, settings, chainer):
    worker = Worker(store, FakeExecutor(), settings=settings, chainer=chainer)
    store.create("u1", make_input())
    store.create("u2", make_input())

    worker.process_next()
    assert chainer.triggers == 1

    worker.process_next()
    assert chainer.triggers == 1


def test_failed_job_still_chains(store, settings, chainer):
    worker = Worker(
        store, FakeExecutor(error=RuntimeError("boom")), settings=settings, chainer=chainer
    )
    store.create("u1", make_input())
    store.create("u2", make_input())

    worker.process_next()

    assert chainer.triggers == 1


def test_persistence_failure_does_not_undo_completion(store, settings, chainer):
    def broken_sink(user_id, result):
        raise ConnectionError("user service down")

    worker = Worker(
        store, FakeExecutor(), settings=settings, chainer=chainer, on_success=broken_sink
    )
    created = store.create("u1", make_input())

    worker.process_next()

    assert store.get(created.id).status == COMPLETED


def test_trigger_returns_before_the_run(store, settings, chainer):
    dispatcher = RecordingDispatcher()
    executor = FakeExecutor()
    worker = Worker(
        store, executor, settings=settings, chainer=chainer, dispatcher=dispatcher
    )
    created = store.create("u1", make_input())

    tick = worker.trigger()

    assert tick.to_dict() == {"triggered": True, "jobId": created.id}
    assert store.get(created.id).status == PROCESSING
    assert executor.calls == []

    dispatcher.run_all()
    assert store.get(created.id).status == COMPLETED


def test_crashed_invocation_is_recovered(store, settings):
    # First invocation leases the job and dies before recording anything.
    crashed = Worker(store, FakeExecutor(), settings=settings,
                     chainer=FakeChainer(), dispatcher=RecordingDispatcher())
    created = store.create("u1", make_input())
    crashed.trigger()
    assert store.get(created.id).status == PROCESSING

    later = utc_now() + timedelta(seconds=settings.lease_seconds + 60)
    assert crashed.lease.reclaim_stale(now=later) == 1
    assert store.get(created.id).status == PENDING

    tick = Worker(store, FakeExecutor(), settings=settings,
                  chainer=FakeChainer()).process_next()
    assert tick.job_id == created.id
    job = store.get(created.id)
    assert job.status == COMPLETED
    assert job.attempts == 2


def test_late_result_from_reclaimed_run_is_dropped(store, settings, chainer):
    reruns = []

    def outlived_lease(verification, progress):
        # Meanwhile another invocation reclaims the lease and re-runs the job.
        rival = LeaseManager(store)
        rival.reclaim_stale(now=utc_now() + timedelta(seconds=settings.lease_seconds + 60))
        reruns.append(rival.claim_next_pending())
        progress(80, "late progress")
        return AutomationResult(success=True, files=["stale.pdf"])

    created = store.create("u1", make_input())
    store.create("u2", make_input())

    tick = Worker(store, outlived_lease, settings=settings, chainer=chainer).process_next()

    assert tick.status is None
    job = store.get(created.id)
    assert job.status == PROCESSING
    assert job.attempts == 2
    assert job.locked_until == reruns[0].locked_until
    assert job.result_files == []
    assert job.progress_message == "Starting verification..."
    assert LeaseManager(store).claim_next_pending() is None


def test_sync_run_over_the_cap_fails(store, db_path, chainer):
    release = threading.Event()

    def stuck(verification, progress):
        release.wait(10)
        return AutomationResult(success=True)

    settings = QueueSettings(db_path=db_path, lease_seconds=600, execution_cap_seconds=0.2)
    created = store.create("u1", make_input())
    try:
        tick = Worker(store, stuck, settings=settings, chainer=chainer).process_next()
    finally:
        release.set()

    assert tick.status == FAILED
    assert store.get(created.id).error_message == "Execution exceeded the 0.2s cap"


def test_async_run_over_the_cap_is_cancelled(store, db_path, chainer):
    cancelled = []

    async def slow(verification, progress):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return AutomationResult(success=True)

    settings = QueueSettings(db_path=db_path, lease_seconds=600, execution_cap_seconds=0.2)
    created = store.create("u1", make_input())

    Worker(store, slow, settings=settings, chainer=chainer).process_next()

    assert cancelled == [True]
    job = store.get(created.id)
    assert job.status == FAILED
    assert job.error_message == "Execution exceeded the 0.2s cap"
