"""
Completion recorder and queue position tests
"""

from datetime import timedelta

from conftest import T0, make_input
from nipr_verify.queue import CompletionRecorder, LeaseManager, QueuePosition
from nipr_verify.queue.models import COMPLETED, FAILED, PENDING, PROCESSING


def _leased(store, user="u1", now=T0):
    created = store.create(user, make_input(), now=now)
    LeaseManager(store).claim_next_pending(now=now)
    return created


def test_complete_success_writes_results(store):
    job = _leased(store)

    done = CompletionRecorder(store).complete(
        job.id, success=True, files=["a.pdf", "b.pdf"], carriers=["Acme Life"]
    )

    assert done.status == COMPLETED
    assert done.result_files == ["a.pdf", "b.pdf"]
    assert done.result_carriers == ["Acme Life"]
    assert done.progress == 100
    assert done.error_message is None
    assert done.started_at is None and done.locked_until is None
    assert done.completed_at is not None
    assert store.get(job.id).to_dict() == done.to_dict()


def test_complete_failure_keeps_message(store):
    job = _leased(store)

    done = CompletionRecorder(store).complete(
        job.id, success=False, error_message="network timeout"
    )

    assert done.status == FAILED
    assert done.error_message == "network timeout"
    assert done.result_files == []
    assert done.completed_at is not None


def test_second_completion_is_ignored(store):
    job = _leased(store)
    recorder = CompletionRecorder(store)
    recorder.complete(job.id, success=True, files=["a.pdf"], carriers=["Acme Life"])
    first = store.get(job.id)

    assert recorder.complete(job.id, success=False, error_message="late duplicate") is None
    assert store.get(job.id).to_dict() == first.to_dict()


def test_completion_of_pending_job_is_ignored(store):
    job = store.create("u1", make_input(), now=T0)

    assert CompletionRecorder(store).complete(job.id, success=True) is None
    assert store.get(job.id).status == PENDING


def test_progress_only_while_processing(store):
    recorder = CompletionRecorder(store)
    pending = store.create("u2", make_input(), now=T0 + timedelta(seconds=5))
    job = _leased(store, user="u1", now=T0)

    assert recorder.update_progress(job.id, 140, "Downloading") is True
    assert store.get(job.id).progress == 100
    assert store.get(job.id).progress_message == "Downloading"
    assert recorder.update_progress(pending.id, 40, "nope") is False
    assert store.get(pending.id).progress == 0


def test_position_of_pending_jobs(store):
    positions = QueuePosition(store)
    running = _leased(store, user="runner", now=T0)
    second = store.create("u2", make_input(), now=T0 + timedelta(seconds=2))
    first = store.create("u1", make_input(), now=T0 + timedelta(seconds=1))

    assert positions.position_of(first.id) == 1
    assert positions.position_of(second.id) == 2
    assert positions.position_of(running.id) is None
    assert positions.position_of("missing") is None


def test_queue_depth_is_zero_filled(store):
    positions = QueuePosition(store)
    assert positions.queue_depth() == {
        "pending": 0, "processing": 0, "completed": 0, "failed": 0,
    }
    assert positions.has_pending() is False

    _leased(store, user="u1")
    store.create("u2", make_input(), now=T0 + timedelta(seconds=1))

    assert positions.queue_depth() == {
        "pending": 1, "processing": 1, "completed": 0, "failed": 0,
    }
    assert positions.has_pending() is True


def test_late_completion_cannot_release_a_rerun_lease(store):
    lease = LeaseManager(store, lease_seconds=600)
    recorder = CompletionRecorder(store)
    job = store.create("u1", make_input(), now=T0)
    store.create("u2", make_input(), now=T0 + timedelta(seconds=1))
    first = lease.claim_next_pending(now=T0)
    lease.reclaim_stale(now=T0 + timedelta(minutes=11))
    rerun = lease.claim_next_pending(now=T0 + timedelta(minutes=11))
    assert rerun.id == job.id and rerun.attempts == 2

    late = recorder.complete(
        job.id, success=False, error_message="stale result", attempt=first.attempts
    )

    assert late is None
    assert recorder.update_progress(job.id, 90, "stale", attempt=first.attempts) is False
    current = store.get(job.id)
    assert current.status == PROCESSING
    assert current.locked_until == rerun.locked_until
    assert current.error_message is None
    # The re-run still holds the only lease.
    assert lease.claim_next_pending(now=T0 + timedelta(minutes=12)) is None

    assert recorder.update_progress(job.id, 50, "re-run", attempt=rerun.attempts) is True
    done = recorder.complete(job.id, success=True, attempt=rerun.attempts)
    assert done.status == COMPLETED
