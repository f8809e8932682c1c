"""
Queue Worker

One worker tick: release stale leases, lease the oldest pending job, run
the automation executor on it, record the outcome, hand derived data to
the persistence collaborator and, if anything is still waiting, chain a
fresh invocation.

A tick never loops.  Each invocation handles at most one job so that it
fits inside the runtime's execution cap; draining the queue is the job
of the chainer and of the periodic scheduler.
"""

import asyncio
import inspect
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from nipr_verify.config import QueueSettings
from nipr_verify.utils import short_id

from .chainer import SelfTriggerChainer
from .completion import CompletionRecorder
from .dispatch import InlineDispatcher
from .errors import ExecutionError
from .lease import LeaseManager
from .models import AutomationResult, Job, VerificationInput
from .position import QueuePosition
from .store import JobStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], Any]
Executor = Callable[[VerificationInput, ProgressCallback], Any]
UserDataSink = Callable[[str, AutomationResult], Any]


@dataclass
class TickResult:
    """What one worker invocation did."""

    triggered: bool
    job_id: Optional[str] = None
    status: Optional[str] = None
    reclaimed: int = 0

    @property
    def idle(self) -> bool:
        return not self.triggered

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"triggered": self.triggered}
        if self.triggered:
            payload["jobId"] = self.job_id
            if self.status:
                payload["status"] = self.status
        else:
            payload["idle"] = True
        if self.reclaimed:
            payload["reclaimed"] = self.reclaimed
        return payload


def run_executor(
    executor: Executor,
    verification: VerificationInput,
    progress: ProgressCallback,
    timeout: Optional[float] = None,
) -> AutomationResult:
    """Call *executor*, driving it to completion if it is a coroutine.

    With a *timeout* the whole run, sync part and awaited part together,
    is capped.  A coroutine that overruns is cancelled so the browser
    session unwinds; a plain function cannot be interrupted and is left
    to finish on its own thread, its writes fenced off by the lease.

    Raises:
        ExecutionError: the executor raised, reported failure or overran.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    try:
        outcome = _call(executor, verification, progress, timeout)
        if inspect.isawaitable(outcome):
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            outcome = asyncio.run(_await(outcome, remaining, timeout))
    except ExecutionError:
        raise
    except Exception as exc:
        raise ExecutionError(str(exc) or exc.__class__.__name__) from exc

    if not isinstance(outcome, AutomationResult):
        raise ExecutionError(
            f"Executor returned {type(outcome).__name__}, expected AutomationResult"
        )
    if not outcome.success:
        raise ExecutionError(outcome.error or outcome.message or "Automation failed")
    return outcome


def _overran(timeout: float) -> ExecutionError:
    return ExecutionError(f"Execution exceeded the {timeout:g}s cap")


def _call(executor, verification, progress, timeout):
    if timeout is None:
        return executor(verification, progress)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="nipr-exec")
    try:
        future = pool.submit(executor, verification, progress)
        done, _ = wait([future], timeout=timeout)
        if not done:
            raise _overran(timeout)
        return future.result()
    finally:
        pool.shutdown(wait=False)


async def _await(awaitable, remaining, cap):
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=remaining)
    if task in done:
        return task.result()
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    raise _overran(cap)


class Worker:
    """Dispatcher for the verification queue.

    Args:
        store:      Shared job store.
        executor:   Automation executor, ``(input, progress) -> AutomationResult``
                    (may be a coroutine function).
        settings:   Lease, retry and execution-cap settings.
        chainer:    Continuation trigger; disabled if omitted.
        dispatcher: Runs leased jobs for :meth:`trigger`; inline if omitted.
        on_success: Persistence collaborator for carriers / licensed states.
    """

    def __init__(
        self,
        store: JobStore,
        executor: Executor,
        settings: Optional[QueueSettings] = None,
        chainer: Optional[SelfTriggerChainer] = None,
        dispatcher=None,
        on_success: Optional[UserDataSink] = None,
    ) -> None:
        settings = settings or QueueSettings()
        self.store = store
        self.executor = executor
        self.execution_cap = settings.execution_cap_seconds
        self.lease = LeaseManager(
            store,
            lease_seconds=settings.lease_seconds,
            max_attempts=settings.max_attempts,
        )
        self.recorder = CompletionRecorder(store)
        self.positions = QueuePosition(store)
        self.chainer = chainer or SelfTriggerChainer()
        self.dispatcher = dispatcher or InlineDispatcher()
        self.on_success = on_success
        self._last_reclaimed = 0

    # ------------------------------------------------------------------
    # Tick entry-points
    # ------------------------------------------------------------------

    def acquire_next(self) -> Optional[Job]:
        """Steps 1-2: release stale leases, then lease the next job.

        Raises:
            AcquisitionError: the store could not be reached.
        """
        self._last_reclaimed = self.lease.reclaim_stale()
        if self._last_reclaimed:
            logger.info("Released %d stale lease(s)", self._last_reclaimed)
        return self.lease.claim_next_pending()

    def process_next(self) -> TickResult:
        """Run one full tick in the caller and report the final status."""
        job = self.acquire_next()
        if job is None:
            return TickResult(triggered=False, reclaimed=self._last_reclaimed)
        finished = self.run_claimed_job(job)
        return TickResult(
            triggered=True,
            job_id=job.id,
            status=finished.status if finished else None,
            reclaimed=self._last_reclaimed,
        )

    def trigger(self) -> TickResult:
        """Lease a job and hand its run to the dispatcher; return at once."""
        job = self.acquire_next()
        if job is None:
            logger.info("No pending jobs to process")
            return TickResult(triggered=False, reclaimed=self._last_reclaimed)
        self.dispatch(job)
        return TickResult(
            triggered=True, job_id=job.id, reclaimed=self._last_reclaimed
        )

    def dispatch(self, job: Job):
        logger.info("Dispatching job %s", short_id(job.id))
        return self.dispatcher.submit(self.run_claimed_job, job)

    # ------------------------------------------------------------------
    # Steps 3-6
    # ------------------------------------------------------------------

    def run_claimed_job(self, job: Job) -> Optional[Job]:
        """Execute a leased job and always record its outcome.

        Execution failures are absorbed here and never propagate.  If the
        completion itself cannot be written, the lease expires and the
        job is reclaimed by a later tick.
        """
        logger.info(
            "Processing job %s (user=%s, attempt %d)",
            short_id(job.id),
            job.user_id,
            job.attempts,
        )

        def progress(percent: int, message: str = "") -> None:
            self.recorder.update_progress(
                job.id, percent, message, attempt=job.attempts
            )

        result: Optional[AutomationResult] = None
        error: Optional[str] = None
        try:
            result = run_executor(
                self.executor, job.input, progress, timeout=self.execution_cap
            )
        except ExecutionError as exc:
            error = str(exc)
            logger.error("Automation failed for job %s: %s", short_id(job.id), error)
        except Exception as exc:  # noqa: BLE001 - every job must reach a terminal state
            error = str(exc) or exc.__class__.__name__
            logger.exception("Unexpected error running job %s", short_id(job.id))

        finished: Optional[Job] = None
        try:
            if result is not None:
                finished = self.recorder.complete(
                    job.id,
                    success=True,
                    files=result.files,
                    carriers=result.carriers,
                    attempt=job.attempts,
                )
            else:
                finished = self.recorder.complete(
                    job.id,
                    success=False,
                    error_message=error,
                    attempt=job.attempts,
                )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Could not record completion for job %s, lease will expire: %s",
                short_id(job.id),
                exc,
            )

        if finished is not None and result is not None:
            self._persist(job, result)

        self._chain_if_pending()
        return finished

    def _persist(self, job: Job, result: AutomationResult) -> None:
        if self.on_success is None or not result.carriers:
            return
        try:
            self.on_success(job.user_id, result)
            logger.info(
                "Saved %d carriers and %d states for user %s",
                len(result.carriers),
                len(result.licensed_states),
                job.user_id,
            )
        except Exception as exc:  # noqa: BLE001 - derived data is best effort
            logger.error("Failed to save NIPR data for user %s: %s", job.user_id, exc)

    def _chain_if_pending(self) -> None:
        try:
            pending = self.positions.has_pending()
        except Exception as exc:  # noqa: BLE001
            logger.info("Could not check for pending jobs, scheduler will pick up: %s", exc)
            return
        if pending:
            self.chainer.trigger()
