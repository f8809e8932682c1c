#!/usr/bin/env python3
"""
NIPR Verification Queue - HTTP Entry Point
Cloud Function / Flask app exposing submission, polling and the worker trigger

Usage:
    # Local testing
    python main.py

    # Cloud Function deployment
    gcloud functions deploy nipr_verification \
        --runtime python311 \
        --trigger-http \
        --entry-point main \
        --memory 2GiB \
        --timeout 300s

    # Cloud Scheduler fallback trigger (drains anything a lost chain left)
    gcloud scheduler jobs create http nipr-queue \
        --schedule "*/5 * * * *" \
        --uri "$APP_URL/process" --http-method POST \
        --headers "Authorization=Bearer $CRON_SECRET"
"""

import logging
import sqlite3
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from nipr_verify.config import QueueSettings
from nipr_verify.queue import (
    AcquisitionError,
    BackgroundDispatcher,
    DuplicateSubmissionError,
    JobNotFoundError,
    JobStore,
    SelfTriggerChainer,
    SubmissionGatekeeper,
    VerificationInput,
    Worker,
)
from nipr_verify.queue.api import DIRECT, INLINE
from nipr_verify.utils import ensure_directories

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


class QueueService:
    """Lazily wires the store, worker and gatekeeper for one process.

    The store is opened on first use.  If it cannot be opened the
    gatekeeper falls back to running submissions synchronously and the
    next request tries the store again.
    """

    def __init__(
        self,
        settings: QueueSettings,
        executor: Optional[Callable] = None,
        dispatcher=None,
        chainer: Optional[SelfTriggerChainer] = None,
        on_success: Optional[Callable] = None,
    ):
        self.settings = settings
        self.executor = executor or self._default_executor()
        self.dispatcher = dispatcher or BackgroundDispatcher()
        self.chainer = chainer or SelfTriggerChainer(
            settings.app_url,
            settings.cron_secret,
            timeout=settings.chain_timeout_seconds,
        )
        self.on_success = on_success or self._default_user_data_sink()
        self._worker: Optional[Worker] = None

    def _default_executor(self):
        from nipr_verify.nipr_automation import NIPRExecutor  # lazy: pulls in playwright

        return NIPRExecutor(downloads_dir=self.settings.downloads_dir)

    def _default_user_data_sink(self):
        if not self.settings.user_data_api_url:
            return None
        from nipr_verify.user_data import UserDataClient

        return UserDataClient(
            self.settings.user_data_api_url, cron_secret=self.settings.cron_secret
        )

    @property
    def worker(self) -> Optional[Worker]:
        if self._worker is None:
            try:
                store = JobStore(self.settings.db_path)
            except sqlite3.Error as e:
                logger.error("Could not open job store %s: %s", self.settings.db_path, e)
                return None
            self._worker = Worker(
                store,
                self.executor,
                settings=self.settings,
                chainer=self.chainer,
                dispatcher=self.dispatcher,
                on_success=self.on_success,
            )
        return self._worker

    @property
    def gatekeeper(self) -> SubmissionGatekeeper:
        return SubmissionGatekeeper(
            self.worker, executor=self.executor, on_success=self.on_success
        )

    def require_worker(self) -> Worker:
        worker = self.worker
        if worker is None:
            raise AcquisitionError("Job store unavailable")
        return worker


def _error(message: str, status: int, **extra: Any):
    body: Dict[str, Any] = {"success": False, "error": message}
    body.update(extra)
    return jsonify(body), status


def create_app(
    settings: Optional[QueueSettings] = None,
    executor: Optional[Callable] = None,
    dispatcher=None,
    chainer: Optional[SelfTriggerChainer] = None,
    on_success: Optional[Callable] = None,
) -> Flask:
    """Build the Flask app.  Every collaborator can be injected for tests."""
    settings = settings or QueueSettings.from_env()
    service = QueueService(settings, executor, dispatcher, chainer, on_success)

    app = Flask(__name__)
    app.config["QUEUE_SERVICE"] = service

    def current_user() -> Optional[str]:
        # Authentication happens upstream; it forwards the resolved user.
        return request.headers.get("X-User-Id") or None

    def worker_authorized() -> bool:
        if not settings.cron_secret:
            return True
        return request.headers.get("Authorization") == f"Bearer {settings.cron_secret}"

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    @app.route("/submit", methods=["POST"])
    def submit():
        """Submit a verification request for the calling user"""
        user_id = current_user()
        if not user_id:
            return _error("Unauthorized", 401)

        body = request.get_json(silent=True) or {}
        verification = VerificationInput.from_request(body)
        problems = verification.validate()
        if problems:
            return _error("; ".join(problems), 400)

        logger.info("Submission from user %s (npn=%s)", user_id, verification.npn)
        try:
            outcome = service.gatekeeper.submit(user_id, verification)
        except DuplicateSubmissionError as e:
            return _error(
                "A NIPR verification is already in progress for this user",
                409,
                existingJobId=e.existing.id,
                existingStatus=e.existing.status,
            )

        payload = outcome.to_dict()
        if outcome.mode == DIRECT:
            payload["success"] = outcome.error is None
            return jsonify(payload), (200 if outcome.error is None else 500)

        payload["success"] = True
        if outcome.mode == INLINE:
            payload["message"] = "Verification started"
        else:
            payload["message"] = f"Queued at position {outcome.position}"
        return jsonify(payload), 202

    @app.route("/jobs/<job_id>")
    def job_status(job_id: str):
        """Poll a job owned by the calling user"""
        user_id = current_user()
        if not user_id:
            return _error("Unauthorized", 401)
        try:
            return jsonify(service.gatekeeper.job_status(user_id, job_id))
        except JobNotFoundError:
            return _error("Job not found", 404)
        except AcquisitionError as e:
            return _error(str(e), 503)

    @app.route("/process", methods=["GET", "POST"])
    def process():
        """Worker trigger: scheduler, chained continuation or manual"""
        if not worker_authorized():
            return _error("Unauthorized", 401)
        try:
            tick = service.require_worker().trigger()
        except AcquisitionError as e:
            logger.error("Failed to acquire job from queue: %s", e)
            return _error("Failed to acquire job from queue", 500, details=str(e))
        return jsonify(tick.to_dict())

    @app.route("/queue")
    def queue_status():
        """Queue depth per status, for monitoring"""
        try:
            worker = service.require_worker()
        except AcquisitionError as e:
            return _error(str(e), 503)
        return jsonify(worker.positions.queue_depth())

    return app


_app: Optional[Flask] = None


def main(request_):
    """
    Cloud Function entry point.

    Routes the incoming request through the Flask app, so the same
    handlers serve ``/submit``, ``/jobs/<id>``, ``/process`` and ``/queue``.
    """
    global _app
    if _app is None:
        ensure_directories()
        _app = create_app()
    with _app.request_context(request_.environ):
        return _app.full_dispatch_request()


# For local testing
if __name__ == "__main__":
    ensure_directories()
    local_app = create_app()
    print("Starting NIPR queue emulator on http://localhost:8080")
    print("Test with: curl -X POST http://localhost:8080/process")
    local_app.run(host="0.0.0.0", port=8080)
