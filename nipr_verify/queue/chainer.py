"""
Self-Trigger Chainer

A single invocation cannot loop past the runtime's execution cap, so a
worker that finishes while jobs are still waiting starts a fresh
invocation of the worker endpoint instead.  The call is fire-and-forget:
it is sent from a daemon thread, never awaited, and any failure is only
logged.  Cloud Scheduler hitting the same endpoint on a fixed period is
the fallback that eventually drains anything a lost trigger left behind.
"""

import logging
import threading
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

PROCESS_PATH = "/process"


class SelfTriggerChainer:
    """Spawns the next worker invocation over HTTP.

    Args:
        base_url:    Public URL of the deployment (``APP_URL``).  Without it
                     chaining is disabled and the periodic trigger takes over.
        cron_secret: Bearer token expected by the worker endpoint.
        timeout:     Socket timeout for the continuation request.
        post:        HTTP POST callable, injectable for tests.
    """

    def __init__(
        self,
        base_url: str = "",
        cron_secret: str = "",
        timeout: float = 5.0,
        post: Optional[Callable[..., requests.Response]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if self.base_url and not self.base_url.startswith("http"):
            self.base_url = f"https://{self.base_url}"
        self.cron_secret = cron_secret
        self.timeout = timeout
        self._post = post or requests.post

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def trigger(self) -> Optional[threading.Thread]:
        """Fire the continuation call without waiting for it.

        Returns the thread carrying the request (mainly so tests can join
        it), or *None* when chaining is disabled.
        """
        if not self.enabled:
            logger.info("No APP_URL configured, scheduler will pick up next job")
            return None

        thread = threading.Thread(
            target=self._send, name="nipr-chain", daemon=True
        )
        try:
            thread.start()
        except RuntimeError as exc:
            logger.warning("Could not start chain thread, scheduler will pick up next job: %s", exc)
            return None
        logger.info("Triggered next job processing")
        return thread

    def _send(self) -> None:
        headers = {"X-Internal-Call": "true"}
        if self.cron_secret:
            headers["Authorization"] = f"Bearer {self.cron_secret}"
        try:
            response = self._post(
                f"{self.base_url}{PROCESS_PATH}",
                headers=headers,
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning(
                    "Chained trigger answered HTTP %d, scheduler will pick up next job",
                    response.status_code,
                )
        except requests.Timeout:
            # The worker keeps running after we stop listening.
            logger.debug("Chained trigger sent; stopped waiting for the response")
        except Exception as exc:  # noqa: BLE001 - never let the chain crash the caller
            logger.warning(
                "Failed to trigger next job, scheduler will pick it up: %s", exc
            )
