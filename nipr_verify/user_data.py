"""
User NIPR data persistence

Hands the carriers and licensed states found by a successful verification
to the service that owns user records.  The job record keeps its own copy
of the carriers; this is the downstream business copy.
"""

import logging
from typing import Optional

import requests

from nipr_verify.queue.models import AutomationResult

logger = logging.getLogger(__name__)


class UserDataClient:
    """PATCHes ``/api/user/<id>/nipr-data`` on the user service.

    Args:
        base_url:    Base URL of the user service.
        cron_secret: Sent as ``X-Cron-Secret`` for service-to-service auth.
        timeout:     Request timeout in seconds.
        session:     Optional ``requests.Session`` (tests inject a fake).
    """

    def __init__(
        self,
        base_url: str,
        cron_secret: str = "",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cron_secret = cron_secret
        self.timeout = timeout
        self.session = session or requests.Session()

    def __call__(self, user_id: str, result: AutomationResult) -> None:
        self.save(user_id, result)

    def save(self, user_id: str, result: AutomationResult) -> None:
        """Store *result*'s carriers and states for *user_id*.

        Raises:
            requests.HTTPError: the user service rejected the update.
        """
        response = self.session.patch(
            f"{self.base_url}/api/user/{user_id}/nipr-data",
            json={
                "unique_carriers": result.carriers,
                "licensed_states": result.licensed_states,
            },
            headers={
                "Content-Type": "application/json",
                "X-Cron-Secret": self.cron_secret,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.debug("Stored NIPR data for user %s", user_id)
