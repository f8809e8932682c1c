"""
User data client tests
"""

import pytest
import requests

from nipr_verify.queue import AutomationResult
from nipr_verify.user_data import UserDataClient


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


class FakeSession:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.calls = []

    def patch(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return FakeResponse(self.status_code)


RESULT = AutomationResult(success=True, carriers=["Acme Life"], licensed_states=["TX", "OK"])


def test_save_patches_user_record():
    session = FakeSession()
    client = UserDataClient("https://app.example.com/", "s3cret", session=session)

    client("u-42", RESULT)

    url, kwargs = session.calls[0]
    assert url == "https://app.example.com/api/user/u-42/nipr-data"
    assert kwargs["json"] == {"unique_carriers": ["Acme Life"], "licensed_states": ["TX", "OK"]}
    assert kwargs["headers"]["X-Cron-Secret"] == "s3cret"


def test_rejected_update_raises():
    client = UserDataClient("https://app.example.com", session=FakeSession(500))

    with pytest.raises(requests.HTTPError):
        client.save("u-42", RESULT)
