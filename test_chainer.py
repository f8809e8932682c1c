"""
Self-trigger chainer tests
"""

import requests

from nipr_verify.queue import SelfTriggerChainer


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code


class RecordingPost:
    def __init__(self, response=None, error=None):
        self.calls = []
        self.response = response or FakeResponse()
        self.error = error

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response


def test_disabled_without_app_url():
    post = RecordingPost()
    chainer = SelfTriggerChainer("", "secret", post=post)

    assert chainer.enabled is False
    assert chainer.trigger() is None
    assert post.calls == []


def test_trigger_posts_to_worker_endpoint():
    post = RecordingPost()
    chainer = SelfTriggerChainer("https://verify.example.com/", "s3cret", timeout=2, post=post)

    thread = chainer.trigger()
    thread.join(timeout=5)

    assert thread.daemon
    url, kwargs = post.calls[0]
    assert url == "https://verify.example.com/process"
    assert kwargs["headers"] == {
        "X-Internal-Call": "true",
        "Authorization": "Bearer s3cret",
    }
    assert kwargs["timeout"] == 2


def test_scheme_is_added_to_bare_host():
    chainer = SelfTriggerChainer("verify.example.com", post=RecordingPost())

    assert chainer.base_url == "https://verify.example.com"


def test_no_authorization_header_without_secret():
    post = RecordingPost()
    thread = SelfTriggerChainer("http://localhost:8080", post=post).trigger()
    thread.join(timeout=5)

    assert post.calls[0][1]["headers"] == {"X-Internal-Call": "true"}


def test_send_failures_are_swallowed(caplog):
    for error in (requests.ConnectionError("refused"), requests.Timeout("slow"), ValueError("odd")):
        chainer = SelfTriggerChainer("http://localhost:8080", post=RecordingPost(error=error))
        # Runs synchronously here; nothing may escape.
        chainer._send()

    assert "Failed to trigger next job" in caplog.text


def test_error_status_is_logged(caplog):
    post = RecordingPost(response=FakeResponse(503))
    SelfTriggerChainer("http://localhost:8080", post=post)._send()

    assert "HTTP 503" in caplog.text
