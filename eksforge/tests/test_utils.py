import pytest

from eksforge.modules import utils as notify
from eksforge.utils import RetryError, redact_sensitive_data, retry


def test_redact_sensitive_data():
    data = {"name": "demo", "api_key": "abc", "nested": [{"token": "t", "region": "us-west-2"}]}

    assert redact_sensitive_data(data) == {
        "name": "demo",
        "api_key": "[REDACTED]",
        "nested": [{"token": "[REDACTED]", "region": "us-west-2"}],
    }


def test_retry_recovers():
    attempts = []

    @retry(max_retries=2, delay=0)
    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionError("throttled")
        return "ok"

    assert flaky() == "ok"
    assert len(attempts) == 2


def test_retry_gives_up():
    @retry(max_retries=1, delay=0, exceptions=(ConnectionError,))
    def broken():
        raise ConnectionError("down")

    with pytest.raises(RetryError):
        broken()


def test_slack_alert_posts_message(monkeypatch):
    posted = []

    class Response:
        status_code = 200
        text = "ok"

    def fake_post(url, json, timeout):
        posted.append((url, json))
        return Response()

    monkeypatch.setattr(notify.requests, "post", fake_post)

    notify.send_slack_alert("https://hooks.example/x", "cluster created")

    assert posted == [("https://hooks.example/x", {"text": "cluster created"})]
