"""Tests for the retrying HTTP fetcher."""

import asyncio

import aiohttp
import pytest

from pipelines.fetcher import FetchError, build_conditional_headers, fetch_with_retry


class FakeResponse:
    def __init__(self, status=200, body="", headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Replays a scripted sequence of responses or exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append({"url": url, "headers": dict(headers or {}), "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestFetchWithRetry:
    """Test fetch_with_retry behavior."""

    async def test_success_returns_body_and_validators(self):
        session = FakeSession([FakeResponse(200, "<html>ok</html>", {"ETag": '"abc"', "Last-Modified": "Mon"})])

        result = await fetch_with_retry(session, "https://docs.example.com/a", timeout_ms=5000,
                                        retries=2, backoff_ms=100, user_agent="docwatch/test")

        assert result.status == 200
        assert result.text == "<html>ok</html>"
        assert result.etag == '"abc"'
        assert result.last_modified == "Mon"
        assert not result.not_modified
        assert session.calls[0]["headers"]["User-Agent"] == "docwatch/test"
        assert session.calls[0]["timeout"].total == 5

    async def test_retries_with_linear_backoff(self):
        sleep = RecordingSleep()
        session = FakeSession([
            FakeResponse(503),
            aiohttp.ClientConnectionError("reset"),
            FakeResponse(200, "done"),
        ])

        result = await fetch_with_retry(session, "https://docs.example.com/a", timeout_ms=1000,
                                        retries=2, backoff_ms=200, sleep=sleep)

        assert result.text == "done"
        assert len(session.calls) == 3
        assert sleep.delays == [0.2, 0.4]

    async def test_raises_last_error_after_retries(self):
        sleep = RecordingSleep()
        session = FakeSession([FakeResponse(500), FakeResponse(502)])

        with pytest.raises(FetchError) as exc_info:
            await fetch_with_retry(session, "https://docs.example.com/a", timeout_ms=1000,
                                   retries=1, backoff_ms=10, sleep=sleep)

        assert exc_info.value.status == 502
        assert "HTTP 502" in str(exc_info.value)
        assert sleep.delays == [0.01]

    async def test_timeout_is_retried(self):
        session = FakeSession([asyncio.TimeoutError(), FakeResponse(200, "late")])

        result = await fetch_with_retry(session, "https://docs.example.com/a", timeout_ms=10,
                                        retries=1, backoff_ms=0, sleep=RecordingSleep())

        assert result.text == "late"

    async def test_not_modified(self):
        session = FakeSession([FakeResponse(304, headers={"ETag": '"v1"'})])

        result = await fetch_with_retry(session, "https://docs.example.com/a", timeout_ms=1000,
                                        retries=0, backoff_ms=0,
                                        conditions={"etag": '"v1"', "last_modified": None})

        assert result.not_modified
        assert result.status == 304
        assert result.text == ""
        assert session.calls[0]["headers"]["If-None-Match"] == '"v1"'
        assert "If-Modified-Since" not in session.calls[0]["headers"]


def test_build_conditional_headers():
    assert build_conditional_headers(None) == {}
    assert build_conditional_headers({"etag": "x", "last_modified": "Tue"}) == {
        "If-None-Match": "x",
        "If-Modified-Since": "Tue",
    }
