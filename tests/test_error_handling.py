"""
Tests for transport error classification and retry.
"""

import asyncio

import pytest

from agentloop.core.error_handling import (
    ErrorKind,
    backoff_delay,
    classify_error,
    retry_with_backoff,
)
from agentloop.core.errors import TransportError


class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("error,kind,retryable", [
        (TransportError("Too Many Requests", status_code=429), ErrorKind.RATE_LIMIT, True),
        (TransportError("upstream", status_code=502), ErrorKind.SERVER, True),
        (TransportError("overloaded", status_code=529), ErrorKind.BUSY, True),
        (TransportError("nope", status_code=401), ErrorKind.AUTH, False),
        (TransportError("bad", status_code=400), ErrorKind.BAD_REQUEST, False),
        (TransportError("maximum context length exceeded", status_code=400), ErrorKind.CONTEXT_LENGTH, False),
        (TransportError("connection reset by peer"), ErrorKind.NETWORK, True),
        (TransportError("something odd", retryable=True), ErrorKind.NETWORK, True),
        (TransportError("something odd"), ErrorKind.UNKNOWN, False),
        (TransportError("Read timed out after 4000ms", retryable=True), ErrorKind.TIMEOUT, True),
        (TransportError("Read timed out after 4000ms"), ErrorKind.TIMEOUT, True),
        (TransportError("connection reset after 401 bytes"), ErrorKind.NETWORK, True),
        (TransportError("stream aborted at offset 4030", retryable=True), ErrorKind.NETWORK, True),
        (TransportError("upstream said 403"), ErrorKind.AUTH, False),
        (TransportError("HTTP 400: malformed body"), ErrorKind.BAD_REQUEST, False),
        (TransportError("gateway returned 5003 bytes"), ErrorKind.UNKNOWN, False),
        (asyncio.TimeoutError(), ErrorKind.TIMEOUT, True),
        (ConnectionResetError("reset"), ErrorKind.NETWORK, True),
        (RuntimeError("Request timed out"), ErrorKind.TIMEOUT, True),
        (RuntimeError("Invalid API key provided"), ErrorKind.AUTH, False),
        (ValueError("whatever"), ErrorKind.UNKNOWN, False),
    ])
    def test_classification(self, error, kind, retryable):
        result = classify_error(error)
        assert result.kind is kind
        assert result.retryable is retryable


class TestBackoff:
    """Tests for backoff_delay and retry_with_backoff."""

    def test_delays_without_jitter(self):
        delays = [backoff_delay(n, jitter=0) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_bounds(self):
        for _ in range(50):
            assert 1.4 <= backoff_delay(2, jitter=0.3) <= 2.6

    def test_retries_then_succeeds(self):
        attempts = []
        sleeps = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransportError("connection refused", retryable=True)
            return "ok"

        async def fake_sleep(delay):
            sleeps.append(delay)

        result = asyncio.run(retry_with_backoff(flaky, max_retries=3, sleep=fake_sleep))
        assert result == "ok"
        assert len(attempts) == 3
        assert len(sleeps) == 2

    def test_fatal_error_not_retried(self):
        attempts = []

        async def denied():
            attempts.append(1)
            raise TransportError("unauthorized", status_code=401)

        async def fake_sleep(delay):
            pass

        with pytest.raises(TransportError):
            asyncio.run(retry_with_backoff(denied, sleep=fake_sleep))
        assert len(attempts) == 1

    def test_gives_up_after_max_retries(self):
        attempts = []

        async def down():
            attempts.append(1)
            raise TransportError("bad gateway", status_code=502)

        async def fake_sleep(delay):
            pass

        with pytest.raises(TransportError):
            asyncio.run(retry_with_backoff(down, max_retries=2, sleep=fake_sleep))
        assert len(attempts) == 3

    def test_rate_limit_waits_longer(self):
        sleeps = []
        attempts = []

        async def limited():
            attempts.append(1)
            if len(attempts) == 1:
                raise TransportError("rate limited", status_code=429)
            return "ok"

        async def fake_sleep(delay):
            sleeps.append(delay)

        asyncio.run(retry_with_backoff(limited, initial_delay=1.0, sleep=fake_sleep))
        assert sleeps[0] >= 1.4
