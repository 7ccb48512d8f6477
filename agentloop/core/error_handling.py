"""
Transport error classification and retry with backoff.
"""

import asyncio
import random
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from agentloop.core.errors import TransportError

T = TypeVar("T")


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SERVER = "server"
    BUSY = "busy"
    TIMEOUT = "timeout"
    CONTEXT_LENGTH = "context_length"
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = {ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.BUSY, ErrorKind.TIMEOUT}


@dataclass(frozen=True)
class ErrorClass:
    kind: ErrorKind
    retryable: bool

    def __str__(self) -> str:
        return f"{self.kind.value} ({'retryable' if self.retryable else 'fatal'})"


# Checked in order; the first matching group wins. Status codes match as whole words only.
_MESSAGE_PATTERNS = tuple(
    (kind, re.compile("|".join(patterns)))
    for kind, patterns in (
        (ErrorKind.CONTEXT_LENGTH, (r"context length", r"context_length_exceeded", r"maximum context", r"token limit")),
        (ErrorKind.RATE_LIMIT, (r"rate limit", r"rate_limit", r"\b429\b", r"too many requests")),
        (ErrorKind.TIMEOUT, (r"timeout", r"timed out", r"\b408\b")),
        (ErrorKind.NETWORK, (r"connection", r"network", r"\bdns\b", r"refused", r"reset by peer", r"broken pipe", r"\beof\b")),
        (ErrorKind.AUTH, (r"unauthorized", r"invalid api key", r"authentication", r"\b40[13]\b", r"forbidden")),
        (ErrorKind.BAD_REQUEST, (r"bad request", r"\b400\b", r"malformed", r"invalid request", r"\b422\b")),
        (ErrorKind.SERVER, (r"\b50[0-24]\b", r"internal server error", r"bad gateway")),
        (ErrorKind.BUSY, (r"\b503\b", r"\b529\b", r"overloaded", r"busy", r"capacity", r"unavailable")),
    )
)


def _kind_from_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMIT
    if status == 408:
        return ErrorKind.TIMEOUT
    if status in (503, 529):
        return ErrorKind.BUSY
    if status >= 500:
        return ErrorKind.SERVER
    if status in (401, 403):
        return ErrorKind.AUTH
    return ErrorKind.BAD_REQUEST


def _kind_from_message(message: str) -> ErrorKind:
    lowered = message.lower()
    for kind, pattern in _MESSAGE_PATTERNS:
        if pattern.search(lowered):
            return kind
    return ErrorKind.UNKNOWN


def classify_error(error: BaseException) -> ErrorClass:
    """
    Decide whether a transport failure can be retried.

    Retryable: timeouts, connection resets and other network failures,
    5xx/overload responses, rate limits. Everything else (auth, malformed
    request, context length, unrecognized) is fatal.
    """
    if isinstance(error, TransportError):
        if error.status_code:
            kind = _kind_from_status(error.status_code)
            if kind is ErrorKind.BAD_REQUEST and _kind_from_message(str(error)) is ErrorKind.CONTEXT_LENGTH:
                kind = ErrorKind.CONTEXT_LENGTH
            return ErrorClass(kind, kind in _RETRYABLE_KINDS)
        kind = _kind_from_message(str(error))
        if error.retryable:
            # No status to go on; the transport already judged it transient
            if kind not in _RETRYABLE_KINDS:
                kind = ErrorKind.NETWORK
            return ErrorClass(kind, True)
        return ErrorClass(kind, kind in _RETRYABLE_KINDS)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorClass(ErrorKind.TIMEOUT, True)
    if isinstance(error, ConnectionError):
        return ErrorClass(ErrorKind.NETWORK, True)

    kind = _kind_from_message(str(error))
    return ErrorClass(kind, kind in _RETRYABLE_KINDS)


def backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    jitter: float = 0.3,
) -> float:
    """
    Delay before retry number ``attempt`` (1-based): exponential, capped,
    with +/- ``jitter`` proportional randomization.
    """
    delay = min(initial_delay * (backoff_factor ** max(attempt - 1, 0)), max_delay)
    if jitter:
        delay *= 1 + random.uniform(-jitter, jitter)
    return max(delay, 0.0)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Retry an async call with exponential backoff on retryable transport errors.

    Args:
        func: Zero-argument coroutine factory to retry
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay in seconds
        max_delay: Maximum delay between retries
        backoff_factor: Multiplier for delay after each retry
        sleep: Replacement for asyncio.sleep (tests)

    Returns:
        Result of the call

    Raises:
        The last exception if it is fatal or all retries fail
    """
    sleep = sleep or asyncio.sleep

    for attempt in range(max_retries + 1):
        try:
            return await func()
        except Exception as e:
            error = classify_error(e)
            if not error.retryable:
                raise
            if attempt == max_retries:
                logger.error(f"All {max_retries} retries failed: {e}")
                raise

            delay = backoff_delay(attempt + 1, initial_delay, max_delay, backoff_factor)
            if error.kind is ErrorKind.RATE_LIMIT:
                # Rate limits usually need longer waits
                delay = min(delay * 2, 60.0)
            logger.warning(f"{error} (attempt {attempt + 1}/{max_retries + 1}): {e}")
            logger.info(f"Retrying in {delay:.1f}s...")
            await sleep(delay)

    raise ValueError("max_retries must be >= 0")
