"""
Retry policy for push delivery.

Classifies transport failures into a closed set of error codes, decides which
of them are worth retrying and computes exponential backoff delays.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Generic, Optional, TypeVar

import backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(str, enum.Enum):
    EXPIRED = "EXPIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    SERVER_ERROR = "SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


NON_RETRYABLE = frozenset(
    {
        ErrorCode.EXPIRED,
        ErrorCode.PERMISSION_DENIED,
        ErrorCode.NOT_FOUND,
        ErrorCode.INVALID_PAYLOAD,
        ErrorCode.PAYLOAD_TOO_LARGE,
    }
)

_STATUS_CODES = {
    400: ErrorCode.INVALID_PAYLOAD,
    401: ErrorCode.PERMISSION_DENIED,
    403: ErrorCode.PERMISSION_DENIED,
    404: ErrorCode.NOT_FOUND,
    410: ErrorCode.EXPIRED,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    429: ErrorCode.RATE_LIMITED,
    500: ErrorCode.SERVER_ERROR,
    502: ErrorCode.SERVICE_UNAVAILABLE,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.SERVICE_UNAVAILABLE,
}


def _status(code: int, reason: str) -> str:
    """``status 410`` / ``status code: 410`` / ``410 gone``; never a bare number."""
    return rf"\bstatus(?: code)?:? ?{code}\b|\b{code} {reason}\b"


# Checked in order against the lower-cased error message. Transport-level
# failures go first so a number inside a timeout message is never read as a
# status code.
_MESSAGE_PATTERNS = tuple(
    (code, re.compile(pattern))
    for code, pattern in (
        (ErrorCode.TIMEOUT, r"timed out|timeout|etimedout"),
        (ErrorCode.NETWORK, r"network|econnrefused|econnreset|enotfound|connection (?:refused|reset)"),
        (ErrorCode.EXPIRED, _status(410, "gone") + r"|\bgone\b"),
        (ErrorCode.PERMISSION_DENIED, _status(401, "unauthorized") + "|" + _status(403, "forbidden") + r"|\bforbidden\b|\bunauthorized\b"),
        (ErrorCode.NOT_FOUND, _status(404, "not found") + r"|\bnot found\b"),
        (ErrorCode.RATE_LIMITED, _status(429, "too many") + r"|rate limit|too many requests"),
        (ErrorCode.INVALID_PAYLOAD, _status(400, "bad request") + r"|\binvalid\b|\bmalformed\b"),
        (ErrorCode.PAYLOAD_TOO_LARGE, _status(413, "payload too large") + r"|payload too large|entity too large"),
        (ErrorCode.SERVER_ERROR, _status(500, "internal") + r"|\binternal\b"),
        (ErrorCode.SERVICE_UNAVAILABLE, _status(503, "service unavailable") + r"|\bunavailable\b|bad gateway"),
    )
)


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 60000
    jitter: bool = True
    multiplier: float = 2


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_delay_ms: float = 0
    value: Optional[T] = None
    error: Optional[BaseException] = None


def classify(error: BaseException) -> ErrorCode:
    """
    Map a transport failure to an ErrorCode.

    A structured ``status_code`` attribute wins; otherwise the exception type
    and finally the message text are inspected.
    """
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        if status_code in _STATUS_CODES:
            return _STATUS_CODES[status_code]
        if 500 <= status_code < 600:
            return ErrorCode.SERVER_ERROR

    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCode.NETWORK

    return classify_message(str(error))


def classify_message(message: str) -> ErrorCode:
    message = (message or "").lower()
    for code, pattern in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return code
    return ErrorCode.UNKNOWN


def is_retryable(code: ErrorCode) -> bool:
    return code not in NON_RETRYABLE


def config_for_error(code: ErrorCode, base: RetryConfig = DEFAULT_RETRY_CONFIG) -> RetryConfig:
    """Retry tuning for one error class, layered over ``base``."""
    if code in NON_RETRYABLE:
        return replace(base, max_attempts=1)
    if code == ErrorCode.RATE_LIMITED:
        return replace(base, max_attempts=5, base_delay_ms=5000, max_delay_ms=300000)
    if code in (ErrorCode.TIMEOUT, ErrorCode.NETWORK):
        return replace(base, max_attempts=4, base_delay_ms=2000)
    if code in (ErrorCode.SERVER_ERROR, ErrorCode.SERVICE_UNAVAILABLE):
        return replace(base, max_attempts=3, base_delay_ms=3000)
    return base


def next_delay(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    rng: random.Random | None = None,
) -> float:
    """Backoff in milliseconds before the attempt following ``attempt``."""
    exponential = min(
        config.base_delay_ms * config.multiplier ** (attempt - 1),
        config.max_delay_ms,
    )
    if config.jitter:
        factor = (rng or random).uniform(0.5, 1.0)
        return exponential * factor
    return exponential


def delay_seconds(config: RetryConfig = DEFAULT_RETRY_CONFIG):
    """backoff wait generator yielding ``next_delay`` in seconds."""
    # Advance past backoff's priming send()
    yield
    attempt = 1
    while True:
        yield next_delay(attempt, config) / 1000.0
        attempt += 1


class RetryManager:
    """Runs an async operation with backoff between attempts."""

    def __init__(self, config: RetryConfig = DEFAULT_RETRY_CONFIG):
        self.config = config

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: Optional[RetryConfig] = None,
    ) -> RetryResult[T]:
        cfg = config or self.config
        progress = {"attempts": 0, "total_delay_ms": 0.0}

        def on_backoff(details):
            progress["total_delay_ms"] += details["wait"] * 1000.0
            logger.debug(
                "Attempt %d/%d failed (%s), retrying in %.0fms",
                details["tries"],
                cfg.max_attempts,
                classify(details["exception"]).value,
                details["wait"] * 1000.0,
            )

        def on_finish(details):
            progress["attempts"] = details["tries"]

        @backoff.on_exception(
            delay_seconds,
            Exception,
            max_tries=cfg.max_attempts,
            jitter=None,
            giveup=lambda exc: not is_retryable(classify(exc)),
            on_backoff=on_backoff,
            on_success=on_finish,
            on_giveup=on_finish,
            logger=None,
            config=cfg,
        )
        async def attempt():
            return await operation()

        try:
            value = await attempt()
        except Exception as exc:
            return RetryResult(
                success=False,
                error=exc,
                attempts=progress["attempts"],
                total_delay_ms=progress["total_delay_ms"],
            )
        return RetryResult(
            success=True,
            value=value,
            attempts=progress["attempts"],
            total_delay_ms=progress["total_delay_ms"],
        )

    def next_retry_time(self, attempt: int, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.utcnow()
        return now + timedelta(milliseconds=next_delay(attempt, self.config))

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.config.max_attempts
