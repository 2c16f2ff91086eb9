# backend/omniverify/services/errors.py
"""
Failure taxonomy and per-kind retry policy.

``classify`` maps any exception raised by a job to an ``ErrorKind``;
``RETRY_POLICIES`` holds one entry for every kind, so lookups never miss.
CIRCUIT_OPEN and DEFERRED are backpressure, not failures: they reschedule the
job and never touch a batch's retry budget.
"""
import asyncio
import enum
import errno
import random
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from ..exceptions import (
    BatchTimeoutError,
    CircuitOpenError,
    ProviderBatchFailedError,
)

MAX_BACKOFF_SECONDS = 300.0
JITTER = 0.1


class ErrorKind(str, enum.Enum):
    RATE_LIMIT = "RATE_LIMIT"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    API_ERROR = "API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"
    GENERIC_ERROR = "GENERIC_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    DEFERRED = "DEFERRED"


@dataclass(frozen=True)
class RetryPolicy:
    retryable: bool
    max_retries: Optional[int]
    backoff: str                    # "fixed" | "exponential" | "none"
    base_delay: float = 0.0
    counts_attempt: bool = True
    dead_letter_priority: str = "medium"
    requires_manual_review: bool = False


RETRY_POLICIES = {
    ErrorKind.RATE_LIMIT: RetryPolicy(True, 10, "fixed", 60.0),
    ErrorKind.API_ERROR: RetryPolicy(True, 5, "exponential", 2.0),
    ErrorKind.NETWORK_ERROR: RetryPolicy(True, 3, "exponential", 1.0),
    ErrorKind.PAYMENT_REQUIRED: RetryPolicy(
        False, 0, "none", dead_letter_priority="high", requires_manual_review=True
    ),
    ErrorKind.PERMANENT_FAILURE: RetryPolicy(False, 0, "none"),
    ErrorKind.GENERIC_ERROR: RetryPolicy(True, 3, "exponential", 1.0),
    # backpressure: unbounded, rescheduled by the caller with its own delay
    ErrorKind.CIRCUIT_OPEN: RetryPolicy(True, None, "none", counts_attempt=False),
    ErrorKind.DEFERRED: RetryPolicy(True, None, "none", counts_attempt=False),
}


# ---------------------------------------------------
# Pattern table: (kind, status predicate, codes, message regex)
# ---------------------------------------------------
NETWORK_CODES = {"ECONNREFUSED", "ETIMEDOUT", "ENOTFOUND", "ECONNRESET", "EPIPE", "EHOSTUNREACH"}

_PATTERNS = (
    (
        ErrorKind.RATE_LIMIT,
        lambda s: s == 429,
        set(),
        re.compile(r"rate limit|too many requests", re.I),
    ),
    (
        ErrorKind.PAYMENT_REQUIRED,
        lambda s: s == 402,
        set(),
        re.compile(r"payment required|insufficient credits|billing", re.I),
    ),
    (
        ErrorKind.API_ERROR,
        lambda s: s is not None and 500 <= s <= 599,
        set(),
        re.compile(r"internal server error|bad gateway|service unavailable|gateway timeout", re.I),
    ),
    (
        ErrorKind.NETWORK_ERROR,
        lambda s: False,
        NETWORK_CODES,
        re.compile(r"network error|connection|timeout|timed out", re.I),
    ),
    (
        ErrorKind.PERMANENT_FAILURE,
        lambda s: s is not None and 400 <= s <= 499 and s != 429,
        set(),
        re.compile(r"invalid api key|unauthorized|forbidden|not found|validation error", re.I),
    ),
)


def _signals(exc: BaseException) -> Tuple[Optional[int], Optional[str], str]:
    status = getattr(exc, "status", None)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code

    code = getattr(exc, "code", None)
    if isinstance(exc, httpx.TimeoutException):
        code = "ETIMEDOUT"
    elif isinstance(exc, httpx.ConnectError):
        code = "ECONNREFUSED"
    elif isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        code = "ECONNRESET"
    elif isinstance(exc, OSError) and exc.errno is not None:
        code = errno.errorcode.get(exc.errno, code)

    return (status if isinstance(status, int) else None), code, str(exc)


def classify(exc: BaseException) -> ErrorKind:
    if isinstance(exc, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(exc, ProviderBatchFailedError):
        return ErrorKind.PERMANENT_FAILURE
    if isinstance(exc, (BatchTimeoutError, asyncio.TimeoutError)):
        return ErrorKind.NETWORK_ERROR

    status, code, message = _signals(exc)

    # status codes are authoritative; message patterns only when there is none
    if status is not None:
        for kind, status_match, _, _ in _PATTERNS:
            if status_match(status):
                return kind
    for kind, _, codes, _ in _PATTERNS:
        if code in codes:
            return kind
    for kind, _, _, pattern in _PATTERNS:
        if pattern.search(message):
            return kind
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.GENERIC_ERROR


def policy_for(kind: ErrorKind) -> RetryPolicy:
    return RETRY_POLICIES[kind]


def is_exhausted(kind: ErrorKind, retry_count: int) -> bool:
    """True once a batch with ``retry_count`` recorded failures must dead-letter."""
    policy = RETRY_POLICIES[kind]
    if not policy.retryable:
        return True
    if policy.max_retries is None:
        return False
    return retry_count >= policy.max_retries


def backoff_delay(kind: ErrorKind, retry_count: int, rng: Optional[random.Random] = None) -> float:
    """
    Delay before the next attempt, ``retry_count`` being the failures so far.

    Exponential kinds use ``base * 2**(retry_count - 1)`` with +/-10% jitter,
    capped at five minutes.
    """
    policy = RETRY_POLICIES[kind]
    if policy.backoff == "fixed":
        return policy.base_delay
    if policy.backoff != "exponential":
        return 0.0
    rng = rng or random
    delay = policy.base_delay * (2 ** max(retry_count - 1, 0))
    delay *= 1 + rng.uniform(-JITTER, JITTER)
    return min(delay, MAX_BACKOFF_SECONDS)

