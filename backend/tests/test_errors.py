"""
Error classification and retry policy.
"""
import asyncio
import random
from datetime import datetime

import httpx
import pytest

from omniverify.exceptions import (
    BatchTimeoutError,
    BouncerApiError,
    CircuitOpenError,
    ProviderBatchFailedError,
)
from omniverify.services.errors import (
    MAX_BACKOFF_SECONDS,
    RETRY_POLICIES,
    ErrorKind,
    backoff_delay,
    classify,
    is_exhausted,
)


def _request():
    return httpx.Request("GET", "https://bouncer.test/v1.1/batch/x")


@pytest.mark.parametrize(
    "exc, kind",
    [
        (BouncerApiError(429, "Too Many Requests"), ErrorKind.RATE_LIMIT),
        (BouncerApiError(402, "Payment Required"), ErrorKind.PAYMENT_REQUIRED),
        (BouncerApiError(500, "boom"), ErrorKind.API_ERROR),
        (BouncerApiError(503, "Service Unavailable"), ErrorKind.API_ERROR),
        (BouncerApiError(401, "Invalid API key"), ErrorKind.PERMANENT_FAILURE),
        (BouncerApiError(404, "Not Found"), ErrorKind.PERMANENT_FAILURE),
        (httpx.ConnectError("refused", request=_request()), ErrorKind.NETWORK_ERROR),
        (httpx.ReadTimeout("slow", request=_request()), ErrorKind.NETWORK_ERROR),
        (ConnectionRefusedError(111, "Connection refused"), ErrorKind.NETWORK_ERROR),
        (asyncio.TimeoutError(), ErrorKind.NETWORK_ERROR),
        (BatchTimeoutError("b1", 1900, 1800), ErrorKind.NETWORK_ERROR),
        (ProviderBatchFailedError("prov-1", "bad input"), ErrorKind.PERMANENT_FAILURE),
        (CircuitOpenError("bouncer", datetime(2026, 1, 1)), ErrorKind.CIRCUIT_OPEN),
        (RuntimeError("rate limit exceeded"), ErrorKind.RATE_LIMIT),
        (RuntimeError("insufficient credits"), ErrorKind.PAYMENT_REQUIRED),
        (RuntimeError("something odd happened"), ErrorKind.GENERIC_ERROR),
        (KeyError("batch_id"), ErrorKind.GENERIC_ERROR),
    ],
)
def test_classify(exc, kind):
    assert classify(exc) == kind


def test_status_code_wins_over_message():
    assert classify(BouncerApiError(429, "invalid api key")) == ErrorKind.RATE_LIMIT


def test_every_kind_has_a_policy():
    assert set(RETRY_POLICIES) == set(ErrorKind)


def test_backpressure_does_not_consume_attempts():
    for kind in (ErrorKind.CIRCUIT_OPEN, ErrorKind.DEFERRED):
        assert RETRY_POLICIES[kind].counts_attempt is False
        assert not is_exhausted(kind, 1000)


def test_payment_required_is_flagged_for_review():
    policy = RETRY_POLICIES[ErrorKind.PAYMENT_REQUIRED]
    assert policy.dead_letter_priority == "high"
    assert policy.requires_manual_review is True
    assert not policy.retryable


def test_is_exhausted_counts_failures():
    assert not is_exhausted(ErrorKind.API_ERROR, 4)
    assert is_exhausted(ErrorKind.API_ERROR, 5)
    assert not is_exhausted(ErrorKind.NETWORK_ERROR, 2)
    assert is_exhausted(ErrorKind.NETWORK_ERROR, 3)
    assert is_exhausted(ErrorKind.PERMANENT_FAILURE, 1)
    assert is_exhausted(ErrorKind.PAYMENT_REQUIRED, 1)


def test_exponential_backoff_with_jitter():
    rng = random.Random(3)
    for retry_count, expected in ((1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0)):
        delay = backoff_delay(ErrorKind.API_ERROR, retry_count, rng)
        assert expected * 0.9 <= delay <= expected * 1.1


def test_backoff_is_capped():
    assert backoff_delay(ErrorKind.API_ERROR, 30, random.Random(0)) == MAX_BACKOFF_SECONDS


def test_fixed_and_no_backoff():
    assert backoff_delay(ErrorKind.RATE_LIMIT, 3) == 60.0
    assert backoff_delay(ErrorKind.PERMANENT_FAILURE, 1) == 0.0
