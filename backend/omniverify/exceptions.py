# backend/omniverify/exceptions.py
from datetime import datetime
from typing import Optional


class OmniverifyError(Exception):
    """Base class for pipeline errors."""


class BouncerApiError(OmniverifyError):
    """Non-2xx response from the verification provider."""

    def __init__(self, status: int, message: str, code: Optional[str] = None):
        self.status = status
        self.code = code
        self.message = message
        super().__init__(f"Bouncer API error: {status} {message}")


class ProviderBatchFailedError(OmniverifyError):
    """The provider reported the batch itself as failed."""

    def __init__(self, provider_batch_id: str, reason: Optional[str] = None):
        self.provider_batch_id = provider_batch_id
        self.reason = reason
        super().__init__(
            f"Provider batch {provider_batch_id} failed: {reason or 'no reason given'}"
        )


class BatchTimeoutError(OmniverifyError):
    def __init__(self, batch_id: str, elapsed_seconds: float, limit_seconds: int):
        self.batch_id = batch_id
        self.elapsed_seconds = elapsed_seconds
        self.limit_seconds = limit_seconds
        super().__init__(
            f"Batch {batch_id} processing timeout after {int(elapsed_seconds)}s "
            f"(limit {limit_seconds}s)"
        )


class CircuitOpenError(OmniverifyError):
    """Raised instead of calling the provider while the breaker is open."""

    def __init__(self, name: str, next_attempt_time: datetime):
        self.name = name
        self.next_attempt_time = next_attempt_time
        super().__init__(
            f"Circuit '{name}' is open; next attempt at {next_attempt_time.isoformat()}"
        )


class IllegalTransitionError(OmniverifyError):
    def __init__(self, entity: str, current, target):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Illegal {entity} transition: {getattr(current, 'value', current)} -> "
            f"{getattr(target, 'value', target)}"
        )


class DeadLetterRetryError(OmniverifyError):
    def __init__(self, dead_letter_id: int, reason: str):
        self.dead_letter_id = dead_letter_id
        self.reason = reason
        super().__init__(f"Dead letter {dead_letter_id}: {reason}")
