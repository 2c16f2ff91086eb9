# backend/omniverify/services/circuit_breaker.py
import enum
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, TypeVar

import pybreaker

from ..db import utcnow
from ..exceptions import CircuitOpenError

logger = logging.getLogger("omniverify.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATES = {
    pybreaker.STATE_CLOSED: CircuitState.CLOSED,
    pybreaker.STATE_OPEN: CircuitState.OPEN,
    pybreaker.STATE_HALF_OPEN: CircuitState.HALF_OPEN,
}


# ---------------------------------------------------
# pybreaker plumbing
# ---------------------------------------------------
class ClockedStorage(pybreaker.CircuitMemoryStorage):
    """
    In-memory state storage with two changes: ``opened_at`` is stamped from an
    injectable clock, and a success while CLOSED takes one failure off the
    counter instead of zeroing it.
    """

    def __init__(self, clock: Callable[[], datetime]):
        self._clock = clock
        super().__init__(pybreaker.STATE_CLOSED)
        self._opened = None

    def reset_counter(self):
        if self.state == pybreaker.STATE_CLOSED:
            self._fail_counter = max(self._fail_counter - 1, 0)
        else:
            self._fail_counter = 0

    def clear(self):
        self._fail_counter = 0

    @property
    def opened_at(self):
        return self._opened

    @opened_at.setter
    def opened_at(self, _datetime):
        self._opened = self._clock()


class BreakerLogger(pybreaker.CircuitBreakerListener):
    def __init__(self, owner: "CircuitBreaker"):
        self.owner = owner

    def state_change(self, cb, old_state, new_state):
        old_name = old_state.name if old_state is not None else None
        logger.warning("Circuit '%s' %s -> %s (failures=%d)",
                       cb.name, old_name, new_state.name, cb.fail_counter)
        if new_state.name == pybreaker.STATE_CLOSED:
            self.owner._storage.clear()

    def failure(self, cb, exc):
        self.owner.last_failure_time = self.owner._clock()


def _noop():
    return None


def _reraise(exc: Exception):
    raise exc


# ---------------------------------------------------
# Breaker
# ---------------------------------------------------
class CircuitBreaker:
    """
    Process-local breaker around provider calls, backed by ``pybreaker``.

    CLOSED passes everything; a failure bumps ``failure_count`` and a success
    decrements it (never below 0). At ``failure_threshold`` failures it opens.
    OPEN rejects with ``CircuitOpenError`` until ``recovery_timeout`` has passed
    since it opened, then lazily becomes HALF_OPEN on the next look.
    HALF_OPEN lets exactly one trial call through: success closes and zeroes the
    counter, failure reopens with a fresh timer.

    pybreaker only wraps synchronous callables, so the coroutine is awaited here
    and its outcome is then recorded through ``pybreaker.CircuitBreaker.call``.
    """

    def __init__(
        self,
        name: str = "bouncer",
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._storage = ClockedStorage(clock)
        self._breaker = pybreaker.CircuitBreaker(
            fail_max=failure_threshold,
            reset_timeout=recovery_timeout,
            state_storage=self._storage,
            listeners=[BreakerLogger(self)],
            name=name,
            throw_new_error_on_trip=False,
        )

        self.last_failure_time: Optional[datetime] = None
        self._trial_in_flight = False

        self.success_count = 0
        self.total_calls = 0
        self.rejected_calls = 0

    # ---------------------------------------------------
    # State
    # ---------------------------------------------------
    @property
    def state(self) -> CircuitState:
        # OPEN -> HALF_OPEN runs on our clock so pybreaker's own timer never fires
        if self._breaker.current_state == pybreaker.STATE_OPEN:
            due = self.next_attempt_time
            if due is not None and self._clock() >= due:
                self._breaker.half_open()
        return _STATES[self._breaker.current_state]

    @property
    def failure_count(self) -> int:
        return self._breaker.fail_counter

    @property
    def next_attempt_time(self) -> Optional[datetime]:
        if self._breaker.current_state == pybreaker.STATE_CLOSED:
            return None
        opened_at = self._storage.opened_at
        if opened_at is None:
            return None
        return opened_at + timedelta(seconds=self.recovery_timeout)

    # ---------------------------------------------------
    # Execution
    # ---------------------------------------------------
    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        state = self.state
        if state == CircuitState.OPEN:
            self.rejected_calls += 1
            raise CircuitOpenError(self.name, self.next_attempt_time)

        trial = False
        if state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self.rejected_calls += 1
                raise CircuitOpenError(self.name, self._clock())
            self._trial_in_flight = True
            trial = True

        self.total_calls += 1
        try:
            result = await fn()
        except Exception as e:
            self.record_failure(e)
            raise
        else:
            self.record_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def record_success(self):
        self.success_count += 1
        self._settle(_noop)

    def record_failure(self, exc: Optional[Exception] = None):
        exc = exc or RuntimeError("provider call failed")
        try:
            self._settle(_reraise, exc)
        except Exception as replayed:
            if replayed is not exc:
                raise

    def _settle(self, func, *args):
        # a call that started before another one tripped the breaker is not counted
        if self._breaker.current_state == pybreaker.STATE_OPEN:
            return
        try:
            self._breaker.call(func, *args)
        except pybreaker.CircuitBreakerError as e:
            raise CircuitOpenError(self.name, self.next_attempt_time) from e

    # ---------------------------------------------------
    # Operator controls
    # ---------------------------------------------------
    def reset(self):
        self._breaker.close()
        self._storage.clear()
        self.last_failure_time = None
        self._trial_in_flight = False

    def force_open(self):
        self.last_failure_time = self._clock()
        self._breaker.open()

    def force_close(self):
        self.reset()

    def is_healthy(self) -> bool:
        return self.state == CircuitState.CLOSED

    def time_until_next_attempt(self) -> float:
        next_attempt = self.next_attempt_time
        if self.state != CircuitState.OPEN or next_attempt is None:
            return 0.0
        return max((next_attempt - self._clock()).total_seconds(), 0.0)

    def stats(self) -> dict:
        state = self.state
        next_attempt = self.next_attempt_time
        return {
            "name": self.name,
            "state": state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "success_count": self.success_count,
            "total_calls": self.total_calls,
            "rejected_calls": self.rejected_calls,
            "success_rate": round(self.success_count / self.total_calls * 100, 2) if self.total_calls else 100.0,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "next_attempt_time": next_attempt.isoformat() if next_attempt else None,
        }
