"""Failure isolation primitives: per-provider circuit breaker and retry.

The circuit breaker here is the only state mutated concurrently by several
in-flight requests. Each breaker owns its own lock, so updates are serialized
per provider and never across providers.

State machine:
    CLOSED --(failure_threshold failures inside window_seconds)--> OPEN
    OPEN --(cooldown elapsed, next check)--> HALF_OPEN (exactly one trial)
    HALF_OPEN --trial succeeds--> CLOSED
    HALF_OPEN --trial fails--> OPEN (new cooldown)

Example:
    >>> breaker = CircuitBreaker(name="gemini")
    >>> if breaker.allow_request():
    ...     try:
    ...         result = provider.generate(request)
    ...         breaker.record_success()
    ...     except ProviderError:
    ...         breaker.record_failure()
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransitionCallback = Callable[[str, "CircuitState", "CircuitState"], None]


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def retry_with_backoff(
    func: Callable[[], T],
    *,
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 2.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: Optional[Sequence[Type[BaseException]]] = None,
    operation: str = "operation",
) -> T:
    """Retry a zero-argument callable with exponential backoff.

    Used for cache and session store I/O only. Provider invocations are never
    retried within a request.

    Args:
        func: Function to retry (use a lambda to bind arguments)
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        exponential_base: Multiplier applied per attempt
        jitter: Randomize each delay between 50% and 150%
        retryable_exceptions: Exceptions that trigger a retry (default: all)
        operation: Label used in log messages

    Raises:
        The last exception once retries are exhausted.
    """
    retryable = tuple(retryable_exceptions or (Exception,))
    last_exception: Optional[BaseException] = None

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retryable as exc:
            last_exception = exc
            if attempt == max_retries:
                break
            delay = min(base_delay * (exponential_base**attempt), max_delay)
            if jitter:
                delay = delay * (0.5 + random.random())
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                operation,
                attempt + 1,
                max_retries + 1,
                exc,
                delay,
            )
            time.sleep(delay)

    assert last_exception is not None
    raise last_exception


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerState:
    """Point-in-time snapshot of one breaker."""

    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_at: Optional[float]
    cooldown_deadline: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at,
            "cooldown_deadline": self.cooldown_deadline,
        }


@dataclass
class CircuitBreaker:
    """Per-provider circuit breaker.

    Attributes:
        name: Provider id this breaker guards
        failure_threshold: Failures inside the window that open the circuit
        window_seconds: Rolling window for counting consecutive failures
        cooldown_seconds: Time spent open before a half-open trial
        clock: Monotonic time source (injectable for tests)
        on_transition: Called as ``(name, from_state, to_state)`` after each change
    """

    name: str = "default"
    failure_threshold: int = 5
    window_seconds: float = 60.0
    cooldown_seconds: float = 30.0
    clock: Callable[[], float] = time.monotonic
    on_transition: Optional[TransitionCallback] = None

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failures: Deque[float] = field(default_factory=deque, init=False)
    _last_failure_at: Optional[float] = field(default=None, init=False)
    _cooldown_deadline: Optional[float] = field(default=None, init=False)
    _trial_in_flight: bool = field(default=False, init=False)
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF_OPEN."""
        transitions: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._maybe_half_open(transitions)
            state = self._state
        self._notify(transitions)
        return state

    def allow_request(self) -> bool:
        """Claim permission for one invocation attempt.

        In HALF_OPEN only a single trial is granted until its outcome is
        recorded.
        """
        transitions: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._maybe_half_open(transitions)
            if self._state is CircuitState.CLOSED:
                allowed = True
            elif self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                allowed = True
            else:
                allowed = False
        self._notify(transitions)
        return allowed

    def retry_after(self) -> Optional[float]:
        with self._lock:
            if self._state is not CircuitState.OPEN or self._cooldown_deadline is None:
                return None
            return max(0.0, self._cooldown_deadline - self.clock())

    def record_success(self) -> None:
        transitions: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._set_state(CircuitState.CLOSED, transitions)
                self._cooldown_deadline = None
        self._notify(transitions)

    def record_failure(self) -> None:
        transitions: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            now = self.clock()
            self._last_failure_at = now
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.window_seconds:
                self._failures.popleft()

            if self._state is CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._open(now, transitions)
            elif self._state is CircuitState.CLOSED and len(self._failures) >= self.failure_threshold:
                self._open(now, transitions)
        self._notify(transitions)

    def reset(self) -> None:
        transitions: List[Tuple[CircuitState, CircuitState]] = []
        with self._lock:
            self._failures.clear()
            self._trial_in_flight = False
            self._cooldown_deadline = None
            self._last_failure_at = None
            self._set_state(CircuitState.CLOSED, transitions)
        self._notify(transitions)

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                name=self.name,
                state=self._state,
                consecutive_failures=len(self._failures),
                last_failure_at=self._last_failure_at,
                cooldown_deadline=self._cooldown_deadline,
            )

    def get_status(self) -> Dict[str, Any]:
        status = self.snapshot().to_dict()
        status["failure_threshold"] = self.failure_threshold
        status["cooldown_seconds"] = self.cooldown_seconds
        status["retry_after_seconds"] = self.retry_after()
        return status

    # Internal helpers (caller holds the lock)

    def _maybe_half_open(self, transitions: List[Tuple[CircuitState, CircuitState]]) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._cooldown_deadline is not None
            and self.clock() >= self._cooldown_deadline
        ):
            self._trial_in_flight = False
            self._set_state(CircuitState.HALF_OPEN, transitions)

    def _open(self, now: float, transitions: List[Tuple[CircuitState, CircuitState]]) -> None:
        self._cooldown_deadline = now + self.cooldown_seconds
        self._set_state(CircuitState.OPEN, transitions)

    def _set_state(
        self, new_state: CircuitState, transitions: List[Tuple[CircuitState, CircuitState]]
    ) -> None:
        if new_state is not self._state:
            transitions.append((self._state, new_state))
            self._state = new_state

    def _notify(self, transitions: List[Tuple[CircuitState, CircuitState]]) -> None:
        for old, new in transitions:
            if new is CircuitState.OPEN:
                logger.warning("Circuit for provider '%s' opened (%s -> open)", self.name, old.value)
            else:
                logger.info("Circuit for provider '%s': %s -> %s", self.name, old.value, new.value)
            if self.on_transition is not None:
                try:
                    self.on_transition(self.name, old, new)
                except Exception:
                    logger.exception("Circuit transition callback failed for '%s'", self.name)
