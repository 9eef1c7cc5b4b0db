"""Process-local circuit breaker guarding calls to a remote dependency.

States follow the usual CLOSED -> OPEN -> HALF_OPEN cycle. OPEN becomes
HALF_OPEN lazily, on the next ``can_attempt()``/``get_state()`` once the
cooldown since the last failure has elapsed; no timer runs in the background.
While HALF_OPEN exactly one trial call may be in flight. The trial flag is set
synchronously between the admission check and the first ``await`` so that
concurrent ``execute()`` callers on the same event loop cannot both pass.

Breakers are owned by a ``CircuitBreakerRegistry`` held by the runtime rather
than by module globals; each process has its own breaker per dependency name.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from src.errors import CircuitOpenError
from src.utils.clock import Clock, SystemClock

LOG = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeHook = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True)
class CircuitBreakerStats:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: float | None
    last_success_time: float | None
    total_requests: int
    total_failures: int
    failure_threshold: int
    cooldown_seconds: float

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Clock | None = None,
        on_state_change: StateChangeHook | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be >= 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or SystemClock()
        self._on_state_change = on_state_change
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._last_success_time: float | None = None
        self._total_requests = 0
        self._total_failures = 0
        self._trial_in_flight = False
        LOG.info(
            "circuit_breaker_initialised",
            extra={
                "breaker": name,
                "failure_threshold": failure_threshold,
                "cooldown_seconds": cooldown_seconds,
            },
        )

    # ------------------------------------------------------------------ state
    def _transition(self, new_state: CircuitState) -> None:
        if self._state is new_state:
            return
        old_state = self._state
        self._state = new_state
        LOG.warning(
            "circuit_state_changed",
            extra={
                "breaker": self.name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "failure_count": self._failure_count,
            },
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.name, old_state, new_state)
            except Exception:
                LOG.exception("circuit_state_hook_failed", extra={"breaker": self.name})

    def _cooldown_elapsed(self) -> bool:
        if self._state is not CircuitState.OPEN:
            return False
        if self._last_failure_time is None:
            return True
        return self._clock.now() - self._last_failure_time >= self.cooldown_seconds

    def can_attempt(self) -> bool:
        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.OPEN:
            if self._cooldown_elapsed():
                self._transition(CircuitState.HALF_OPEN)
                return not self._trial_in_flight
            return False
        return not self._trial_in_flight

    def get_state(self) -> CircuitState:
        if self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def is_open(self) -> bool:
        return self.get_state() is CircuitState.OPEN

    # -------------------------------------------------------------- recording
    def record_success(self) -> None:
        self._total_requests += 1
        self._success_count += 1
        self._last_success_time = self._clock.now()
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._failure_count = 0
            self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self, error: BaseException | None = None) -> None:
        self._total_requests += 1
        self._total_failures += 1
        self._failure_count += 1
        self._last_failure_time = self._clock.now()
        LOG.warning(
            "circuit_failure_recorded",
            extra={
                "breaker": self.name,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "state": self._state.value,
                "error": str(error) if error is not None else None,
            },
        )
        if self._state is CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._transition(CircuitState.OPEN)
        elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    # -------------------------------------------------------------- execution
    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """Run ``fn`` through the breaker.

        When the breaker rejects the call, ``fallback`` is awaited instead if
        given, otherwise ``CircuitOpenError`` is raised. Failures of ``fn``
        itself are recorded and re-raised unchanged.
        """
        if not self.can_attempt():
            remaining = 0.0
            if self._last_failure_time is not None:
                remaining = max(
                    0.0, self.cooldown_seconds - (self._clock.now() - self._last_failure_time)
                )
            LOG.warning(
                "circuit_call_rejected",
                extra={
                    "breaker": self.name,
                    "state": self._state.value,
                    "cooldown_remaining_seconds": round(remaining, 3),
                },
            )
            if fallback is not None:
                return await fallback()
            raise CircuitOpenError(self.name)

        is_trial = self._state is CircuitState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True
        try:
            result = await fn()
        except Exception as exc:
            self.record_failure(exc)
            raise
        except BaseException:
            # cancellation is not a verdict on the dependency
            if is_trial:
                self._trial_in_flight = False
            raise
        self.record_success()
        return result

    # ------------------------------------------------------------ observation
    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self.get_state(),
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            failure_threshold=self.failure_threshold,
            cooldown_seconds=self.cooldown_seconds,
        )

    def reset(self) -> None:
        """Operator action: force CLOSED and clear the failure count."""
        old_state = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._trial_in_flight = False
        LOG.info(
            "circuit_breaker_reset",
            extra={"breaker": self.name, "from_state": old_state.value},
        )
        if old_state is not CircuitState.CLOSED and self._on_state_change is not None:
            self._on_state_change(self.name, old_state, CircuitState.CLOSED)


class CircuitBreakerRegistry:
    """One breaker per dependency name, owned by the process entry point."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        on_state_change: StateChangeHook | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
    ) -> CircuitBreaker:
        existing = self._breakers.get(name)
        if existing is not None:
            return existing
        breaker = CircuitBreaker(
            name,
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            clock=self._clock,
            on_state_change=self._on_state_change,
        )
        self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def reset(self, name: str) -> bool:
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def all_stats(self) -> list[CircuitBreakerStats]:
        return [breaker.get_stats() for breaker in self._breakers.values()]


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerStats",
    "CircuitState",
]
