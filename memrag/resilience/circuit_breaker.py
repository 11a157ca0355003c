"""
Circuit Breaker
----------------
Failure-counting guard kept per rerank provider.

    closed     normal operation; consecutive failures are counted
    open       failures >= threshold; calls are short-circuited
    half-open  reset window elapsed since the last failure; one call at a time
               is admitted as a live trial - success closes, failure re-opens

State lives on the breaker object (owned by the runtime context), never in
module globals, so tests can build isolated instances with a fake clock.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from loguru import logger

DEFAULT_THRESHOLD = 5
DEFAULT_RESET_S = 60.0


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerStatus:
    state: BreakerState
    is_open: bool
    failures: int
    time_until_reset_s: float

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "is_open": self.is_open,
            "failures": self.failures,
            "time_until_reset_s": round(self.time_until_reset_s, 1),
        }


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        threshold: int = DEFAULT_THRESHOLD,
        reset_s: float = DEFAULT_RESET_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.reset_s = reset_s
        self._clock = clock
        self.failures = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False
        self._trial_started: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        if not self.is_open:
            return BreakerState.CLOSED
        if self._reset_elapsed():
            return BreakerState.HALF_OPEN
        return BreakerState.OPEN

    def _reset_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time > self.reset_s

    def _trial_in_flight(self) -> bool:
        # a trial that never reported back stops blocking after one reset window
        if self._trial_started is None:
            return False
        return self._clock() - self._trial_started <= self.reset_s

    def allows_call(self) -> bool:
        """False while open inside the reset window, or half-open with a trial running."""
        state = self.state
        if state == BreakerState.HALF_OPEN:
            return not self._trial_in_flight()
        return state == BreakerState.CLOSED

    def begin_call(self) -> bool:
        """Like allows_call, but in half-open also claims the single trial slot."""
        if not self.allows_call():
            return False
        if self.state == BreakerState.HALF_OPEN:
            self._trial_started = self._clock()
            logger.info(f"[CircuitBreaker:{self.name}] Half-open, admitting one trial call")
        return True

    async def record_success(self) -> None:
        async with self._lock:
            if self.is_open or self.failures:
                logger.info(f"[CircuitBreaker:{self.name}] Closed after successful call")
            self.failures = 0
            self.is_open = False
            self._trial_started = None

    async def record_failure(self) -> None:
        async with self._lock:
            was_half_open = self.state == BreakerState.HALF_OPEN
            self.failures += 1
            self.last_failure_time = self._clock()
            self._trial_started = None
            if was_half_open:
                self.is_open = True
                logger.warning(f"[CircuitBreaker:{self.name}] Trial call failed, re-opened")
            elif self.failures >= self.threshold and not self.is_open:
                self.is_open = True
                logger.warning(
                    f"[CircuitBreaker:{self.name}] OPEN after {self.failures} consecutive failures"
                )

    def status(self) -> BreakerStatus:
        remaining = 0.0
        if self.is_open and self.last_failure_time is not None:
            remaining = max(0.0, self.reset_s - (self._clock() - self.last_failure_time))
        return BreakerStatus(
            state=self.state,
            is_open=self.state == BreakerState.OPEN,
            failures=self.failures,
            time_until_reset_s=remaining,
        )

    def reset(self) -> None:
        self.failures = 0
        self.last_failure_time = None
        self.is_open = False
        self._trial_started = None


class CircuitBreakerRegistry:
    """Hands out one breaker per provider name, created on first use."""

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        reset_s: float = DEFAULT_RESET_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_s = reset_s
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name, threshold=self.threshold, reset_s=self.reset_s, clock=self._clock
            )
        return self._breakers[name]

    def statuses(self) -> dict[str, BreakerStatus]:
        return {name: breaker.status() for name, breaker in self._breakers.items()}

    def reset(self, name: str) -> None:
        if name in self._breakers:
            self._breakers[name].reset()

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
