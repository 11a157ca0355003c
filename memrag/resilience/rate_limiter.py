"""
Sliding-Window Rate Limiter
----------------------------
Per-dependency admission control for every external call (OpenAI, Pinecone,
Cohere, Anthropic).

Each limiter keeps a deque of (timestamp, tokens) entries for the trailing
window (60s by default) plus an optional 24h deque for daily caps. Entries
older than the window are pruned before every admission check.

`acquire()` suspends until the request fits, then records it. The wait is
bounded by `max_wait_s`; past that it raises RateLimitExceededError, which
the retry layer treats as a transient failure.

All mutation happens under one asyncio.Lock per limiter. The lock is never
held while sleeping, so waiters do not serialise behind each other's naps.
"""
from __future__ import annotations

import asyncio
import functools
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from memrag.errors import RateLimitExceededError

T = TypeVar("T")

DAY_SECONDS = 86_400.0
MIN_SLEEP_S = 0.1


@dataclass
class RateLimitStatus:
    available: bool
    current_requests: int
    current_tokens: int
    wait_seconds: int
    utilization_percent: int

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "current_requests": self.current_requests,
            "current_tokens": self.current_tokens,
            "wait_seconds": self.wait_seconds,
            "utilization_percent": self.utilization_percent,
        }


class RateLimiter:
    """
    Args:
        name:                Dependency name used in logs and status output.
        requests_per_minute: Max requests admitted per window.
        tokens_per_minute:   Optional token budget per window (0/None = unlimited).
        requests_per_day:    Optional rolling 24h request cap.
        window_s:            Window length in seconds.
        max_wait_s:          Upper bound on time spent waiting in acquire().
        clock / sleep:       Injectable for tests.
    """

    def __init__(
        self,
        name: str,
        requests_per_minute: int,
        tokens_per_minute: Optional[int] = None,
        requests_per_day: Optional[int] = None,
        window_s: float = 60.0,
        max_wait_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.requests_per_minute = requests_per_minute
        self.tokens_per_minute = tokens_per_minute or 0
        self.requests_per_day = requests_per_day or 0
        self.window_s = window_s
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        self._window: deque[tuple[float, int]] = deque()
        self._daily: deque[float] = deque()
        self._lock = asyncio.Lock()

    # --- Window bookkeeping ---------------------------------------------------

    def _prune(self, now: float) -> None:
        window_start = now - self.window_s
        while self._window and self._window[0][0] <= window_start:
            self._window.popleft()
        if self.requests_per_day:
            day_start = now - DAY_SECONDS
            while self._daily and self._daily[0] <= day_start:
                self._daily.popleft()

    def _current_tokens(self) -> int:
        return sum(tokens for _, tokens in self._window)

    def _fits(self, tokens: int) -> bool:
        if len(self._window) >= self.requests_per_minute:
            return False
        if tokens and self.tokens_per_minute:
            # An oversized single request is admitted into an empty window
            if self._window and self._current_tokens() + tokens > self.tokens_per_minute:
                return False
        if self.requests_per_day and len(self._daily) >= self.requests_per_day:
            return False
        return True

    def _seconds_until_fit(self, tokens: int, now: float) -> float:
        wait = 0.0
        if len(self._window) >= self.requests_per_minute:
            overflow = len(self._window) - self.requests_per_minute
            wait = max(wait, self._window[overflow][0] + self.window_s - now)
        if tokens and self.tokens_per_minute and self._window:
            excess = self._current_tokens() + tokens - self.tokens_per_minute
            freed = 0
            for ts, entry_tokens in self._window:
                freed += entry_tokens
                if freed >= excess:
                    wait = max(wait, ts + self.window_s - now)
                    break
        if self.requests_per_day and len(self._daily) >= self.requests_per_day:
            wait = max(wait, self._daily[0] + DAY_SECONDS - now)
        return max(0.0, wait)

    def _record(self, tokens: int, now: float) -> None:
        self._window.append((now, tokens))
        if self.requests_per_day:
            self._daily.append(now)

    # --- Public API -----------------------------------------------------------

    def has_capacity(self, tokens: int = 0) -> bool:
        self._prune(self._clock())
        return self._fits(tokens)

    def status(self) -> RateLimitStatus:
        now = self._clock()
        self._prune(now)
        current_requests = len(self._window)
        current_tokens = self._current_tokens()

        utilization = current_requests / self.requests_per_minute
        if self.tokens_per_minute:
            utilization = max(utilization, current_tokens / self.tokens_per_minute)

        wait = 0.0
        if current_requests >= self.requests_per_minute and self._window:
            wait = self._window[0][0] + self.window_s - now
        if self.requests_per_day and len(self._daily) >= self.requests_per_day:
            wait = max(wait, self._daily[0] + DAY_SECONDS - now)
        wait_seconds = max(0, math.ceil(wait))

        return RateLimitStatus(
            available=wait_seconds == 0 and utilization < 1,
            current_requests=current_requests,
            current_tokens=current_tokens,
            wait_seconds=wait_seconds,
            utilization_percent=round(utilization * 100),
        )

    async def acquire(self, tokens: int = 0) -> float:
        """
        Wait for capacity, then record the request.

        Returns:
            Seconds spent waiting.

        Raises:
            RateLimitExceededError: if capacity did not free up within max_wait_s.
        """
        started = self._clock()
        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)
                if self._fits(tokens):
                    self._record(tokens, now)
                    return now - started
                wait = self._seconds_until_fit(tokens, now)

            waited = self._clock() - started
            if waited + wait > self.max_wait_s:
                logger.warning(
                    f"[RateLimiter:{self.name}] Giving up after {waited:.1f}s "
                    f"(next slot in {wait:.1f}s, max wait {self.max_wait_s:.0f}s)"
                )
                raise RateLimitExceededError(self.name, waited)

            sleep_for = max(MIN_SLEEP_S, wait)
            logger.info(
                f"[RateLimiter:{self.name}] At capacity "
                f"({len(self._window)}/{self.requests_per_minute} req, "
                f"{self._current_tokens()}/{self.tokens_per_minute or 'N/A'} tokens). "
                f"Waiting {sleep_for:.1f}s..."
            )
            await self._sleep(sleep_for)

    def record_request(self, tokens: int = 0) -> None:
        """Record a request made outside acquire() (e.g. a cached pass-through)."""
        self._record(tokens, self._clock())

    def reset(self) -> None:
        self._window.clear()
        self._daily.clear()


def with_rate_limit(
    limiter: RateLimiter,
    tokens_fn: Optional[Callable[..., int]] = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async callable so every invocation passes through `limiter`."""

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            tokens = tokens_fn(*args, **kwargs) if tokens_fn else 0
            await limiter.acquire(tokens)
            return await fn(*args, **kwargs)

        return wrapper

    return decorator


class RateLimiterRegistry:
    """One limiter per dependency name, owned by the runtime context."""

    def __init__(self) -> None:
        self._limiters: dict[str, RateLimiter] = {}

    def register(self, limiter: RateLimiter) -> RateLimiter:
        self._limiters[limiter.name.lower()] = limiter
        return limiter

    def get(self, name: str) -> Optional[RateLimiter]:
        return self._limiters.get(name.lower())

    def statuses(self) -> dict[str, RateLimitStatus]:
        return {name: limiter.status() for name, limiter in self._limiters.items()}

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._limiters
