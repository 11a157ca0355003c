"""
Batch Processor
----------------
Generic concurrent runner used by ingestion:

  - bounded concurrency (asyncio.Semaphore, default 3)
  - per-item timeout (asyncio.wait_for); a timeout is a retryable failure
  - retry with exponential backoff + jitter via tenacity, only for errors
    that `is_retryable_error` accepts
  - structured accounting: successes, failures with per-attempt history,
    timing percentiles, and a summary

One item failing never affects its siblings.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from memrag.errors import is_retryable_error
from memrag.utils.helpers import utcnow

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchConfig:
    max_concurrent: int = 3
    timeout_s: float = 30.0
    retry_attempts: int = 3            # total attempts, including the first
    retry_delay_s: float = 1.0
    exponential_backoff: bool = True
    max_retry_delay_s: float = 30.0


@dataclass
class AttemptRecord:
    attempt: int
    timestamp: str
    duration_ms: float
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class FailedItem(Generic[T]):
    item: T
    error: str
    attempts: int
    retryable: bool
    attempt_history: list[AttemptRecord] = field(default_factory=list)


@dataclass
class BatchTiming:
    total_ms: float = 0.0
    avg_per_item_ms: float = 0.0
    max_item_ms: float = 0.0
    min_item_ms: float = 0.0
    p95_item_ms: float = 0.0


@dataclass
class BatchSummary:
    total_items: int = 0
    successful_count: int = 0
    failed_count: int = 0
    retry_count: int = 0
    success_rate: int = 0              # percent
    items_per_second: float = 0.0


@dataclass
class BatchResult(Generic[T, R]):
    successful: list[R]
    failed: list[FailedItem[T]]
    timing: BatchTiming
    summary: BatchSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful_count": self.summary.successful_count,
            "failed": [
                {"error": f.error, "attempts": f.attempts, "retryable": f.retryable}
                for f in self.failed
            ],
            "timing": vars(self.timing),
            "summary": vars(self.summary),
        }


@dataclass
class _ItemOutcome(Generic[R]):
    ok: bool
    result: Optional[R]
    error: str
    retryable: bool
    history: list[AttemptRecord]
    duration_ms: float


def percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    index = math.ceil((p / 100) * len(sorted_values)) - 1
    return sorted_values[max(0, index)]


def _describe(error: BaseException, timeout_s: float) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"Operation timed out after {timeout_s}s"
    return str(error) or type(error).__name__


class BatchProcessor:
    """
    Usage:
        processor = BatchProcessor(BatchConfig(max_concurrent=2))
        result = await processor.run(items, handle_item)
    """

    def __init__(
        self,
        config: Optional[BatchConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or BatchConfig()
        self._sleep = sleep

    def _wait_strategy(self):
        base = self.config.retry_delay_s
        if not self.config.exponential_backoff:
            return lambda _state: base
        # base * 2^(n-1), capped, plus 0-50% jitter
        return wait_exponential(multiplier=base, max=self.config.max_retry_delay_s) + wait_random(
            0, base * 0.5
        )

    async def _process_item(
        self, item: T, handler: Callable[[T], Awaitable[R]]
    ) -> _ItemOutcome[R]:
        history: list[AttemptRecord] = []
        started = time.perf_counter()
        timeout_s = self.config.timeout_s

        def _log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.info(
                f"[BatchProcessor] Item failed (attempt {state.attempt_number}/"
                f"{self.config.retry_attempts}), retrying in "
                f"{state.next_action.sleep if state.next_action else 0:.2f}s: "
                f"{_describe(error, timeout_s) if error else 'unknown'}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=self._wait_strategy(),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempt_start = time.perf_counter()
                    try:
                        result = await asyncio.wait_for(handler(item), timeout=timeout_s)
                    except Exception as exc:
                        history.append(
                            AttemptRecord(
                                attempt=attempt.retry_state.attempt_number,
                                timestamp=utcnow().isoformat(),
                                duration_ms=(time.perf_counter() - attempt_start) * 1000,
                                error=_describe(exc, timeout_s),
                            )
                        )
                        raise
                    history.append(
                        AttemptRecord(
                            attempt=attempt.retry_state.attempt_number,
                            timestamp=utcnow().isoformat(),
                            duration_ms=(time.perf_counter() - attempt_start) * 1000,
                        )
                    )
        except Exception as exc:
            return _ItemOutcome(
                ok=False,
                result=None,
                error=_describe(exc, timeout_s),
                retryable=is_retryable_error(exc),
                history=history,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        return _ItemOutcome(
            ok=True,
            result=result,
            error="",
            retryable=False,
            history=history,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def run(
        self, items: list[T], handler: Callable[[T], Awaitable[R]]
    ) -> BatchResult[T, R]:
        """Process every item; results keep input order within each bucket."""
        started = time.perf_counter()
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent))

        logger.info(
            f"[BatchProcessor] Processing {len(items)} items "
            f"(max_concurrent={self.config.max_concurrent}, attempts={self.config.retry_attempts})"
        )

        async def _guarded(item: T) -> _ItemOutcome[R]:
            async with semaphore:
                return await self._process_item(item, handler)

        outcomes = await asyncio.gather(*(_guarded(item) for item in items))

        successful: list[R] = []
        failed: list[FailedItem[T]] = []
        retries = 0
        for item, outcome in zip(items, outcomes):
            retries += max(0, len(outcome.history) - 1)
            if outcome.ok:
                successful.append(outcome.result)  # type: ignore[arg-type]
            else:
                failed.append(
                    FailedItem(
                        item=item,
                        error=outcome.error,
                        attempts=len(outcome.history),
                        retryable=outcome.retryable,
                        attempt_history=outcome.history,
                    )
                )

        total_ms = (time.perf_counter() - started) * 1000
        times = sorted(o.duration_ms for o in outcomes)
        timing = BatchTiming(
            total_ms=round(total_ms, 1),
            avg_per_item_ms=round(total_ms / len(items), 1) if items else 0.0,
            max_item_ms=round(times[-1], 1) if times else 0.0,
            min_item_ms=round(times[0], 1) if times else 0.0,
            p95_item_ms=round(percentile(times, 95), 1),
        )
        summary = BatchSummary(
            total_items=len(items),
            successful_count=len(successful),
            failed_count=len(failed),
            retry_count=retries,
            success_rate=round(len(successful) / len(items) * 100) if items else 0,
            items_per_second=round(len(items) / (total_ms / 1000), 2) if total_ms > 0 else 0.0,
        )

        logger.info(
            f"[BatchProcessor] Completed: {summary.successful_count}/{summary.total_items} "
            f"successful ({summary.success_rate}%), {summary.items_per_second} items/sec, "
            f"{summary.retry_count} retries"
        )
        return BatchResult(successful=successful, failed=failed, timing=timing, summary=summary)
