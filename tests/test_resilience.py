"""
Tests for memrag/resilience: sliding-window rate limiter, circuit breaker
and the concurrent batch processor.
"""
import asyncio

import pytest

from memrag.errors import (
    PermanentProviderError,
    RateLimitExceededError,
    TransientProviderError,
    is_retryable_error,
)
from memrag.resilience.batch_processor import BatchConfig, BatchProcessor, percentile
from memrag.resilience.circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerRegistry
from memrag.resilience.rate_limiter import RateLimiter, RateLimiterRegistry, with_rate_limit


def _limiter(clock, **kwargs) -> RateLimiter:
    kwargs.setdefault("requests_per_minute", 2)
    kwargs.setdefault("max_wait_s", 120.0)
    return RateLimiter("cohere", clock=clock, sleep=clock.sleep, **kwargs)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_admits_within_budget_without_waiting(self, fake_clock):
        limiter = _limiter(fake_clock)

        assert await limiter.acquire() == 0
        assert await limiter.acquire() == 0
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_waits_for_window_to_slide(self, fake_clock):
        limiter = _limiter(fake_clock)
        await limiter.acquire()
        await limiter.acquire()

        waited = await limiter.acquire()

        assert waited == pytest.approx(60.0)
        assert fake_clock.sleeps == [pytest.approx(60.0)]
        assert limiter.status().current_requests == 1

    @pytest.mark.asyncio
    async def test_bounded_wait_raises_transient_error(self, fake_clock):
        limiter = _limiter(fake_clock, max_wait_s=10.0)
        await limiter.acquire()
        await limiter.acquire()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire()

        assert is_retryable_error(exc_info.value)
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_token_budget_blocks_until_tokens_expire(self, fake_clock):
        limiter = _limiter(fake_clock, requests_per_minute=100, tokens_per_minute=100)
        await limiter.acquire(80)

        assert not limiter.has_capacity(50)
        waited = await limiter.acquire(50)
        assert waited == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_oversized_request_admitted_into_empty_window(self, fake_clock):
        limiter = _limiter(fake_clock, requests_per_minute=100, tokens_per_minute=100)
        assert await limiter.acquire(500) == 0

    @pytest.mark.asyncio
    async def test_daily_cap(self, fake_clock):
        limiter = _limiter(fake_clock, requests_per_minute=10, requests_per_day=1, max_wait_s=10.0)
        await limiter.acquire()

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_status_reports_utilisation(self, fake_clock):
        limiter = _limiter(fake_clock)
        await limiter.acquire()
        half = limiter.status()
        await limiter.acquire()
        full = limiter.status()

        assert half.available is True
        assert half.utilization_percent == 50
        assert full.available is False
        assert full.utilization_percent == 100
        assert full.wait_seconds == 60

    def test_old_entries_are_pruned(self, fake_clock):
        limiter = _limiter(fake_clock)
        limiter.record_request()
        limiter.record_request()
        assert not limiter.has_capacity()

        fake_clock.advance(61)
        assert limiter.has_capacity()

    @pytest.mark.asyncio
    async def test_decorator_routes_calls_through_limiter(self, fake_clock):
        limiter = _limiter(fake_clock, requests_per_minute=5)

        @with_rate_limit(limiter)
        async def call(x):
            return x * 2

        assert await call(21) == 42
        assert limiter.status().current_requests == 1

    def test_registry_lookup_is_case_insensitive(self, fake_clock):
        registry = RateLimiterRegistry()
        registry.register(_limiter(fake_clock))

        assert registry.get("COHERE") is not None
        assert "Cohere" in registry
        assert registry.get("openai") is None
        assert set(registry.statuses()) == {"cohere"}


class TestCircuitBreaker:
    def _breaker(self, clock) -> CircuitBreaker:
        return CircuitBreaker("cohere", threshold=2, reset_s=30.0, clock=clock)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

        await breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert not breaker.allows_call()

    @pytest.mark.asyncio
    async def test_half_open_after_reset_window(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_failure()

        fake_clock.advance(31)
        assert breaker.state == BreakerState.HALF_OPEN
        assert breaker.allows_call()

    @pytest.mark.asyncio
    async def test_half_open_admits_a_single_trial(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_failure()
        fake_clock.advance(31)

        assert breaker.begin_call()
        assert not breaker.begin_call()
        assert not breaker.allows_call()
        assert breaker.state == BreakerState.HALF_OPEN

        await breaker.record_success()

        assert breaker.begin_call()
        assert breaker.begin_call()

    @pytest.mark.asyncio
    async def test_abandoned_trial_frees_the_slot_after_reset_window(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_failure()
        fake_clock.advance(31)
        assert breaker.begin_call()

        fake_clock.advance(31)

        assert breaker.begin_call()

    @pytest.mark.asyncio
    async def test_closed_breaker_admits_every_call(self, fake_clock):
        breaker = self._breaker(fake_clock)
        assert all(breaker.begin_call() for _ in range(5))

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_failure()
        fake_clock.advance(31)

        await breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        assert breaker.status().time_until_reset_s == pytest.approx(30.0)

    @pytest.mark.asyncio
    async def test_success_closes_and_resets_count(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_failure()
        fake_clock.advance(31)

        await breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_success_between_failures_prevents_opening(self, fake_clock):
        breaker = self._breaker(fake_clock)
        await breaker.record_failure()
        await breaker.record_success()
        await breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_registry_hands_out_one_breaker_per_name(self, fake_clock):
        registry = CircuitBreakerRegistry(threshold=1, reset_s=10.0, clock=fake_clock)
        breaker = registry.get("pinecone")
        assert registry.get("pinecone") is breaker

        await breaker.record_failure()
        assert registry.statuses()["pinecone"].to_dict()["state"] == "open"

        registry.reset("pinecone")
        assert breaker.state == BreakerState.CLOSED


async def _no_sleep(_seconds: float) -> None:
    return None


def _processor(**kwargs) -> BatchProcessor:
    kwargs.setdefault("max_concurrent", 2)
    kwargs.setdefault("retry_delay_s", 0.01)
    return BatchProcessor(BatchConfig(**kwargs), sleep=_no_sleep)


class TestBatchProcessor:
    @pytest.mark.asyncio
    async def test_all_items_succeed_in_order(self):
        async def double(x):
            return x * 2

        result = await _processor().run([1, 2, 3], double)

        assert result.successful == [2, 4, 6]
        assert result.failed == []
        assert result.summary.success_rate == 100

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self):
        attempts = {"n": 0}

        async def flaky(x):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise TransientProviderError("openai", "boom", 503)
            return x

        result = await _processor().run(["a"], flaky)

        assert result.successful == ["a"]
        assert result.summary.retry_count == 1
        assert attempts["n"] == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        calls = []

        async def broken(x):
            calls.append(x)
            raise PermanentProviderError("openai", "bad key", 401)

        result = await _processor().run(["a"], broken)

        assert calls == ["a"]
        failure = result.failed[0]
        assert failure.item == "a"
        assert failure.attempts == 1
        assert failure.retryable is False
        assert "401" in failure.error

    @pytest.mark.asyncio
    async def test_timeout_is_retryable_failure(self):
        async def slow(x):
            await asyncio.sleep(1)
            return x

        result = await _processor(timeout_s=0.02, retry_attempts=2).run(["a"], slow)

        failure = result.failed[0]
        assert failure.attempts == 2
        assert failure.retryable is True
        assert failure.error == "Operation timed out after 0.02s"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self):
        async def handler(x):
            if x == 2:
                raise PermanentProviderError("pinecone", "invalid", 400)
            return x

        result = await _processor().run([1, 2, 3], handler)

        assert result.successful == [1, 3]
        assert [f.item for f in result.failed] == [2]
        assert result.summary.success_rate == 67
        assert result.to_dict()["summary"]["failed_count"] == 1

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        in_flight = {"now": 0, "peak": 0}

        async def handler(x):
            in_flight["now"] += 1
            in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
            await asyncio.sleep(0.01)
            in_flight["now"] -= 1
            return x

        await _processor(max_concurrent=2).run(list(range(6)), handler)
        assert in_flight["peak"] == 2

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        async def handler(x):
            return x

        result = await _processor().run([], handler)
        assert result.summary.total_items == 0
        assert result.timing.avg_per_item_ms == 0.0

    def test_percentile(self):
        values = [float(v) for v in range(1, 21)]
        assert percentile(values, 95) == 19.0
        assert percentile([], 95) == 0.0
