"""
Rerank Orchestrator
--------------------
Cross-encoder reranking with a provider fallback chain.

    primary ─► chain[1] ─► chain[2] ... ─► passthrough (semantic order)

For each provider in order:
  - breaker open            -> skip (recorded in circuit_breaker_skipped)
  - not configured          -> skip
  - otherwise               -> rate limiter, then the call under tenacity
                               (transient errors only, exponential + jitter)
  - success                 -> blend scores, re-rank, return
  - failure                 -> breaker failure, try the next one

Score blend:
    final = w * rerank_score + (1 - w) * semantic_score      (w = 0.7)

Falls back to the original retrieval order if every provider fails; the
reranker never raises for provider problems.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Literal, Optional

from langsmith import traceable
from loguru import logger
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from memrag.errors import TransientProviderError
from memrag.resilience.circuit_breaker import CircuitBreakerRegistry
from memrag.resilience.rate_limiter import RateLimiterRegistry
from memrag.retrieval.rerank_providers import PASSTHROUGH, ProviderScore, RerankProvider
from memrag.schemas import RankedResult

DEFAULT_FALLBACK_CHAIN = ["cohere", "pinecone", "pinecone-bge", PASSTHROUGH]
DEFAULT_SCORE_WEIGHT = 0.7
DEFAULT_TOP_N = 10
MAX_RETRY_DELAY_S = 5.0


class RerankTiming(BaseModel):
    total_ms: float = 0.0
    rerank_ms: float = 0.0


class RerankMetrics(BaseModel):
    providers_tried: list[str] = Field(default_factory=list)
    circuit_breaker_skipped: list[str] = Field(default_factory=list)
    retry_count: int = 0
    http_retries: int = 0


class RerankResult(BaseModel):
    documents: list[RankedResult] = Field(default_factory=list)
    provider_used: str = PASSTHROUGH
    fallback_used: bool = False
    timing: RerankTiming = Field(default_factory=RerankTiming)
    cost_estimate_usd: float = 0.0
    error: Optional[str] = None
    metrics: RerankMetrics = Field(default_factory=RerankMetrics)


def _limiter_name(provider: str) -> str:
    return "pinecone" if provider.startswith("pinecone") else provider


def _passthrough(candidates: list[RankedResult], top_n: int) -> list[RankedResult]:
    ranked = []
    for rank, doc in enumerate(candidates, start=1):
        ranked.append(
            doc.model_copy(
                update={
                    "rerank_score": doc.semantic_score,
                    "final_score": doc.semantic_score,
                    "rank": rank,
                    "rank_change": 0,
                }
            )
        )
    return ranked[:top_n]


def blend_scores(
    candidates: list[RankedResult],
    scores: list[ProviderScore],
    score_weight: float,
) -> list[RankedResult]:
    """Apply provider scores, sort by the blended score and assign 1-based ranks."""
    by_index = {s.index: s.score for s in scores if 0 <= s.index < len(candidates)}
    scored: list[RankedResult] = []
    unscored: list[RankedResult] = []
    for i, doc in enumerate(candidates):
        if i in by_index:
            rerank_score = by_index[i]
            scored.append(
                doc.model_copy(
                    update={
                        "rerank_score": rerank_score,
                        "final_score": score_weight * rerank_score
                        + (1 - score_weight) * doc.semantic_score,
                    }
                )
            )
        else:
            unscored.append(doc.model_copy(update={"final_score": doc.semantic_score}))

    scored.sort(key=lambda d: d.final_score, reverse=True)
    ordered = scored + unscored
    return [
        doc.model_copy(update={"rank": rank, "rank_change": doc.original_rank - rank})
        for rank, doc in enumerate(ordered, start=1)
    ]


class RerankOrchestrator:
    """
    Args:
        providers:      name -> RerankProvider (only configured providers).
        breakers:       Per-provider circuit breakers.
        rate_limiters:  Optional limiter registry ("cohere", "pinecone").
        default_provider / fallback_chain / score_weight / default_top_n:
                        Defaults for rerank() calls.
        sleep:          Backoff sleep, injectable for tests.
    """

    def __init__(
        self,
        providers: dict[str, RerankProvider],
        breakers: Optional[CircuitBreakerRegistry] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        default_provider: str = "cohere",
        fallback_chain: Optional[list[str]] = None,
        score_weight: float = DEFAULT_SCORE_WEIGHT,
        default_top_n: int = DEFAULT_TOP_N,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.breakers = breakers or CircuitBreakerRegistry()
        self.rate_limiters = rate_limiters
        self.default_provider = default_provider
        self.fallback_chain = list(DEFAULT_FALLBACK_CHAIN if fallback_chain is None else fallback_chain)
        self.score_weight = score_weight
        self.default_top_n = default_top_n
        self._sleep = sleep

    # --- Chain ---------------------------------------------------------------

    def provider_order(self, primary: str, fallback: bool = True) -> list[str]:
        if not fallback:
            return [primary]
        return [primary] + [p for p in self.fallback_chain if p != primary and p != PASSTHROUGH]

    @property
    def available_providers(self) -> list[str]:
        return [name for name in self.providers if name != PASSTHROUGH]

    async def _call_provider(
        self, provider: RerankProvider, query: str, texts: list[str], top_n: int
    ) -> tuple[list[ProviderScore], int]:
        """Returns (scores, retries used)."""
        limiter = self.rate_limiters.get(_limiter_name(provider.name)) if self.rate_limiters else None
        retries = 0

        def _log_retry(state: RetryCallState) -> None:
            nonlocal retries
            retries += 1
            error = state.outcome.exception() if state.outcome else None
            logger.info(
                f"[Reranker] {provider.name} attempt {state.attempt_number}/"
                f"{provider.max_attempts} failed, retrying: {error}"
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, provider.max_attempts)),
            wait=wait_exponential(multiplier=0.5, max=MAX_RETRY_DELAY_S) + wait_random(0, 0.25),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if limiter is not None:
                    await limiter.acquire()
                scores = await provider.rerank(query, texts, top_n)
        return scores, retries

    # --- Public API ----------------------------------------------------------

    @traceable(name="rerank", run_type="chain")
    async def rerank(
        self,
        query: str,
        documents: list[RankedResult],
        top_n: Optional[int] = None,
        provider: Optional[str] = None,
        fallback: bool = True,
        score_weight: Optional[float] = None,
    ) -> RerankResult:
        """
        Rerank retrieval candidates; `documents` must be in retrieval order.

        Returns:
            RerankResult with at most top_n documents (default min(10, n)).
        """
        started = time.perf_counter()
        if not documents:
            logger.debug("[Reranker] No documents, skipping")
            return RerankResult()

        primary = provider or self.default_provider
        weight = self.score_weight if score_weight is None else score_weight
        top_n = top_n or min(self.default_top_n, len(documents))
        candidates = [
            doc.model_copy(update={"original_rank": rank}) for rank, doc in enumerate(documents, start=1)
        ]

        if primary == PASSTHROUGH:
            logger.info("[Reranker] Provider 'none' configured, passthrough")
            return RerankResult(
                documents=_passthrough(candidates, top_n),
                timing=RerankTiming(total_ms=round((time.perf_counter() - started) * 1000, 2)),
            )

        metrics = RerankMetrics()
        last_error: Optional[str] = None
        fallback_used = False
        texts = [doc.content for doc in candidates]

        for name in self.provider_order(primary, fallback):
            backend = self.providers.get(name)
            if backend is None:
                logger.debug(f"[Reranker] {name} not configured, skipping")
                last_error = f"{name} not configured"
                fallback_used = True
                continue

            breaker = self.breakers.get(name)
            if not breaker.begin_call():
                logger.warning(f"[Reranker] Circuit open for {name}, skipping")
                metrics.circuit_breaker_skipped.append(name)
                fallback_used = True
                continue

            metrics.providers_tried.append(name)
            call_started = time.perf_counter()
            try:
                scores, retries = await self._call_provider(backend, query, texts, len(texts))
            except Exception as exc:
                await breaker.record_failure()
                last_error = str(exc)
                fallback_used = True
                logger.warning(
                    f"[Reranker] {name} failed after {(time.perf_counter() - call_started) * 1000:.0f}ms: {exc}"
                )
                continue

            await breaker.record_success()
            metrics.http_retries += retries
            metrics.retry_count = len(metrics.providers_tried) - 1
            rerank_ms = (time.perf_counter() - call_started) * 1000
            ranked = blend_scores(candidates, scores, weight)[:top_n]

            logger.info(
                f"[Reranker] {len(candidates)} -> {len(ranked)} docs via {name} "
                f"in {rerank_ms:.0f}ms | fallback_used={fallback_used}"
            )
            return RerankResult(
                documents=ranked,
                provider_used=name,
                fallback_used=fallback_used,
                timing=RerankTiming(
                    total_ms=round((time.perf_counter() - started) * 1000, 2),
                    rerank_ms=round(rerank_ms, 2),
                ),
                cost_estimate_usd=backend.estimate_cost(1),
                error=last_error,
                metrics=metrics,
            )

        logger.error(
            f"[Reranker] All providers failed (tried={metrics.providers_tried}, "
            f"skipped={metrics.circuit_breaker_skipped}): {last_error}"
        )
        metrics.retry_count = len(metrics.providers_tried)
        return RerankResult(
            documents=_passthrough(candidates, top_n),
            provider_used=PASSTHROUGH,
            fallback_used=True,
            timing=RerankTiming(total_ms=round((time.perf_counter() - started) * 1000, 2)),
            error=last_error,
            metrics=metrics,
        )

    # --- Operations ----------------------------------------------------------

    async def health(self, probe: bool = False) -> dict[str, Any]:
        """
        Report provider availability and breaker state.

        With probe=True every configured provider reranks one tiny document
        so latency and credentials are checked live.
        """
        providers: dict[str, dict[str, Any]] = {}
        for name in dict.fromkeys(self.provider_order(self.default_provider)):
            backend = self.providers.get(name)
            if backend is None:
                providers[name] = {"available": False, "latency_ms": -1, "error": "not configured"}
                continue
            entry: dict[str, Any] = {"available": self.breakers.get(name).allows_call(), "latency_ms": 0}
            if probe and entry["available"]:
                start = time.perf_counter()
                try:
                    await backend.rerank("health check", ["health check document"], 1)
                except Exception as exc:
                    entry.update(available=False, error=str(exc))
                entry["latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
            providers[name] = entry

        primary_available = providers.get(self.default_provider, {}).get("available", False)
        fallback_available = any(
            info["available"] for name, info in providers.items() if name != self.default_provider
        )
        if primary_available:
            status = "healthy"
        elif fallback_available:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "status": status,
            "primary_available": primary_available,
            "fallback_available": fallback_available,
            "providers": providers,
            "circuit_breakers": {n: s.to_dict() for n, s in self.breakers.statuses().items()},
        }

    def reset_circuit_breaker(self, name: str) -> None:
        self.breakers.reset(name)

    def reset_all_circuit_breakers(self) -> None:
        self.breakers.reset_all()


# --- Analytics ------------------------------------------------------------------

def calculate_rerank_metrics(documents: list[RankedResult]) -> dict[str, Any]:
    if not documents:
        return {
            "total_documents": 0,
            "documents_moved": 0,
            "avg_rank_change": 0.0,
            "max_rank_up": 0,
            "max_rank_down": 0,
            "top_5_changed": False,
        }
    moved = [d.rank_change for d in documents if d.rank_change != 0]
    return {
        "total_documents": len(documents),
        "documents_moved": len(moved),
        "avg_rank_change": round(sum(abs(c) for c in moved) / len(moved), 2) if moved else 0.0,
        "max_rank_up": max([0, *moved]),
        "max_rank_down": min([0, *moved]),
        "top_5_changed": any(d.rank_change != 0 for d in documents[:5]),
    }


def recommended_fetch_multiplier(target_results: int) -> int:
    """How many candidates to fetch per requested result before reranking."""
    if target_results <= 5:
        return 10
    if target_results <= 10:
        return 5
    if target_results <= 20:
        return 3
    return 2


def optimal_top_n(use_case: Literal["search", "rag", "recommendation"], requested: int) -> int:
    if use_case == "rag":
        return min(requested, 5)
    if use_case == "recommendation":
        return min(requested, 20)
    return requested
