"""
Query Decomposition + Result Fusion
------------------------------------
Splits multi-part queries into independent sub-queries, searches each, and
fuses the result lists.

    "how did we implement auth and what broke"
        -> ["how did we implement auth", "what broke"]
        -> retrieve x2 -> reciprocal_rank_fusion

Rule-based splitting:
  1. exclusions first: idioms such as "pros and cons" are never split
  2. the FIRST matching conjunction pattern is the split point
  3. leading conjunctions stripped, parts <= 3 chars dropped, max 5 parts
  4. a single surviving part means the query is returned unsplit

RRF:  score(d) = sum over lists of 1 / (k + rank_d), rank 1-indexed, k = 60.
Ties keep first-appearance order.
"""
from __future__ import annotations

import re
from typing import Any, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

from memrag.query.llm import JsonLLM
from memrag.schemas import RankedResult

RRF_K = 60
MAX_SUB_QUERIES = 5
MIN_SUB_QUERY_CHARS = 3
MAX_VARIATIONS = 4

SPLIT_PATTERNS: tuple[tuple[re.Pattern, str], ...] = tuple(
    (re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE), word)
    for word in ("and", "also", "plus", "as well as", "along with", "in addition to", "but also", "then")
)

MULTI_PART_QUESTION_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"^(what|which).*\b(and|or)\b.*\?$", re.IGNORECASE),
    re.compile(r"^how.*\b(and|but)\b.*\?$", re.IGNORECASE),
    re.compile(r"^(what|when|where|why).*,.*\?$", re.IGNORECASE),
)

NO_SPLIT_PATTERNS: tuple[re.Pattern, ...] = (
    re.compile(r"\band\s+or\b", re.IGNORECASE),
    re.compile(r"\bpros\s+and\s+cons\b", re.IGNORECASE),
    re.compile(r"\btry\s+and\b", re.IGNORECASE),
    re.compile(r"\bcome\s+and\s+(go|see)\b", re.IGNORECASE),
    re.compile(r"\bread\s+and\s+write\b", re.IGNORECASE),
    re.compile(r"\bback\s+and\s+forth\b", re.IGNORECASE),
)

_LEADING_CONJUNCTION = re.compile(r"^(and|also|plus|but|then|however)\s+", re.IGNORECASE)

DECOMPOSITION_SYSTEM_PROMPT = """\
You are a query decomposition assistant. Given a complex query, break it into simpler sub-queries that can be searched independently.

Rules:
1. Only decompose if the query has multiple distinct aspects
2. Keep sub-queries concise but complete
3. Maximum 4 sub-queries
4. Return JSON only

Example input: "How did we implement messaging and what issues did we hit?"
Example output: {"sub_queries": ["messaging implementation", "messaging issues errors problems"], "reasoning": "Query asks about both implementation and issues separately"}

Example input: "authentication flow"
Example output: {"sub_queries": ["authentication flow"], "reasoning": "Simple query, no decomposition needed"}"""


class DecomposedQuery(BaseModel):
    original: str
    sub_queries: list[str]
    fusion_strategy: Literal["union", "intersection", "ranked"] = "union"
    decomposition_method: Literal["rule_based", "llm"] = "rule_based"
    reasoning: str = ""

    @property
    def is_decomposed(self) -> bool:
        return len(self.sub_queries) > 1


class FusedResult(BaseModel):
    id: str
    fused_score: float
    original_ranks: list[int] = Field(default_factory=list)
    appearances: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    content: str = ""


# --- Rule-based -----------------------------------------------------------------

def should_split(query: str) -> bool:
    if any(p.search(query) for p in NO_SPLIT_PATTERNS):
        return False
    if any(p.search(query) for p, _ in SPLIT_PATTERNS):
        return True
    return any(p.search(query) for p in MULTI_PART_QUESTION_PATTERNS)


def clean_sub_query(part: str) -> str:
    return _LEADING_CONJUNCTION.sub("", part.strip()).strip(" ,;")


def _unsplit(query: str, reasoning: str) -> DecomposedQuery:
    return DecomposedQuery(original=query, sub_queries=[query], reasoning=reasoning)


def decompose_rule_based(query: str) -> DecomposedQuery:
    if not should_split(query):
        return _unsplit(query, "No decomposition needed")

    pieces: list[str] = []
    for pattern, _ in SPLIT_PATTERNS:
        if pattern.search(query):
            pieces = pattern.split(query)
            break
    else:
        # multi-part question without a conjunction: split on commas
        pieces = query.split(",")

    parts = [cleaned for cleaned in (clean_sub_query(p) for p in pieces) if len(cleaned) > MIN_SUB_QUERY_CHARS]
    if len(parts) <= 1:
        return _unsplit(query, "Split attempted but resulted in single query")

    return DecomposedQuery(
        original=query,
        sub_queries=parts[:MAX_SUB_QUERIES],
        reasoning=f"Split on conjunction into {len(parts)} sub-queries",
    )


class QueryDecomposer:
    """Rule-based decomposition with an optional LLM pass for unsplit complex queries."""

    def __init__(self, llm: Optional[JsonLLM] = None, llm_enabled: bool = False) -> None:
        self.llm = llm
        self.llm_enabled = llm_enabled

    async def decompose(self, query: str, max_sub_queries: int = MAX_SUB_QUERIES) -> DecomposedQuery:
        rule_based = decompose_rule_based(query)
        wants_llm = len(query.split()) > 5 or "?" in query
        if rule_based.is_decomposed or not (self.llm_enabled and self.llm is not None and wants_llm):
            return rule_based.model_copy(update={"sub_queries": rule_based.sub_queries[:max_sub_queries]})

        try:
            payload = await self.llm.complete_json(DECOMPOSITION_SYSTEM_PROMPT, query, max_tokens=300)
        except Exception as exc:
            logger.warning(f"[QueryDecomposer] LLM decomposition failed, using rule-based: {exc}")
            return rule_based

        sub_queries = [str(q).strip() for q in payload.get("sub_queries") or [] if str(q).strip()]
        if not sub_queries:
            return rule_based
        return DecomposedQuery(
            original=query,
            sub_queries=sub_queries[:max_sub_queries],
            decomposition_method="llm",
            reasoning=str(payload.get("reasoning") or "LLM decomposition"),
        )


# --- Fusion ---------------------------------------------------------------------

def _accumulate(
    result_lists: list[list[RankedResult]], score_fn
) -> list[FusedResult]:
    fused: dict[str, FusedResult] = {}
    for list_index, results in enumerate(result_lists):
        for position, doc in enumerate(results):
            rank = position + 1
            contribution = score_fn(list_index, rank, doc)
            entry = fused.get(doc.id)
            if entry is None:
                fused[doc.id] = FusedResult(
                    id=doc.id,
                    fused_score=contribution,
                    original_ranks=[rank],
                    appearances=1,
                    metadata=dict(doc.metadata),
                    content=doc.content,
                )
            else:
                entry.fused_score += contribution
                entry.original_ranks.append(rank)
                entry.appearances += 1
    # sorted() is stable, so equal scores keep first-appearance order
    return sorted(fused.values(), key=lambda r: r.fused_score, reverse=True)


def reciprocal_rank_fusion(result_lists: list[list[RankedResult]], k: int = RRF_K) -> list[FusedResult]:
    return _accumulate(result_lists, lambda _i, rank, _doc: 1 / (k + rank))


def linear_combination_fusion(
    result_lists: list[list[RankedResult]], weights: Optional[list[float]] = None
) -> list[FusedResult]:
    """Weighted sum of each list's scores; equal weights by default."""
    if not result_lists:
        return []
    default = 1 / len(result_lists)
    weights = weights or [default] * len(result_lists)

    def _score(list_index: int, _rank: int, doc: RankedResult) -> float:
        weight = weights[list_index] if list_index < len(weights) else default
        return doc.final_score * weight

    return _accumulate(result_lists, _score)


def fused_to_ranked(fused: list[FusedResult]) -> list[RankedResult]:
    """Back to RankedResult so rerank and recency can run on fused output."""
    return [
        RankedResult(
            id=f.id,
            semantic_score=f.fused_score,
            final_score=f.fused_score,
            rank=rank,
            original_rank=rank,
            content=f.content,
            metadata=f.metadata,
        )
        for rank, f in enumerate(fused, start=1)
    ]


# --- Variations -----------------------------------------------------------------

def generate_query_variations(query: str) -> list[str]:
    variations = [query]

    if query.endswith("?"):
        statement = re.sub(r"^(how|what|when|where|why|which)\s+", "", query[:-1], flags=re.IGNORECASE)
        if len(statement) > 10:
            variations.append(statement)

    if re.match(r"^how (to|do|can)", query, re.IGNORECASE):
        topic = re.sub(r"^how (to|do|can)\s+", "", query, flags=re.IGNORECASE)
        variations.append(f"{topic} documentation")
        variations.append(f"{topic} guide")

    problem = re.compile(r"\b(error|bug|issue|problem)\b", re.IGNORECASE)
    if problem.search(query):
        variations.append(problem.sub("fix", query))
        variations.append(problem.sub("solution", query))

    return list(dict.fromkeys(variations))[:MAX_VARIATIONS]
