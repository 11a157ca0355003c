"""
Hybrid Alpha Resolution
------------------------
alpha is the dense/sparse blend: 0.0 = pure lexical, 1.0 = pure semantic.

Resolution order:
  1. explicit caller value   (clamped to [0, 1], never auto-tuned)
  2. per-data-type default   (DATA_TYPE_ALPHA)
  3. global default          (0.5)

Auto-tuning (unless explicit) applies additive steps, each clamped to
[0.1, 0.9]:
  - boost keyword present         -0.15
  - acronyms (RLS, JWT, ...)      -0.1 each, at most -0.3
  - code-like tokens              -0.1
  - opens with a question word    +0.1
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Optional

from memrag.embedding.sparse import contains_boost_keywords

DATA_TYPE_ALPHA: dict[str, float] = {
    "session": 0.7,
    "learning": 0.65,
    "research": 0.6,
    "deployment": 0.5,
    "error": 0.45,
    "system_snapshot": 0.4,
    "metric": 0.35,
    "code": 0.3,
    "config": 0.25,
}

DEFAULT_ALPHA = 0.5
MIN_TUNED_ALPHA = 0.1
MAX_TUNED_ALPHA = 0.9

KEYWORD_STEP = 0.15
ACRONYM_STEP = 0.1
ACRONYM_CAP = 0.3
CODE_STEP = 0.1
QUESTION_STEP = 0.1

_ACRONYM = re.compile(r"\b[A-Z]{2,}\b")
_QUESTION_OPENER = re.compile(r"^\s*(what|why|how|when|where|who|which)\b", re.IGNORECASE)
_CODE_PATTERNS = (
    re.compile(r"\.[a-z]{2,4}\b", re.IGNORECASE),    # file extension
    re.compile(r"\w+\(\)"),                          # fn()
    re.compile(r"\w+\.\w+"),                         # object.property
    re.compile(r"[a-z]+_[a-z]+", re.IGNORECASE),     # snake_case
    re.compile(r"[a-z]+[A-Z][a-z]+"),                # camelCase
)

AlphaSource = Literal["explicit", "data_type", "auto_tuned", "default"]


@dataclass
class AlphaDecision:
    alpha: float
    source: AlphaSource
    keyword_boost_applied: bool = False
    factors: list[str] = field(default_factory=list)


def _clamp(value: float, low: float = MIN_TUNED_ALPHA, high: float = MAX_TUNED_ALPHA) -> float:
    return max(low, min(high, value))


def alpha_for_data_type(data_type: Optional[str]) -> float:
    if not data_type:
        return DEFAULT_ALPHA
    return DATA_TYPE_ALPHA.get(str(data_type), DEFAULT_ALPHA)


def has_code_pattern(query: str) -> bool:
    return any(p.search(query) for p in _CODE_PATTERNS)


def auto_tune_alpha(query: str, base_alpha: float) -> tuple[float, list[str]]:
    """Apply the additive adjustments. Returns (alpha, human-readable factors)."""
    alpha = base_alpha
    factors: list[str] = []

    if contains_boost_keywords(query):
        alpha = _clamp(alpha - KEYWORD_STEP)
        factors.append("Query contains technical keywords - reducing alpha")

    acronyms = _ACRONYM.findall(query)
    if acronyms:
        alpha = _clamp(alpha - min(ACRONYM_CAP, len(acronyms) * ACRONYM_STEP))
        factors.append(f"Found {len(acronyms)} acronym(s): {', '.join(acronyms)}")

    if has_code_pattern(query):
        alpha = _clamp(alpha - CODE_STEP)
        factors.append("Query contains code-like tokens - favoring exact matches")

    if _QUESTION_OPENER.match(query):
        alpha = _clamp(alpha + QUESTION_STEP)
        factors.append("Query is a question - favoring semantic understanding")

    return _clamp(alpha), factors


def resolve_alpha(
    query: str,
    explicit: Optional[float] = None,
    data_type: Optional[str] = None,
    default_alpha: float = DEFAULT_ALPHA,
    auto_tune: bool = True,
) -> AlphaDecision:
    if explicit is not None:
        return AlphaDecision(alpha=max(0.0, min(1.0, float(explicit))), source="explicit")

    if data_type and str(data_type) in DATA_TYPE_ALPHA:
        decision = AlphaDecision(alpha=DATA_TYPE_ALPHA[str(data_type)], source="data_type")
    else:
        decision = AlphaDecision(alpha=default_alpha, source="default")

    if auto_tune:
        tuned, factors = auto_tune_alpha(query, decision.alpha)
        decision.factors = factors
        if tuned != decision.alpha:
            decision.alpha = tuned
            decision.source = "auto_tuned"
            decision.keyword_boost_applied = contains_boost_keywords(query)
    return decision


def explain_alpha_recommendation(query: str, data_type: Optional[str] = None) -> dict:
    factors: list[str] = []
    alpha = DEFAULT_ALPHA
    if data_type:
        alpha = alpha_for_data_type(data_type)
        factors.append(f'Data type "{data_type}" suggests alpha={alpha}')

    alpha, tuning_factors = auto_tune_alpha(query, alpha)
    factors.extend(tuning_factors)

    explanation = (
        ". ".join(factors)
        if factors
        else f"Using default alpha={DEFAULT_ALPHA} (no special factors detected)"
    )
    return {
        "recommended_alpha": round(alpha, 2),
        "explanation": explanation,
        "factors": factors,
    }
