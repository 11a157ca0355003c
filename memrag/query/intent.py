"""
Intent Detection
-----------------
Rule-based inference of what the user is looking for, plus the filters that
follow from it.

Rule categories and how matches combine:

    intent label   highest confidence wins; ties keep the earlier rule;
                   baseline is `exploration` at 0.5
    hints          data_type / status / importance hints of ALL matching
                   rules are unioned, first-seen order preserved
    time range     first matching relative-date phrase wins
    confidence     +0.1 when more than 2 rules matched, capped at 0.95
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field

from memrag.schemas import QueryFilters, TimeRange
from memrag.utils.helpers import utcnow

IntentType = Literal["factual", "procedural", "debugging", "history", "comparison", "exploration"]

BASELINE_INTENT: IntentType = "exploration"
BASELINE_CONFIDENCE = 0.5
MULTI_MATCH_BONUS = 0.1
MAX_CONFIDENCE = 0.95


@dataclass(frozen=True)
class IntentRule:
    pattern: re.Pattern
    intent_type: Optional[IntentType] = None
    data_type_hint: tuple[str, ...] = ()
    status_hint: tuple[str, ...] = ()
    importance_hint: tuple[str, ...] = ()
    time_hint: Optional[str] = None
    confidence: float = 0.5


def _rule(pattern: str, **kwargs) -> IntentRule:
    return IntentRule(pattern=re.compile(pattern, re.IGNORECASE), **kwargs)


INTENT_RULES: tuple[IntentRule, ...] = (
    # factual
    _rule(r"^(what|which)\b.*\?$", intent_type="factual", confidence=0.8),
    _rule(r"^where\b.*\?$", intent_type="factual", confidence=0.85),
    _rule(r"^who\b", intent_type="factual", confidence=0.7),
    # procedural
    _rule(
        r"^how (do|did|can|could|should|would|to)\b",
        intent_type="procedural", data_type_hint=("session", "learning", "code"), confidence=0.9,
    ),
    _rule(
        r"\b(implement|create|build|make|set up|setup|configure)\b",
        intent_type="procedural", data_type_hint=("session", "code", "config"), confidence=0.8,
    ),
    _rule(r"\b(steps?|instruction|guide|tutorial|walkthrough)\b", intent_type="procedural", confidence=0.75),
    # debugging
    _rule(
        r"\b(error|bug|issue|problem|fail(ed|ing|ure)?|broke|broken|crash(ed|ing)?)\b",
        intent_type="debugging", data_type_hint=("error", "session"),
        status_hint=("error", "failed"), confidence=0.9,
    ),
    _rule(
        r"\b(fix|debug|troubleshoot|diagnose|solve|resolve)\b",
        intent_type="debugging", data_type_hint=("error", "session"), confidence=0.85,
    ),
    _rule(
        r"\b(not working|doesn't work|won't work|stopped working)\b",
        intent_type="debugging", data_type_hint=("error", "session"),
        status_hint=("error", "failed"), confidence=0.9,
    ),
    _rule(
        r"\b(exception|stack\s*trace|traceback)\b",
        intent_type="debugging", data_type_hint=("error",), confidence=0.95,
    ),
    # history
    _rule(
        r"\b(history|timeline|chronolog\w*|sequence of events)\b",
        intent_type="history", data_type_hint=("session", "deployment"), confidence=0.85,
    ),
    _rule(r"^when (did|was|were)\b", intent_type="history", confidence=0.8),
    _rule(
        r"\b(last|previous|earlier|before)\b.*\b(deploy|release|change|update)\b",
        intent_type="history", data_type_hint=("deployment", "session"), confidence=0.85,
    ),
    # comparison
    _rule(
        r"\b(vs|versus|compared? to|difference between|differ(ent|ence)?)\b",
        intent_type="comparison", confidence=0.9,
    ),
    _rule(r"\b(better|worse|alternative|instead of|rather than)\b", intent_type="comparison", confidence=0.7),
    # data-type hints only
    _rule(
        r"\b(deploy(ed|ment|ing)?|release|production|staging|build)\b",
        data_type_hint=("deployment",), confidence=0.85,
    ),
    _rule(
        r"\b(function|class|component|hook|service|module)\b\s+\w+",
        data_type_hint=("code", "session"), confidence=0.8,
    ),
    _rule(r"\.(ts|tsx|js|jsx|py|sql|css|json)(\s|$)", data_type_hint=("code",), confidence=0.9),
    _rule(r"\b(config|configuration|setting|environment|env var)\b", data_type_hint=("config",), confidence=0.85),
    _rule(
        r"\b(learn(ed|ing)?|understand|concept|explain|documentation)\b",
        data_type_hint=("learning", "session"), confidence=0.75,
    ),
    # time
    _rule(r"\btoday\b", time_hint="today", confidence=0.95),
    _rule(r"\byesterday\b", time_hint="yesterday", confidence=0.95),
    _rule(r"\blast\s+week\b", time_hint="week", confidence=0.9),
    _rule(r"\bthis\s+week\b", time_hint="week", confidence=0.85),
    _rule(r"\blast\s+month\b", time_hint="month", confidence=0.9),
    _rule(r"\b(recent(ly)?|latest|newest)\b", time_hint="recent", confidence=0.8),
    # importance
    _rule(
        r"\b(important|critical|crucial|essential|key|major)\b",
        importance_hint=("high", "critical"), confidence=0.75,
    ),
    _rule(r"\b(minor|small|trivial|quick)\b", importance_hint=("low",), confidence=0.7),
)

_ERROR_QUERY = re.compile(r"\b(error|bug|issue|problem|fail|crash|exception|broke|broken)\b", re.IGNORECASE)
_PROCEDURAL_OPENER = re.compile(r"^how (do|did|can|could|should|would|to)\b", re.IGNORECASE)
_PROCEDURAL_VERB = re.compile(r"\b(implement|create|build|set up|configure)\b", re.IGNORECASE)
_DAYS_AGO = re.compile(r"(\d+)\s+days?\s+ago")

INTENT_ALPHA: dict[str, float] = {
    "debugging": 0.4,
    "procedural": 0.7,
    "factual": 0.6,
    "history": 0.5,
    "comparison": 0.7,
}
DEFAULT_INTENT_ALPHA = 0.55


class QueryIntent(BaseModel):
    intent_type: IntentType = BASELINE_INTENT
    inferred_filters: QueryFilters = Field(default_factory=QueryFilters)
    confidence: float = BASELINE_CONFIDENCE
    reasoning: str = ""
    matched_rules: int = 0


# --- Time ranges ----------------------------------------------------------------

def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=23, minute=59, second=59, microsecond=999000)


def _sub_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 - months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    # clamp the day for shorter months (Mar 31 -> Feb 28)
    for day in (dt.day, 30, 29, 28):
        try:
            return dt.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return dt.replace(year=year, month=month, day=28)


def infer_time_range(query: str, now: Optional[datetime] = None) -> Optional[TimeRange]:
    now = now or utcnow()
    text = query.lower()

    if re.search(r"\btoday\b", text):
        return TimeRange(start=_start_of_day(now), end=now, description="today")
    if re.search(r"\byesterday\b", text):
        yesterday = now - timedelta(days=1)
        return TimeRange(start=_start_of_day(yesterday), end=_end_of_day(yesterday), description="yesterday")
    if re.search(r"\b(last|this)\s+week\b", text):
        return TimeRange(start=now - timedelta(days=7), end=now, description="last 7 days")
    if re.search(r"\blast\s+month\b", text):
        return TimeRange(start=_sub_months(now, 1), end=now, description="last month")
    if re.search(r"\b(recent(ly)?|latest|newest)\b", text):
        return TimeRange(start=now - timedelta(days=3), end=now, description="last 3 days")

    match = _DAYS_AGO.search(text)
    if match:
        days = int(match.group(1))
        target = now - timedelta(days=days)
        return TimeRange(start=_start_of_day(target), end=_end_of_day(target), description=f"{days} days ago")
    return None


# --- Detection ------------------------------------------------------------------

def detect_intent(query: str, now: Optional[datetime] = None) -> QueryIntent:
    """Classify the query and infer filters from the rule table."""
    query = query.strip()
    matched = [rule for rule in INTENT_RULES if rule.pattern.search(query)]

    intent_type: IntentType = BASELINE_INTENT
    confidence = BASELINE_CONFIDENCE
    data_types: dict[str, None] = {}
    statuses: dict[str, None] = {}
    importances: dict[str, None] = {}
    reasoning: list[str] = []

    for rule in matched:
        if rule.intent_type and rule.confidence > confidence:
            intent_type = rule.intent_type
            confidence = rule.confidence
            reasoning.append(f"Detected {intent_type} intent from pattern")
        data_types.update(dict.fromkeys(rule.data_type_hint))
        statuses.update(dict.fromkeys(rule.status_hint))
        importances.update(dict.fromkeys(rule.importance_hint))

    filters = QueryFilters(
        data_type=list(data_types),
        status=list(statuses),
        importance=list(importances),
    )
    if data_types:
        reasoning.append(f"Inferred data types: {', '.join(data_types)}")
    if statuses:
        reasoning.append(f"Inferred statuses: {', '.join(statuses)}")
    if importances:
        reasoning.append(f"Inferred importance: {', '.join(importances)}")

    time_range = infer_time_range(query, now)
    if time_range is not None:
        filters.time_range = time_range
        reasoning.append(f"Inferred time range: {time_range.description}")

    if len(matched) > 2:
        confidence = min(MAX_CONFIDENCE, confidence + MULTI_MATCH_BONUS)

    return QueryIntent(
        intent_type=intent_type,
        inferred_filters=filters,
        confidence=round(confidence, 4),
        reasoning=". ".join(reasoning) or "No specific patterns matched, using exploration intent",
        matched_rules=len(matched),
    )


# --- Helpers --------------------------------------------------------------------

def is_error_query(query: str) -> bool:
    return bool(_ERROR_QUERY.search(query))


def is_procedural_query(query: str) -> bool:
    return bool(_PROCEDURAL_OPENER.search(query.strip()) or _PROCEDURAL_VERB.search(query))


def has_time_constraint(query: str) -> bool:
    return infer_time_range(query) is not None


def alpha_for_intent(intent: QueryIntent) -> float:
    """Lower alpha = more keyword-based, higher alpha = more semantic."""
    return INTENT_ALPHA.get(intent.intent_type, DEFAULT_INTENT_ALPHA)


def merge_filters(inferred: QueryFilters, user: Optional[QueryFilters] = None) -> QueryFilters:
    """User filters take precedence, field by field."""
    return inferred.merge(user)
