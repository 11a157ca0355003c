"""
Recency Weighting
------------------
Time-aware re-scoring of retrieval results.

    final_score = base_score * decay(age) * boost(age)

Decay functions (chosen per data type, floored at the type's min_decay):
    exponential   e^(-ln2 * age / half_life)
    linear        max(0, 1 - age / (2 * half_life))
    gaussian      e^(-age^2 / (2 * sigma^2)),  sigma = half_life
    step          1.0 while age <= threshold, then 0.5

The recency knob scales the decay effect: decay' = decay ** k with
none=0 (no decay), light=0.5, normal=1, heavy=1.5, critical=2. Boosts apply
regardless of the knob.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Literal, Optional

from loguru import logger

from memrag.schemas import RankedResult
from memrag.utils.helpers import parse_datetime, utcnow

DecayFunction = Literal["exponential", "linear", "gaussian", "step"]
RecencyWeight = Literal["none", "light", "normal", "heavy", "critical"]

STEP_STALE_MULTIPLIER = 0.5
SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class RecencyConfig:
    decay_function: DecayFunction
    half_life_days: float
    min_decay: float


@dataclass(frozen=True)
class BoostConfig:
    boost_recent_days: float
    boost_multiplier: float


RECENCY_CONFIGS: dict[str, RecencyConfig] = {
    "session": RecencyConfig("exponential", 7, 0.1),
    "code": RecencyConfig("exponential", 30, 0.2),
    "deployment": RecencyConfig("exponential", 14, 0.1),
    "error": RecencyConfig("exponential", 3, 0.05),
    "learning": RecencyConfig("linear", 60, 0.3),
    "config": RecencyConfig("step", 30, 0.5),
    "system_snapshot": RecencyConfig("exponential", 1, 0.01),
    "metric": RecencyConfig("exponential", 7, 0.1),
    "decision": RecencyConfig("exponential", 21, 0.15),
    "architecture": RecencyConfig("exponential", 45, 0.25),
    "bug": RecencyConfig("exponential", 7, 0.1),
    "feature": RecencyConfig("exponential", 21, 0.15),
    "documentation": RecencyConfig("linear", 90, 0.35),
    "default": RecencyConfig("exponential", 14, 0.2),
}

BOOST_CONFIGS: dict[str, BoostConfig] = {
    "session": BoostConfig(1, 1.5),
    "error": BoostConfig(1, 2.0),
    "deployment": BoostConfig(3, 1.3),
    "bug": BoostConfig(2, 1.4),
    "system_snapshot": BoostConfig(0.5, 2.5),
    "metric": BoostConfig(1, 1.3),
}

RECENCY_WEIGHT_MULTIPLIERS: dict[str, float] = {
    "none": 0.0,
    "light": 0.5,
    "normal": 1.0,
    "heavy": 1.5,
    "critical": 2.0,
}


@dataclass
class RecencyResult:
    final_score: float
    decay: float
    boost: float
    final_multiplier: float
    age_days: float
    data_type: str
    decay_function: DecayFunction


# --- Lookup -------------------------------------------------------------------

def get_recency_config(data_type: Optional[str]) -> RecencyConfig:
    return RECENCY_CONFIGS.get(str(data_type or "default"), RECENCY_CONFIGS["default"])


def get_boost_config(data_type: Optional[str]) -> Optional[BoostConfig]:
    return BOOST_CONFIGS.get(str(data_type or "default"))


def configured_data_types() -> list[str]:
    return [name for name in RECENCY_CONFIGS if name != "default"]


# --- Decay math -----------------------------------------------------------------

def raw_decay(age_days: float, config: RecencyConfig) -> float:
    """Decay before the floor is applied. Age <= 0 is always 1.0."""
    if age_days <= 0:
        return 1.0
    half_life = config.half_life_days
    if config.decay_function == "exponential":
        return math.exp(-math.log(2) / half_life * age_days)
    if config.decay_function == "linear":
        return max(0.0, 1 - age_days / (half_life * 2))
    if config.decay_function == "gaussian":
        return math.exp(-(age_days ** 2) / (2 * half_life ** 2))
    if config.decay_function == "step":
        return 1.0 if age_days <= half_life else STEP_STALE_MULTIPLIER
    raise ValueError(f"Unknown decay function: {config.decay_function}")


def calculate_decay(age_days: float, data_type: Optional[str]) -> float:
    config = get_recency_config(data_type)
    return max(config.min_decay, raw_decay(age_days, config))


def calculate_boost(age_days: float, data_type: Optional[str]) -> float:
    config = get_boost_config(data_type)
    if config is None:
        return 1.0
    return config.boost_multiplier if age_days <= config.boost_recent_days else 1.0


def adjusted_decay(decay: float, recency_weight: str, floor: float = 0.0) -> float:
    """Apply the recency knob; unknown knob values behave like `normal`."""
    k = RECENCY_WEIGHT_MULTIPLIERS.get(recency_weight, 1.0)
    if k == 0:
        return 1.0
    return max(floor, decay ** k)


def age_in_days(document_date: datetime, reference_date: Optional[datetime] = None) -> float:
    now = reference_date or utcnow()
    return (now - document_date).total_seconds() / SECONDS_PER_DAY


def weight(
    semantic_score: float,
    document_date: datetime,
    data_type: Optional[str],
    recency_weight: str = "normal",
    reference_date: Optional[datetime] = None,
    apply_decay: bool = True,
    apply_boost: bool = True,
) -> RecencyResult:
    """Score one document. Future-dated documents count as age 0."""
    config = get_recency_config(data_type)
    age = age_in_days(document_date, reference_date)

    decay = 1.0
    if apply_decay:
        decay = adjusted_decay(calculate_decay(age, data_type), recency_weight, config.min_decay)
    boost = calculate_boost(age, data_type) if apply_boost else 1.0
    multiplier = decay * boost

    return RecencyResult(
        final_score=semantic_score * multiplier,
        decay=decay,
        boost=boost,
        final_multiplier=multiplier,
        age_days=max(0.0, age),
        data_type=str(data_type or "default"),
        decay_function=config.decay_function,
    )


# --- Metadata -------------------------------------------------------------------

def extract_document_date(metadata: dict[str, Any]) -> datetime:
    """timestamp -> session_date -> indexed_at; falls back to now (no decay)."""
    for key in ("timestamp", "session_date", "indexed_at"):
        parsed = parse_datetime(metadata.get(key))
        if parsed is not None:
            return parsed
    logger.warning("[Recency] No valid date found in metadata, defaulting to now (no decay)")
    return utcnow()


def validate_temporal_metadata(metadata: dict[str, Any]) -> tuple[bool, list[str]]:
    errors: list[str] = []

    timestamp = metadata.get("timestamp")
    if not isinstance(timestamp, str):
        errors.append("Missing or invalid timestamp field (must be ISO 8601 string)")
    elif parse_datetime(timestamp) is None:
        errors.append(f"Invalid timestamp format: {timestamp}")

    session_date = metadata.get("session_date")
    if not isinstance(session_date, str):
        errors.append("Missing or invalid session_date field (must be YYYY-MM-DD string)")
    else:
        try:
            datetime.strptime(session_date, "%Y-%m-%d")
        except ValueError:
            errors.append(f"Invalid session_date format: {session_date} (expected YYYY-MM-DD)")

    return not errors, errors


# --- Batch ------------------------------------------------------------------------

def apply_recency_weighting(
    results: list[RankedResult],
    recency_weight: str = "normal",
    reference_date: Optional[datetime] = None,
    apply_decay: bool = True,
    apply_boost: bool = True,
) -> list[RankedResult]:
    """
    Re-score results (base = current final_score, i.e. the reranked score when
    rerank ran) and re-sort descending. The sort is stable: ties keep input order.
    """
    reference_date = reference_date or utcnow()
    weighted: list[RankedResult] = []
    for result in results:
        data_type = result.metadata.get("data_type") or "default"
        recency = weight(
            result.final_score,
            extract_document_date(result.metadata),
            data_type,
            recency_weight=recency_weight,
            reference_date=reference_date,
            apply_decay=apply_decay,
            apply_boost=apply_boost,
        )
        weighted.append(
            result.model_copy(
                update={
                    "recency_decay": recency.decay,
                    "recency_boost": recency.boost,
                    "final_score": recency.final_score,
                    "age_days": round(recency.age_days, 3),
                }
            )
        )

    weighted.sort(key=lambda r: r.final_score, reverse=True)
    return [
        r.model_copy(update={"rank": rank, "rank_change": r.original_rank - rank})
        for rank, r in enumerate(weighted, start=1)
    ]


# --- Introspection ----------------------------------------------------------------

def generate_decay_curve(
    data_type: str, max_days: int = 90, step_days: int = 1
) -> list[dict[str, float]]:
    if step_days <= 0:
        raise ValueError("step_days must be positive")
    return [
        {"day": day, "decay": calculate_decay(day, data_type)}
        for day in range(0, max_days + 1, step_days)
    ]


def describe_decay_behavior(data_type: str) -> str:
    config = get_recency_config(data_type)
    description = (
        f'Data type "{data_type}": {config.decay_function} decay with '
        f"{config.half_life_days:g}-day half-life, minimum {config.min_decay * 100:.0f}% relevance."
    )
    boost = get_boost_config(data_type)
    if boost is not None:
        description += (
            f" Boost: {boost.boost_multiplier:g}x for first {boost.boost_recent_days:g} day(s)."
        )
    return description


def document_date_days_ago(days: float, reference_date: Optional[datetime] = None) -> datetime:
    """The instant `days` before reference_date (default now)."""
    return (reference_date or utcnow()) - timedelta(days=days)
