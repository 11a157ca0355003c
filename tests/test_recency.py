"""
Tests for memrag/retrieval/recency.py.
"""
import math
from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from memrag.retrieval.recency import (
    RECENCY_CONFIGS,
    adjusted_decay,
    apply_recency_weighting,
    calculate_boost,
    calculate_decay,
    configured_data_types,
    describe_decay_behavior,
    document_date_days_ago,
    extract_document_date,
    generate_decay_curve,
    raw_decay,
    validate_temporal_metadata,
    weight,
)
from memrag.schemas import RankedResult


def _result(doc_id: str, score: float, days_old: float, data_type: str = "session", rank: int = 1) -> RankedResult:
    return RankedResult(
        id=doc_id,
        semantic_score=score,
        final_score=score,
        rank=rank,
        original_rank=rank,
        metadata={
            "data_type": data_type,
            "timestamp": document_date_days_ago(days_old, FIXED_NOW).isoformat(),
        },
    )


class TestDecayFunctions:
    def test_exponential_halves_at_half_life(self):
        assert raw_decay(7, RECENCY_CONFIGS["session"]) == pytest.approx(0.5)

    def test_linear_reaches_half_at_half_life(self):
        assert raw_decay(60, RECENCY_CONFIGS["learning"]) == pytest.approx(0.5)

    def test_linear_is_floored(self):
        assert calculate_decay(200, "learning") == pytest.approx(0.3)

    def test_step(self):
        assert calculate_decay(10, "config") == 1.0
        assert calculate_decay(31, "config") == 0.5

    def test_floor_for_old_errors(self):
        assert calculate_decay(30, "error") == pytest.approx(0.05)

    def test_zero_or_negative_age_is_fresh(self):
        assert calculate_decay(0, "session") == 1.0
        assert calculate_decay(-3, "session") == 1.0

    def test_unknown_data_type_uses_default(self):
        assert calculate_decay(14, "nonsense") == pytest.approx(0.5)

    def test_configured_types_exclude_default(self):
        assert "default" not in configured_data_types()
        assert "session" in configured_data_types()


class TestBoostAndKnob:
    def test_boost_window(self):
        assert calculate_boost(0.5, "session") == 1.5
        assert calculate_boost(2, "session") == 1.0
        assert calculate_boost(0, "learning") == 1.0

    def test_knob_powers(self):
        assert adjusted_decay(0.5, "none") == 1.0
        assert adjusted_decay(0.5, "light") == pytest.approx(math.sqrt(0.5))
        assert adjusted_decay(0.5, "heavy") == pytest.approx(0.5 ** 1.5)
        assert adjusted_decay(0.5, "unknown") == 0.5

    def test_floor_reapplied_after_power(self):
        assert adjusted_decay(0.2, "critical", floor=0.1) == pytest.approx(0.1)


class TestWeight:
    def test_future_documents_count_as_fresh(self):
        result = weight(0.8, FIXED_NOW + timedelta(days=1), "learning", reference_date=FIXED_NOW)
        assert result.decay == 1.0
        assert result.age_days == 0.0
        assert result.final_score == pytest.approx(0.8)

    def test_none_knob_keeps_boost(self):
        result = weight(
            0.5, document_date_days_ago(0.2, FIXED_NOW), "error", recency_weight="none", reference_date=FIXED_NOW
        )
        assert result.decay == 1.0
        assert result.boost == 2.0
        assert result.final_score == pytest.approx(1.0)

    def test_disable_decay_and_boost(self):
        result = weight(
            0.5,
            document_date_days_ago(30, FIXED_NOW),
            "session",
            reference_date=FIXED_NOW,
            apply_decay=False,
            apply_boost=False,
        )
        assert result.final_multiplier == 1.0


class TestApplyRecencyWeighting:
    def test_fresh_result_overtakes_stale_one(self):
        stale = _result("stale", 0.9, days_old=14, rank=1)
        fresh = _result("fresh", 0.6, days_old=0.5, rank=2)

        weighted = apply_recency_weighting([stale, fresh], reference_date=FIXED_NOW)

        assert [r.id for r in weighted] == ["fresh", "stale"]
        assert weighted[0].rank == 1
        assert weighted[0].rank_change == 1
        assert weighted[1].rank_change == -1
        assert weighted[1].recency_decay == pytest.approx(0.25)
        assert weighted[0].recency_boost == 1.5

    def test_base_is_current_final_score(self):
        reranked = _result("a", 0.2, days_old=7).model_copy(update={"final_score": 0.8})

        weighted = apply_recency_weighting([reranked], reference_date=FIXED_NOW)

        assert weighted[0].final_score == pytest.approx(0.4)
        assert weighted[0].semantic_score == 0.2

    def test_ties_keep_input_order(self):
        first = _result("first", 0.5, days_old=3, rank=1)
        second = _result("second", 0.5, days_old=3, rank=2)

        weighted = apply_recency_weighting([first, second], reference_date=FIXED_NOW)
        assert [r.id for r in weighted] == ["first", "second"]


class TestMetadataDates:
    def test_prefers_timestamp(self):
        date = extract_document_date({"timestamp": "2026-02-01T10:00:00Z", "session_date": "2025-01-01"})
        assert date.isoformat() == "2026-02-01T10:00:00+00:00"

    def test_falls_back_to_session_date(self):
        date = extract_document_date({"timestamp": "garbage", "session_date": "2026-02-10"})
        assert date.date().isoformat() == "2026-02-10"

    def test_missing_dates_default_to_now(self):
        date = extract_document_date({})
        assert abs((date - document_date_days_ago(0)).total_seconds()) < 5

    def test_validation(self):
        ok, errors = validate_temporal_metadata({"timestamp": "2026-02-01T10:00:00Z", "session_date": "2026-02-01"})
        assert ok and errors == []

        ok, errors = validate_temporal_metadata({"timestamp": "nope", "session_date": "02/01/2026"})
        assert not ok
        assert len(errors) == 2


class TestIntrospection:
    def test_decay_curve(self):
        curve = generate_decay_curve("session", max_days=14, step_days=7)
        assert [p["day"] for p in curve] == [0, 7, 14]
        assert [round(p["decay"], 2) for p in curve] == [1.0, 0.5, 0.25]

    def test_decay_curve_rejects_bad_step(self):
        with pytest.raises(ValueError):
            generate_decay_curve("session", step_days=0)

    def test_description(self):
        text = describe_decay_behavior("session")
        assert "exponential decay with 7-day half-life" in text
        assert "Boost: 1.5x" in text
        assert "Boost" not in describe_decay_behavior("learning")
