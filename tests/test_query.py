"""
Tests for memrag/query: intent detection, typed filters, the JSON LLM
client, query expansion and query decomposition + fusion.
"""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FIXED_NOW
from memrag.errors import LLMResponseError, TransientProviderError
from memrag.query.decomposition import (
    QueryDecomposer,
    decompose_rule_based,
    fused_to_ranked,
    generate_query_variations,
    linear_combination_fusion,
    reciprocal_rank_fusion,
    should_split,
)
from memrag.query.expansion import (
    MAX_EXPANSION_TERMS,
    QueryExpander,
    apply_rule_based_expansion,
    is_precise_query,
    merge_expansions,
    should_use_llm,
)
from memrag.query.intent import (
    alpha_for_intent,
    detect_intent,
    has_time_constraint,
    infer_time_range,
    is_error_query,
    is_procedural_query,
    merge_filters,
)
from memrag.query.llm import JsonLLM
from memrag.schemas import QueryFilters, RankedResult, TimeRange


class TestIntentDetection:
    def test_procedural(self):
        intent = detect_intent("how did we implement auth", now=FIXED_NOW)

        assert intent.intent_type == "procedural"
        assert intent.confidence == 0.9
        assert intent.inferred_filters.data_type == ["session", "learning", "code", "config"]
        assert alpha_for_intent(intent) == 0.7

    def test_debugging_hints(self):
        intent = detect_intent("stack trace from the upload worker", now=FIXED_NOW)

        assert intent.intent_type == "debugging"
        assert intent.confidence == 0.95
        assert intent.inferred_filters.data_type == ["error"]

    def test_status_hints_are_unioned(self):
        intent = detect_intent("the sync job is broken and not working", now=FIXED_NOW)
        assert intent.inferred_filters.status == ["error", "failed"]

    def test_baseline_exploration(self):
        intent = detect_intent("random musings", now=FIXED_NOW)

        assert intent.intent_type == "exploration"
        assert intent.confidence == 0.5
        assert intent.inferred_filters.is_empty()
        assert intent.reasoning.startswith("No specific patterns matched")
        assert alpha_for_intent(intent) == 0.55

    def test_ties_keep_earlier_rule_and_bonus_is_capped(self):
        intent = detect_intent("how do I fix the deploy error today", now=FIXED_NOW)

        assert intent.intent_type == "procedural"
        assert intent.matched_rules > 2
        assert intent.confidence == 0.95

    def test_yesterday_range(self):
        intent = detect_intent("what did I deploy yesterday", now=FIXED_NOW)
        time_range = intent.inferred_filters.time_range

        assert time_range.description == "yesterday"
        assert time_range.start == datetime(2026, 2, 15, tzinfo=timezone.utc)
        assert time_range.end.date() == datetime(2026, 2, 15).date()

    def test_relative_ranges(self):
        assert infer_time_range("latest changes", FIXED_NOW).description == "last 3 days"
        assert infer_time_range("what happened 5 days ago", FIXED_NOW).description == "5 days ago"
        assert infer_time_range("this week", FIXED_NOW).start == datetime(2026, 2, 9, 12, tzinfo=timezone.utc)
        assert infer_time_range("nothing temporal", FIXED_NOW) is None

    def test_last_month_clamps_day(self):
        end_of_march = datetime(2026, 3, 31, 9, tzinfo=timezone.utc)
        assert infer_time_range("last month", end_of_march).start == datetime(2026, 2, 28, 9, tzinfo=timezone.utc)

    def test_helpers(self):
        assert is_error_query("login crash on ios")
        assert not is_error_query("roadmap")
        assert is_procedural_query("How to configure vite")
        assert has_time_constraint("anything from today")


class TestQueryFilters:
    def test_single_and_multi_values(self):
        filters = QueryFilters(data_type=["session"], status=["error", "failed"])
        assert filters.to_index_filter() == {
            "$and": [{"data_type": "session"}, {"status": {"$in": ["error", "failed"]}}]
        }

    def test_time_range_uses_session_date(self):
        filters = QueryFilters(
            time_range=TimeRange(start=datetime(2026, 2, 1, tzinfo=timezone.utc), end=FIXED_NOW)
        )
        assert filters.to_index_filter() == {
            "$and": [{"session_date": {"$gte": "2026-02-01"}}, {"session_date": {"$lte": "2026-02-16"}}]
        }

    def test_extra_passthrough(self):
        filters = QueryFilters(extra={"project": {"$eq": "memrag"}})
        assert filters.to_index_filter() == {"project": {"$eq": "memrag"}}

    def test_user_filters_win_per_field(self):
        inferred = QueryFilters(data_type=["error"], status=["failed"], extra={"a": 1})
        user = QueryFilters(data_type=["code"], extra={"b": 2})

        merged = merge_filters(inferred, user)

        assert merged.data_type == ["code"]
        assert merged.status == ["failed"]
        assert merged.extra == {"a": 1, "b": 2}
        assert merge_filters(inferred).data_type == ["error"]

    def test_empty(self):
        assert QueryFilters().is_empty()
        assert QueryFilters().to_index_filter() == {}


def _anthropic_client(text: str):
    client = MagicMock()
    client.messages.create = AsyncMock(
        return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text=text)],
            usage=SimpleNamespace(input_tokens=1000, output_tokens=100),
        )
    )
    return client


class TestJsonLLM:
    @pytest.mark.asyncio
    async def test_extracts_first_object(self):
        client = _anthropic_client('Here you go: {"domain": "backend", "entities": ["supabase"]} thanks')
        llm = JsonLLM(client=client)

        payload = await llm.complete_json("system prompt", "content")

        assert payload == {"domain": "backend", "entities": ["supabase"]}
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "system prompt"
        assert kwargs["messages"] == [{"role": "user", "content": "content"}]
        assert kwargs["temperature"] == 0

    @pytest.mark.asyncio
    async def test_reply_without_json_raises(self):
        llm = JsonLLM(client=_anthropic_client("I cannot help with that"))
        with pytest.raises(LLMResponseError):
            await llm.complete_json("s", "p")

    @pytest.mark.asyncio
    async def test_usage_accounting(self):
        llm = JsonLLM(client=_anthropic_client('{"ok": true}'))
        await llm.complete_json("s", "p")

        summary = llm.usage_summary()
        assert summary["input_tokens"] == 1000
        assert summary["output_tokens"] == 100
        assert summary["estimated_cost_usd"] == pytest.approx(0.0012)


def _fake_llm(payload=None, error=None):
    llm = MagicMock(spec=JsonLLM)
    llm.complete_json = AsyncMock(return_value=payload, side_effect=error)
    return llm


class TestExpansion:
    def test_dictionary_expansion(self):
        expanded = apply_rule_based_expansion("rls policy")

        assert expanded.synonyms[:3] == ["row level security", "RLS", "policy"]
        assert "policies" in expanded.related_terms
        assert expanded.detected_entities == ["rls", "policy"]
        assert expanded.expanded.startswith("rls policy ")
        assert len(expanded.expanded.split(" ")) > 2
        assert expanded.expansion_method == "rule_based"

    def test_expanded_string_is_capped(self):
        expanded = apply_rule_based_expansion("supabase auth rls migration deploy error")
        appended = expanded.expanded[len(expanded.original):].strip()
        all_terms = [*expanded.synonyms, *expanded.related_terms]

        assert appended == " ".join(all_terms[:MAX_EXPANSION_TERMS])

    def test_precise_query_is_restrained(self):
        assert is_precise_query("line 42 auth error")
        expanded = apply_rule_based_expansion("line 42 auth error")

        assert expanded.synonyms == ["authentication", "exception"]
        assert expanded.related_terms == []

    def test_intent_terms_added(self):
        expanded = apply_rule_based_expansion("zebra crash")
        assert "bug" in expanded.synonyms or "bug" in expanded.related_terms

    def test_multi_word_keys(self):
        expanded = apply_rule_based_expansion("edge function cold start")
        assert "edge function" in expanded.detected_entities

    def test_should_use_llm(self):
        assert should_use_llm("what broke in the auth flow?")
        assert not should_use_llm("rls policy")
        assert should_use_llm("auth without cookies")

    def test_merge_deduplicates(self):
        base = apply_rule_based_expansion("rls")
        merged = merge_expansions(base, {"synonyms": ["RLS", "row security"], "related_terms": [1, "  "]})

        assert merged.synonyms.count("RLS") == 1
        assert "row security" in merged.synonyms
        assert "1" in merged.related_terms
        assert merged.expansion_method == "hybrid"

    @pytest.mark.asyncio
    async def test_llm_expansion_for_complex_query(self):
        llm = _fake_llm({"synonyms": ["sign-in flow"], "related_terms": ["JWT"], "detected_entities": ["auth"]})
        expander = QueryExpander(llm=llm, llm_enabled=True)

        expanded = await expander.expand("why does auth fail after the deploy?")

        assert expanded.expansion_method == "hybrid"
        assert "sign-in flow" in expanded.synonyms
        llm.complete_json.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self):
        llm = _fake_llm(error=TransientProviderError("anthropic", "overloaded", 529))
        expanded = await QueryExpander(llm=llm, llm_enabled=True).expand("why does auth fail?")
        assert expanded.expansion_method == "rule_based"

    @pytest.mark.asyncio
    async def test_llm_disabled(self):
        llm = _fake_llm({})
        await QueryExpander(llm=llm, llm_enabled=False).expand("why does auth fail?")
        llm.complete_json.assert_not_awaited()


def _ranked(*ids: str, score: float = 0.5) -> list[RankedResult]:
    return [
        RankedResult(id=i, semantic_score=score, final_score=score, rank=n, content=f"text {i}")
        for n, i in enumerate(ids, start=1)
    ]


class TestDecomposition:
    def test_splits_on_conjunction(self):
        decomposed = decompose_rule_based("how did we implement auth and what broke")

        assert decomposed.sub_queries == ["how did we implement auth", "what broke"]
        assert decomposed.is_decomposed

    def test_idioms_are_not_split(self):
        assert not should_split("pros and cons of supabase")
        assert not should_split("read and write permissions")
        assert decompose_rule_based("pros and cons of supabase").sub_queries == ["pros and cons of supabase"]

    def test_word_boundaries(self):
        assert not should_split("android brand standards")

    def test_first_pattern_wins(self):
        decomposed = decompose_rule_based("auth also deploys and errors")
        assert decomposed.sub_queries == ["auth also deploys", "errors"]

    def test_multi_part_question_splits_on_commas(self):
        decomposed = decompose_rule_based("what changed in auth, deploys?")
        assert decomposed.sub_queries == ["what changed in auth", "deploys?"]

    def test_short_parts_collapse_to_unsplit(self):
        decomposed = decompose_rule_based("rls and x")

        assert decomposed.sub_queries == ["rls and x"]
        assert decomposed.reasoning == "Split attempted but resulted in single query"

    def test_at_most_five_parts(self):
        decomposed = decompose_rule_based("aaaa and bbbb and cccc and dddd and eeee and ffff")
        assert decomposed.sub_queries == ["aaaa", "bbbb", "cccc", "dddd", "eeee"]

    @pytest.mark.asyncio
    async def test_llm_decomposes_long_unsplit_query(self):
        llm = _fake_llm({"sub_queries": ["messaging architecture", "messaging design"], "reasoning": "two aspects"})
        decomposer = QueryDecomposer(llm=llm, llm_enabled=True)

        decomposed = await decomposer.decompose("walk me through the whole messaging architecture")

        assert decomposed.decomposition_method == "llm"
        assert decomposed.sub_queries == ["messaging architecture", "messaging design"]

    @pytest.mark.asyncio
    async def test_llm_skipped_for_rule_split_and_short_queries(self):
        llm = _fake_llm({"sub_queries": ["x"]})
        decomposer = QueryDecomposer(llm=llm, llm_enabled=True)

        await decomposer.decompose("how did we implement auth and what broke")
        await decomposer.decompose("auth flow")

        llm.complete_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self):
        llm = _fake_llm(error=LLMResponseError("no json"))
        decomposed = await QueryDecomposer(llm=llm, llm_enabled=True).decompose(
            "walk me through the whole messaging architecture"
        )
        assert decomposed.decomposition_method == "rule_based"
        assert not decomposed.is_decomposed


class TestFusion:
    def test_reciprocal_rank_fusion(self):
        fused = reciprocal_rank_fusion([_ranked("a", "b", "c"), _ranked("b", "d")])

        assert [f.id for f in fused] == ["b", "a", "d", "c"]
        assert fused[0].fused_score == pytest.approx(1 / 62 + 1 / 61)
        assert fused[0].original_ranks == [2, 1]
        assert fused[0].appearances == 2

    def test_ties_keep_first_appearance(self):
        fused = reciprocal_rank_fusion([_ranked("a"), _ranked("b")])
        assert [f.id for f in fused] == ["a", "b"]

    def test_linear_combination(self):
        fused = linear_combination_fusion(
            [_ranked("a", score=1.0), _ranked("b", score=1.0)], weights=[0.25, 0.75]
        )
        assert [f.id for f in fused] == ["b", "a"]
        assert fused[0].fused_score == pytest.approx(0.75)
        assert linear_combination_fusion([]) == []

    def test_fused_to_ranked(self):
        ranked = fused_to_ranked(reciprocal_rank_fusion([_ranked("a", "b")]))

        assert [r.rank for r in ranked] == [1, 2]
        assert ranked[0].semantic_score == ranked[0].final_score
        assert ranked[0].content == "text a"

    def test_variations(self):
        variations = generate_query_variations("auth error in login")

        assert variations[0] == "auth error in login"
        assert "auth fix in login" in variations
        assert "auth solution in login" in variations
        assert len(variations) <= 4
