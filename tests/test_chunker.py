"""
Tests for memrag/chunking: token estimation, boundary splitting and the
per-data-type ContentChunker.
"""
import pytest

from conftest import make_parent_metadata
from memrag.chunking.chunker import (
    ContentChunker,
    chunk_code_content,
    chunk_content,
    extract_section_title,
    get_chunk_stats,
    get_chunking_config,
    has_code_block,
    has_error,
    reassemble_from_chunks,
)
from memrag.chunking.schemas import ChunkingConfig
from memrag.chunking.tokenizer import (
    count_tokens,
    exact_token_count,
    split_at_boundaries,
    split_to_token_limit,
    truncate_to_tokens,
)
from memrag.schemas import DataType, Importance


def _prose(paragraphs: int, sentences: int = 8) -> str:
    sentence = "The ingestion worker retried the upsert after the index host timed out again."
    return "\n\n".join(" ".join([sentence] * sentences) for _ in range(paragraphs))


class TestTokenEstimate:
    def test_empty_text_is_zero(self):
        assert count_tokens("") == 0

    def test_short_text_is_at_least_one(self):
        assert count_tokens("hi") == 1

    def test_code_counts_more_than_prose_of_same_length(self):
        prose = "the quick brown fox jumps over the lazy dog again and again"
        code = "const fooBar=fetchData(userId,{retries:3,backoffMs:250});x++"
        assert count_tokens(code) > count_tokens(prose)

    def test_estimate_does_not_undercount_json(self):
        # cl100k_base encodes one copy of this record in 39 tokens
        record = '{"userId": 12345, "items": [1, 2, 3], "meta": {"ts": "2026-02-10T08:00:00Z"}}'
        assert count_tokens(record) >= 39
        assert count_tokens(record * 4) >= 156

    def test_digit_groups_count_one_each(self):
        assert count_tokens("1234567890" * 3) >= 10

    @pytest.mark.parametrize(
        "sample",
        [
            _prose(3),
            "\n".join(
                f"export const handler{i} = async (req: Request): Promise<Response> => {{ return json({{ id: {i} }}); }};"
                for i in range(20)
            ),
            '{"userId": 12345, "items": [1, 2, 3], "meta": {"ts": "2026-02-10T08:00:00Z"}}' * 4,
            "2026-02-10T08:00:00Z ERROR [worker-7] job=8f3a2c1e retry=3/5 latency_ms=1834\n" * 10,
        ],
        ids=["prose", "code", "json", "log"],
    )
    def test_estimate_is_not_below_exact_count(self, sample):
        try:
            exact = exact_token_count(sample)
        except Exception as exc:  # encoding download unavailable offline
            pytest.skip(f"tiktoken encoding unavailable: {exc}")
        assert count_tokens(sample) >= exact


class TestSplitting:
    def test_short_text_is_single_segment(self):
        assert split_at_boundaries("one short paragraph", target_size=512) == ["one short paragraph"]

    def test_blank_text_yields_nothing(self):
        assert split_at_boundaries("   \n ") == []

    def test_long_text_splits_near_target(self):
        segments = split_at_boundaries(_prose(12), target_size=200, overlap=20)
        assert len(segments) > 1
        for segment in segments:
            assert count_tokens(segment) <= 220 * 1.5

    def test_split_to_token_limit_bounds_every_piece(self):
        text = _prose(6)
        pieces = split_to_token_limit(text, 60)
        assert len(pieces) > 1
        assert all(count_tokens(p) <= 60 for p in pieces)
        assert "".join(pieces).replace(" ", "").replace("\n", "") == text.replace(" ", "").replace("\n", "")

    def test_truncate_keeps_short_text(self):
        assert truncate_to_tokens("short", 100) == "short"

    def test_truncate_shortens_long_text(self):
        truncated = truncate_to_tokens(_prose(4), 50)
        assert count_tokens(truncated) < count_tokens(_prose(4))


class TestDerivedFlags:
    def test_fenced_code_detected(self):
        assert has_code_block("before\n```python\nprint(1)\n```\nafter")

    def test_plain_prose_has_no_code(self):
        assert not has_code_block("we talked about the roadmap for next week")

    def test_error_detected(self):
        assert has_error("TypeError: cannot read properties of undefined")
        assert not has_error("all green today")

    def test_markdown_section_title(self):
        assert extract_section_title("## Deploy notes\nbody") == "Deploy notes"

    def test_underlined_section_title(self):
        assert extract_section_title("Summary\n=======\nbody") == "Summary"


class TestContentChunker:
    def test_empty_content_yields_no_chunks(self, parent_metadata):
        assert chunk_content("   ", "session_1", parent_metadata) == []

    def test_short_content_is_single_chunk(self, parent_metadata):
        chunks = chunk_content("Fixed the JWT refresh bug.", "session_1", parent_metadata)

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.id == "session_1_chunk_0"
        assert chunk.total_chunks == 1
        assert chunk.metadata.project == "memrag"
        assert chunk.metadata.session_date == "2026-02-16"
        assert chunk.metadata.is_chunk is True

    def test_long_content_respects_max_tokens(self, parent_metadata):
        content = _prose(15)
        chunks = chunk_content(content, "session_2", parent_metadata)
        config = get_chunking_config(DataType.SESSION)

        assert len(chunks) > 1
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert all(c.total_chunks == len(chunks) for c in chunks)
        assert all(c.token_count <= config.max_tokens for c in chunks)
        assert all(c.id == f"session_2_chunk_{c.chunk_index}" for c in chunks)

    def test_code_block_is_never_cut(self, parent_metadata):
        block = "```ts\nconst client = createClient(url, key);\nawait client.from('items').select('*');\n```"
        content = _prose(5) + "\n\n" + block + "\n\n" + _prose(5)
        chunks = chunk_content(content, "session_3", parent_metadata)

        assert len(chunks) > 1
        assert any(block in c.content for c in chunks)
        assert any(c.metadata.has_code_block for c in chunks)

    def test_metadata_inherits_tags(self):
        parent = make_parent_metadata(
            DataType.ERROR, domain="backend", entities=["supabase"], importance=Importance.HIGH
        )
        chunk = chunk_content("Error: connection refused", "error_1", parent)[0]

        assert chunk.metadata.data_type == DataType.ERROR
        assert chunk.metadata.domain == "backend"
        assert chunk.metadata.entities == ["supabase"]
        assert chunk.metadata.has_error is True
        flat = chunk.metadata.to_index_metadata()
        assert flat["importance"] == "high"
        assert "section_title" not in flat

    def test_code_profile_keeps_more_in_one_chunk(self, parent_metadata):
        content = _prose(5)
        as_session = chunk_content(content, "p", parent_metadata)
        as_code = chunk_code_content(content, "p", parent_metadata)

        assert len(as_code) <= len(as_session)
        assert as_code[0].metadata.data_type == DataType.CODE

    def test_unknown_data_type_uses_default_profile(self):
        assert get_chunking_config("nonsense") == get_chunking_config(DataType.DEFAULT)

    def test_custom_config_override(self, parent_metadata):
        chunker = ContentChunker({DataType.SESSION: ChunkingConfig(target_size=100, overlap=0, min_chunk_size=10)})
        chunks = chunker.chunk(_prose(4), "s", parent_metadata)
        assert len(chunks) > 1
        assert all(c.token_count <= 100 for c in chunks)


class TestMinimumSize:
    config = ChunkingConfig(target_size=512, overlap=50, min_chunk_size=100)

    def test_trailing_runt_merges_into_small_predecessor(self):
        body = "word " * 150
        merged = ContentChunker._apply_min_size([body, "tiny note here"], self.config)

        assert len(merged) == 1
        assert merged[0].endswith("tiny note here")

    def test_middle_runt_is_dropped(self):
        body = "word " * 150
        kept = ContentChunker._apply_min_size([body, "tiny", body], self.config)
        assert kept == [body, body]

    def test_all_runts_are_kept_rather_than_losing_content(self):
        segments = ["a b c", "d e f"]
        assert ContentChunker._apply_min_size(segments, self.config) == segments


class TestStatsAndReassembly:
    def test_stats_for_empty_list(self):
        assert get_chunk_stats([]).total_chunks == 0

    def test_stats_summarise_chunks(self, parent_metadata):
        chunks = chunk_content(_prose(15), "s", parent_metadata)
        stats = get_chunk_stats(chunks)

        assert stats.total_chunks == len(chunks)
        assert stats.total_tokens == sum(c.token_count for c in chunks)
        assert stats.min_chunk_tokens <= stats.avg_tokens_per_chunk <= stats.max_chunk_tokens

    def test_reassemble_orders_by_index(self, parent_metadata):
        chunks = chunk_content(_prose(15), "s", parent_metadata)
        text = reassemble_from_chunks(list(reversed(chunks)))
        assert text.startswith(chunks[0].content)
