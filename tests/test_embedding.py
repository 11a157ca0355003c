"""
Tests for memrag/embedding: dense embedder, sparse embedders, the Pinecone
REST client (httpx.MockTransport) and the local FAISS hybrid index.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
import pytest

from conftest import TEST_DIMENSIONS
from memrag.chunking.tokenizer import is_within_token_limit
from memrag.embedding.embedder import OpenAIEmbedder, prepare_text
from memrag.embedding.faiss_index import FaissHybridIndex
from memrag.embedding.sparse import (
    HashingSparseEmbedder,
    PineconeSparseEmbedder,
    generate_simple_sparse_vector,
    keyword_boost_multiplier,
)
from memrag.embedding.vector_index import PineconeIndex, hybrid_scale, matches_filter
from memrag.errors import PermanentProviderError
from memrag.schemas import SparseValues, VectorRecord


def _unit(index: int, dims: int = TEST_DIMENSIONS) -> list[float]:
    vector = [0.0] * dims
    vector[index] = 1.0
    return vector


class TestOpenAIEmbedder:
    def _client(self, dims: int = 4):
        async def create(model, input, dimensions):
            data = [
                SimpleNamespace(index=i, embedding=[3.0, 4.0] + [0.0] * (dims - 2))
                for i in reversed(range(len(input)))
            ]
            return SimpleNamespace(data=data, usage=SimpleNamespace(total_tokens=7 * len(input)))

        client = MagicMock()
        client.embeddings.create = AsyncMock(side_effect=create)
        return client

    @pytest.mark.asyncio
    async def test_vectors_are_normalised(self):
        embedder = OpenAIEmbedder(dimensions=4, client=self._client())
        matrix = await embedder.embed_texts(["hello world"])

        assert matrix.shape == (1, 4)
        assert np.linalg.norm(matrix[0]) == pytest.approx(1.0)
        assert matrix[0][0] == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_batches_and_accounts_usage(self):
        client = self._client()
        embedder = OpenAIEmbedder(dimensions=4, batch_size=2, client=client)

        matrix = await embedder.embed_texts(["a", "b", "c"])

        assert matrix.shape == (3, 4)
        assert client.embeddings.create.await_count == 2
        summary = embedder.usage_summary()
        assert summary["total_api_calls"] == 2
        assert summary["total_tokens_used"] == 21

    @pytest.mark.asyncio
    async def test_empty_input_skips_api(self):
        client = self._client()
        embedder = OpenAIEmbedder(dimensions=4, client=client)

        matrix = await embedder.embed_texts([])

        assert matrix.shape == (0, 4)
        client.embeddings.create.assert_not_awaited()

    def test_prepare_text_collapses_and_truncates(self):
        assert prepare_text("a   b\n\nc", max_chars=3) == "a b"
        assert prepare_text("   ") == " "

    def test_prepare_text_respects_token_limit(self):
        prepared = prepare_text("word " * 100, max_tokens=10)

        assert prepared == "word word word word word word word"
        assert is_within_token_limit(prepared, 10)
        assert prepare_text("word " * 5, max_tokens=10) == "word word word word word"


class TestSparse:
    def test_simple_vector_is_normalised_term_frequency(self):
        sparse = generate_simple_sparse_vector("deploy deploy supabase to vercel")
        assert sparse.indices == sorted(sparse.indices)
        assert sum(sparse.values) == pytest.approx(1.0)
        assert max(sparse.values) == pytest.approx(0.5)

    def test_short_words_only_yield_empty_vector(self):
        assert generate_simple_sparse_vector("a to of").is_empty

    def test_boost_multiplier(self):
        assert keyword_boost_multiplier("nothing special here") == 1.0
        assert keyword_boost_multiplier("rls policy") == 1.2
        assert keyword_boost_multiplier("rls jwt") == 1.4
        assert keyword_boost_multiplier("rls jwt oauth api") == 1.5

    @pytest.mark.asyncio
    async def test_hashing_embedder(self):
        sparse = await HashingSparseEmbedder().embed("postgres migration failed")
        assert len(sparse.indices) == 3

    @pytest.mark.asyncio
    async def test_pinecone_sparse_parses_flat_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["key"] = request.headers["Api-Key"]
            return httpx.Response(200, json={"data": [{"sparse_indices": [4, 9], "sparse_values": [0.5, 0.25]}]})

        client = httpx.AsyncClient(base_url="https://api.pinecone.test", transport=httpx.MockTransport(handler))
        embedder = PineconeSparseEmbedder("pc-key", client=client)

        sparse = await embedder.embed("rls   policy", input_type="query")

        assert sparse == SparseValues(indices=[4, 9], values=[0.5, 0.25])
        assert seen["key"] == "pc-key"
        assert seen["body"]["inputs"] == [{"text": "rls policy"}]
        assert seen["body"]["parameters"]["input_type"] == "query"

    @pytest.mark.asyncio
    async def test_pinecone_sparse_failure_returns_empty(self):
        client = httpx.AsyncClient(
            base_url="https://api.pinecone.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="unavailable")),
        )
        sparse = await PineconeSparseEmbedder("pc-key", client=client).embed("anything")
        assert sparse.is_empty

    @pytest.mark.asyncio
    async def test_blank_text_makes_no_call(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        client = httpx.AsyncClient(base_url="https://api.pinecone.test", transport=httpx.MockTransport(handler))
        assert (await PineconeSparseEmbedder("k", client=client).embed("   ")).is_empty
        assert calls == []


class TestHybridScale:
    def test_convex_weights(self):
        dense, sparse = hybrid_scale([1.0, 2.0], SparseValues(indices=[1], values=[1.0]), 0.25)
        assert dense == [0.25, 0.5]
        assert sparse.values == [0.75]

    def test_empty_sparse_is_dropped(self):
        _, sparse = hybrid_scale([1.0], SparseValues(), 0.5)
        assert sparse is None

    def test_alpha_out_of_range(self):
        with pytest.raises(ValueError):
            hybrid_scale([1.0], None, 1.5)


class TestMatchesFilter:
    metadata = {"data_type": "session", "entities": ["supabase", "rls"], "session_date": "2026-02-10"}

    def test_equality_and_in(self):
        assert matches_filter(self.metadata, {"data_type": "session"})
        assert matches_filter(self.metadata, {"data_type": {"$in": ["code", "session"]}})
        assert not matches_filter(self.metadata, {"data_type": {"$nin": ["session"]}})

    def test_list_metadata_membership(self):
        assert matches_filter(self.metadata, {"entities": "rls"})
        assert matches_filter(self.metadata, {"entities": {"$in": ["jwt", "rls"]}})

    def test_range_and_boolean_combinators(self):
        window = {"$and": [{"session_date": {"$gte": "2026-02-01"}}, {"session_date": {"$lte": "2026-02-15"}}]}
        assert matches_filter(self.metadata, window)
        assert matches_filter(self.metadata, {"$or": [{"data_type": "code"}, {"entities": "rls"}]})
        assert not matches_filter(self.metadata, {"session_date": {"$gt": "2026-03-01"}})

    def test_missing_field_never_matches_range(self):
        assert not matches_filter({}, {"age": {"$gt": 1}})


class TestPineconeIndex:
    def _index(self, handler) -> PineconeIndex:
        client = httpx.AsyncClient(base_url="https://memory.pinecone.test", transport=httpx.MockTransport(handler))
        return PineconeIndex(host="memory.pinecone.test", api_key="pc-key", namespace="dev", client=client)

    @pytest.mark.asyncio
    async def test_upsert_sends_sparse_values(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"upsertedCount": 1})

        record = VectorRecord(id="a", values=[0.1, 0.2], sparse_values=SparseValues(indices=[3], values=[1.0]))
        assert await self._index(handler).upsert([record]) == 1

        vector = bodies[0]["vectors"][0]
        assert vector["sparseValues"] == {"indices": [3], "values": [1.0]}
        assert bodies[0]["namespace"] == "dev"

    @pytest.mark.asyncio
    async def test_upsert_splits_large_batches(self):
        sizes = []

        def handler(request):
            count = len(json.loads(request.content)["vectors"])
            sizes.append(count)
            return httpx.Response(200, json={"upsertedCount": count})

        records = [VectorRecord(id=str(i), values=[0.0]) for i in range(250)]
        assert await self._index(handler).upsert(records) == 250
        assert sizes == [100, 100, 50]

    @pytest.mark.asyncio
    async def test_query_parses_matches(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["topK"] == 5
            assert body["filter"] == {"data_type": "session"}
            return httpx.Response(
                200, json={"matches": [{"id": "a", "score": 0.9, "metadata": {"data_type": "session"}}]}
            )

        matches = await self._index(handler).query([0.1], None, 5, {"data_type": "session"})

        assert matches[0].id == "a"
        assert matches[0].score == 0.9

    @pytest.mark.asyncio
    async def test_auth_error_is_permanent_and_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401, text="unauthorized")

        with pytest.raises(PermanentProviderError):
            await self._index(handler).query([0.1], None, 5)
        assert len(calls) == 1


class TestFaissHybridIndex:
    @pytest.mark.asyncio
    async def test_dense_query_ranks_by_inner_product(self, faiss_index):
        await faiss_index.upsert(
            [
                VectorRecord(id="a", values=_unit(0), metadata={"data_type": "session"}),
                VectorRecord(id="b", values=_unit(1), metadata={"data_type": "code"}),
            ]
        )

        matches = await faiss_index.query(_unit(1), None, top_k=2)

        assert [m.id for m in matches] == ["b", "a"]
        assert matches[0].score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_sparse_scores_add_to_dense(self, faiss_index):
        await faiss_index.upsert(
            [
                VectorRecord(id="a", values=_unit(0), sparse_values=SparseValues(indices=[7], values=[1.0])),
                VectorRecord(id="b", values=_unit(0)),
            ]
        )

        matches = await faiss_index.query(_unit(0), SparseValues(indices=[7], values=[0.5]), top_k=2)

        assert matches[0].id == "a"
        assert matches[0].score == pytest.approx(1.5)

    @pytest.mark.asyncio
    async def test_upsert_replaces_existing_id(self, faiss_index):
        await faiss_index.upsert([VectorRecord(id="a", values=_unit(0), metadata={"v": 1})])
        await faiss_index.upsert([VectorRecord(id="a", values=_unit(2), metadata={"v": 2})])

        matches = await faiss_index.query(_unit(2), None, top_k=5)

        assert len(faiss_index) == 1
        assert faiss_index.faiss_index.ntotal == 1
        assert matches[0].metadata == {"v": 2}

    @pytest.mark.asyncio
    async def test_repeated_id_in_one_batch_keeps_last(self, faiss_index):
        upserted = await faiss_index.upsert(
            [
                VectorRecord(id="a", values=_unit(0), metadata={"v": 1}),
                VectorRecord(id="b", values=_unit(1)),
                VectorRecord(id="a", values=_unit(2), metadata={"v": 2}),
            ]
        )

        matches = await faiss_index.query(_unit(2), None, top_k=5)

        assert upserted == 2
        assert len(faiss_index) == 2
        assert faiss_index.faiss_index.ntotal == 2
        assert [m.id for m in matches].count("a") == 1
        assert matches[0].id == "a"
        assert matches[0].metadata == {"v": 2}

    @pytest.mark.asyncio
    async def test_filter_applies(self, faiss_index):
        await faiss_index.upsert(
            [
                VectorRecord(id="a", values=_unit(0), metadata={"data_type": "session"}),
                VectorRecord(id="b", values=_unit(0), metadata={"data_type": "code"}),
            ]
        )
        matches = await faiss_index.query(_unit(0), None, top_k=5, filter_={"data_type": "code"})
        assert [m.id for m in matches] == ["b"]

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, faiss_index):
        with pytest.raises(ValueError):
            await faiss_index.upsert([VectorRecord(id="a", values=[1.0, 0.0])])

    @pytest.mark.asyncio
    async def test_save_and_load(self, faiss_index, tmp_path):
        await faiss_index.upsert(
            [VectorRecord(id="a", values=_unit(3), sparse_values=SparseValues(indices=[1], values=[1.0]))]
        )
        faiss_index.save(tmp_path)

        loaded = FaissHybridIndex.load(tmp_path)
        matches = await loaded.query(_unit(3), SparseValues(indices=[1], values=[1.0]), top_k=1)

        assert loaded.dimensions == TEST_DIMENSIONS
        assert matches[0].id == "a"
        assert matches[0].score == pytest.approx(2.0)

    def test_load_without_manifest_is_empty(self, tmp_path):
        index = FaissHybridIndex.load(tmp_path, dimensions=8)
        assert not index.is_built
        assert index.dimensions == 8
