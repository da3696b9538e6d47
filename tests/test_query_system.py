"""
Tests for multi-algorithm search and fusion in app/query_system.py
"""

import math
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.query_system import (
    QueryProcessor, FusionEngine, AdvancedQuerySystem, post_process_results,
    bm25_search, semantic_search, temporal_search, contextual_search, cosine_search,
)
from app.vector_store import VectorStore

MESSAGES = [
    {"id": 1, "role": "assistant", "content": "The dragon burned the village", "timestamp": 1000.0},
    {"id": 2, "role": "user", "content": "Elara bought bread at the market", "timestamp": 2000.0},
    {"id": 3, "role": "assistant", "content": "A dragon circled the tower", "timestamp": 3000.0},
]


def _vectors():
    return [dict(m, chat_id="chat1", hash=f"h{m['id']}", metadata={}) for m in MESSAGES]


def _query(text):
    return QueryProcessor().process(text)


@pytest.fixture
def query_system(temp_db, config, fake_embeddings):
    store = VectorStore(fake_embeddings, config=config)
    store.process_messages(MESSAGES, "chat1")
    return AdvancedQuerySystem(store, fake_embeddings, config=config)


class TestQueryProcessor:
    """Tests for query preprocessing."""

    def test_terms_and_question_intent(self):
        processed = _query("What happened to the dragon?")
        assert processed["terms"] == ["what", "happened", "the", "dragon"]
        assert processed["intent"] == "question"
        assert processed["embedding"] is None

    def test_search_intent(self):
        assert _query("find the sword")["intent"] == "search"
        assert _query("the sword")["intent"] == "general"

    def test_embedding_from_engine(self, fake_embeddings):
        processed = QueryProcessor(fake_embeddings).process("dragon")
        assert processed["embedding"].shape == (768,)


class TestAlgorithms:
    """Tests for the individual scoring algorithms."""

    def test_bm25_prefers_shorter_matching_document(self):
        results = bm25_search(_query("dragon"), _vectors())

        assert [r["vector"]["id"] for r in results] == [3, 1]
        assert all(r["algorithm"] == "bm25" for r in results)

    def test_bm25_idf_from_candidates(self):
        """A term found in one of three documents outweighs one found in two."""
        vectors = _vectors()
        rare = bm25_search(_query("market"), vectors)[0]["score"]
        common = bm25_search(_query("dragon"), vectors)[1]["score"]

        assert rare > common
        assert rare == pytest.approx(
            math.log(1 + (3 - 1 + 0.5) / 1.5) * 2.2 / (1 + 1.2 * (0.25 + 0.75 * 5 / (14 / 3)))
        )

    def test_bm25_without_terms(self):
        assert bm25_search(_query("a an"), _vectors()) == []

    def test_semantic_is_jaccard(self):
        results = semantic_search(_query("the dragon"), _vectors())
        scores = {r["vector"]["id"]: r["score"] for r in results}

        assert scores[1] == pytest.approx(2 / 4)
        assert scores[3] == pytest.approx(2 / 5)
        assert scores[2] == pytest.approx(1 / 7)

    def test_temporal_decay(self):
        now = 100 * 86400.0
        vectors = [
            {"id": 1, "timestamp": now},
            {"id": 2, "timestamp": now - 30 * 86400},
        ]
        scores = {r["vector"]["id"]: r["score"] for r in temporal_search(vectors, 30.0, now=now)}

        assert scores[1] == pytest.approx(1.0)
        assert scores[2] == pytest.approx(math.exp(-1))

    def test_contextual(self):
        vectors = [
            {"id": 1, "chat_id": "chat1", "content": "x" * 150, "metadata": {"character": "Elara"}},
            {"id": 2, "chat_id": "chat2", "content": "short", "metadata": {}},
        ]
        results = contextual_search(vectors, chat_id="chat1", character="Elara")

        assert len(results) == 1
        assert results[0]["score"] == pytest.approx(0.5 + 0.3 + 0.15)

    def test_cosine_needs_embedding(self):
        assert cosine_search(_query("dragon"), _vectors()) == []


class TestFusion:
    """Tests for combining ranked lists."""

    V1 = {"id": 1}
    V2 = {"id": 2}

    def _results(self):
        return {
            "bm25": [{"vector": self.V1, "score": 0.9}, {"vector": self.V2, "score": 0.2}],
            "semantic": [{"vector": self.V2, "score": 0.5}],
        }

    def test_rrf(self):
        fused = FusionEngine(rrf_k=60).fuse(self._results(), "rrf")

        assert [r["vector"]["id"] for r in fused] == [2, 1]
        assert fused[0]["score"] == pytest.approx(1 / 62 + 1 / 61)
        assert fused[1]["score"] == pytest.approx(1 / 61)

    def test_weighted_sum(self):
        fused = FusionEngine().fuse(self._results(), "weighted_sum", {"bm25": 1.0, "semantic": 0.5})

        scores = {r["vector"]["id"]: r["score"] for r in fused}
        assert scores[1] == pytest.approx(0.9)
        assert scores[2] == pytest.approx(0.2 + 0.25)

    def test_hybrid_averages_both(self):
        engine = FusionEngine()
        weights = {"bm25": 1.0, "semantic": 0.5}
        fused = {r["vector"]["id"]: r["score"] for r in engine.fuse(self._results(), "hybrid", weights)}

        assert fused[1] == pytest.approx(0.5 * (1 / 61) + 0.5 * 0.9)

    def test_unknown_method_uses_rrf(self):
        engine = FusionEngine()
        assert engine.fuse(self._results(), "mystery") == engine.fuse(self._results(), "rrf")

    def test_hash_identifies_unsaved_vectors(self):
        results = {"a": [{"vector": {"hash": "abc"}, "score": 1.0}], "b": [{"vector": {"hash": "abc"}, "score": 1.0}]}
        assert len(FusionEngine().fuse(results, "rrf")) == 1


class TestPostProcess:
    """Tests for result cleanup."""

    def test_dedupes_filters_and_sorts(self):
        results = [
            {"vector": {"id": 1}, "score": 0.3},
            {"vector": {"id": 2}, "score": 0.9},
            {"vector": {"id": 1}, "score": 0.2},
            {"vector": {"id": 3}, "score": 0.1},
        ]
        processed = post_process_results(results, min_score=0.1)
        assert [(r["vector"]["id"], r["score"]) for r in processed] == [(2, 0.9), (1, 0.3)]


class TestAdvancedQuerySystem:
    """Tests for end-to-end search."""

    @pytest.mark.asyncio
    async def test_hybrid_search_finds_matches(self, query_system):
        results = await query_system.search("dragon", chat_id="chat1")

        assert [r["vector"]["content"] for r in results] == [
            "A dragon circled the tower", "The dragon burned the village"
        ]

    @pytest.mark.asyncio
    async def test_selected_algorithm_and_weight(self, query_system):
        query_system.set_algorithm_weight("semantic", 1.0)

        results = await query_system.search(
            "the dragon", chat_id="chat1", algorithms=["semantic"], fusion_method="weighted_sum"
        )

        assert [r["vector"]["id"] for r in results] == [1, 3, 2]
        assert results[0]["score"] == pytest.approx(0.5)
        assert results[2]["score"] == pytest.approx(1 / 7)

    @pytest.mark.asyncio
    async def test_rrf_search_ignores_min_score(self, query_system):
        """Pure RRF scores sit below min_score yet still come back, ranked."""
        results = await query_system.search(
            "the dragon", chat_id="chat1", algorithms=["semantic"], fusion_method="rrf"
        )

        assert [r["vector"]["id"] for r in results] == [1, 3, 2]
        assert [r["score"] for r in results] == pytest.approx([1 / 61, 1 / 62, 1 / 63])
        assert all(r["score"] < query_system.config["min_score"] for r in results)

    @pytest.mark.asyncio
    async def test_hybrid_search_applies_min_score(self, query_system):
        query_system.config["min_score"] = 50.0
        assert await query_system.search("dragon", chat_id="chat1") == []

    @pytest.mark.asyncio
    async def test_limit(self, query_system):
        assert len(await query_system.search("dragon", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_unknown_algorithm(self, query_system):
        with pytest.raises(ValueError):
            await query_system.search("dragon", algorithms=["telepathy"])

    @pytest.mark.asyncio
    async def test_empty_chat(self, query_system):
        assert await query_system.search("dragon", chat_id="nobody") == []

    def test_configuration_errors(self, query_system):
        with pytest.raises(ValueError):
            query_system.set_algorithm_weight("telepathy", 1.0)
        with pytest.raises(ValueError):
            query_system.set_algorithm_enabled("telepathy", False)

        query_system.set_algorithm_enabled("temporal", False)
        assert query_system.algorithms["temporal"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_advanced_search_time_range(self, query_system):
        assert len(await query_system.search_advanced("dragon", chat_id="chat1")) == 2
        # Fixture messages are dated 1970
        assert await query_system.search_advanced("dragon", chat_id="chat1", time_range=1) == []

    @pytest.mark.asyncio
    async def test_advanced_search_recent_messages(self, query_system):
        query_system.vector_store.process_message(
            {"id": 4, "content": "The dragon returned", "timestamp": time.time()}, "chat1"
        )
        results = await query_system.search_advanced("dragon", chat_id="chat1", time_range=1)
        assert [r["vector"]["content"] for r in results] == ["The dragon returned"]

    @pytest.mark.asyncio
    async def test_advanced_search_errors_return_empty(self, config):
        class BrokenStore:
            async def search_vectors(self, *args, **kwargs):
                raise RuntimeError("index unavailable")

        system = AdvancedQuerySystem(BrokenStore(), config=config)
        assert await system.search_advanced("dragon") == []
