"""Tests for the ChromaDB-backed MemoryStore."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

import pytest
from chromadb.errors import ChromaError

from memory_context.errors import NotFoundError, ProviderError, StoreError, ValidationError
from memory_context.models import Memory, ScoredMemory
from memory_context.store import MemoryStore, rank_matches
from conftest import FakeEmbeddingProvider


async def _embed(store: MemoryStore, text: str) -> list[float]:
    return await store.embedder.embed(text)


class TestInsert:
    async def test_insert_returns_full_record(self, memory_store: MemoryStore):
        memory = await memory_store.insert(
            "u1", "I like hiking on weekends", {"source": "unit_test"}, title="Hobby"
        )
        assert memory.id
        assert memory.user_id == "u1"
        assert memory.content == "I like hiking on weekends"
        assert memory.metadata == {"source": "unit_test"}
        assert memory.title == "Hobby"
        assert memory.created_at == memory.updated_at

    async def test_insert_increases_count(self, memory_store: MemoryStore):
        await memory_store.insert("u1", "Hello world")
        assert await memory_store.count() == 1
        assert await memory_store.count("u1") == 1
        assert await memory_store.count("u2") == 0

    async def test_insert_and_get_by_id(self, memory_store: MemoryStore):
        created = await memory_store.insert(
            "u1",
            "Hello world",
            {"nested": {"k": [1, 2]}},
            importance=0.8,
            source="slack",
            source_url="https://example.com/m/1",
        )
        fetched = await memory_store.get_by_id(created.id)
        assert fetched.content == "Hello world"
        assert fetched.metadata == {"nested": {"k": [1, 2]}}
        assert fetched.importance == pytest.approx(0.8)
        assert fetched.source == "slack"
        assert fetched.source_url == "https://example.com/m/1"
        assert fetched.title is None
        assert fetched.created_at.timestamp() == pytest.approx(created.created_at.timestamp())

    @pytest.mark.parametrize("user_id, content", [("", "text"), ("u1", ""), ("u1", "   ")])
    async def test_invalid_input_never_reaches_provider(
        self, memory_store: MemoryStore, fake_provider: FakeEmbeddingProvider, user_id, content
    ):
        with pytest.raises(ValidationError):
            await memory_store.insert(user_id, content)
        assert fake_provider.calls == []

    async def test_invalid_metadata_rejected(self, memory_store: MemoryStore):
        with pytest.raises(ValidationError):
            await memory_store.insert("u1", "text", {"bad": object()})
        assert await memory_store.count() == 0

    async def test_provider_failure_stores_nothing(
        self, memory_store: MemoryStore, fake_provider: FakeEmbeddingProvider
    ):
        fake_provider.fail = True
        with pytest.raises(ProviderError):
            await memory_store.insert("u1", "Never stored")
        assert await memory_store.count() == 0


class TestSimilaritySearch:
    async def test_empty_store_returns_empty(self, memory_store: MemoryStore):
        query = await _embed(memory_store, "anything")
        assert await memory_store.similarity_search("u1", query, 5) == []

    async def test_results_are_ranked_descending(self, memory_store: MemoryStore):
        await memory_store.insert("u1", "Python programming language")
        await memory_store.insert("u1", "JavaScript web development")
        await memory_store.insert("u1", "Machine learning with neural networks")
        query = await _embed(memory_store, "python programming")
        results = await memory_store.similarity_search("u1", query, 3)
        assert len(results) == 3
        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)
        assert results[0].memory.content == "Python programming language"

    async def test_limit_is_respected(self, memory_store: MemoryStore):
        for i in range(6):
            await memory_store.insert("u1", f"Distinct fact number {i}")
        query = await _embed(memory_store, "fact")
        assert len(await memory_store.similarity_search("u1", query, 2)) == 2

    async def test_limit_larger_than_store(self, memory_store: MemoryStore):
        await memory_store.insert("u1", "Single document")
        query = await _embed(memory_store, "document")
        assert len(await memory_store.similarity_search("u1", query, 10)) == 1

    async def test_never_returns_other_users_memories(self, memory_store: MemoryStore):
        await memory_store.insert("u2", "secret project X")
        await memory_store.insert("u1", "grocery list for the week")
        query = await _embed(memory_store, "secret project X")
        results = await memory_store.similarity_search("u1", query, 5)
        assert results
        assert all(r.memory.user_id == "u1" for r in results)

    async def test_similarity_of_identical_text_is_near_one(self, memory_store: MemoryStore):
        await memory_store.insert("u1", "the sky is blue")
        query = await _embed(memory_store, "the sky is blue")
        [hit] = await memory_store.similarity_search("u1", query, 1)
        assert hit.similarity == pytest.approx(1.0, abs=1e-3)

    async def test_results_exclude_embeddings(self, memory_store: MemoryStore):
        await memory_store.insert("u1", "hello")
        query = await _embed(memory_store, "hello")
        [hit] = await memory_store.similarity_search("u1", query, 1)
        assert not hasattr(hit.memory, "embedding")

    async def test_ties_beyond_limit_keep_newest(self, memory_store: MemoryStore):
        created = []
        for _ in range(6):
            created.append(await memory_store.insert("u1", "same text"))
            await asyncio.sleep(0.01)
        query = await _embed(memory_store, "same text")
        results = await memory_store.similarity_search("u1", query, 3)
        assert [r.memory.id for r in results] == [m.id for m in reversed(created[3:])]


class TestRankMatches:
    def _hit(self, mid: str, similarity: float, ts: float) -> ScoredMemory:
        created = datetime.fromtimestamp(ts, tz=timezone.utc)
        return ScoredMemory(
            Memory(id=mid, user_id="u1", content=mid, created_at=created, updated_at=created),
            similarity,
        )

    def test_orders_by_similarity(self):
        ranked = rank_matches([self._hit("a", 0.1, 1), self._hit("b", 0.9, 1)])
        assert [m.memory.id for m in ranked] == ["b", "a"]

    def test_ties_broken_newest_first(self):
        ranked = rank_matches(
            [self._hit("old", 0.5, 100), self._hit("new", 0.5, 200), self._hit("mid", 0.5, 150)]
        )
        assert [m.memory.id for m in ranked] == ["new", "mid", "old"]

    def test_negative_scores_are_kept(self):
        ranked = rank_matches([self._hit("neg", -0.3, 1), self._hit("pos", 0.2, 1)])
        assert [m.similarity for m in ranked] == [0.2, -0.3]


class TestReads:
    async def test_get_by_id_missing_raises_not_found(self, memory_store: MemoryStore):
        with pytest.raises(NotFoundError):
            await memory_store.get_by_id("does-not-exist")

    async def test_get_all_is_newest_first_and_scoped(self, memory_store: MemoryStore):
        first = await memory_store.insert("u1", "first")
        await asyncio.sleep(0.01)
        second = await memory_store.insert("u1", "second")
        await memory_store.insert("u2", "someone else")
        memories = await memory_store.get_all("u1")
        assert [m.id for m in memories] == [second.id, first.id]

    async def test_get_all_for_unknown_user_is_empty(self, memory_store: MemoryStore):
        assert await memory_store.get_all("nobody") == []


class TestUpdateMetadata:
    async def test_merges_metadata_and_bumps_updated_at(self, memory_store: MemoryStore):
        created = await memory_store.insert("u1", "doc body", {"source": "notion", "rev": 1})
        await asyncio.sleep(0.01)
        updated = await memory_store.update_metadata(created.id, {"rev": 2})
        assert updated.metadata == {"source": "notion", "rev": 2}
        assert updated.content == "doc body"
        assert updated.updated_at > created.updated_at

        fetched = await memory_store.get_by_id(created.id)
        assert fetched.metadata == {"source": "notion", "rev": 2}
        assert fetched.created_at.timestamp() == pytest.approx(created.created_at.timestamp())

    async def test_missing_memory_raises_not_found(self, memory_store: MemoryStore):
        with pytest.raises(NotFoundError):
            await memory_store.update_metadata("missing", {"a": 1})


class _ConnectionLost(ChromaError):
    pass


class _BrokenCollection:
    """Stands in for a chromadb collection whose backend is unreachable."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay

    def count(self) -> int:
        time.sleep(self.delay)
        return 0

    def get(self, *args, **kwargs):
        raise _ConnectionLost("connection lost")


class _SlowCollection:
    """Accepts writes, but slower than the store timeout."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.added: list[str] = []

    def add(self, ids, **kwargs) -> None:
        time.sleep(self.delay)
        self.added.extend(ids)


class TestStoreErrors:
    async def test_timeout_becomes_store_error(self, memory_store: MemoryStore, monkeypatch):
        monkeypatch.setattr(memory_store, "collection", _BrokenCollection(delay=0.5))
        memory_store.timeout = 0.05
        with pytest.raises(StoreError, match="timed out"):
            await memory_store.count()

    async def test_chroma_error_becomes_store_error(self, memory_store: MemoryStore, monkeypatch):
        monkeypatch.setattr(memory_store, "collection", _BrokenCollection())
        with pytest.raises(StoreError, match="connection lost"):
            await memory_store.get_all("u1")

    async def test_slow_write_is_not_timed_out(self, memory_store: MemoryStore, monkeypatch):
        slow = _SlowCollection(delay=0.2)
        monkeypatch.setattr(memory_store, "collection", slow)
        memory_store.timeout = 0.05
        memory = await memory_store.insert("u1", "written eventually")
        assert slow.added == [memory.id]
