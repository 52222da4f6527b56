"""
Shared pytest fixtures for memory-context tests.

Uses ChromaDB in ephemeral (in-memory) mode, a deterministic fake
embedding provider, a fake LLM and a fake clock so that tests run fast
without downloading models or calling remote APIs.
"""

from __future__ import annotations

import hashlib
import re
import uuid

import chromadb
import pytest

from memory_context.cache import EmbeddingCache
from memory_context.chat import ChatModel
from memory_context.config import Config
from memory_context.embeddings import CachedEmbedder, EmbeddingProvider
from memory_context.memory import MemoryManager
from memory_context.store import MemoryStore

FAKE_DIM = 64


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Bag-of-words embedding: each (crudely singularised) word is hashed into
    one of ``FAKE_DIM - 1`` buckets, plus a constant bias component.  All
    components are non-negative, so any two texts have similarity > 0, and
    texts sharing words score higher.  Counts calls for spying.
    """

    name = "fake-embeddings"

    def __init__(self, fail: bool = False) -> None:
        super().__init__(timeout=5.0)
        self.calls: list[str] = []
        self.fail = fail

    def _embed_sync(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("upstream unavailable")
        vec = [0.0] * FAKE_DIM
        vec[-1] = 0.5
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            if len(word) > 3 and word.endswith("s"):
                word = word[:-1]
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % (FAKE_DIM - 1)
            vec[bucket] += 1.0
        norm = sum(x * x for x in vec) ** 0.5
        return [x / norm for x in vec]


class FakeChatModel(ChatModel):
    """Records prompts and returns a canned answer."""

    name = "fake-llm"

    def __init__(self, answer: str = "fake answer") -> None:
        super().__init__(timeout=5.0)
        self.answer = answer
        self.prompts: list[str] = []
        self.models: list[str] = []

    def _generate_sync(self, prompt, model, max_tokens, temperature) -> str:
        self.prompts.append(prompt)
        self.models.append(model)
        return self.answer


class FakeClock:
    """Manually advanced time source for cache tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# A single shared EphemeralClient instance for the test session.
# Each fixture call creates a uniquely named collection so tests are isolated.
_EPHEMERAL_CLIENT = chromadb.EphemeralClient()


def unique_collection() -> str:
    return f"test_{uuid.uuid4().hex}"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def fake_llm() -> FakeChatModel:
    return FakeChatModel()


@pytest.fixture()
def memory_store(fake_provider: FakeEmbeddingProvider) -> MemoryStore:
    """In-memory MemoryStore embedding through an uncapped cache."""
    return MemoryStore(
        CachedEmbedder(fake_provider, EmbeddingCache()),
        collection_name=unique_collection(),
        _client=_EPHEMERAL_CLIENT,
    )


@pytest.fixture()
def config() -> Config:
    return Config(db_path="unused", collection_name=unique_collection())


@pytest.fixture()
def manager(
    config: Config,
    clock: FakeClock,
    fake_provider: FakeEmbeddingProvider,
    fake_llm: FakeChatModel,
) -> MemoryManager:
    """MemoryManager wired to the ephemeral store and the fakes."""
    return MemoryManager(
        config,
        clock=clock,
        _provider=fake_provider,
        _llm=fake_llm,
        _client=_EPHEMERAL_CLIENT,
    )
