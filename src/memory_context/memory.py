"""
MemoryManager: the composition root and public API of the engine.

It owns both caches, the background sweeper, the store, the retriever and
the chat assembler, and wires them together by constructor injection.
Nothing in the package reaches for a module-level singleton, so every
test can build a fresh manager with fresh caches.

Usage example::

    from memory_context import MemoryManager

    async with MemoryManager() as memory:
        await memory.create_memory("alice", "I like hiking on weekends")
        hits = await memory.retrieve("alice", "outdoor weekend activities")
        for hit in hits:
            print(hit.memory.content, hit.similarity)

        reply = await memory.chat("alice", "What should I do on Saturday?")
        print(reply.answer)
"""

from __future__ import annotations

import time
from typing import Any

from .cache import CacheStats, CacheSweeper, Clock, EmbeddingCache, QueryResultCache
from .chat import ChatAssembler, ChatModel, ChatOptions, ChatResponse, GeminiChatModel
from .config import GEMINI, Config
from .embeddings import (
    CachedEmbedder,
    EmbeddingProvider,
    GeminiEmbeddingProvider,
    SentenceTransformerProvider,
)
from .models import JSONValue, Memory, ScoredMemory
from .retrieval import Retriever
from .store import MemoryStore


def build_embedding_provider(config: Config) -> EmbeddingProvider:
    """Instantiate the embedding provider named by *config*."""
    if config.embedding_provider == GEMINI:
        return GeminiEmbeddingProvider(
            api_key=config.google_api_key,
            model_name=config.embedding_model,
            timeout=config.provider_timeout,
        )
    return SentenceTransformerProvider(
        model_name=config.embedding_model, timeout=config.provider_timeout
    )


class MemoryManager:
    """
    High-level API for storing memories, retrieving them, and chatting
    with them as context.

    Responsibilities
    ----------------
    * **Create** – Embeds new content (through the embedding cache) and
      stores it for one user.
    * **Retrieve** – Similarity search scoped to one user, served from the
      query-result cache when possible.
    * **Chat** – Builds an LLM prompt from the best matching memories.
    * **Observe** – Reports cache sizes and ages for health endpoints.

    Use it as an async context manager (or call :meth:`start` and
    :meth:`aclose`) to run the periodic cache sweep.

    Parameters
    ----------
    config:
        Engine configuration.  Defaults to ``Config.from_env()``.
    clock:
        Time source for both caches.
    """

    def __init__(
        self,
        config: Config | None = None,
        clock: Clock = time.monotonic,
        _provider: EmbeddingProvider | None = None,
        _llm: ChatModel | None = None,
        _client: Any | None = None,
    ) -> None:
        self.config = config or Config.from_env()
        cfg = self.config

        self.embedding_cache = EmbeddingCache(cfg.embedding_ttl, cfg.max_cache_entries, clock)
        self.query_cache = QueryResultCache(cfg.query_ttl, cfg.max_cache_entries, clock)
        self.sweeper = CacheSweeper(
            [self.embedding_cache, self.query_cache], interval=cfg.sweep_interval
        )

        provider = _provider or build_embedding_provider(cfg)
        self.embedder = CachedEmbedder(provider, self.embedding_cache)
        self.store = MemoryStore(
            self.embedder,
            path=cfg.db_path,
            collection_name=cfg.collection_name,
            timeout=cfg.store_timeout,
            _client=_client,
        )
        self.retriever = Retriever(
            self.store, self.embedder, self.query_cache, query_key_dims=cfg.query_key_dims
        )
        llm = _llm or GeminiChatModel(api_key=cfg.google_api_key, timeout=cfg.provider_timeout)
        self.assembler = ChatAssembler(
            self.retriever,
            llm,
            top_k=cfg.chat_top_k,
            context_memories=cfg.context_memories,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic cache sweep on the running event loop."""
        self.sweeper.start()

    async def aclose(self) -> None:
        await self.sweeper.stop()

    async def __aenter__(self) -> MemoryManager:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        user_id: str,
        content: str,
        metadata: dict[str, JSONValue] | None = None,
        **fields: Any,
    ) -> Memory:
        """
        Store *content* for *user_id*.

        Extra keyword arguments (``importance``, ``source``, ``source_url``,
        ``title``) are passed through to :meth:`MemoryStore.insert`.
        """
        return await self.store.insert(user_id, content, metadata, **fields)

    async def retrieve(self, user_id: str, query: str, limit: int = 5) -> list[ScoredMemory]:
        """Return up to *limit* of *user_id*'s memories ranked by similarity."""
        return await self.retriever.retrieve(user_id, query, limit)

    async def chat(
        self, user_id: str, query: str, options: ChatOptions | None = None
    ) -> ChatResponse:
        """Answer *query* using *user_id*'s memories as context."""
        if options is None:
            options = ChatOptions(model=self.config.chat_model)
        return await self.assembler.chat(user_id, query, options)

    async def get_memory(self, memory_id: str) -> Memory:
        return await self.store.get_by_id(memory_id)

    async def list_memories(self, user_id: str, limit: int | None = None) -> list[Memory]:
        """Return *user_id*'s memories, newest first."""
        memories = await self.store.get_all(user_id)
        return memories if limit is None else memories[:limit]

    async def update_metadata(
        self, memory_id: str, metadata: dict[str, JSONValue]
    ) -> Memory:
        return await self.store.update_metadata(memory_id, metadata)

    async def count(self, user_id: str | None = None) -> int:
        return await self.store.count(user_id)

    def cache_stats(self) -> list[CacheStats]:
        return [self.embedding_cache.stats(), self.query_cache.stats()]

    def clear_caches(self) -> None:
        self.embedding_cache.clear()
        self.query_cache.clear()
