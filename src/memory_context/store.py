"""
Durable memory store backed by a ChromaDB collection.

ChromaDB does the nearest-neighbour work; this module adds per-user
scoping, record (de)serialisation, and the final ranking order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol, TypeVar

import chromadb
from chromadb.errors import ChromaError

from .errors import NotFoundError, StoreError
from .models import (
    JSONValue,
    Memory,
    ScoredMemory,
    dumps_metadata,
    generate_id,
    loads_metadata,
    require_text,
    validate_metadata,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_INCLUDE = ["documents", "metadatas"]


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def rank_matches(matches: Iterable[ScoredMemory]) -> list[ScoredMemory]:
    """Order by similarity (highest first), newest first on ties."""
    return sorted(
        matches,
        key=lambda m: (m.similarity, m.memory.created_at.timestamp()),
        reverse=True,
    )


class MemoryStore:
    """
    Per-user memory collection in ChromaDB.

    The collection uses cosine space, so query distances are
    ``1 - cosine_similarity`` in ``[0, 2]`` and similarity is recovered as
    ``1 - distance``.  Embeddings are always supplied by the engine; no
    embedding function is attached to the collection.

    Every public method is a coroutine.  The blocking ChromaDB call runs in
    a worker thread; reads are bounded by *timeout*, writes are not.
    ChromaDB failures and read timeouts are raised as :class:`StoreError`.

    Parameters
    ----------
    embedder:
        Object with an async ``embed(text)`` used by :meth:`insert`.
    path:
        Filesystem path for the ChromaDB persistent store.
    collection_name:
        Name of the ChromaDB collection to use.
    timeout:
        Seconds allowed for each read operation.
    """

    def __init__(
        self,
        embedder: Embedder,
        path: str = "./chroma_db",
        collection_name: str = "memories",
        timeout: float = 10.0,
        _client: chromadb.ClientAPI | None = None,
    ) -> None:
        self.embedder = embedder
        self.timeout = timeout
        self.client = _client or chromadb.PersistentClient(path=path)
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def insert(
        self,
        user_id: str,
        content: str,
        metadata: dict[str, JSONValue] | None = None,
        *,
        importance: float | None = None,
        source: str | None = None,
        source_url: str | None = None,
        title: str | None = None,
    ) -> Memory:
        """
        Embed *content* and persist it for *user_id*.

        The embedding is computed before anything is written, so a provider
        failure leaves the store untouched.  The write itself is not bounded
        by *timeout*: a worker thread cannot be cancelled, so a timed-out add
        could still commit after the caller saw an error.  The returned
        record omits the embedding.
        """
        require_text(user_id, "user_id")
        require_text(content, "content")
        meta = validate_metadata(metadata)

        embedding = await self.embedder.embed(content)

        now = datetime.now(timezone.utc)
        memory = Memory(
            id=generate_id(),
            user_id=user_id,
            content=content,
            metadata=meta,
            importance=importance,
            source=source,
            source_url=source_url,
            title=title,
            created_at=now,
            updated_at=now,
        )
        await self._run(
            self.collection.add,
            bounded=False,
            ids=[memory.id],
            embeddings=[embedding],
            documents=[content],
            metadatas=[_to_record(memory)],
        )
        logger.debug("Stored memory %s for user %s", memory.id, user_id)
        return memory

    async def update_metadata(
        self, memory_id: str, metadata: dict[str, JSONValue]
    ) -> Memory:
        """
        Merge *metadata* into an existing memory and bump ``updated_at``.

        Used when an external sync re-imports the same document.  Content
        and embedding never change.
        """
        meta = validate_metadata(metadata)
        current = await self.get_by_id(memory_id)
        updated = Memory(
            id=current.id,
            user_id=current.user_id,
            content=current.content,
            metadata={**current.metadata, **meta},
            importance=current.importance,
            source=current.source,
            source_url=current.source_url,
            title=current.title,
            created_at=current.created_at,
            updated_at=datetime.now(timezone.utc),
        )
        await self._run(
            self.collection.update,
            bounded=False,
            ids=[memory_id],
            metadatas=[_to_record(updated)],
        )
        return updated

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def similarity_search(
        self, user_id: str, query_embedding: list[float], limit: int = 5
    ) -> list[ScoredMemory]:
        """
        Return up to *limit* of *user_id*'s memories closest to
        *query_embedding*, ranked by :func:`rank_matches`.

        Only the given user's memories are ever considered.
        """
        require_text(user_id, "user_id")
        total = await self._run(self.collection.count)
        n = min(limit + 1, total)
        while n > 0:
            ranked = rank_matches(await self._query(user_id, query_embedding, n))
            # Rows tied with the cut-off score may lie past the fetched window;
            # widen until the last fetched row scores below the cut-off.
            if (
                len(ranked) < n
                or n >= total
                or len(ranked) <= limit
                or ranked[-1].similarity < ranked[limit - 1].similarity
            ):
                return ranked[:limit]
            n = min(n * 2, total)
        return []

    async def _query(
        self, user_id: str, query_embedding: list[float], n: int
    ) -> list[ScoredMemory]:
        results = await self._run(
            self.collection.query,
            query_embeddings=[query_embedding],
            n_results=n,
            where={"user_id": user_id},
            include=["documents", "metadatas", "distances"],
        )
        ids = results["ids"][0]
        docs = results["documents"][0]
        metas = results["metadatas"][0]
        distances = results["distances"][0]
        return [
            ScoredMemory(
                memory=_from_record(ids[i], docs[i], metas[i]),
                similarity=1.0 - float(distances[i]),
            )
            for i in range(len(ids))
        ]

    async def get_by_id(self, memory_id: str) -> Memory:
        """Fetch a single memory.  Raises :class:`NotFoundError` on a miss."""
        require_text(memory_id, "memory_id")
        result = await self._run(self.collection.get, ids=[memory_id], include=_INCLUDE)
        if not result["ids"]:
            raise NotFoundError(memory_id)
        return _from_record(result["ids"][0], result["documents"][0], result["metadatas"][0])

    async def get_all(self, user_id: str) -> list[Memory]:
        """Return every memory owned by *user_id*, newest first."""
        require_text(user_id, "user_id")
        result = await self._run(
            self.collection.get, where={"user_id": user_id}, include=_INCLUDE
        )
        ids = result.get("ids") or []
        docs = result.get("documents") or []
        metas = result.get("metadatas") or []
        memories = [_from_record(ids[i], docs[i], metas[i]) for i in range(len(ids))]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories

    async def count(self, user_id: str | None = None) -> int:
        """Return the number of stored memories, optionally for one user."""
        if user_id is None:
            return await self._run(self.collection.count)
        result = await self._run(
            self.collection.get, where={"user_id": user_id}, include=["metadatas"]
        )
        return len(result["ids"])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(
        self, fn: Callable[..., T], *args: Any, bounded: bool = True, **kwargs: Any
    ) -> T:
        call = functools.partial(fn, *args, **kwargs)
        try:
            if not bounded:
                return await asyncio.to_thread(call)
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("Store call %s timed out after %.1fs", fn.__name__, self.timeout)
            raise StoreError(f"store operation timed out after {self.timeout}s") from exc
        except ChromaError as exc:
            logger.warning("Store call %s failed: %s", fn.__name__, exc)
            raise StoreError(str(exc)) from exc


def _to_record(memory: Memory) -> dict[str, Any]:
    """Flatten a memory into ChromaDB metadata (scalar values only)."""
    record: dict[str, Any] = {
        "user_id": memory.user_id,
        "created_at": memory.created_at.timestamp(),
        "updated_at": memory.updated_at.timestamp(),
        "metadata": dumps_metadata(memory.metadata),
    }
    for name in ("importance", "source", "source_url", "title"):
        value = getattr(memory, name)
        if value is not None:
            record[name] = value
    return record


def _from_record(memory_id: str, document: str, record: dict[str, Any] | None) -> Memory:
    record = record or {}
    importance = record.get("importance")
    return Memory(
        id=memory_id,
        user_id=record.get("user_id", ""),
        content=document or "",
        metadata=loads_metadata(record.get("metadata")),
        importance=float(importance) if importance is not None else None,
        source=record.get("source"),
        source_url=record.get("source_url"),
        title=record.get("title"),
        created_at=_timestamp(record.get("created_at")),
        updated_at=_timestamp(record.get("updated_at")),
    )


def _timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)
