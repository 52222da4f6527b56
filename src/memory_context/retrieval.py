"""
Retrieval orchestrator: query text in, ranked memories out.

Per request:

  1. Embed the query through the embedding cache.
  2. Look up ``(user_id, query_cache_key(embedding))`` in the query cache.
     A hit is returned truncated to *limit*, scores untouched.
  3. On a miss, run the store's similarity search and cache the result.

There are no retries and no fallback ranking: provider and store errors
propagate to the caller, and nothing is cached for a failed request.
"""

from __future__ import annotations

import logging

from .cache import QueryResultCache, query_cache_key
from .embeddings import CachedEmbedder
from .errors import ValidationError
from .models import ScoredMemory, require_text
from .store import MemoryStore

logger = logging.getLogger(__name__)


class Retriever:
    """
    Cache-aware similarity retrieval over a :class:`MemoryStore`.

    Parameters
    ----------
    store:
        The durable memory store.
    embedder:
        Embeds query text through the shared embedding cache.
    query_cache:
        Ranked-result cache shared across requests.
    query_key_dims:
        Leading embedding dimensions used for the query-cache key; ``0``
        keys on the full embedding.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: CachedEmbedder,
        query_cache: QueryResultCache,
        query_key_dims: int = 0,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.query_cache = query_cache
        self.query_key_dims = query_key_dims

    async def retrieve(self, user_id: str, query: str, limit: int = 5) -> list[ScoredMemory]:
        """Return up to *limit* of *user_id*'s memories most similar to *query*."""
        require_text(user_id, "user_id")
        require_text(query, "query")
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit!r}.")

        embedding = await self.embedder.embed(query)
        key = query_cache_key(embedding, self.query_key_dims)

        cached = self.query_cache.get(user_id, key)
        if cached is not None:
            logger.debug("Query cache hit for user %s", user_id)
            return cached[:limit]

        logger.debug("Query cache miss, searching memory store for user %s", user_id)
        results = await self.store.similarity_search(user_id, embedding, limit)
        self.query_cache.put(user_id, key, results)
        return results
