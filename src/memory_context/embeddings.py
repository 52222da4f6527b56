"""
Embedding providers and the cache-aware embedder used by the engine.

A provider turns text into a fixed-length vector.  The concrete providers
wrap blocking SDKs, so :meth:`EmbeddingProvider.embed` runs them in a
worker thread bounded by a timeout.  Any SDK failure or timeout surfaces
as :class:`~memory_context.errors.ProviderError`; failures are never
cached.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from .cache import EmbeddingCache
from .errors import ProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider:
    """
    Base class for embedding providers.

    Subclasses implement :meth:`_embed_sync`.  ``dimension`` is learned
    from the first successful call unless given up front, and every later
    vector must match it.
    """

    name = "embedding-provider"

    def __init__(self, timeout: float = 30.0, dimension: int | None = None) -> None:
        self.timeout = timeout
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        """Return the embedding of *text*."""
        if not isinstance(text, str) or not text.strip():
            raise ProviderError("Cannot embed empty or non-string text.")

        try:
            raw = await asyncio.wait_for(
                asyncio.to_thread(self._embed_sync, text), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %.1fs", self.name, self.timeout)
            raise ProviderError(f"{self.name} timed out after {self.timeout}s") from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.warning("%s failed: %s", self.name, exc)
            raise ProviderError(f"{self.name} failed: {exc}") from exc

        vector = [float(x) for x in raw]
        if not vector:
            raise ProviderError(f"{self.name} returned an empty embedding")
        if self.dimension is None:
            self.dimension = len(vector)
        elif len(vector) != self.dimension:
            raise ProviderError(
                f"{self.name} returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector

    def _embed_sync(self, text: str) -> Sequence[float]:
        raise NotImplementedError


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded through ChromaDB's helper."""

    name = "sentence-transformers"

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        timeout: float = 30.0,
        _embedding_function: Any | None = None,
    ) -> None:
        super().__init__(timeout=timeout)
        self.model_name = model_name
        self._ef = _embedding_function

    def _embedding_function(self) -> Any:
        # Loading the model is slow, so defer it to the first embed call.
        if self._ef is None:
            from chromadb.utils import embedding_functions

            self._ef = embedding_functions.SentenceTransformerEmbeddingFunction(
                model_name=self.model_name
            )
        return self._ef

    def _embed_sync(self, text: str) -> Sequence[float]:
        return self._embedding_function()([text])[0]


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Google Gemini embeddings via the ``google-genai`` SDK."""

    name = "gemini-embeddings"

    def __init__(
        self,
        api_key: str | None = None,
        model_name: str = "text-embedding-004",
        timeout: float = 30.0,
        _client: Any | None = None,
    ) -> None:
        super().__init__(timeout=timeout)
        self.model_name = model_name
        self._api_key = api_key
        self._client = _client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise ProviderError("GOOGLE_API_KEY is not set.")
            from google import genai

            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _embed_sync(self, text: str) -> Sequence[float]:
        response = self._get_client().models.embed_content(
            model=self.model_name, contents=text
        )
        return response.embeddings[0].values


class CachedEmbedder:
    """
    Embeds text through an :class:`EmbeddingCache`.

    A hit skips the provider entirely; a miss calls the provider and
    caches the result.  Provider errors propagate and nothing is cached.
    """

    def __init__(self, provider: EmbeddingProvider, cache: EmbeddingCache) -> None:
        self.provider = provider
        self.cache = cache

    async def embed(self, text: str) -> list[float]:
        cached = self.cache.get(text)
        if cached is not None:
            logger.debug("Embedding cache hit")
            return cached
        logger.debug("Embedding cache miss, calling %s", self.provider.name)
        embedding = await self.provider.embed(text)
        self.cache.put(text, embedding)
        return embedding
