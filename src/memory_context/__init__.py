"""
memory-context: semantic memory retrieval and caching for LLM chat.

Stores short text memories per user, retrieves the most similar ones for
a query, and uses them as context for an LLM answer.  Embeddings and
ranked results are kept in bounded TTL caches so repeated requests stay
cheap.
"""

from .cache import CacheSweeper, EmbeddingCache, QueryResultCache
from .chat import ChatAssembler, ChatOptions, ChatResponse
from .config import Config
from .errors import (
    MemoryContextError,
    NotFoundError,
    ProviderError,
    StoreError,
    ValidationError,
)
from .memory import MemoryManager
from .models import Memory, ScoredMemory
from .retrieval import Retriever
from .store import MemoryStore

__all__ = [
    "CacheSweeper",
    "ChatAssembler",
    "ChatOptions",
    "ChatResponse",
    "Config",
    "EmbeddingCache",
    "Memory",
    "MemoryContextError",
    "MemoryManager",
    "MemoryStore",
    "NotFoundError",
    "ProviderError",
    "QueryResultCache",
    "Retriever",
    "ScoredMemory",
    "StoreError",
    "ValidationError",
]
