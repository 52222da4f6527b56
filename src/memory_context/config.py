"""
Runtime configuration.

All tunables live on the frozen :class:`Config` dataclass.  Defaults match
the reference cache policy (24 h embedding TTL, 5 min query TTL, 1000
entries per cache, 60 s sweep).  ``Config.from_env()`` applies overrides
from the environment:

    MEMORY_CONTEXT_DB_PATH              - ChromaDB directory (default: ~/.cache/memory-context)
    MEMORY_CONTEXT_COLLECTION           - ChromaDB collection name (default: memories)
    MEMORY_CONTEXT_EMBEDDING_PROVIDER   - sentence-transformers | gemini
    MEMORY_CONTEXT_EMBEDDING_MODEL      - embedding model identifier
    MEMORY_CONTEXT_CHAT_MODEL           - default LLM model identifier
    MEMORY_CONTEXT_EMBEDDING_TTL        - seconds
    MEMORY_CONTEXT_QUERY_TTL            - seconds
    MEMORY_CONTEXT_MAX_CACHE_ENTRIES    - per cache
    MEMORY_CONTEXT_SWEEP_INTERVAL       - seconds
    MEMORY_CONTEXT_QUERY_KEY_DIMS       - 0 hashes the full query embedding
    MEMORY_CONTEXT_PROVIDER_TIMEOUT     - seconds
    MEMORY_CONTEXT_STORE_TIMEOUT        - seconds
    GOOGLE_API_KEY / GEMINI_API_KEY     - credentials for the Gemini providers
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

_PREFIX = "MEMORY_CONTEXT_"

SENTENCE_TRANSFORMERS = "sentence-transformers"
GEMINI = "gemini"

_DEFAULT_EMBEDDING_MODELS = {
    SENTENCE_TRANSFORMERS: "all-MiniLM-L6-v2",
    GEMINI: "text-embedding-004",
}


@dataclass(frozen=True)
class Config:
    """Engine configuration with the reference-policy defaults."""

    db_path: str = str(Path.home() / ".cache" / "memory-context")
    collection_name: str = "memories"

    embedding_provider: str = SENTENCE_TRANSFORMERS
    embedding_model: str = _DEFAULT_EMBEDDING_MODELS[SENTENCE_TRANSFORMERS]
    chat_model: str = "gemini-2.0-flash"
    google_api_key: str | None = None

    embedding_ttl: float = 24 * 60 * 60
    query_ttl: float = 5 * 60
    max_cache_entries: int = 1000
    sweep_interval: float = 60.0

    #: Number of leading embedding dimensions used in the query-cache key.
    #: 0 keys on a digest of the full embedding.
    query_key_dims: int = 0

    provider_timeout: float = 30.0
    store_timeout: float = 10.0

    #: Memories fetched per chat turn, and how many of those go into the prompt.
    chat_top_k: int = 5
    context_memories: int = 3

    def __post_init__(self) -> None:
        if self.embedding_provider not in _DEFAULT_EMBEDDING_MODELS:
            raise ValueError(
                f"Unknown embedding provider {self.embedding_provider!r}; "
                f"expected one of {sorted(_DEFAULT_EMBEDDING_MODELS)}."
            )
        if self.max_cache_entries < 1:
            raise ValueError("max_cache_entries must be at least 1.")
        if self.query_key_dims < 0:
            raise ValueError("query_key_dims must not be negative.")
        if min(self.embedding_ttl, self.query_ttl, self.sweep_interval) <= 0:
            raise ValueError("TTLs and the sweep interval must be positive.")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Build a config from *environ* (defaults to ``os.environ``)."""
        env = os.environ if environ is None else environ
        base = cls()
        provider = env.get(_PREFIX + "EMBEDDING_PROVIDER", base.embedding_provider)
        model = env.get(
            _PREFIX + "EMBEDDING_MODEL",
            _DEFAULT_EMBEDDING_MODELS.get(provider, base.embedding_model),
        )
        return replace(
            base,
            db_path=env.get(_PREFIX + "DB_PATH", base.db_path),
            collection_name=env.get(_PREFIX + "COLLECTION", base.collection_name),
            embedding_provider=provider,
            embedding_model=model,
            chat_model=env.get(_PREFIX + "CHAT_MODEL", base.chat_model),
            google_api_key=env.get("GOOGLE_API_KEY") or env.get("GEMINI_API_KEY"),
            embedding_ttl=_float(env, "EMBEDDING_TTL", base.embedding_ttl),
            query_ttl=_float(env, "QUERY_TTL", base.query_ttl),
            max_cache_entries=_int(env, "MAX_CACHE_ENTRIES", base.max_cache_entries),
            sweep_interval=_float(env, "SWEEP_INTERVAL", base.sweep_interval),
            query_key_dims=_int(env, "QUERY_KEY_DIMS", base.query_key_dims),
            provider_timeout=_float(env, "PROVIDER_TIMEOUT", base.provider_timeout),
            store_timeout=_float(env, "STORE_TIMEOUT", base.store_timeout),
        )


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{_PREFIX}{name} must be a number, got {raw!r}.") from None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{_PREFIX}{name} must be an integer, got {raw!r}.") from None
