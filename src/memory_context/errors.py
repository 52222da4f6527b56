"""
Error taxonomy for memory-context.

Every error the engine raises derives from :class:`MemoryContextError` so
that callers (the CLI, an HTTP layer) can translate failures with a single
``except`` clause.  The caches never raise; they treat anything odd as a
miss.
"""

from __future__ import annotations


class MemoryContextError(Exception):
    """Base class for all engine errors."""


class ValidationError(MemoryContextError):
    """Empty or malformed input.  Raised before any network or store call."""


class ProviderError(MemoryContextError):
    """The embedding or LLM provider failed or timed out."""


class NotFoundError(MemoryContextError):
    """A single-record lookup by ID matched nothing."""

    def __init__(self, memory_id: str) -> None:
        super().__init__(f"Memory {memory_id!r} not found.")
        self.memory_id = memory_id


class StoreError(MemoryContextError):
    """The durable vector store failed (connection loss, timeout, bad data)."""
