"""
Data model: memories, scored search hits, and JSON-compatible metadata.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from .errors import ValidationError

#: A JSON-compatible value.  Memory metadata is a ``dict[str, JSONValue]``.
JSONValue = Union[str, int, float, bool, None, list["JSONValue"], dict[str, "JSONValue"]]


@dataclass(frozen=True)
class Memory:
    """
    A single stored unit of text owned by exactly one user.

    The embedding lives only in the store; callers never see raw vectors.
    """

    id: str
    user_id: str
    content: str
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    importance: float | None = None
    source: str | None = None
    source_url: str | None = None
    title: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable view of the memory."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "content": self.content,
            "metadata": self.metadata,
            "importance": self.importance,
            "source": self.source,
            "source_url": self.source_url,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class ScoredMemory:
    """A memory returned by a similarity search.

    ``similarity`` is ``1 - cosine_distance`` and is deliberately not
    clamped: it may fall anywhere in ``[-1, 1]`` for unit vectors.
    """

    memory: Memory
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        data = self.memory.to_dict()
        data["similarity"] = self.similarity
        return data


def generate_id() -> str:
    """Return a new unique memory ID."""
    return str(uuid.uuid4())


def require_text(value: Any, name: str) -> str:
    """Return *value* if it is a non-blank string, else raise ValidationError."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string.")
    return value


def validate_metadata(metadata: Any) -> dict[str, JSONValue]:
    """
    Check that *metadata* is a mapping of string keys to JSON values.

    ``None`` is accepted and becomes an empty dict.  Returns a shallow copy
    so later mutation by the caller cannot leak into a stored record.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a mapping of string keys to JSON values.")
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValidationError(f"metadata keys must be strings, got {key!r}.")
        _check_json_value(value, path=key)
    return dict(metadata)


def _check_json_value(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"metadata[{path}] is not a finite number.")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _check_json_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"metadata[{path}] has a non-string key {key!r}.")
            _check_json_value(item, f"{path}.{key}")
        return
    raise ValidationError(
        f"metadata[{path}] has unsupported type {type(value).__name__}."
    )


def dumps_metadata(metadata: dict[str, JSONValue]) -> str:
    return json.dumps(metadata, sort_keys=True)


def loads_metadata(raw: Any) -> dict[str, JSONValue]:
    """Parse the stored metadata string; anything unreadable becomes ``{}``."""
    if not isinstance(raw, str) or not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}
