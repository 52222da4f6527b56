"""
Chat context assembly: retrieve memories, build a prompt, ask the LLM.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

from .errors import ProviderError
from .models import ScoredMemory, require_text
from .retrieval import Retriever

logger = logging.getLogger(__name__)

#: Front-end model identifiers mapped to provider model names.  Unknown
#: identifiers are passed through unchanged.
MODEL_ALIASES = {
    "gemini-pro": "gemini-1.5-pro",
    "gemini-flash": "gemini-2.0-flash",
    "gemini-nano": "gemini-1.5-flash",
}

DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ChatOptions:
    model: str = "gemini-flash"
    use_memory_context: bool = True
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class ChatResponse:
    answer: str
    metadata: dict[str, Any]


class ChatModel:
    """
    Base class for LLM providers.

    Subclasses implement :meth:`_generate_sync`; :meth:`generate` runs it
    in a worker thread under *timeout* and reports failures as
    :class:`ProviderError`.
    """

    name = "chat-model"

    def __init__(self, timeout: float = 60.0) -> None:
        self.timeout = timeout

    async def generate(
        self,
        prompt: str,
        model: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._generate_sync, prompt, model, max_tokens, temperature),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("%s timed out after %.1fs", self.name, self.timeout)
            raise ProviderError(f"{self.name} timed out after {self.timeout}s") from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.warning("%s failed: %s", self.name, exc)
            raise ProviderError(f"{self.name} failed: {exc}") from exc

    def _generate_sync(
        self,
        prompt: str,
        model: str,
        max_tokens: int | None,
        temperature: float | None,
    ) -> str:
        raise NotImplementedError


class GeminiChatModel(ChatModel):
    """Google Gemini text generation via the ``google-genai`` SDK."""

    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = 60.0,
        _client: Any | None = None,
    ) -> None:
        super().__init__(timeout=timeout)
        self._api_key = api_key
        self._client = _client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self._api_key:
                raise ProviderError("GOOGLE_API_KEY is not set.")
            from google import genai

            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _generate_sync(
        self,
        prompt: str,
        model: str,
        max_tokens: int | None,
        temperature: float | None,
    ) -> str:
        from google.genai import types

        config = types.GenerateContentConfig(
            temperature=DEFAULT_TEMPERATURE if temperature is None else temperature,
            max_output_tokens=max_tokens,
        )
        response = self._get_client().models.generate_content(
            model=MODEL_ALIASES.get(model, model), contents=prompt, config=config
        )
        return response.text or ""


def build_context(memories: Sequence[ScoredMemory], count: int = 3) -> str:
    """Join the contents of the *count* best-scoring memories, one per line."""
    best = sorted(memories, key=lambda m: m.similarity, reverse=True)[:count]
    return "\n".join(m.memory.content for m in best)


def build_prompt(query: str, context: str = "") -> str:
    """Build the LLM prompt.  The context section is omitted when empty."""
    if context:
        return f"Context:\n{context}\n\nUser: {query}\n\nAssistant:"
    return f"User: {query}\n\nAssistant:"


class ChatAssembler:
    """
    Answers a user query with the user's own memories as context.

    Retrieval always fetches *top_k* memories, independent of any display
    limit, and the best *context_memories* of those go into the prompt.
    When ``use_memory_context`` is off the retriever is never called.
    Retrieval errors propagate; the turn is never silently answered
    without context.
    """

    def __init__(
        self,
        retriever: Retriever,
        llm: ChatModel,
        top_k: int = 5,
        context_memories: int = 3,
    ) -> None:
        self.retriever = retriever
        self.llm = llm
        self.top_k = top_k
        self.context_memories = context_memories

    async def chat(
        self, user_id: str, query: str, options: ChatOptions | None = None
    ) -> ChatResponse:
        options = options or ChatOptions()
        require_text(user_id, "user_id")
        require_text(query, "query")

        start = time.perf_counter()
        memories: list[ScoredMemory] = []
        context = ""

        if options.use_memory_context:
            memories = await self.retriever.retrieve(user_id, query, self.top_k)
            context = build_context(memories, self.context_memories)
            logger.debug(
                "Retrieved %d memories in %.1f ms",
                len(memories),
                (time.perf_counter() - start) * 1000,
            )

        prompt = build_prompt(query, context)
        llm_start = time.perf_counter()
        answer = await self.llm.generate(
            prompt,
            model=options.model,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
        )
        logger.debug("LLM call took %.1f ms", (time.perf_counter() - llm_start) * 1000)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("Chat turn for user %s completed in %.1f ms", user_id, elapsed_ms)
        return ChatResponse(
            answer=answer,
            metadata={
                "memories_used": len(memories),
                "context_size": len(context),
                "model": options.model,
                "response_time_ms": elapsed_ms,
                "use_memory_context": options.use_memory_context,
            },
        )
