"""
Command-line interface for memory-context.

Sub-commands
------------
store    – Store a piece of text as a memory.
retrieve – Retrieve the most relevant memories for a query.
list     – List a user's memories, newest first.
show     – Show one memory by its ID.
chat     – Answer a question using the user's memories as context.
stats    – Print memory count and cache statistics.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, replace
from typing import Any

from .chat import ChatOptions
from .config import Config
from .errors import MemoryContextError, ValidationError
from .memory import MemoryManager


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memory-context",
        description="Semantic memory retrieval and chat context for LLMs.",
    )
    parser.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="Path to the ChromaDB persistent store (default: $MEMORY_CONTEXT_DB_PATH "
        "or ~/.cache/memory-context).",
    )
    parser.add_argument(
        "--collection",
        default=None,
        metavar="NAME",
        help="ChromaDB collection name (default: memories).",
    )
    parser.add_argument("--user", required=True, help="ID of the user who owns the memories.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Store text as a memory.")
    p_store.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_store.add_argument(
        "--meta",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Metadata entry; VALUE is parsed as JSON when possible. Repeatable.",
    )
    p_store.add_argument("--title", default=None, help="Optional title.")
    p_store.add_argument("--source", default=None, help="Optional source system.")
    p_store.add_argument("--source-url", default=None, help="Optional source URL.")
    p_store.add_argument("--importance", type=float, default=None, help="Optional importance.")

    # retrieve
    p_retrieve = sub.add_parser("retrieve", help="Retrieve relevant memories.")
    p_retrieve.add_argument("query", help="Natural-language query.")
    p_retrieve.add_argument(
        "-n",
        type=int,
        default=5,
        metavar="N",
        help="Number of results to return (default: 5).",
    )
    p_retrieve.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Output results as JSON.",
    )

    # list
    p_list = sub.add_parser("list", help="List stored memories.")
    p_list.add_argument(
        "--limit",
        type=int,
        default=100,
        metavar="N",
        help="Maximum number of memories to show (default: 100).",
    )
    p_list.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # show
    p_show = sub.add_parser("show", help="Show a memory by ID.")
    p_show.add_argument("id", help="Memory ID.")

    # chat
    p_chat = sub.add_parser("chat", help="Ask a question with memory context.")
    p_chat.add_argument("query", help="The user's message.")
    p_chat.add_argument("--model", default=None, help="LLM model identifier.")
    p_chat.add_argument(
        "--no-context",
        action="store_true",
        help="Do not retrieve memories for this turn.",
    )
    p_chat.add_argument("--max-tokens", type=int, default=None, help="Output token limit.")
    p_chat.add_argument("--temperature", type=float, default=None, help="Sampling temperature.")
    p_chat.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # stats
    sub.add_parser("stats", help="Print memory count and cache statistics.")

    return parser


def _build_manager(args: argparse.Namespace) -> MemoryManager:
    config = Config.from_env()
    if args.db:
        config = replace(config, db_path=args.db)
    if args.collection:
        config = replace(config, collection_name=args.collection)
    return MemoryManager(config)


def _parse_meta(pairs: list[str]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise ValidationError(f"--meta expects KEY=VALUE, got {pair!r}.")
        try:
            meta[key] = json.loads(raw)
        except json.JSONDecodeError:
            meta[key] = raw
    return meta


async def _run(args: argparse.Namespace, manager: MemoryManager) -> int:
    user = args.user

    if args.command == "store":
        text = args.text
        if text is None:
            text = sys.stdin.read()
        if not text.strip():
            print("Error: no text provided.", file=sys.stderr)
            return 1
        memory = await manager.create_memory(
            user,
            text,
            _parse_meta(args.meta),
            title=args.title,
            source=args.source,
            source_url=args.source_url,
            importance=args.importance,
        )
        print(f"Stored memory {memory.id}")

    elif args.command == "retrieve":
        results = await manager.retrieve(user, args.query, limit=args.n)
        if not results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps([r.to_dict() for r in results], indent=2))
        else:
            for i, r in enumerate(results, 1):
                print(f"[{i}] (similarity={r.similarity:.3f})")
                print(f"    {r.memory.content[:200]}")
                print(f"    id={r.memory.id}")
                print()

    elif args.command == "list":
        memories = await manager.list_memories(user, limit=args.limit)
        if not memories:
            print("No memories stored.")
            return 0
        if args.as_json:
            print(json.dumps([m.to_dict() for m in memories], indent=2))
        else:
            for m in memories:
                print(f"id={m.id} created={m.created_at.isoformat(timespec='seconds')}")
                print(f"    {m.content[:120]}")
                print()

    elif args.command == "show":
        memory = await manager.get_memory(args.id)
        if memory.user_id != user:
            print(f"Error: memory {args.id} not found.", file=sys.stderr)
            return 1
        print(json.dumps(memory.to_dict(), indent=2))

    elif args.command == "chat":
        options = ChatOptions(
            model=args.model or manager.config.chat_model,
            use_memory_context=not args.no_context,
            max_tokens=args.max_tokens,
            temperature=args.temperature,
        )
        reply = await manager.chat(user, args.query, options)
        if args.as_json:
            print(json.dumps({"answer": reply.answer, "metadata": reply.metadata}, indent=2))
        else:
            print(reply.answer)

    elif args.command == "stats":
        print(f"memories: {await manager.count(user)}")
        for stats in manager.cache_stats():
            print(json.dumps(asdict(stats)))

    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    manager = _build_manager(args)
    try:
        return asyncio.run(_run(args, manager))
    except MemoryContextError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
