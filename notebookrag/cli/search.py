# =============================================================================
# notebookrag/cli/search.py - CLI Search and Chat
# =============================================================================
#
# Query a notebook from the terminal.
#
#   query - Semantic search; prints ranked chunks with scores
#   batch - Several queries embedded in one provider call
#   chat  - Interactive chat; replies stream token by token and every
#           turn is stored in a chat session (resume with --session)
#
# Usage examples:
#   python -m notebookrag.cli search query --notebook nb1 "site drainage"
#   python -m notebookrag.cli search batch --notebook nb1 "zoning" "parking"
#   python -m notebookrag.cli search chat --notebook nb1
# =============================================================================

"""Search and chat with a notebook from the command line."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any

from notebookrag.cli._factory import build_from_environment, initialize_components
from notebookrag.models.rag import RetrievedChunk
from notebookrag.utils.errors import NotebookRAGError

_PREVIEW_CHARS = 240


def _print_results(results: list[RetrievedChunk]) -> None:
    if not results:
        print("  (no chunks above the similarity threshold)")
        return
    for rank, item in enumerate(results, start=1):
        chunk = item.chunk
        preview = " ".join(chunk.text.split())[:_PREVIEW_CHARS]
        label = f" [{chunk.section_label}]" if chunk.section_label else ""
        print(f"  {rank:>2}. {item.score:.3f}  {chunk.document_id}#{chunk.ordinal}{label}")
        print(f"      {preview}")


async def _handle_query(args: argparse.Namespace, components: dict[str, Any]) -> int:
    results = await components["retriever"].retrieve(
        query=args.query,
        notebook_id=args.notebook,
        top_k=args.top_k,
        threshold=args.threshold,
    )
    print(f"Results for: {args.query}")
    _print_results(results)
    return 0


async def _handle_batch(args: argparse.Namespace, components: dict[str, Any]) -> int:
    batch = await components["retriever"].retrieve_batch(
        args.queries,
        notebook_id=args.notebook,
        top_k=args.top_k,
        threshold=args.threshold,
    )
    for result in batch.results:
        print(f"\nResults for: {result.query}")
        if result.error:
            print(f"  error: {result.error}")
            continue
        _print_results(result.results)
    return 0


async def _handle_chat(args: argparse.Namespace, components: dict[str, Any]) -> int:
    chat_service = components["chat_service"]
    session_id = args.session
    print("Chat with your notebook. Empty line or Ctrl-D to quit.\n")
    while True:
        try:
            message = input("you> ").strip()
        except EOFError:
            break
        if not message:
            break

        stream = await chat_service.stream_reply(session_id, args.notebook, message)
        session_id = stream.session_id
        print("assistant> ", end="", flush=True)
        try:
            async for fragment in stream:
                print(fragment, end="", flush=True)
        except KeyboardInterrupt:
            await stream.cancel()
            print("\n  (reply interrupted)")
            continue
        print()
        if stream.citations:
            sources = ", ".join(f"{c.document_id}#{c.ordinal}" for c in stream.citations)
            print(f"  sources: {sources}")
        print()

    if session_id:
        print(f"Session: {session_id}")
    return 0


_HANDLERS = {
    "query": _handle_query,
    "batch": _handle_batch,
    "chat": _handle_chat,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m notebookrag.cli search",
        description="Search and chat with a notebook.",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Search commands")

    query_parser = subparsers.add_parser("query", help="Semantic search")
    query_parser.add_argument("query", help="Search text")

    batch_parser = subparsers.add_parser("batch", help="Several queries at once")
    batch_parser.add_argument("queries", nargs="+", help="Search texts")

    for sub in (query_parser, batch_parser):
        sub.add_argument("--notebook", required=True, help="Notebook id")
        sub.add_argument("--top-k", type=int, default=None, dest="top_k", help="Results per query")
        sub.add_argument("--threshold", type=float, default=None, help="Minimum similarity")

    chat_parser = subparsers.add_parser("chat", help="Interactive chat")
    chat_parser.add_argument("--notebook", required=True, help="Notebook id")
    chat_parser.add_argument("--session", default=None, help="Resume an existing session")

    return parser


async def _run(args: argparse.Namespace) -> int:
    components = build_from_environment(args.config)
    await initialize_components(components)
    try:
        return await _HANDLERS[args.command](args, components)
    except NotebookRAGError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for search and chat."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
