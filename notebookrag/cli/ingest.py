# =============================================================================
# notebookrag/cli/ingest.py - CLI Ingest Command (Notebook Corpus Management)
# =============================================================================
#
# Standalone CLI for managing the documents of a notebook.  Uploads go
# through the same IngestionService as the API: text is extracted at submit
# time, then an ``ingest`` job chunks, tags and embeds the document.
#
# Supported subcommands:
#
#   file      - Ingest one .txt / .md / .pdf file
#   directory - Bulk-ingest every supported file in a directory
#   embed     - Re-embed a document (unchanged chunks are skipped)
#   list      - List a notebook's documents
#   delete    - Delete a document with its chunks and embeddings
#   schema    - Replace a notebook's metadata schema from a JSON file
#   stats     - Show document / chunk / embedding counts
#
# By default the submitted jobs run inline in this process.  Pass
# --no-wait to only enqueue them for a separately running worker
# (python -m notebookrag.cli worker).
#
# Usage examples:
#   python -m notebookrag.cli ingest file --notebook nb1 --file notes.md
#   python -m notebookrag.cli ingest directory --notebook nb1 --path ./docs
#   python -m notebookrag.cli ingest schema --notebook nb1 --file schema.json
#   python -m notebookrag.cli ingest stats --notebook nb1
# =============================================================================

"""Standalone CLI for building a notebook's document corpus.

Usage::

    python -m notebookrag.cli ingest file --notebook nb1 --file notes.md
    python -m notebookrag.cli ingest directory --notebook nb1 --path ./docs
    python -m notebookrag.cli ingest stats
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from notebookrag.cli._factory import build_from_environment, initialize_components
from notebookrag.models.document import MetadataField
from notebookrag.models.job import JobState
from notebookrag.services.ingestion.text_extraction import SUPPORTED_EXTENSIONS
from notebookrag.utils.errors import NotebookRAGError


async def _wait(components: dict[str, Any], job_ids: list[str], no_wait: bool) -> int:
    """Run queued jobs inline, then report each job's final state."""
    orchestrator = components["orchestrator"]
    if no_wait:
        for job_id in job_ids:
            print(f"  queued job {job_id}")
        return 0

    await orchestrator.run_until_idle()
    exit_code = 0
    for job_id in job_ids:
        status = await orchestrator.status(job_id)
        if status.state == JobState.SUCCEEDED and status.result:
            result = status.result
            print(
                f"  {result['document_id']}: {result['chunks_created']} chunks, "
                f"{result['chunks_embedded']} embedded, {result['chunks_skipped']} skipped"
                + (" (duplicate)" if result.get("deduplicated") else "")
            )
            for warning in result.get("metadata_warnings", []):
                print(f"    warning: {warning}")
        else:
            exit_code = 1
            message = status.error.message if status.error else status.state.value
            print(f"  job {job_id} {status.state.value}: {message}", file=sys.stderr)
    return exit_code


async def _submit_file(components: dict[str, Any], notebook_id: str, path: Path) -> str:
    service = components["ingestion_service"]
    job_id = await service.submit(notebook_id, path.name, path.read_bytes())
    print(f"Submitted {path.name}")
    return job_id


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


async def _handle_file(args: argparse.Namespace, components: dict[str, Any]) -> int:
    path = Path(args.file)
    if not path.is_file():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 1
    job_id = await _submit_file(components, args.notebook, path)
    return await _wait(components, [job_id], args.no_wait)


async def _handle_directory(args: argparse.Namespace, components: dict[str, Any]) -> int:
    root = Path(args.path)
    if not root.is_dir():
        print(f"Error: directory not found: {root}", file=sys.stderr)
        return 1

    pattern = "**/*" if args.recursive else "*"
    files = sorted(
        p for p in root.glob(pattern) if p.is_file() and p.suffix.lower() in SUPPORTED_EXTENSIONS
    )
    if not files:
        print(f"No supported files ({', '.join(sorted(SUPPORTED_EXTENSIONS))}) in {root}")
        return 0

    job_ids = []
    for path in files:
        try:
            job_ids.append(await _submit_file(components, args.notebook, path))
        except NotebookRAGError as exc:
            print(f"  skipped {path.name}: {exc.message}", file=sys.stderr)

    print(f"\nSubmitted {len(job_ids)} of {len(files)} files")
    return await _wait(components, job_ids, args.no_wait)


async def _handle_embed(args: argparse.Namespace, components: dict[str, Any]) -> int:
    job_id = await components["ingestion_service"].submit_embed(args.document)
    orchestrator = components["orchestrator"]
    if args.no_wait:
        print(f"  queued job {job_id}")
        return 0
    await orchestrator.run_until_idle()
    status = await orchestrator.status(job_id)
    if status.state != JobState.SUCCEEDED or not status.result:
        message = status.error.message if status.error else status.state.value
        print(f"Embedding failed: {message}", file=sys.stderr)
        return 1
    result = status.result
    print(
        f"Embedded {len(result['embedded_ids'])}, skipped {len(result['skipped_ids'])}, "
        f"failed {len(result['failed_ids'])}"
    )
    return 0 if not result["failed_ids"] else 1


async def _handle_list(args: argparse.Namespace, components: dict[str, Any]) -> int:
    documents = await components["ingestion_service"].list_documents(args.notebook)
    if not documents:
        print(f"No documents in notebook '{args.notebook}'.")
        return 0
    for document in documents:
        print(f"{document.id}  {document.status.value:<10} {document.filename}")
        for key, value in document.metadata.items():
            print(f"    {key}: {value}")
    return 0


async def _handle_delete(args: argparse.Namespace, components: dict[str, Any]) -> int:
    service = components["ingestion_service"]
    document = await service.get_document(args.document)
    if not args.yes:
        confirm = input(f"  Delete '{document.filename}'? [y/N] ").strip().lower()
        if confirm not in ("y", "yes"):
            print("  Aborted.")
            return 0
    deleted = await service.delete_document(args.document)
    print(f"Deleted {document.filename} ({deleted} chunks).")
    return 0


async def _handle_schema(args: argparse.Namespace, components: dict[str, Any]) -> int:
    raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    entries = raw.get("fields", []) if isinstance(raw, dict) else raw
    fields = [MetadataField.model_validate(entry) for entry in entries]
    schema = await components["ingestion_service"].set_metadata_schema(args.notebook, fields)
    print(f"Metadata schema for '{args.notebook}': {', '.join(schema.field_names()) or '(empty)'}")
    return 0


async def _handle_stats(args: argparse.Namespace, components: dict[str, Any]) -> int:
    stats = await components["ingestion_service"].get_stats(args.notebook)

    print(f"Corpus Statistics{f' ({args.notebook})' if args.notebook else ''}")
    print("=" * 40)
    print(f"  Documents:        {stats.total_documents}")
    print(f"  Chunks:           {stats.total_chunks}")
    print(f"  Embeddings:       {stats.total_embeddings}")
    if stats.embedding_models:
        print(f"  Embedding models: {', '.join(stats.embedding_models)}")
    return 0


_HANDLERS = {
    "file": _handle_file,
    "directory": _handle_directory,
    "embed": _handle_embed,
    "list": _handle_list,
    "delete": _handle_delete,
    "schema": _handle_schema,
    "stats": _handle_stats,
}


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the ingestion CLI."""
    parser = argparse.ArgumentParser(
        prog="python -m notebookrag.cli ingest",
        description="Manage the documents of a notebook.",
    )
    parser.add_argument("--config", default=None, help="Path to a YAML config file")
    subparsers = parser.add_subparsers(dest="command", help="Ingestion commands")

    # -- file --
    file_parser = subparsers.add_parser("file", help="Ingest one .txt/.md/.pdf file")
    file_parser.add_argument("--notebook", required=True, help="Notebook id")
    file_parser.add_argument("--file", required=True, help="Path to the file")
    file_parser.add_argument("--no-wait", action="store_true", dest="no_wait", help="Only enqueue")

    # -- directory --
    dir_parser = subparsers.add_parser("directory", help="Ingest all files in a directory")
    dir_parser.add_argument("--notebook", required=True, help="Notebook id")
    dir_parser.add_argument("--path", required=True, help="Directory path")
    dir_parser.add_argument("--recursive", "-r", action="store_true", help="Descend into subdirectories")
    dir_parser.add_argument("--no-wait", action="store_true", dest="no_wait", help="Only enqueue")

    # -- embed --
    embed_parser = subparsers.add_parser("embed", help="Re-embed a document")
    embed_parser.add_argument("--document", required=True, help="Document id")
    embed_parser.add_argument("--no-wait", action="store_true", dest="no_wait", help="Only enqueue")

    # -- list --
    list_parser = subparsers.add_parser("list", help="List a notebook's documents")
    list_parser.add_argument("--notebook", required=True, help="Notebook id")

    # -- delete --
    delete_parser = subparsers.add_parser("delete", help="Delete a document")
    delete_parser.add_argument("--document", required=True, help="Document id")
    delete_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation prompt")

    # -- schema --
    schema_parser = subparsers.add_parser("schema", help="Replace a notebook's metadata schema")
    schema_parser.add_argument("--notebook", required=True, help="Notebook id")
    schema_parser.add_argument("--file", required=True, help="JSON file: a list of fields")

    # -- stats --
    stats_parser = subparsers.add_parser("stats", help="Show corpus statistics")
    stats_parser.add_argument("--notebook", default=None, help="Limit to one notebook")

    return parser


async def _run(args: argparse.Namespace) -> int:
    components = build_from_environment(args.config)
    await initialize_components(components)
    try:
        return await _HANDLERS[args.command](args, components)
    except NotebookRAGError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the ingestion tool."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
