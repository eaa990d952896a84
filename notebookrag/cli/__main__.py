# =============================================================================
# notebookrag/cli/__main__.py - Package Entry Point
# =============================================================================
#
# Enables running the CLI package itself as a module:
#     python -m notebookrag.cli <tool> [args...]
#
# The first argument picks the tool; the rest is passed to that tool's
# argparse parser.  Each tool can also be run directly:
#     python -m notebookrag.cli.ingest stats
# =============================================================================

"""Dispatch ``python -m notebookrag.cli <tool>`` to a CLI tool."""

import sys

from notebookrag.cli import ingest, report, search, worker

_TOOLS = {
    "ingest": ingest.main,
    "search": search.main,
    "report": report.main,
    "worker": worker.main,
    # Job inspection (status, cancel, reap) lives in the worker tool.
    "jobs": worker.main,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in _TOOLS:
        print(f"usage: python -m notebookrag.cli {{{','.join(_TOOLS)}}} ...", file=sys.stderr)
        sys.exit(1)
    _TOOLS[sys.argv[1]](sys.argv[2:])


if __name__ == "__main__":
    main()
