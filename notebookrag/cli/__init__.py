# =============================================================================
# notebookrag/cli/__init__.py - CLI Module Overview
# =============================================================================
#
# Command-line tools for operators and developers working with notebooks
# outside the HTTP API.  Four tools share one wiring module (_factory.py),
# which is also what main.py uses, so the CLI and the API always select
# the same providers and open the same database:
#
#   1. INGEST (ingest.py)
#      Upload files into a notebook, re-embed, list, delete, set the
#      metadata schema, and show corpus statistics.
#
#   2. SEARCH (search.py)
#      Semantic and batch search, plus an interactive streaming chat.
#
#   3. REPORT (report.py)
#      Create templates, generate reports, inspect and retry sections.
#
#   4. WORKER (worker.py)
#      Run the background job worker pool; inspect, cancel, and reap jobs.
#
# Architecture Notes:
#   - All CLI modules use argparse for argument parsing.
#   - Each tool builds the full component graph once per invocation and
#     runs the submitted jobs inline unless told to only enqueue them.
# =============================================================================

"""CLI tools for notebook-rag.

- ``python -m notebookrag.cli ingest`` - manage a notebook's documents
- ``python -m notebookrag.cli search`` - search and chat
- ``python -m notebookrag.cli report`` - report templates and generation
- ``python -m notebookrag.cli worker`` - background job workers
"""
