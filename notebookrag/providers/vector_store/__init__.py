"""Vector store provider implementations.

``SQLiteVectorStore`` is the default: vectors live next to the chunks in the
main database and are scored with numpy.  ``ChromaDBVectorStore`` keeps one
persistent ChromaDB collection per embedding model.  Select with
``VECTOR_BACKEND=sqlite|chromadb``.
"""

from notebookrag.providers.vector_store.chromadb_provider import ChromaDBVectorStore
from notebookrag.providers.vector_store.filters import matches_filter, validate_filter
from notebookrag.providers.vector_store.sqlite_vector_store import SQLiteVectorStore

__all__ = ["ChromaDBVectorStore", "SQLiteVectorStore", "matches_filter", "validate_filter"]
