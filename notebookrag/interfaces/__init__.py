"""Public interface definitions for every external collaborator.

Business logic talks to providers and stores only through the abstract
base classes defined here.  Concrete adapters are constructed once in
``notebookrag/main.py`` (or the CLI factory) from configuration and
injected into the services, so switching OpenAI for Ollama, or SQLite
vectors for ChromaDB, never touches service code.

CONCRETE PROVIDER MAP:
    Interface             →  Concrete implementations (notebookrag/providers/)
    ─────────────────────────────────────────────────────────────────────
    ILLMProvider          →  OpenAILLMProvider, AnthropicLLMProvider,
                             OllamaLLMProvider
    IEmbeddingProvider    →  OpenAIEmbeddingProvider, NomicEmbeddingProvider
    IVectorStoreProvider  →  SQLiteVectorStore, ChromaDBVectorStore
    IDocumentStore        →  SQLiteDocumentStore
    IJobStore             →  SQLiteJobStore
    IReportStore          →  SQLiteReportStore
    IChatStore            →  SQLiteChatStore
"""

from notebookrag.interfaces.chat_store import IChatStore
from notebookrag.interfaces.document_store import IDocumentStore
from notebookrag.interfaces.embedding_provider import IEmbeddingProvider
from notebookrag.interfaces.job_store import IJobStore
from notebookrag.interfaces.llm_provider import ILLMProvider
from notebookrag.interfaces.report_store import IReportStore
from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider

__all__ = [
    "IChatStore",
    "IDocumentStore",
    "IEmbeddingProvider",
    "IJobStore",
    "ILLMProvider",
    "IReportStore",
    "IVectorStoreProvider",
]
