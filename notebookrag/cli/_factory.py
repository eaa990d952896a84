"""Provider selection and service assembly shared by the CLI and the API.

Every concrete class is chosen here, once, from :class:`Settings` and the
merged YAML config; the rest of the code base only sees interfaces.

Provider selection:
  - LLM:        LLM_PROVIDER if set, else Anthropic -> OpenAI -> Ollama
  - Embedding:  EMBEDDING_PROVIDER if set, else OpenAI -> Nomic/Ollama
  - Vectors:    VECTOR_BACKEND ("sqlite" default, or "chromadb")
"""

from __future__ import annotations

from typing import Any

import structlog

from notebookrag.config.loader import load_config
from notebookrag.config.settings import Settings
from notebookrag.interfaces.document_store import IDocumentStore
from notebookrag.interfaces.embedding_provider import IEmbeddingProvider
from notebookrag.interfaces.llm_provider import ILLMProvider
from notebookrag.interfaces.vector_store_provider import IVectorStoreProvider
from notebookrag.models.job import JobKind
from notebookrag.pipeline.events import JobEvents
from notebookrag.pipeline.job_orchestrator import JobOrchestrator
from notebookrag.providers.embedding import NomicEmbeddingProvider, OpenAIEmbeddingProvider
from notebookrag.providers.llm import AnthropicLLMProvider, OllamaLLMProvider, OpenAILLMProvider
from notebookrag.providers.storage import (
    SQLiteChatStore,
    SQLiteDocumentStore,
    SQLiteJobStore,
    SQLiteReportStore,
)
from notebookrag.providers.vector_store import ChromaDBVectorStore, SQLiteVectorStore
from notebookrag.services.chat_service import ChatService
from notebookrag.services.ingestion import (
    EmbeddingGenerator,
    IngestionService,
    MetadataExtractor,
    TextChunker,
)
from notebookrag.services.report_coordinator import ReportCoordinator
from notebookrag.services.retriever import VectorRetriever
from notebookrag.utils.concurrency import get_throttle
from notebookrag.utils.errors import ConfigurationError
from notebookrag.utils.logging import configure_logging

logger = structlog.get_logger(logger_name=__name__)

_LLM_PROVIDERS = {
    "anthropic": AnthropicLLMProvider,
    "openai": OpenAILLMProvider,
    "ollama": OllamaLLMProvider,
}

_EMBEDDING_PROVIDERS = {
    "openai": OpenAIEmbeddingProvider,
    "ollama": NomicEmbeddingProvider,
    "nomic": NomicEmbeddingProvider,
}


def build_llm_provider(settings: Settings) -> ILLMProvider:
    """Return the configured LLM provider, or the first available one."""
    if settings.llm_provider:
        cls = _LLM_PROVIDERS.get(settings.llm_provider.lower())
        if cls is None:
            raise ConfigurationError(
                message=f"Unknown LLM_PROVIDER {settings.llm_provider!r}; "
                f"expected one of {sorted(_LLM_PROVIDERS)}"
            )
        provider = cls(settings=settings)
        if not provider.is_available():
            raise ConfigurationError(
                message=f"LLM provider {settings.llm_provider!r} is not configured",
                provider_name=settings.llm_provider,
            )
        return provider

    if settings.anthropic_api_key:
        return AnthropicLLMProvider(settings=settings)
    if settings.openai_api_key:
        return OpenAILLMProvider(settings=settings)
    return OllamaLLMProvider(settings=settings)


def build_embedding_provider(settings: Settings) -> IEmbeddingProvider:
    """Return the configured embedding provider, or the first available one.

    Raises
    ------
    ConfigurationError
        When no embedding backend is configured or reachable.
    """
    if settings.embedding_provider:
        cls = _EMBEDDING_PROVIDERS.get(settings.embedding_provider.lower())
        if cls is None:
            raise ConfigurationError(
                message=f"Unknown EMBEDDING_PROVIDER {settings.embedding_provider!r}; "
                f"expected one of {sorted(_EMBEDDING_PROVIDERS)}"
            )
        return cls(settings=settings)

    if settings.openai_api_key:
        provider: IEmbeddingProvider = OpenAIEmbeddingProvider(settings=settings)
        if provider.is_available():
            return provider

    provider = NomicEmbeddingProvider(settings=settings)
    if provider.is_available():
        return provider

    raise ConfigurationError(
        message="No embedding provider available: set OPENAI_API_KEY or run Ollama "
        f"at {settings.ollama_base_url}"
    )


def build_vector_store(settings: Settings, document_store: IDocumentStore) -> IVectorStoreProvider:
    backend = settings.vector_backend.lower()
    if backend == "sqlite":
        return SQLiteVectorStore(db_path=settings.database_path)
    if backend == "chromadb":
        return ChromaDBVectorStore(
            document_store=document_store,
            persist_directory=settings.chromadb_persist_dir,
            collection_prefix=settings.chromadb_collection,
        )
    raise ConfigurationError(message=f"Unknown VECTOR_BACKEND {settings.vector_backend!r}")


def build_components(
    settings: Settings,
    config: dict[str, Any],
    llm: ILLMProvider | None = None,
    embedding_provider: IEmbeddingProvider | None = None,
) -> dict[str, Any]:
    """Construct every store, provider and service.

    *llm* and *embedding_provider* override provider selection (tests pass
    fakes here).  Returns a flat dict of named components.
    """
    llm = llm or build_llm_provider(settings)
    embedding_provider = embedding_provider or build_embedding_provider(settings)

    limits = config["providers"]["max_concurrency"]
    for name in {llm.get_provider_name(), embedding_provider.get_provider_name()}:
        get_throttle(name, limits.get(name, limits.get("default", 4)))

    document_store = SQLiteDocumentStore(db_path=settings.database_path)
    job_store = SQLiteJobStore(db_path=settings.database_path)
    report_store = SQLiteReportStore(db_path=settings.database_path)
    chat_store = SQLiteChatStore(db_path=settings.database_path)
    vector_store = build_vector_store(settings, document_store)

    events = JobEvents()
    jobs_cfg = config["jobs"]
    orchestrator = JobOrchestrator(
        job_store,
        events=events,
        worker_count=jobs_cfg["worker_count"],
        poll_interval=jobs_cfg["poll_interval"],
        liveness_timeout=jobs_cfg["liveness_timeout"],
        heartbeat_interval=jobs_cfg["heartbeat_interval"],
        max_attempts=jobs_cfg["max_attempts"],
        retry_backoff_base=jobs_cfg["retry_backoff_base"],
    )

    embedding_cfg = config["embedding"]
    embedding_generator = EmbeddingGenerator(
        embedding_provider,
        vector_store,
        batch_size=embedding_cfg["batch_size"],
        max_attempts=embedding_cfg["max_attempts"],
        backoff_base=embedding_cfg["backoff_base"],
    )
    retrieval_cfg = config["retrieval"]
    retriever = VectorRetriever(
        embedding_generator,
        vector_store,
        default_top_k=retrieval_cfg["top_k"],
        default_threshold=retrieval_cfg["threshold"],
    )

    chunking_cfg = config["chunking"]
    chunker = TextChunker(
        chunk_size=chunking_cfg["chunk_size"],
        overlap=chunking_cfg["overlap"],
        lookahead=chunking_cfg["lookahead"],
    )
    metadata_cfg = config["metadata"]
    metadata_extractor = MetadataExtractor(
        llm,
        max_chars=metadata_cfg["max_chars"],
        temperature=metadata_cfg["temperature"],
        max_concurrent=metadata_cfg["max_concurrent"],
    )
    ingestion_service = IngestionService(
        document_store,
        vector_store,
        chunker,
        metadata_extractor,
        embedding_generator,
        orchestrator,
        dedupe_by_content_hash=config["ingestion"]["dedupe_by_content_hash"],
    )

    reports_cfg = config["reports"]
    report_coordinator = ReportCoordinator(
        report_store,
        retriever,
        llm,
        orchestrator=orchestrator,
        events=events,
        section_top_k=reports_cfg["section_top_k"],
        max_tokens=reports_cfg["max_tokens"],
    )
    chat_cfg = config["chat"]
    chat_service = ChatService(
        chat_store,
        retriever,
        llm,
        top_k=chat_cfg["top_k"],
        history_turns=chat_cfg["history_turns"],
        max_tokens=chat_cfg["max_tokens"],
    )

    orchestrator.register(JobKind.INGEST, ingestion_service.handle_ingest_job)
    orchestrator.register(JobKind.EMBED, ingestion_service.handle_embed_job)
    orchestrator.register(JobKind.REPORT_SECTION, report_coordinator.handle_section_job)
    orchestrator.on_terminal_failure(JobKind.REPORT_SECTION, report_coordinator.handle_section_stopped)
    orchestrator.register(JobKind.BATCH_SEARCH, retriever.handle_batch_search_job)

    logger.info(
        "components_built",
        llm=llm.get_provider_name(),
        llm_model=llm.get_model_name(),
        embedding=embedding_generator.model_label,
        vector_store=vector_store.get_provider_name(),
        database=settings.database_path,
    )
    return {
        "settings": settings,
        "config": config,
        "llm": llm,
        "embedding_provider": embedding_provider,
        "document_store": document_store,
        "vector_store": vector_store,
        "job_store": job_store,
        "report_store": report_store,
        "chat_store": chat_store,
        "events": events,
        "orchestrator": orchestrator,
        "embedding_generator": embedding_generator,
        "retriever": retriever,
        "ingestion_service": ingestion_service,
        "report_coordinator": report_coordinator,
        "chat_service": chat_service,
    }


async def initialize_components(components: dict[str, Any]) -> None:
    """Create the backing tables of every store."""
    for key in ("document_store", "vector_store", "job_store", "report_store", "chat_store"):
        await components[key].initialize()


def build_from_environment(config_path: str | None = None) -> dict[str, Any]:
    """Load Settings and YAML config, configure logging, and build everything.

    Used by the one-shot CLI tools; the API builds from module-level
    settings in main.py instead.
    """
    settings = Settings()
    config = load_config(config_path, settings=settings)
    configure_logging(log_level=settings.log_level, json_output=False)
    return build_components(settings, config)
