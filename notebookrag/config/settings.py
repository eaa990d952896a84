"""Application settings loaded from environment variables via pydantic-settings.

Values come from the process environment first, then from a ``.env`` file
in the working directory, then from the defaults below.  Field
``openai_api_key`` maps to ``OPENAI_API_KEY`` and so on.

Secrets and deployment-specific values live here; pipeline tunables
(chunk sizes, retry bounds, worker counts) live in ``config/config.yaml``
and are merged by :func:`notebookrag.config.loader.load_config`.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """notebook-rag application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # === LLM / embedding providers ===
    # Empty key = provider not configured; provider selection in cli/_factory.py
    # skips it and falls through to the next.
    openai_api_key: str = ""
    openai_base_url: str = ""  # OpenAI-compatible endpoints (TogetherAI, vLLM, ...)
    openai_text_model: str = ""
    openai_embedding_model: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = ""
    ollama_base_url: str = "http://localhost:11434"
    ollama_text_model: str = ""
    ollama_embedding_model: str = ""

    # Explicit selection ("openai" | "anthropic" | "ollama"); empty = priority order.
    llm_provider: str = ""
    embedding_provider: str = ""

    # === Storage ===
    database_path: str = "data/notebookrag.db"
    vector_backend: str = "sqlite"  # "sqlite" | "chromadb"
    chromadb_persist_dir: str = "./data/chromadb"
    chromadb_collection: str = "notebookrag_chunks"

    # === App Config ===
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_env: str = "development"
    log_level: str = "INFO"
    config_path: str = "config/config.yaml"
    start_workers: bool = True

    def get_available_llm_providers(self) -> list[str]:
        """Return LLM provider names that have credentials or a base URL configured."""
        providers: list[str] = []
        if self.anthropic_api_key:
            providers.append("anthropic")
        if self.openai_api_key:
            providers.append("openai")
        if self.ollama_base_url:
            providers.append("ollama")
        return providers
