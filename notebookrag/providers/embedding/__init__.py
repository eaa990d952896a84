"""Embedding provider implementations.

Two implementations of IEmbeddingProvider:
    1. OpenAIEmbeddingProvider - text-embedding-3-small (1536 dims), or any
       OpenAI-compatible embeddings endpoint.
    2. NomicEmbeddingProvider  - nomic-embed-text via Ollama (768 dims),
       free and local.

Vectors are stored under the label ``"{provider}-{model}"``, so switching
providers never mixes vectors of different models in one similarity query.
"""

from notebookrag.providers.embedding.nomic_embedding_provider import NomicEmbeddingProvider
from notebookrag.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider

__all__ = ["OpenAIEmbeddingProvider", "NomicEmbeddingProvider"]
