"""Document ingestion pipeline for notebook RAG.

Pipeline stages: **extract -> chunk -> tag -> embed**.

1. **Extract** (text_extraction.py) -- decodes text/markdown uploads and
   reads PDF text layers with PyMuPDF.
2. **Chunk** (chunker.py / TextChunker) -- deterministic, structure-aware
   splitting with overlap.
3. **Tag** (metadata_extractor.py / MetadataExtractor) -- fills the
   notebook's metadata schema from the document text via the LLM.
4. **Embed** (embedding_generator.py / EmbeddingGenerator) -- batched,
   hash-skipping embedding into the vector store.

IngestionService ties the stages together behind the job orchestrator.
"""

from notebookrag.services.ingestion.chunker import TextChunker
from notebookrag.services.ingestion.embedding_generator import EmbeddingGenerator
from notebookrag.services.ingestion.ingestion_service import IngestionService
from notebookrag.services.ingestion.metadata_extractor import MetadataExtractor

__all__ = [
    "EmbeddingGenerator",
    "IngestionService",
    "MetadataExtractor",
    "TextChunker",
]
