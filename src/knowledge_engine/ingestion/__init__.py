"""Document ingestion for knowledge bases.

The flow for an upload is:

    extract_document() -> KnowledgeChunker.build_chunks()
    -> KnowledgeIngestion.append_files() -> new KnowledgeBase value

Manual knowledge text skips extraction and is chunked directly.
"""

from src.knowledge_engine.ingestion.chunker import KnowledgeChunker, chunk_text, prepare_tabular_content
from src.knowledge_engine.ingestion.loaders import ExtractedDocument, extract_document
from src.knowledge_engine.ingestion.pipeline import KnowledgeIngestion, UploadContext

__all__ = [
    "ExtractedDocument",
    "KnowledgeChunker",
    "KnowledgeIngestion",
    "UploadContext",
    "chunk_text",
    "extract_document",
    "prepare_tabular_content",
]
