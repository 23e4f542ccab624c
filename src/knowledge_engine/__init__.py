"""Hybrid knowledge retrieval and indexing engine.

Turns uploaded documents and manual text into chunked knowledge bases,
mirrors them into per-tenant vector indexes, and answers queries with
ranked, cited snippets from vector, lexical and exact-identifier matching.
"""

from src.knowledge_engine.config import KnowledgeEngineConfig, get_config
from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.engine import KnowledgeEngine
from src.knowledge_engine.models import (
    Chunk,
    ChunkMetadata,
    Citation,
    IndexTarget,
    KnowledgeBase,
    KnowledgeFile,
    KnowledgeGroup,
    RetrievalOrigin,
    RetrievalResult,
    SyncReport,
    UploadedFile,
)
from src.knowledge_engine.rag.retriever import HybridRetriever, KnowledgeProvider
from src.knowledge_engine.sync import KnowledgeSynchronizer
from src.knowledge_engine.tenant_index import TenantIndexManager
from src.knowledge_engine.vector_index import QdrantVectorIndex, VectorIndexProvider

__all__ = [
    "Chunk",
    "ChunkMetadata",
    "Citation",
    "EmbeddingClient",
    "HybridRetriever",
    "IndexTarget",
    "KnowledgeBase",
    "KnowledgeEngine",
    "KnowledgeEngineConfig",
    "KnowledgeFile",
    "KnowledgeGroup",
    "KnowledgeProvider",
    "KnowledgeSynchronizer",
    "QdrantVectorIndex",
    "RetrievalOrigin",
    "RetrievalResult",
    "SyncReport",
    "TenantIndexManager",
    "UploadedFile",
    "VectorIndexProvider",
    "get_config",
]
