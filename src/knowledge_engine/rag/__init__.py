"""Query-time retrieval for knowledge bases.

Components:
- HybridRetriever: vector search + exact-id + lexical matching, ranked and cited
- KnowledgeProvider: per-turn retrieval interface for the conversation manager
- CompositeKnowledgeProvider: merges several providers with one rank/dedup rule
"""

from src.knowledge_engine.rag.retriever import (
    CompositeKnowledgeProvider,
    HybridRetriever,
    KnowledgeProvider,
)

__all__ = [
    "CompositeKnowledgeProvider",
    "HybridRetriever",
    "KnowledgeProvider",
]
