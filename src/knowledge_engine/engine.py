"""Knowledge engine facade.

Wires chunking, extraction, embeddings, index provisioning, sync and
retrieval from one KnowledgeEngineConfig. Write operations return the new
KnowledgeBase value for the caller to persist and schedule a background
vector sync; the write succeeds even if that sync later fails.

Usage:
    engine = KnowledgeEngine.from_config()
    kb = await engine.set_manual_knowledge(kb, "Refunds take 5 days.")
    results = await engine.retrieve("refund window", [kb])
    await engine.aclose()
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import structlog

from src.knowledge_engine.config import KnowledgeEngineConfig, get_config
from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.ingestion.chunker import KnowledgeChunker
from src.knowledge_engine.ingestion.pipeline import KnowledgeIngestion, UploadContext, upsert_group
from src.knowledge_engine.models import (
    FileOutcome,
    KnowledgeBase,
    RetrievalResult,
    SyncReport,
    UploadedFile,
)
from src.knowledge_engine.rag.retriever import HybridRetriever, KnowledgeProvider
from src.knowledge_engine.sync import KnowledgeSynchronizer
from src.knowledge_engine.tenant_index import IndexReadinessCache, TenantIndexManager
from src.knowledge_engine.vector_index import QdrantVectorIndex, VectorIndexProvider

logger = structlog.get_logger(__name__)


class KnowledgeEngine:
    """Entry point for ingestion, sync and retrieval.

    Args:
        config: Engine configuration.
        provider: Vector index service.
        embeddings: Embedding client.
        cache: Index readiness cache shared by index managers.
    """

    def __init__(
        self,
        config: KnowledgeEngineConfig,
        provider: VectorIndexProvider,
        embeddings: EmbeddingClient,
        cache: IndexReadinessCache | None = None,
    ) -> None:
        self.config = config
        self.provider = provider
        self.embeddings = embeddings
        self.chunker = KnowledgeChunker(config.chunk_size, config.min_chunk_size)
        self.ingestion = KnowledgeIngestion(self.chunker, max_text_length=config.max_text_length)
        self.index_manager = TenantIndexManager(provider, config, cache=cache)
        self.synchronizer = KnowledgeSynchronizer(provider, embeddings, self.index_manager, config)
        self.retriever = HybridRetriever(provider, embeddings, config)

    @classmethod
    def from_config(cls, config: KnowledgeEngineConfig | None = None) -> KnowledgeEngine:
        """Build an engine backed by Qdrant and the configured embedding service."""
        settings = config or get_config()
        return cls(
            settings,
            QdrantVectorIndex.from_config(settings),
            EmbeddingClient.from_config(settings),
        )

    # ── Write Path ──────────────────────────────────────────────────────────

    async def set_manual_knowledge(
        self,
        kb: KnowledgeBase,
        text: str,
        updated_by: str | None = None,
    ) -> KnowledgeBase:
        updated = self.ingestion.apply_manual_knowledge(kb, text, updated_by)
        self.synchronizer.schedule_sync(updated.tenant_id, updated)
        return updated

    async def upload_files(
        self,
        kb: KnowledgeBase,
        uploads: Sequence[UploadedFile],
        context: UploadContext | None = None,
    ) -> tuple[KnowledgeBase, list[FileOutcome]]:
        """Attach uploads and schedule a sync when at least one file was added."""
        updated, outcomes = self.ingestion.append_files(kb, uploads, context)
        if any(outcome.ok for outcome in outcomes):
            self.synchronizer.schedule_sync(updated.tenant_id, updated)
        return updated, outcomes

    async def remove_file(
        self,
        kb: KnowledgeBase,
        file_id: str,
        updated_by: str | None = None,
    ) -> KnowledgeBase:
        updated = self.ingestion.remove_file(kb, file_id, updated_by)
        self.synchronizer.schedule_sync(updated.tenant_id, updated)
        return updated

    def upsert_group(
        self,
        kb: KnowledgeBase,
        group_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> KnowledgeBase:
        """Add or rename a group. Groups carry no vectors, so no sync is scheduled."""
        return upsert_group(kb, group_id, name, description)

    async def delete_knowledge_base(self, tenant_id: str, kb_id: str) -> asyncio.Task:
        """Schedule removal of the knowledge base's vectors."""
        return self.synchronizer.schedule_delete(tenant_id, kb_id)

    async def sync(self, kb: KnowledgeBase) -> SyncReport:
        """Sync a knowledge base now and wait for the report."""
        return await self.synchronizer.sync(kb.tenant_id, kb)

    # ── Read Path ───────────────────────────────────────────────────────────

    async def retrieve(
        self,
        query: str,
        knowledge_bases: Sequence[KnowledgeBase],
        top_k: int | None = None,
        tenant_id: str | None = None,
    ) -> list[RetrievalResult]:
        return await self.retriever.retrieve(query, knowledge_bases, top_k, tenant_id=tenant_id)

    def provider_for(
        self,
        knowledge_bases: Sequence[KnowledgeBase],
        tenant_id: str | None = None,
    ) -> KnowledgeProvider:
        return self.retriever.provider_for(knowledge_bases, tenant_id)

    async def aclose(self) -> None:
        """Wait for background syncs, then release HTTP and index clients."""
        await self.synchronizer.drain()
        await self.embeddings.aclose()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        logger.info("knowledge_engine.closed")
