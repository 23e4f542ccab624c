"""Mirror a knowledge base's chunk set into its vector index targets.

Sync is a full replace per target: embed every chunk, ensure the index
exists for the observed dimension, clear the namespace, then upsert one
vector per chunk. A knowledge base without chunks just clears its
namespaces. Dependency failures are logged and reported in the returned
SyncReport; they are never raised to the caller.

Only one sync or delete runs at a time per knowledge base id. Upload and
removal flows call ``schedule_sync`` / ``schedule_delete`` and do not wait.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import uuid
import weakref
from typing import Any

import structlog

from src.knowledge_engine.config import KnowledgeEngineConfig
from src.knowledge_engine.embeddings import EmbeddingClient
from src.knowledge_engine.errors import InvalidRequestError
from src.knowledge_engine.models import (
    Chunk,
    ChunkMetadata,
    IndexTarget,
    KnowledgeBase,
    SyncReport,
)
from src.knowledge_engine.targets import resolve_index_targets
from src.knowledge_engine.tenant_index import (
    TenantIndexManager,
    is_not_found,
    sanitize_index_name,
    sanitize_namespace,
)
from src.knowledge_engine.vector_index import VectorIndexProvider, VectorRecord

logger = structlog.get_logger(__name__)

# Payload keys written by the synchronizer itself; everything else is chunk metadata
RESERVED_PAYLOAD_KEYS = frozenset({
    "tenant_id",
    "knowledge_base_id",
    "knowledge_base_title",
    "chunk_id",
    "source_type",
    "source_name",
    "text",
    "chunk_index",
    "chunk_count",
    "namespace",
})

_METADATA_FIELDS = tuple(name for name in ChunkMetadata.model_fields if name not in ("keywords", "extra"))


def hash_chunk_id(chunk_id: str) -> str:
    """Deterministic vector id: a UUID built from the SHA-256 of the chunk id."""
    digest = hashlib.sha256(chunk_id.encode("utf-8")).hexdigest()
    return str(uuid.UUID(digest[:32]))


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def flatten_metadata(metadata: ChunkMetadata) -> dict[str, Any]:
    """Flatten chunk metadata into index payload values.

    Typed fields are copied when set; keywords stay a list of strings;
    extras keep scalars and JSON-encode everything else.
    """
    payload: dict[str, Any] = {
        name: getattr(metadata, name)
        for name in _METADATA_FIELDS
        if getattr(metadata, name) is not None
    }
    if metadata.keywords:
        payload["keywords"] = [str(word) for word in metadata.keywords]
    for key, value in metadata.extra.items():
        if key in RESERVED_PAYLOAD_KEYS or key in payload:
            continue
        payload[key] = value if _is_scalar(value) else json.dumps(value, default=str)
    return payload


def metadata_from_payload(payload: dict[str, Any]) -> ChunkMetadata:
    """Rebuild ChunkMetadata from a vector payload written by flatten_metadata."""
    known = {name: payload[name] for name in _METADATA_FIELDS if payload.get(name) is not None}
    keywords = payload.get("keywords")
    if isinstance(keywords, str):
        try:
            keywords = json.loads(keywords)
        except ValueError:
            keywords = [keywords]
    extra = {
        key: value
        for key, value in payload.items()
        if key not in RESERVED_PAYLOAD_KEYS and key not in known and key != "keywords"
    }
    return ChunkMetadata(
        **known,
        keywords=tuple(str(k) for k in keywords) if isinstance(keywords, list) else (),
        extra=extra,
    )


class KnowledgeSynchronizer:
    """Keeps vector index namespaces in step with knowledge base chunks.

    Args:
        provider: Vector index service.
        embeddings: Embedding client.
        index_manager: Tenant index provisioning.
        config: Batch size, stored text limit and index prefix.
    """

    def __init__(
        self,
        provider: VectorIndexProvider,
        embeddings: EmbeddingClient,
        index_manager: TenantIndexManager,
        config: KnowledgeEngineConfig,
    ) -> None:
        self._provider = provider
        self._embeddings = embeddings
        self._index_manager = index_manager
        self._config = config
        # Entries disappear once no sync or delete holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task] = set()

    def _lock_for(self, kb_id: str) -> asyncio.Lock:
        lock = self._locks.get(kb_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[kb_id] = lock
        return lock

    def _targets(self, tenant_id: str, kb: KnowledgeBase) -> list[IndexTarget]:
        return resolve_index_targets(kb, tenant_id, prefix=self._config.index_prefix)

    async def _clear(self, target: IndexTarget) -> None:
        try:
            await self._provider.delete_all(target.index_name, target.namespace)
        except Exception as e:
            if not is_not_found(e):
                raise

    def _payload(self, tenant_id: str, kb: KnowledgeBase, chunk: Chunk) -> dict[str, Any]:
        return {
            "tenant_id": tenant_id,
            "knowledge_base_id": kb.id,
            "knowledge_base_title": kb.title or "",
            "chunk_id": chunk.id,
            "source_type": chunk.source_type,
            "source_name": chunk.source_name or "",
            "text": chunk.text[: self._config.vector_text_limit],
            "chunk_index": chunk.chunk_index,
            "chunk_count": chunk.chunk_count,
            **flatten_metadata(chunk.metadata),
        }

    async def sync(self, tenant_id: str, kb: KnowledgeBase) -> SyncReport:
        """Replace every target namespace's vectors with the current chunks.

        Raises:
            InvalidRequestError: If tenant_id or the knowledge base id is empty.
        """
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        if not kb.id:
            raise InvalidRequestError("knowledge base id is required")

        async with self._lock_for(kb.id):
            return await self._sync_locked(tenant_id, kb)

    async def _sync_locked(self, tenant_id: str, kb: KnowledgeBase) -> SyncReport:
        chunks = [chunk for chunk in kb.chunks if chunk.text.strip()]
        targets = self._targets(tenant_id, kb)
        log = logger.bind(tenant_id=tenant_id, knowledge_base_id=kb.id)

        if not chunks:
            errors: list[str] = []
            for target in targets:
                try:
                    await self._clear(target)
                except Exception as e:
                    log.warning("knowledge_sync.clear_failed", index_name=target.index_name, error=str(e))
                    errors.append(f"{target.key}: {e}")
            log.info("knowledge_sync.cleared", targets=len(targets))
            return SyncReport(
                knowledge_base_id=kb.id,
                status="failed" if errors and len(errors) == len(targets) else "cleared",
                targets=targets,
                errors=errors,
            )

        try:
            vectors = await self._embeddings.embed([chunk.text for chunk in chunks])
        except Exception as e:
            log.error("knowledge_sync.embedding_failed", chunk_count=len(chunks), error=str(e))
            return SyncReport(knowledge_base_id=kb.id, status="failed", targets=targets, errors=[str(e)])

        dimension = len(vectors[0]) if vectors else 0
        if not dimension:
            log.warning("knowledge_sync.skipped", reason="embedding dimension missing")
            return SyncReport(knowledge_base_id=kb.id, status="skipped", targets=targets)

        records = [
            VectorRecord(id=hash_chunk_id(chunk.id), values=vector, metadata=self._payload(tenant_id, kb, chunk))
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]

        written: list[IndexTarget] = []
        errors = []
        batch_size = self._config.upsert_batch_size
        for target in targets:
            try:
                await self._index_manager.ensure_named_index(target.index_name, dimension)
                await self._clear(target)
                for start in range(0, len(records), batch_size):
                    await self._provider.upsert(
                        target.index_name, target.namespace, records[start:start + batch_size]
                    )
            except Exception as e:
                log.warning(
                    "knowledge_sync.target_failed",
                    index_name=target.index_name,
                    namespace=target.namespace,
                    error=str(e),
                )
                errors.append(f"{target.key}: {e}")
                continue
            written.append(target)

        log.info(
            "knowledge_sync.completed",
            vector_count=len(records),
            targets=[t.key for t in written],
            failed=len(errors),
        )
        return SyncReport(
            knowledge_base_id=kb.id,
            status="synced" if written else "failed",
            vector_count=len(records) if written else 0,
            targets=written,
            errors=errors,
        )

    async def delete(self, tenant_id: str, kb_id: str) -> SyncReport:
        """Clear the knowledge base's default namespace; absence counts as success.

        Raises:
            InvalidRequestError: If tenant_id or kb_id is empty.
        """
        if not tenant_id:
            raise InvalidRequestError("tenant_id is required")
        if not kb_id:
            raise InvalidRequestError("knowledge base id is required")

        target = IndexTarget(
            index_name=sanitize_index_name(tenant_id, prefix=self._config.index_prefix),
            namespace=sanitize_namespace(f"floppy-{kb_id}"),
        )
        async with self._lock_for(kb_id):
            try:
                await self._clear(target)
            except Exception as e:
                logger.warning("knowledge_sync.delete_failed", knowledge_base_id=kb_id, error=str(e))
                return SyncReport(knowledge_base_id=kb_id, status="failed", targets=[target], errors=[str(e)])

        logger.info("knowledge_sync.deleted", knowledge_base_id=kb_id, index_name=target.index_name)
        return SyncReport(knowledge_base_id=kb_id, status="cleared", targets=[target])

    # ── Background Scheduling ───────────────────────────────────────────────

    def _track(self, task: asyncio.Task, kb_id: str, operation: str) -> asyncio.Task:
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.error(
                    "knowledge_sync.background_failed",
                    operation=operation,
                    knowledge_base_id=kb_id,
                    error=str(error),
                )

        task.add_done_callback(_done)
        return task

    def schedule_sync(self, tenant_id: str, kb: KnowledgeBase) -> asyncio.Task:
        """Start a background sync and return its task without awaiting it."""
        task = asyncio.create_task(self.sync(tenant_id, kb), name=f"knowledge-sync:{kb.id}")
        return self._track(task, kb.id, "sync")

    def schedule_delete(self, tenant_id: str, kb_id: str) -> asyncio.Task:
        """Start a background namespace delete and return its task."""
        task = asyncio.create_task(self.delete(tenant_id, kb_id), name=f"knowledge-delete:{kb_id}")
        return self._track(task, kb_id, "delete")

    async def drain(self) -> None:
        """Wait for every scheduled background task to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
