"""Pydantic models for the knowledge engine domain.

Defines the values shared by ingestion, synchronization and retrieval:
chunks with typed metadata, knowledge bases (immutable, updated by
returning new values), index targets, and retrieval results with
citations. These models are the contract between the engine and its
callers (document store, conversation manager).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ── Metadata ────────────────────────────────────────────────────────────────


class ChunkMetadata(BaseModel):
    """Provenance and display metadata attached to a chunk.

    Well-known fields are typed; anything else a caller wants to carry
    lives in ``extra`` and must be JSON-serializable.

    Attributes:
        source: Generic source tag ("manual", "file").
        filename: Original upload filename.
        mimetype: Declared MIME type of the upload.
        size: Upload size in bytes.
        group_id: Knowledge group the source belongs to.
        group_name: Display name of that group.
        title: Human title for the source.
        document_title: Title embedded in the document itself.
        url: Link shown alongside citations.
        keywords: Keywords for UI display.
        extra: Caller-defined extension fields.
    """

    model_config = ConfigDict(frozen=True)

    source: str | None = None
    filename: str | None = None
    mimetype: str | None = None
    size: int | None = None
    group_id: str | None = None
    group_name: str | None = None
    title: str | None = None
    document_title: str | None = None
    url: str | None = None
    keywords: tuple[str, ...] = ()
    extra: dict[str, Any] = Field(default_factory=dict)


# ── Chunk ───────────────────────────────────────────────────────────────────


class Chunk(BaseModel):
    """An immutable unit of retrievable knowledge.

    Attributes:
        id: Stable "{base_id}:{ordinal}" or "{base_id}:{ordinal}:{uuid}".
        text: Normalized, non-empty text.
        source_id: Identifier of the manual note or file this came from.
        source_type: Whether the chunk came from manual text or a file.
        source_name: Display name of the source.
        chunk_index: Zero-based position within the source.
        chunk_count: Number of chunks the source produced.
        metadata: Provenance metadata.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    text: str = Field(min_length=1)
    source_id: str
    source_type: Literal["manual", "file"]
    source_name: str = ""
    chunk_index: int = 0
    chunk_count: int = 1
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


class ChunkSource(BaseModel):
    """Where a batch of chunks comes from; copied onto every chunk produced."""

    id: str
    type: Literal["manual", "file"]
    name: str = ""
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)


# ── Knowledge Base ──────────────────────────────────────────────────────────


class KnowledgeGroup(BaseModel):
    """A UI/metadata partition of a knowledge base's files.

    ``index_name`` and ``namespace`` optionally route the group's knowledge
    base to an additional vector index target.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled context"
    description: str = ""
    index_name: str | None = None
    namespace: str | None = None


class KnowledgeFile(BaseModel):
    """A file uploaded into a knowledge base and the chunks it produced."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = "Document"
    mimetype: str | None = None
    size: int | None = None
    uploaded_by: str | None = None
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    group_id: str | None = None
    chunks: tuple[Chunk, ...] = ()

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)


class KnowledgeBase(BaseModel):
    """A tenant-owned collection of chunks ("floppy").

    Values are immutable: every update operation returns a new
    KnowledgeBase, and the document store persists it.

    Attributes:
        id: Knowledge base identifier.
        tenant_id: Owning tenant.
        title: Display title.
        manual_text: Raw manual knowledge as entered by the admin.
        manual_chunks: Chunks derived from manual_text.
        files: Uploaded files with their chunks.
        groups: UI groups for files.
        routing: Caller-supplied vector index routing metadata (JSON). May
            contain "namespace", "targets", "indexes" or "index_names".
        updated_at: Last modification time.
        updated_by: Last modifying user.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    title: str = ""
    manual_text: str = ""
    manual_chunks: tuple[Chunk, ...] = ()
    files: tuple[KnowledgeFile, ...] = ()
    groups: tuple[KnowledgeGroup, ...] = ()
    routing: dict[str, Any] | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_by: str | None = None

    @property
    def chunks(self) -> list[Chunk]:
        """Manual chunks followed by every file's chunks."""
        file_chunks = [chunk for file in self.files for chunk in file.chunks]
        return [*self.manual_chunks, *file_chunks]

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def group(self, group_id: str | None) -> KnowledgeGroup | None:
        if not group_id:
            return None
        return next((g for g in self.groups if g.id == group_id), None)


# ── Uploads ─────────────────────────────────────────────────────────────────


class UploadedFile(BaseModel):
    """Raw bytes of an upload plus its declared name and MIME type."""

    filename: str = ""
    mimetype: str = ""
    content: bytes = b""

    @property
    def size(self) -> int:
        return len(self.content)


class FileOutcome(BaseModel):
    """Per-file result of an upload batch.

    Exactly one of ``file_id`` (success), ``error`` or ``skipped`` is set.
    """

    name: str
    file_id: str | None = None
    chunk_count: int = 0
    group_id: str | None = None
    error: str | None = None
    skipped: Literal["empty"] | None = None

    @property
    def ok(self) -> bool:
        return self.file_id is not None


# ── Index Targets ───────────────────────────────────────────────────────────


class IndexTarget(BaseModel):
    """Where a knowledge base's vectors live."""

    model_config = ConfigDict(frozen=True)

    index_name: str
    namespace: str

    @property
    def key(self) -> str:
        return f"{self.index_name}::{self.namespace}"


# ── Retrieval ───────────────────────────────────────────────────────────────


class RetrievalOrigin(str, Enum):
    vector = "vector"
    exact_id = "exact-id"
    lexical = "lexical"


class Citation(BaseModel):
    """Human-facing provenance for a retrieval result."""

    label: str
    url: str | None = None
    index_name: str | None = None
    namespace: str | None = None
    keywords: list[str] = Field(default_factory=list)


class RetrievalResult(BaseModel):
    """A ranked context snippet handed to the conversation manager.

    Attributes:
        chunk_id: Identifier of the underlying chunk (unique per result list).
        score: Relevance between 0.0 and 1.0.
        origin: Which retrieval strategy produced this result.
        text: Snippet text.
        metadata: Chunk metadata (reconstructed from the index for vector hits).
        citation: Source label, URL, index/namespace and keywords.
        matched_identifiers: Exact identifiers from the query found in the text.
    """

    chunk_id: str
    score: float = Field(ge=0.0, le=1.0)
    origin: RetrievalOrigin
    text: str
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    citation: Citation
    matched_identifiers: list[str] = Field(default_factory=list)


# ── Sync ────────────────────────────────────────────────────────────────────


class SyncReport(BaseModel):
    """Outcome of a knowledge base sync or namespace delete."""

    knowledge_base_id: str
    status: Literal["synced", "cleared", "failed", "skipped"]
    vector_count: int = 0
    targets: list[IndexTarget] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
