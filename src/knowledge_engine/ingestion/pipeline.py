"""Knowledge base update operations: manual text, file uploads, file removal.

Every operation takes the current KnowledgeBase value plus a delta and
returns a new value; nothing is mutated in place. The caller persists the
result and triggers a vector sync.

    extract_document() -> KnowledgeChunker.build_chunks() -> KnowledgeFile
    -> KnowledgeBase.model_copy(update=...)

Per-file failures during upload become FileOutcome records; the rest of
the batch continues.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel

from src.knowledge_engine.errors import KnowledgeFileNotFoundError
from src.knowledge_engine.ingestion.chunker import KnowledgeChunker
from src.knowledge_engine.ingestion.loaders import DEFAULT_MAX_TEXT_LENGTH, extract_document
from src.knowledge_engine.models import (
    ChunkMetadata,
    ChunkSource,
    FileOutcome,
    KnowledgeBase,
    KnowledgeFile,
    KnowledgeGroup,
    UploadedFile,
)

logger = structlog.get_logger(__name__)

MANUAL_SOURCE_NAME = "Manual knowledge"


class UploadContext(BaseModel):
    """Who is uploading and which group the files belong to."""

    uploaded_by: str | None = None
    group_id: str | None = None
    group_name: str | None = None
    group_description: str | None = None


def sanitize_groups(groups: Iterable[Any] | None) -> tuple[KnowledgeGroup, ...]:
    """Coerce loose group records into KnowledgeGroup values.

    Missing ids get a fresh UUID, names and descriptions are trimmed and a
    blank name becomes "Untitled context".
    """
    cleaned: list[KnowledgeGroup] = []
    for raw in groups or []:
        if isinstance(raw, KnowledgeGroup):
            data = raw.model_dump()
        elif isinstance(raw, dict):
            data = dict(raw)
        else:
            continue
        name = str(data.get("name") or "").strip()
        cleaned.append(
            KnowledgeGroup(
                id=str(data.get("id") or uuid.uuid4()),
                name=name or "Untitled context",
                description=str(data.get("description") or "").strip(),
                index_name=data.get("index_name") or None,
                namespace=data.get("namespace") or None,
            )
        )
    return tuple(cleaned)


def upsert_group(
    kb: KnowledgeBase,
    group_id: str,
    name: str | None = None,
    description: str | None = None,
) -> KnowledgeBase:
    """Create a group or update an existing one's name/description."""
    groups = list(sanitize_groups(kb.groups))
    for i, group in enumerate(groups):
        if group.id == group_id:
            update: dict[str, Any] = {}
            if name:
                update["name"] = name
            if description is not None:
                update["description"] = description
            groups[i] = group.model_copy(update=update)
            break
    else:
        groups.append(
            KnowledgeGroup(
                id=group_id,
                name=name or "Untitled context",
                description=description or "",
            )
        )
    return kb.model_copy(update={"groups": tuple(groups)})


class KnowledgeIngestion:
    """Builds new KnowledgeBase values from manual text and uploaded files.

    Args:
        chunker: Size-bounded chunker.
        max_text_length: Cap on extracted text per file.
    """

    def __init__(
        self,
        chunker: KnowledgeChunker,
        max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
    ) -> None:
        self._chunker = chunker
        self._max_text_length = max_text_length

    def apply_manual_knowledge(
        self,
        kb: KnowledgeBase,
        text: str,
        updated_by: str | None = None,
    ) -> KnowledgeBase:
        """Replace the manual knowledge text and its chunks.

        Manual chunks use stable ids ("{kb_id}:manual:{n}") so unchanged
        text keeps its citations across edits.
        """
        raw = text if isinstance(text, str) else ""
        chunks = []
        if raw.strip():
            source_id = f"{kb.id}:manual"
            chunks = self._chunker.build_chunks(
                raw,
                ChunkSource(
                    id=source_id,
                    type="manual",
                    name=MANUAL_SOURCE_NAME,
                    metadata=ChunkMetadata(source="manual"),
                ),
                base_id=source_id,
                use_stable_ids=True,
            )

        return kb.model_copy(
            update={
                "manual_text": raw,
                "manual_chunks": tuple(chunks),
                "updated_at": datetime.now(timezone.utc),
                "updated_by": updated_by or kb.updated_by,
            }
        )

    def append_files(
        self,
        kb: KnowledgeBase,
        uploads: Sequence[UploadedFile],
        context: UploadContext | None = None,
    ) -> tuple[KnowledgeBase, list[FileOutcome]]:
        """Extract, chunk and attach a batch of uploads.

        Args:
            kb: Current knowledge base.
            uploads: Files to add.
            context: Uploader and optional group for every file in the batch.

        Returns:
            Tuple of (new KnowledgeBase, one FileOutcome per upload).
        """
        ctx = context or UploadContext()
        outcomes: list[FileOutcome] = []
        files = list(kb.files)
        updated = kb.model_copy(update={"groups": sanitize_groups(kb.groups)})

        for upload in uploads:
            name = upload.filename or "file"
            try:
                document = extract_document(
                    upload,
                    chunk_size=self._chunker.chunk_size,
                    max_text_length=self._max_text_length,
                )
            except Exception as e:
                logger.warning("ingestion.file_failed", filename=name, error=str(e))
                outcomes.append(FileOutcome(name=name, error=str(e)))
                continue

            if not document.text:
                outcomes.append(FileOutcome(name=name, skipped="empty"))
                continue

            if ctx.group_id:
                updated = upsert_group(
                    updated, ctx.group_id, ctx.group_name, ctx.group_description
                )
            group = updated.group(ctx.group_id)

            file_id = f"{kb.id}:file:{uuid.uuid4()}"
            source = ChunkSource(
                id=file_id,
                type="file",
                name=upload.filename or "Document",
                metadata=ChunkMetadata(
                    source="file",
                    filename=upload.filename or None,
                    mimetype=upload.mimetype or None,
                    size=upload.size,
                    group_id=ctx.group_id,
                    group_name=group.name if group else None,
                ),
            )
            if document.segments:
                chunks = self._chunker.build_chunks(
                    document.text,
                    source,
                    segments=document.segments,
                    base_id=file_id,
                    use_stable_ids=True,
                )
            else:
                chunks = self._chunker.build_chunks(document.text, source)

            files.append(
                KnowledgeFile(
                    id=file_id,
                    name=upload.filename or "Document",
                    mimetype=upload.mimetype or None,
                    size=upload.size,
                    uploaded_by=ctx.uploaded_by,
                    group_id=ctx.group_id,
                    chunks=tuple(chunks),
                )
            )
            outcomes.append(
                FileOutcome(
                    name=upload.filename or "Document",
                    file_id=file_id,
                    chunk_count=len(chunks),
                    group_id=ctx.group_id,
                )
            )

        logger.info(
            "ingestion.files_appended",
            knowledge_base_id=kb.id,
            uploaded=sum(1 for o in outcomes if o.ok),
            failed=sum(1 for o in outcomes if o.error),
            skipped=sum(1 for o in outcomes if o.skipped),
        )

        new_kb = updated.model_copy(
            update={
                "files": tuple(files),
                "updated_at": datetime.now(timezone.utc),
                "updated_by": ctx.uploaded_by or kb.updated_by,
            }
        )
        return new_kb, outcomes

    def remove_file(
        self,
        kb: KnowledgeBase,
        file_id: str,
        updated_by: str | None = None,
    ) -> KnowledgeBase:
        """Return the knowledge base without the given file and its chunks.

        Raises:
            KnowledgeFileNotFoundError: If no file has that id.
        """
        remaining = tuple(f for f in kb.files if f.id != file_id)
        if len(remaining) == len(kb.files):
            raise KnowledgeFileNotFoundError(kb.id, file_id)

        return kb.model_copy(
            update={
                "files": remaining,
                "groups": sanitize_groups(kb.groups),
                "updated_at": datetime.now(timezone.utc),
                "updated_by": updated_by or kb.updated_by,
            }
        )
