"""Size-bounded text chunking with stable chunk ids.

Text is normalized, then packed word by word into chunks of at most
``chunk_size`` characters using a zero-overlap CharacterTextSplitter over
single-space-joined words. A trailing chunk shorter than
``min_chunk_size`` is folded into its predecessor.

Tabular sources are turned into one "Row N: header: value | ..." line per
row and packed the same way over whole lines, so a row is never split.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Sequence
from typing import Any

import structlog
from langchain_text_splitters import CharacterTextSplitter
from pydantic import BaseModel, Field

from src.knowledge_engine.models import Chunk, ChunkSource

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 900
DEFAULT_MIN_CHUNK_SIZE = 280

_INLINE_WHITESPACE = re.compile(r"[\t\f\v]+")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")


def normalize_whitespace(text: str | None) -> str:
    """Normalize extracted text.

    NULs, tabs, form feeds, vertical tabs and non-breaking spaces become
    spaces, line endings become LF, every line is trimmed, and runs of
    three or more newlines collapse to one blank line.
    """
    if not text:
        return ""
    value = str(text).replace("\x00", " ")
    value = value.replace("\r\n", "\n").replace("\r", "\n")
    value = _INLINE_WHITESPACE.sub(" ", value).replace("\u00a0", " ")
    value = "\n".join(line.strip() for line in value.split("\n"))
    return _EXCESS_NEWLINES.sub("\n\n", value).strip()


def _packer(chunk_size: int, separator: str) -> CharacterTextSplitter:
    return CharacterTextSplitter(
        separator=separator,
        chunk_size=chunk_size,
        chunk_overlap=0,
        length_function=len,
    )


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
) -> list[str]:
    """Greedily pack whitespace-delimited words into bounded chunks.

    Args:
        text: Raw text; normalized before packing.
        chunk_size: Maximum chunk length in characters. A single word longer
            than this becomes its own chunk.
        min_chunk_size: A final chunk shorter than this is merged into the
            previous chunk when more than one chunk exists.

    Returns:
        Chunk strings in document order; empty for blank input.
    """
    normalized = normalize_whitespace(text)
    words = normalized.split()
    if not words:
        return []

    chunks = _packer(chunk_size, " ").split_text(" ".join(words))

    if len(chunks) > 1 and len(chunks[-1]) < min_chunk_size:
        tail = chunks.pop()
        chunks[-1] = f"{chunks[-1]} {tail}".strip()

    return chunks


# ── Tabular Content ─────────────────────────────────────────────────────────


class TabularContent(BaseModel):
    """Row-oriented text extracted from a table.

    Attributes:
        full_text: Every row line joined by newlines.
        segments: Row lines packed into size-bounded groups.
    """

    full_text: str = ""
    segments: list[str] = Field(default_factory=list)


def _cell(value: Any) -> str:
    return " ".join(str(value if value is not None else "").split())


def prepare_tabular_content(
    records: Sequence[Sequence[Any]],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> TabularContent:
    """Convert ``[header, *rows]`` records into row lines and packed segments.

    Each data row becomes ``"Row N: h1: v1 | h2: v2 | ..."``. Blank headers
    are named ``"Column i"``. Rows are packed whole into segments of at most
    ``chunk_size`` characters (a single long row stands alone).
    """
    if not records:
        return TabularContent()

    header, *rows = records
    headers = [_cell(value) or f"Column {i + 1}" for i, value in enumerate(header or [])]

    row_lines: list[str] = []
    for row_number, row in enumerate(rows, start=1):
        cells = list(row or [])
        if headers:
            pairs = [
                f"{name}: {_cell(cells[i] if i < len(cells) else '')}"
                for i, name in enumerate(headers)
            ]
        else:
            pairs = [f"Column {i + 1}: {_cell(value)}" for i, value in enumerate(cells)]
        if pairs:
            row_lines.append(f"Row {row_number}: {' | '.join(pairs)}")

    if not row_lines:
        return TabularContent()

    full_text = "\n".join(row_lines)
    if chunk_size > 0:
        segments = _packer(chunk_size, "\n").split_text(full_text)
    else:
        segments = [full_text]

    return TabularContent(full_text=full_text, segments=segments or [full_text])


# ── Chunker ─────────────────────────────────────────────────────────────────


class KnowledgeChunker:
    """Builds Chunk objects from normalized text or pre-computed segments.

    Args:
        chunk_size: Maximum chunk length in characters.
        min_chunk_size: Minimum length of a trailing chunk.

    Usage:
        chunker = KnowledgeChunker(chunk_size=900, min_chunk_size=280)
        chunks = chunker.build_chunks(text, source, base_id="kb-1:manual", use_stable_ids=True)
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self.min_chunk_size = min_chunk_size

    def split(self, text: str, segments: Sequence[str] | None = None) -> list[str]:
        """Return chunk texts, preferring caller-supplied segments."""
        provided = [s for s in (segments or []) if s]
        if provided:
            normalized = (normalize_whitespace(s) for s in provided)
            return [s for s in normalized if s]
        return chunk_text(text, self.chunk_size, self.min_chunk_size)

    def build_chunks(
        self,
        text: str,
        source: ChunkSource,
        *,
        segments: Sequence[str] | None = None,
        base_id: str | None = None,
        use_stable_ids: bool = False,
    ) -> list[Chunk]:
        """Split text (or segments) into Chunk objects carrying source provenance.

        Args:
            text: Source text.
            source: Provenance copied onto every chunk.
            segments: Natural units (e.g. packed table rows) used instead of
                word packing.
            base_id: Prefix for chunk ids; defaults to the source id.
            use_stable_ids: When True ids are "{base_id}:{ordinal}" so
                re-chunking unchanged content reproduces them.

        Returns:
            Chunks in order with chunk_index/chunk_count set.
        """
        pieces = self.split(text, segments)
        prefix = base_id or source.id
        count = len(pieces)

        chunks: list[Chunk] = []
        for index, piece in enumerate(pieces):
            ordinal = index + 1
            chunk_id = f"{prefix}:{ordinal}" if use_stable_ids else f"{prefix}:{ordinal}:{uuid.uuid4()}"
            chunks.append(
                Chunk(
                    id=chunk_id,
                    text=piece,
                    source_id=source.id,
                    source_type=source.type,
                    source_name=source.name,
                    chunk_index=index,
                    chunk_count=count,
                    metadata=source.metadata,
                )
            )

        logger.debug(
            "chunker.chunks_built",
            source_id=source.id,
            chunk_count=count,
            from_segments=bool(segments),
        )
        return chunks
