"""Document text extraction for uploaded files.

Dispatches on declared MIME type and file extension to format-specific
extractors. Each extractor returns plain text; CSV additionally returns
row-group segments that the chunker uses verbatim.

Supported formats: CSV, PDF, Word (docx), plain text (text/*, .txt, .md).
Legacy .doc and anything else are rejected with a descriptive error.
"""

from __future__ import annotations

import csv
import io
from pathlib import PurePath

import chardet
import structlog
from pydantic import BaseModel, Field

from src.knowledge_engine.errors import DocumentExtractionError, UnsupportedDocumentError
from src.knowledge_engine.ingestion.chunker import (
    DEFAULT_CHUNK_SIZE,
    normalize_whitespace,
    prepare_tabular_content,
)
from src.knowledge_engine.models import UploadedFile

logger = structlog.get_logger(__name__)

DEFAULT_MAX_TEXT_LENGTH = 120_000

DOCX_MIMETYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class ExtractedDocument(BaseModel):
    """Text extracted from one upload.

    Attributes:
        text: Normalized, length-capped text (empty if nothing extractable).
        segments: Natural chunk units for tabular sources, else empty.
        format: Detected format name.
    """

    text: str = ""
    segments: list[str] = Field(default_factory=list)
    format: str = "text"


# ── Format-Specific Extractors ──────────────────────────────────────────────


def _decode_content(raw_bytes: bytes) -> str:
    """Decode bytes to string with encoding detection.

    Tries UTF-8 first, falls back to chardet detection.
    """
    try:
        return raw_bytes.decode("utf-8")
    except UnicodeDecodeError:
        detected = chardet.detect(raw_bytes)
        encoding = detected.get("encoding", "utf-8") or "utf-8"
        logger.info(
            "loaders.encoding_detected",
            encoding=encoding,
            confidence=detected.get("confidence"),
        )
        return raw_bytes.decode(encoding, errors="replace")


def _load_csv(data: bytes, chunk_size: int) -> ExtractedDocument:
    """Parse CSV rows (BOM tolerated, blank lines skipped) into row text."""
    content = _decode_content(data).lstrip("\ufeff")
    try:
        records = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
    except csv.Error as e:
        raise DocumentExtractionError(f"Malformed CSV: {e}") from e

    tabular = prepare_tabular_content(records, chunk_size=chunk_size)
    return ExtractedDocument(text=tabular.full_text, segments=tabular.segments, format="csv")


def _load_pdf(data: bytes) -> str:
    """Extract PDF text using the unstructured library."""
    try:
        from unstructured.partition.pdf import partition_pdf
    except ImportError:
        raise ImportError(
            "PDF extraction requires the 'unstructured' library. "
            "Install with: pip install 'unstructured[pdf]'"
        )

    elements = partition_pdf(file=io.BytesIO(data))
    return "\n\n".join(str(element) for element in elements)


def _load_docx(data: bytes) -> str:
    """Extract Word document text using the unstructured library."""
    try:
        from unstructured.partition.docx import partition_docx
    except ImportError:
        raise ImportError(
            "Word document extraction requires the 'unstructured' library. "
            "Install with: pip install 'unstructured[docx]'"
        )

    elements = partition_docx(file=io.BytesIO(data))
    return "\n\n".join(str(element) for element in elements)


# ── Dispatch ────────────────────────────────────────────────────────────────


def detect_format(filename: str, mimetype: str) -> str:
    """Resolve the extractor name for an upload.

    Raises:
        UnsupportedDocumentError: For legacy .doc files and unknown types.
    """
    ext = PurePath(filename or "").suffix.lower()
    kind = (mimetype or "").lower()

    if "csv" in kind or ext == ".csv":
        return "csv"
    if kind == "application/pdf" or ext == ".pdf":
        return "pdf"
    if ext == ".docx" or kind == DOCX_MIMETYPE:
        return "docx"
    if kind.startswith("text/") or ext in (".txt", ".md", ".markdown"):
        return "text"
    if ext == ".doc":
        raise UnsupportedDocumentError(
            "Legacy .doc files are not supported. Convert the document to .docx and try again."
        )
    raise UnsupportedDocumentError(f"Unsupported file type: {filename or mimetype or 'unknown'}")


def extract_document(
    upload: UploadedFile,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_text_length: int = DEFAULT_MAX_TEXT_LENGTH,
) -> ExtractedDocument:
    """Extract normalized text (and tabular segments) from an upload.

    Args:
        upload: Raw upload bytes with declared filename and MIME type.
        chunk_size: Segment size for tabular row packing.
        max_text_length: Extracted text is truncated to this many characters.

    Returns:
        ExtractedDocument; text is empty when the document has no content.

    Raises:
        UnsupportedDocumentError: If the type is not handled.
        DocumentExtractionError: If the content cannot be parsed.
    """
    fmt = detect_format(upload.filename, upload.mimetype)

    if fmt == "csv":
        document = _load_csv(upload.content, chunk_size)
    else:
        if fmt == "pdf":
            raw_text = _load_pdf(upload.content)
        elif fmt == "docx":
            raw_text = _load_docx(upload.content)
        else:
            raw_text = _decode_content(upload.content)
        document = ExtractedDocument(text=raw_text, format=fmt)

    text = normalize_whitespace(document.text)
    if len(text) > max_text_length:
        logger.info(
            "loaders.text_truncated",
            filename=upload.filename,
            length=len(text),
            limit=max_text_length,
        )
        text = text[:max_text_length]

    return document.model_copy(update={"text": text})
