"""Tests for upload format detection and text extraction."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from src.knowledge_engine.errors import UnsupportedDocumentError
from src.knowledge_engine.ingestion.loaders import detect_format, extract_document
from src.knowledge_engine.models import UploadedFile


class TestDetectFormat:
    """Tests for MIME type / extension dispatch."""

    @pytest.mark.parametrize(
        ("filename", "mimetype", "expected"),
        [
            ("cases.csv", "", "csv"),
            ("export", "text/csv", "csv"),
            ("guide.pdf", "", "pdf"),
            ("blob", "application/pdf", "pdf"),
            ("notes.docx", "", "docx"),
            ("notes.txt", "", "text"),
            ("README.md", "", "text"),
            ("page", "text/html", "text"),
        ],
    )
    def test_supported_types(self, filename: str, mimetype: str, expected: str) -> None:
        assert detect_format(filename, mimetype) == expected

    def test_legacy_doc_rejected_with_hint(self) -> None:
        with pytest.raises(UnsupportedDocumentError, match="Legacy .doc files are not supported"):
            detect_format("old.doc", "application/msword")

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(UnsupportedDocumentError, match="Unsupported file type: image.png"):
            detect_format("image.png", "image/png")


class TestExtractDocument:
    """Tests for extraction, normalization and truncation."""

    def test_plain_text_is_normalized(self) -> None:
        upload = UploadedFile(filename="notes.txt", mimetype="text/plain", content=b"  hello\tworld \r\n\r\n\r\n\r\nbye ")
        document = extract_document(upload)

        assert document.text == "hello world\n\nbye"
        assert document.segments == []
        assert document.format == "text"

    def test_non_utf8_text_is_decoded(self) -> None:
        upload = UploadedFile(filename="legacy.txt", content="caf\u00e9 cr\u00e8me br\u00fbl\u00e9e".encode("latin-1"))
        document = extract_document(upload)
        assert document.text.startswith("caf")
        assert "br" in document.text

    def test_text_truncated_to_limit(self) -> None:
        upload = UploadedFile(filename="big.txt", content=b"a" * 500)
        assert len(extract_document(upload, max_text_length=100).text) == 100

    def test_csv_rows_become_segments(self) -> None:
        content = "\ufeffCase,Summary\r\nCS12345,Printer jam\r\n\r\nCS67890,Login loop\r\n".encode("utf-8")
        upload = UploadedFile(filename="cases.csv", mimetype="text/csv", content=content)
        document = extract_document(upload, chunk_size=900)

        assert document.format == "csv"
        assert document.text == (
            "Row 1: Case: CS12345 | Summary: Printer jam\n"
            "Row 2: Case: CS67890 | Summary: Login loop"
        )
        assert document.segments == [document.text]

    def test_empty_upload_yields_empty_text(self) -> None:
        assert extract_document(UploadedFile(filename="empty.txt", content=b"")).text == ""

    def test_pdf_delegates_to_unstructured(self) -> None:
        upload = UploadedFile(filename="guide.pdf", mimetype="application/pdf", content=b"%PDF-1.4")
        with patch("src.knowledge_engine.ingestion.loaders._load_pdf", return_value="Page one\n\n\n\nPage two"):
            document = extract_document(upload)

        assert document.format == "pdf"
        assert document.text == "Page one\n\nPage two"

    def test_docx_delegates_to_unstructured(self) -> None:
        upload = UploadedFile(filename="spec.docx", content=b"PK")
        with patch("src.knowledge_engine.ingestion.loaders._load_docx", return_value="Heading\nBody"):
            document = extract_document(upload)

        assert document.format == "docx"
        assert document.text == "Heading\nBody"
