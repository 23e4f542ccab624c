"""Exception taxonomy for the knowledge engine.

Dependency failures (embedding service, vector index) are raised by the
low-level clients and absorbed by the synchronizer and retriever. Request
and configuration errors propagate to the caller.
"""

from __future__ import annotations


class KnowledgeEngineError(Exception):
    """Base class for all knowledge engine errors."""


class ConfigurationError(KnowledgeEngineError):
    """Raised when required configuration or credentials are missing."""


class InvalidRequestError(KnowledgeEngineError, ValueError):
    """Raised when an operation is called with missing or malformed identifiers."""


class KnowledgeFileNotFoundError(KnowledgeEngineError, LookupError):
    """Raised when removing a file that is not part of the knowledge base.

    Attributes:
        knowledge_base_id: The knowledge base that was searched.
        file_id: The missing file id.
    """

    def __init__(self, knowledge_base_id: str, file_id: str) -> None:
        self.knowledge_base_id = knowledge_base_id
        self.file_id = file_id
        super().__init__(f"File '{file_id}' not found in knowledge base '{knowledge_base_id}'")


class EmbeddingError(KnowledgeEngineError):
    """Raised when the embedding service fails or returns an unusable response.

    Attributes:
        status_code: HTTP status of the failed response, if one was received.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class IndexNotFoundError(KnowledgeEngineError, LookupError):
    """Raised by a vector index provider when an index or namespace is absent."""

    def __init__(self, index_name: str, namespace: str | None = None) -> None:
        self.index_name = index_name
        self.namespace = namespace
        target = f"{index_name}/{namespace}" if namespace else index_name
        super().__init__(f"Vector index not found: {target}")


class DocumentExtractionError(KnowledgeEngineError):
    """Raised when text cannot be extracted from an uploaded document."""


class UnsupportedDocumentError(DocumentExtractionError):
    """Raised for document types the extractor does not handle."""
