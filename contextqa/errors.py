"""Exception hierarchy for the retrieval pipeline.

Every error carries a human-readable message plus an optional ``details``
dict that is logged alongside it.
"""
from typing import Any, Dict, Optional


class ContextQAError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(ContextQAError):
    """Raised for bad input (empty question, unsupported document type)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class EmbeddingUnavailable(ContextQAError):
    """Raised when every embedding tier failed, after retries."""


class IndexUnavailable(ContextQAError):
    """Raised when the vector store cannot serve an insert or search."""


class NoExtractableText(ContextQAError):
    """Raised when a document yields no text. Terminal, never retried."""


class GenerationUnavailable(ContextQAError):
    """Raised when the generation capability fails."""


class DocumentNotFound(ContextQAError):
    """Raised when a document id is unknown."""
