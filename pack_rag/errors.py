"""
Structured errors for the retrieval-and-grounding core.

Every error carries a stable string code plus a details dict so callers can
surface it without parsing messages.
"""
from typing import Any, Dict, Optional


class RagError(Exception):
    """Base error with a code, a message and structured details."""

    code = "E_RAG"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON diagnostics."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class IndexCorrupt(RagError):
    """Vector blob length does not match the manifest dimensions."""

    code = "E_INDEX_CORRUPT"

    def __init__(self, path: str, expected_bytes: int, actual_bytes: int):
        super().__init__(
            f"Vector blob {path} has {actual_bytes} bytes, expected {expected_bytes}",
            {"path": path, "expected_bytes": expected_bytes, "actual_bytes": actual_bytes},
        )


class EmbeddingDimMismatch(RagError):
    """Query vector dimension differs from the index dimension."""

    code = "E_EMBED_DIM"

    def __init__(self, expected: int, actual: int, where: str = "query"):
        super().__init__(
            f"{where} dim {actual} does not match index dim {expected}",
            {"expected": expected, "actual": actual, "where": where},
        )


class RetrievalEmpty(RagError):
    """Nothing retrieved to ground an answer on."""

    code = "E_RETRIEVAL_EMPTY"


class PackLoadError(RagError):
    code = "E_PACK_LOAD"


class PackFileNotFound(PackLoadError):
    """A pack file the reader was asked for does not exist."""


class PackSchemaError(RagError):
    code = "E_PACK_SCHEMA"


class RetrievalFormatError(RagError):
    code = "E_RETRIEVAL_FORMAT"


class ValidateCapabilityError(RagError):
    code = "E_VALIDATE_CAPABILITY"


class IndexMetaError(RagError):
    code = "E_INDEX_META"


class EmbedModelMismatch(RagError):
    code = "E_EMBED_MISMATCH"


class CountsMismatch(RagError):
    code = "E_COUNTS_MISMATCH"


class EmbedError(RagError):
    code = "E_EMBED"


class CompletionError(RagError):
    code = "E_COMPLETION"
