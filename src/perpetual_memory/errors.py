"""
Error types shared by the context assembler and the ingestion pipeline.

- ValidationError: malformed input caught before any side effect
- ExternalProviderError: embedding / compression / model API failures
- PersistenceError: record store failures
- IngestionError: a file pipeline failure pinned to a processing stage
"""

from typing import Optional


class MemoryEngineError(Exception):
    """Base class for all engine errors."""

    code = "UNKNOWN_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        if code:
            self.code = code
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(MemoryEngineError, ValueError):
    code = "VALIDATION_ERROR"


class ExternalProviderError(MemoryEngineError):
    """
    A provider call failed.

    ``transient`` marks failures worth retrying later (rate limits,
    timeouts); permanent failures are auth problems and malformed responses.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        transient: bool = False,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.transient = transient


class EmbeddingError(ExternalProviderError):
    """Embedding provider failure.

    Codes: EMPTY_TEXT, TEXT_TOO_LONG, INVALID_API_KEY, RATE_LIMITED,
    DIMENSION_MISMATCH, TIMEOUT, PROVIDER_ERROR.
    """

    code = "EMBEDDING_ERROR"


class CompressionError(ExternalProviderError):
    """Compression provider failure.

    Codes JSON_PARSE_ERROR and VALIDATION_ERROR come from the model's output;
    everything else is a transport problem.
    """

    code = "COMPRESSION_ERROR"

    PARSE_CODES = ("JSON_PARSE_ERROR", "VALIDATION_ERROR", "EMPTY_RESPONSE")

    @property
    def is_parse_error(self) -> bool:
        return self.code in self.PARSE_CODES


class PersistenceError(MemoryEngineError):
    code = "DATABASE_ERROR"


class IngestionError(MemoryEngineError):
    """A file processing failure, carrying the stage it happened in."""

    def __init__(self, message: str, code: str, stage: str, details: Optional[dict] = None):
        super().__init__(message, code=code, details=details)
        self.stage = stage

    def to_dict(self) -> dict:
        return {"code": self.code, "stage": self.stage, "message": self.message}


class CancelledUpload(MemoryEngineError):
    code = "CANCELLED"
