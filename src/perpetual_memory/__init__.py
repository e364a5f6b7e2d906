"""
Perpetual memory for persona chat.

- ``ContextAssembler`` builds a bounded, deduplicated context from stored memory
- ``TurnJournal`` compresses finished turns into memory
- ``FileIngestionPipeline`` turns uploads into searchable file descriptions
"""

from .errors import (
    CancelledUpload,
    CompressionError,
    EmbeddingError,
    ExternalProviderError,
    IngestionError,
    MemoryEngineError,
    PersistenceError,
    ValidationError,
)
from .models import (
    CompressedMemoryEntry,
    FileRecord,
    FileStatus,
    FileType,
    MemoryEntry,
    ProcessingStage,
    ProgressUpdate,
    RetrievalCandidate,
)
from .memory import ContextAssembler, MemoryConfig, SemanticRetriever
from .providers import EmbeddingProvider, create_chat_model, create_embeddings
from .memory.journal import TurnCompressor, TurnJournal
from .files import FileCompressor, FileIngestionPipeline
from .feed import ConnectionManager, FileStatusFeed
from .retry import RetryPolicy
from .store import InMemoryRecordStore, RecordStore

__all__ = [
    "CancelledUpload",
    "CompressionError",
    "EmbeddingError",
    "ExternalProviderError",
    "IngestionError",
    "MemoryEngineError",
    "PersistenceError",
    "ValidationError",
    "CompressedMemoryEntry",
    "FileRecord",
    "FileStatus",
    "FileType",
    "MemoryEntry",
    "ProcessingStage",
    "ProgressUpdate",
    "RetrievalCandidate",
    "ContextAssembler",
    "MemoryConfig",
    "SemanticRetriever",
    "EmbeddingProvider",
    "create_chat_model",
    "create_embeddings",
    "TurnCompressor",
    "TurnJournal",
    "FileCompressor",
    "FileIngestionPipeline",
    "ConnectionManager",
    "FileStatusFeed",
    "RetryPolicy",
    "InMemoryRecordStore",
    "RecordStore",
]
