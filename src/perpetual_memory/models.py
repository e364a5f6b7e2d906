"""
Records read and written by the engine.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .errors import ValidationError

GLOBAL_SCOPE = "global"

ARC_MIN_CHARS = 50
ARC_MAX_CHARS = 150
SALIENCE_MIN = 1
SALIENCE_MAX = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.READY, FileStatus.FAILED)


class ProcessingStage(str, Enum):
    EXTRACTING = "extracting"
    COMPRESSING = "compressing"
    EMBEDDING = "embedding"
    FINALIZING = "finalizing"


class FileType(str, Enum):
    PDF = "pdf"
    IMAGE = "image"
    TEXT = "text"
    CODE = "code"
    SPREADSHEET = "spreadsheet"
    OTHER = "other"


@dataclass
class MemoryEntry:
    """One full conversation turn (working memory / starred tiers)."""

    user_id: str
    persona_name: str
    user_text: str
    response_text: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    is_starred: bool = False


@dataclass(frozen=True)
class CompressedMemoryEntry:
    """A compressed turn: recent memory, long-term memory or an instruction."""

    user_id: str
    persona_name: str
    user_essence: str
    response_essence: str
    arc_summary: str
    salience: int
    id: str = field(default_factory=new_id)
    source_entry_id: Optional[str] = None
    is_instruction: bool = False
    instruction_scope: Optional[str] = None
    embedding: Optional[list[float]] = None
    created_at: datetime = field(default_factory=utcnow)

    def validate(self) -> "CompressedMemoryEntry":
        """Raise ValidationError if the arc or salience is out of range."""
        arc_len = len(self.arc_summary.strip())
        if not ARC_MIN_CHARS <= arc_len <= ARC_MAX_CHARS:
            raise ValidationError(
                f"Decision arc must be {ARC_MIN_CHARS}-{ARC_MAX_CHARS} characters, got {arc_len}",
                details={"arc_length": arc_len},
            )
        if not isinstance(self.salience, int) or not SALIENCE_MIN <= self.salience <= SALIENCE_MAX:
            raise ValidationError(
                f"Salience must be an integer in [{SALIENCE_MIN}, {SALIENCE_MAX}], got {self.salience!r}",
                details={"salience": self.salience},
            )
        if self.is_instruction and not self.instruction_scope:
            raise ValidationError("Instruction entries need an instruction_scope")
        return self

    def with_embedding(self, embedding: list[float]) -> "CompressedMemoryEntry":
        return replace(self, embedding=embedding)


@dataclass
class FileRecord:
    user_id: str
    filename: str
    file_type: FileType
    content_hash: str
    id: str = field(default_factory=new_id)
    status: FileStatus = FileStatus.PENDING
    processing_stage: Optional[ProcessingStage] = None
    progress: int = 0
    description: Optional[str] = None
    embedding: Optional[list[float]] = None
    error_message: Optional[str] = None
    uploaded_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_ready(self) -> bool:
        return self.status == FileStatus.READY


@dataclass
class RetrievalCandidate:
    entry: CompressedMemoryEntry
    similarity: float
    weighted_score: float = 0.0

    def __post_init__(self):
        self.weighted_score = self.similarity * (self.entry.salience / 10)


@dataclass
class ProgressUpdate:
    file_id: str
    stage: ProcessingStage
    progress: int
    message: str = ""
