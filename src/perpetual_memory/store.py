"""
Record store contract and an in-process implementation.

The assembler and the pipeline only talk to the store through these
methods. Every query is scoped by user id; newest-first ordering is the
store's job, ranking is not.

InMemoryRecordStore keeps everything in dicts and is used for tests and
local runs without PostgreSQL (the same role InMemorySaver plays next to
the Postgres checkpointer).
"""

import math
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Iterable, Optional

from .errors import PersistenceError
from .models import (
    CompressedMemoryEntry,
    FileRecord,
    FileStatus,
    MemoryEntry,
    utcnow,
)

TURNS = "turns"
COMPRESSED = "compressed"

FILE_PATCH_FIELDS = frozenset({
    "status",
    "processing_stage",
    "progress",
    "description",
    "embedding",
    "error_message",
})


def check_file_invariant(record: FileRecord) -> None:
    """description/embedding are set together, and only on ready files."""
    has_payload = record.description is not None or record.embedding is not None
    if record.status == FileStatus.READY:
        if record.description is None or record.embedding is None:
            raise PersistenceError(f"File {record.id} cannot be ready without description and embedding")
    elif has_payload:
        raise PersistenceError(
            f"File {record.id} cannot carry description/embedding while {record.status.value}"
        )


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)


class RecordStore(ABC):
    """Queryable record store with vector similarity search."""

    # -- conversation turns --

    @abstractmethod
    async def insert_turn(self, entry: MemoryEntry) -> str: ...

    @abstractmethod
    async def set_starred(self, user_id: str, entry_id: str, starred: bool) -> bool: ...

    @abstractmethod
    async def insert_compressed(self, entry: CompressedMemoryEntry) -> str: ...

    @abstractmethod
    async def query_last_n(self, kind: str, user_id: str, n: int) -> list:
        """Last ``n`` turns or non-instruction compressed entries, newest-first."""

    @abstractmethod
    async def query_starred(self, user_id: str) -> list[MemoryEntry]:
        """Starred turns, newest-first."""

    @abstractmethod
    async def query_instructions(
        self, user_id: str, scopes: Iterable[str]
    ) -> list[CompressedMemoryEntry]:
        """Instruction entries whose scope is in ``scopes``, newest-first."""

    @abstractmethod
    async def count_non_instruction(self, user_id: str) -> int: ...

    @abstractmethod
    async def search(
        self,
        query_embedding: list[float],
        exclude_ids: Iterable[str],
        user_id: str,
        k: int,
    ) -> list[tuple[CompressedMemoryEntry, float]]:
        """Top ``k`` non-instruction entries by cosine similarity."""

    # -- files --

    @abstractmethod
    async def create_file_record(self, record: FileRecord) -> str: ...

    @abstractmethod
    async def update_file_record(self, file_id: str, patch: dict) -> FileRecord: ...

    @abstractmethod
    async def get_file(self, user_id: str, file_id: str) -> Optional[FileRecord]: ...

    @abstractmethod
    async def find_file_by_hash(self, user_id: str, content_hash: str) -> Optional[FileRecord]: ...

    @abstractmethod
    async def query_ready_files(self, user_id: str) -> list[FileRecord]:
        """Ready files, newest-first."""

    @abstractmethod
    async def list_files(self, user_id: str) -> list[FileRecord]: ...

    @abstractmethod
    async def delete_file(self, user_id: str, file_id: str) -> bool: ...

    async def get_context_window(self, model_name: str) -> Optional[int]:
        """Context window from a models table, if the backend has one."""
        return None


class InMemoryRecordStore(RecordStore):
    def __init__(self, context_windows: Optional[dict[str, int]] = None):
        self._turns: dict[str, MemoryEntry] = {}
        self._compressed: dict[str, CompressedMemoryEntry] = {}
        self._files: dict[str, FileRecord] = {}
        self._context_windows = dict(context_windows or {})

    @staticmethod
    def _newest_first(items) -> list:
        return sorted(items, key=lambda r: r.created_at, reverse=True)

    async def insert_turn(self, entry: MemoryEntry) -> str:
        self._turns[entry.id] = entry
        return entry.id

    async def set_starred(self, user_id: str, entry_id: str, starred: bool) -> bool:
        entry = self._turns.get(entry_id)
        if entry is None or entry.user_id != user_id:
            return False
        entry.is_starred = starred
        return True

    async def insert_compressed(self, entry: CompressedMemoryEntry) -> str:
        self._compressed[entry.id] = entry
        return entry.id

    async def query_last_n(self, kind: str, user_id: str, n: int) -> list:
        if kind == TURNS:
            rows = [t for t in self._turns.values() if t.user_id == user_id]
        elif kind == COMPRESSED:
            rows = [
                c for c in self._compressed.values()
                if c.user_id == user_id and not c.is_instruction
            ]
        else:
            raise ValueError(f"Unknown record kind: {kind}")
        return self._newest_first(rows)[:n]

    async def query_starred(self, user_id: str) -> list[MemoryEntry]:
        return self._newest_first(
            t for t in self._turns.values() if t.user_id == user_id and t.is_starred
        )

    async def query_instructions(self, user_id, scopes):
        scopes = set(scopes)
        return self._newest_first(
            c for c in self._compressed.values()
            if c.user_id == user_id and c.is_instruction and c.instruction_scope in scopes
        )

    async def count_non_instruction(self, user_id: str) -> int:
        return sum(
            1 for c in self._compressed.values()
            if c.user_id == user_id and not c.is_instruction
        )

    async def search(self, query_embedding, exclude_ids, user_id, k):
        excluded = set(exclude_ids)
        scored = [
            (c, cosine_similarity(query_embedding, c.embedding))
            for c in self._compressed.values()
            if c.user_id == user_id
            and not c.is_instruction
            and c.embedding is not None
            and c.id not in excluded
        ]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored[:k]

    async def create_file_record(self, record: FileRecord) -> str:
        if any(
            f.user_id == record.user_id and f.content_hash == record.content_hash
            for f in self._files.values()
        ):
            raise PersistenceError(
                f"File with hash {record.content_hash[:8]}... already exists for user"
            )
        check_file_invariant(record)
        self._files[record.id] = replace(record)
        return record.id

    async def update_file_record(self, file_id: str, patch: dict) -> FileRecord:
        current = self._files.get(file_id)
        if current is None:
            raise PersistenceError(f"File {file_id} not found")
        unknown = set(patch) - FILE_PATCH_FIELDS
        if unknown:
            raise PersistenceError(f"Cannot update file fields: {sorted(unknown)}")
        updated = replace(current, **patch, updated_at=utcnow())
        check_file_invariant(updated)
        self._files[file_id] = updated
        return replace(updated)

    async def get_file(self, user_id: str, file_id: str) -> Optional[FileRecord]:
        record = self._files.get(file_id)
        if record is None or record.user_id != user_id:
            return None
        return replace(record)

    async def find_file_by_hash(self, user_id: str, content_hash: str) -> Optional[FileRecord]:
        for record in self._files.values():
            if record.user_id == user_id and record.content_hash == content_hash:
                return replace(record)
        return None

    async def query_ready_files(self, user_id: str) -> list[FileRecord]:
        ready = [
            f for f in self._files.values()
            if f.user_id == user_id and f.status == FileStatus.READY
        ]
        ready.sort(key=lambda f: f.uploaded_at, reverse=True)
        return [replace(f) for f in ready]

    async def list_files(self, user_id: str) -> list[FileRecord]:
        files = [f for f in self._files.values() if f.user_id == user_id]
        files.sort(key=lambda f: f.uploaded_at, reverse=True)
        return [replace(f) for f in files]

    async def delete_file(self, user_id: str, file_id: str) -> bool:
        record = self._files.get(file_id)
        if record is None or record.user_id != user_id:
            return False
        del self._files[file_id]
        return True

    async def get_context_window(self, model_name: str) -> Optional[int]:
        return self._context_windows.get(model_name)
