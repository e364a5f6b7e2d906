"""
PostgreSQL + pgvector record store.

Tables:
  - memory_turns: full conversation turns (working memory, starred)
  - compressed_memories: compressed turns and instructions, with embeddings
  - memory_files: uploaded files, unique per (user_id, content_hash)
  - models: optional model → context window lookup

Vector search uses cosine distance (``<=>``); similarity is ``1 - distance``.
"""

import logging
from typing import Iterable, Optional

from psycopg import AsyncConnection, Error as PsycopgError
from psycopg.rows import dict_row

from .errors import PersistenceError
from .models import (
    CompressedMemoryEntry,
    FileRecord,
    FileStatus,
    FileType,
    MemoryEntry,
    ProcessingStage,
)
from .store import COMPRESSED, FILE_PATCH_FIELDS, TURNS, RecordStore

logger = logging.getLogger(__name__)

_COMPRESSED_COLUMNS = """
    id, source_entry_id, user_id, persona_name, user_essence, response_essence,
    arc_summary, salience, is_instruction, instruction_scope, created_at
"""

_FILE_COLUMNS = """
    id, user_id, filename, file_type, content_hash, status, processing_stage,
    progress, description, embedding::text AS embedding, error_message,
    uploaded_at, updated_at
"""


def _to_vector(embedding: Optional[list[float]]) -> Optional[str]:
    if embedding is None:
        return None
    return "[" + ",".join(repr(float(v)) for v in embedding) + "]"


def _parse_vector(raw) -> Optional[list[float]]:
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        return [float(v) for v in raw]
    text = str(raw).strip("[]")
    return [float(v) for v in text.split(",")] if text else []


def _row_to_turn(row: dict) -> MemoryEntry:
    return MemoryEntry(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        persona_name=row["persona_name"],
        user_text=row["user_text"],
        response_text=row["response_text"],
        created_at=row["created_at"],
        is_starred=row["is_starred"],
    )


def _row_to_compressed(row: dict) -> CompressedMemoryEntry:
    return CompressedMemoryEntry(
        id=str(row["id"]),
        source_entry_id=str(row["source_entry_id"]) if row.get("source_entry_id") else None,
        user_id=str(row["user_id"]),
        persona_name=row["persona_name"],
        user_essence=row["user_essence"],
        response_essence=row["response_essence"],
        arc_summary=row["arc_summary"],
        salience=int(row["salience"]),
        is_instruction=row["is_instruction"],
        instruction_scope=row.get("instruction_scope"),
        created_at=row["created_at"],
    )


def _row_to_file(row: dict) -> FileRecord:
    stage = row.get("processing_stage")
    return FileRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        filename=row["filename"],
        file_type=FileType(row["file_type"]),
        content_hash=row["content_hash"],
        status=FileStatus(row["status"]),
        processing_stage=ProcessingStage(stage) if stage else None,
        progress=row["progress"],
        description=row.get("description"),
        embedding=_parse_vector(row.get("embedding")),
        error_message=row.get("error_message"),
        uploaded_at=row["uploaded_at"],
        updated_at=row["updated_at"],
    )


class PostgresRecordStore(RecordStore):
    """
    RecordStore backed by a psycopg async connection.

    Usage:
        store = await PostgresRecordStore.connect(os.environ["DATABASE_URL"])
        await store.setup()
    """

    def __init__(self, conn: AsyncConnection, embedding_dimensions: int = 1024):
        self._conn = conn
        self._dim = embedding_dimensions

    @classmethod
    async def connect(cls, dsn: str, embedding_dimensions: int = 1024) -> "PostgresRecordStore":
        conn = await AsyncConnection.connect(
            dsn,
            autocommit=True,
            prepare_threshold=0,
            row_factory=dict_row,
        )
        return cls(conn, embedding_dimensions=embedding_dimensions)

    async def close(self):
        await self._conn.close()

    async def _fetch(self, sql: str, params=()) -> list[dict]:
        try:
            async with self._conn.cursor() as cur:
                await cur.execute(sql, params)
                return await cur.fetchall()
        except PsycopgError as e:
            raise PersistenceError(f"Query failed: {e}") from e

    async def _fetch_one(self, sql: str, params=()) -> Optional[dict]:
        rows = await self._fetch(sql, params)
        return rows[0] if rows else None

    async def _execute(self, sql: str, params=()) -> int:
        try:
            async with self._conn.cursor() as cur:
                await cur.execute(sql, params)
                return cur.rowcount
        except PsycopgError as e:
            raise PersistenceError(f"Write failed: {e}") from e

    async def setup(self):
        """Create tables and indexes if they do not exist."""
        dim = self._dim
        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            """
            CREATE TABLE IF NOT EXISTS memory_turns (
                id UUID PRIMARY KEY,
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                user_text TEXT NOT NULL,
                response_text TEXT NOT NULL,
                is_starred BOOLEAN NOT NULL DEFAULT false,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_memory_turns_user_created
            ON memory_turns (user_id, created_at DESC)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS compressed_memories (
                id UUID PRIMARY KEY,
                source_entry_id UUID,
                user_id TEXT NOT NULL,
                persona_name TEXT NOT NULL,
                user_essence TEXT NOT NULL,
                response_essence TEXT NOT NULL,
                arc_summary TEXT NOT NULL
                    CHECK (char_length(arc_summary) BETWEEN 50 AND 150),
                salience INT NOT NULL CHECK (salience BETWEEN 1 AND 10),
                is_instruction BOOLEAN NOT NULL DEFAULT false,
                instruction_scope TEXT,
                embedding vector({dim}),
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_compressed_user_created
            ON compressed_memories (user_id, created_at DESC)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_compressed_instruction_scope
            ON compressed_memories (is_instruction, instruction_scope)
            WHERE is_instruction = true
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_compressed_embedding
            ON compressed_memories USING hnsw (embedding vector_cosine_ops)
            """,
            f"""
            CREATE TABLE IF NOT EXISTS memory_files (
                id UUID PRIMARY KEY,
                user_id TEXT NOT NULL,
                filename TEXT NOT NULL,
                file_type TEXT NOT NULL DEFAULT 'other',
                content_hash TEXT NOT NULL,
                description TEXT,
                embedding vector({dim}),
                status TEXT NOT NULL DEFAULT 'pending',
                processing_stage TEXT,
                progress INT NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
                error_message TEXT,
                uploaded_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                UNIQUE (user_id, content_hash),
                CHECK (
                    (status = 'ready' AND description IS NOT NULL AND embedding IS NOT NULL)
                    OR (status <> 'ready' AND description IS NULL AND embedding IS NULL)
                )
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_memory_files_user_status
            ON memory_files (user_id, status, uploaded_at DESC)
            """,
            """
            CREATE TABLE IF NOT EXISTS models (
                model_identifier TEXT PRIMARY KEY,
                context_window INT NOT NULL
            )
            """,
        ]
        for sql in statements:
            await self._execute(sql)
        logger.info("Record store schema ready (embedding dim %d)", dim)

    # -- conversation turns --

    async def insert_turn(self, entry: MemoryEntry) -> str:
        await self._execute(
            """
            INSERT INTO memory_turns
                (id, user_id, persona_name, user_text, response_text, is_starred, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (entry.id, entry.user_id, entry.persona_name, entry.user_text,
             entry.response_text, entry.is_starred, entry.created_at),
        )
        return entry.id

    async def set_starred(self, user_id: str, entry_id: str, starred: bool) -> bool:
        count = await self._execute(
            "UPDATE memory_turns SET is_starred = %s WHERE id = %s AND user_id = %s",
            (starred, entry_id, user_id),
        )
        return count > 0

    async def insert_compressed(self, entry: CompressedMemoryEntry) -> str:
        await self._execute(
            """
            INSERT INTO compressed_memories
                (id, source_entry_id, user_id, persona_name, user_essence, response_essence,
                 arc_summary, salience, is_instruction, instruction_scope, embedding, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector, %s)
            """,
            (entry.id, entry.source_entry_id, entry.user_id, entry.persona_name,
             entry.user_essence, entry.response_essence, entry.arc_summary,
             entry.salience, entry.is_instruction, entry.instruction_scope,
             _to_vector(entry.embedding), entry.created_at),
        )
        return entry.id

    async def query_last_n(self, kind: str, user_id: str, n: int) -> list:
        if kind == TURNS:
            rows = await self._fetch(
                """
                SELECT * FROM memory_turns
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, n),
            )
            return [_row_to_turn(r) for r in rows]
        if kind == COMPRESSED:
            rows = await self._fetch(
                f"""
                SELECT {_COMPRESSED_COLUMNS} FROM compressed_memories
                WHERE user_id = %s AND is_instruction = false
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, n),
            )
            return [_row_to_compressed(r) for r in rows]
        raise ValueError(f"Unknown record kind: {kind}")

    async def query_starred(self, user_id: str) -> list[MemoryEntry]:
        rows = await self._fetch(
            """
            SELECT * FROM memory_turns
            WHERE user_id = %s AND is_starred = true
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        return [_row_to_turn(r) for r in rows]

    async def query_instructions(self, user_id, scopes: Iterable[str]):
        rows = await self._fetch(
            f"""
            SELECT {_COMPRESSED_COLUMNS} FROM compressed_memories
            WHERE user_id = %s
              AND is_instruction = true
              AND instruction_scope = ANY(%s)
            ORDER BY created_at DESC
            """,
            (user_id, list(scopes)),
        )
        return [_row_to_compressed(r) for r in rows]

    async def count_non_instruction(self, user_id: str) -> int:
        row = await self._fetch_one(
            """
            SELECT count(*) AS n FROM compressed_memories
            WHERE user_id = %s AND is_instruction = false
            """,
            (user_id,),
        )
        return int(row["n"]) if row else 0

    async def search(self, query_embedding, exclude_ids, user_id, k):
        vector = _to_vector(query_embedding)
        rows = await self._fetch(
            f"""
            SELECT {_COMPRESSED_COLUMNS},
                   1 - (embedding <=> %s::vector) AS similarity
            FROM compressed_memories
            WHERE user_id = %s
              AND embedding IS NOT NULL
              AND is_instruction = false
              AND NOT (id::text = ANY(%s))
            ORDER BY embedding <=> %s::vector
            LIMIT %s
            """,
            (vector, user_id, list(exclude_ids), vector, k),
        )
        return [(_row_to_compressed(r), float(r["similarity"])) for r in rows]

    # -- files --

    async def create_file_record(self, record: FileRecord) -> str:
        await self._execute(
            """
            INSERT INTO memory_files
                (id, user_id, filename, file_type, content_hash, status, progress,
                 uploaded_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (record.id, record.user_id, record.filename, record.file_type.value,
             record.content_hash, record.status.value, record.progress,
             record.uploaded_at, record.updated_at),
        )
        return record.id

    async def update_file_record(self, file_id: str, patch: dict) -> FileRecord:
        unknown = set(patch) - FILE_PATCH_FIELDS
        if unknown:
            raise PersistenceError(f"Cannot update file fields: {sorted(unknown)}")
        assignments = []
        params: list = []
        for column, value in patch.items():
            if column == "embedding":
                assignments.append("embedding = %s::vector")
                value = _to_vector(value)
            else:
                assignments.append(f"{column} = %s")
                if hasattr(value, "value"):
                    value = value.value
            params.append(value)
        assignments.append("updated_at = now()")
        params.append(file_id)
        row = await self._fetch_one(
            f"""
            UPDATE memory_files SET {", ".join(assignments)}
            WHERE id = %s
            RETURNING {_FILE_COLUMNS}
            """,
            params,
        )
        if row is None:
            raise PersistenceError(f"File {file_id} not found")
        return _row_to_file(row)

    async def get_file(self, user_id: str, file_id: str) -> Optional[FileRecord]:
        row = await self._fetch_one(
            f"SELECT {_FILE_COLUMNS} FROM memory_files WHERE id = %s AND user_id = %s",
            (file_id, user_id),
        )
        return _row_to_file(row) if row else None

    async def find_file_by_hash(self, user_id: str, content_hash: str) -> Optional[FileRecord]:
        row = await self._fetch_one(
            f"""
            SELECT {_FILE_COLUMNS} FROM memory_files
            WHERE user_id = %s AND content_hash = %s
            LIMIT 1
            """,
            (user_id, content_hash),
        )
        return _row_to_file(row) if row else None

    async def query_ready_files(self, user_id: str) -> list[FileRecord]:
        rows = await self._fetch(
            f"""
            SELECT {_FILE_COLUMNS} FROM memory_files
            WHERE user_id = %s AND status = 'ready'
            ORDER BY uploaded_at DESC
            """,
            (user_id,),
        )
        return [_row_to_file(r) for r in rows]

    async def list_files(self, user_id: str) -> list[FileRecord]:
        rows = await self._fetch(
            f"""
            SELECT {_FILE_COLUMNS} FROM memory_files
            WHERE user_id = %s
            ORDER BY uploaded_at DESC
            """,
            (user_id,),
        )
        return [_row_to_file(r) for r in rows]

    async def delete_file(self, user_id: str, file_id: str) -> bool:
        count = await self._execute(
            "DELETE FROM memory_files WHERE id = %s AND user_id = %s",
            (file_id, user_id),
        )
        return count > 0

    async def get_context_window(self, model_name: str) -> Optional[int]:
        row = await self._fetch_one(
            "SELECT context_window FROM models WHERE model_identifier = %s",
            (model_name,),
        )
        return int(row["context_window"]) if row else None
