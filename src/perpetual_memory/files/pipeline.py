"""
File ingestion pipeline.

    validate → extract + hash → duplicate check → create (pending)
      → compressing → embedding → finalizing → ready
                 ↘            ↘             ↘
                          failed

Invariants:
  - nothing is written before validation and extraction succeed
  - one record per (user_id, content_hash); a repeat upload returns the
    existing record
  - description and embedding are written together with status=ready in a
    single update, never earlier
  - ready and failed are terminal

The final ready/failed writes are retried with exponential backoff
(1s, 2s, 4s by default). If every attempt fails the error is logged, not
raised, and the computed description/embedding are kept in
``pending_finalization`` so ``retry_finalize`` can complete the record later.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Optional, TypeVar

from ..errors import (
    CancelledUpload,
    ExternalProviderError,
    IngestionError,
    PersistenceError,
    ValidationError,
)
from ..memory.config import MemoryConfig
from ..models import FileRecord, FileStatus, ProcessingStage, ProgressUpdate
from ..providers import EmbeddingProvider
from ..retry import ProgressCallback, RetryPolicy, emit_progress, retry_async
from ..store import RecordStore
from .compressor import FileCompressor
from .extraction import ExtractionResult, extract_text, validate_upload

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Progress milestones per stage
PROGRESS = {
    "extraction_start": 0,
    "extraction_end": 25,
    "compression_start": 25,
    "compression_end": 75,
    "embedding_start": 75,
    "embedding_end": 90,
    "finalization_start": 90,
    "finalization_end": 100,
}


class FileIngestionPipeline:
    """
    Usage:
        pipeline = FileIngestionPipeline(store, FileCompressor(llm), embedding_provider)
        record = await pipeline.process_file(data, "plan.pdf", user_id, on_progress=print)
    """

    def __init__(
        self,
        store: RecordStore,
        compressor: FileCompressor,
        embeddings: EmbeddingProvider,
        config: Optional[MemoryConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.compressor = compressor
        self.embeddings = embeddings
        self.config = config or MemoryConfig()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
        )
        self.pending_finalization: dict[str, tuple[FileRecord, str, list[float]]] = {}

    async def process_file(
        self,
        file_bytes: bytes,
        filename: str,
        user_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FileRecord:
        """
        Run an upload through the pipeline and return its record.

        Raises ValidationError for bad input and IngestionError when the
        upload cannot be read or the record cannot be created. Once a record
        exists, provider failures end in a ``failed`` record instead.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required and must be a non-empty string")
        validate_upload(file_bytes, filename, self.config.max_file_size_mb)

        await self._report(on_progress, "", ProcessingStage.EXTRACTING,
                           PROGRESS["extraction_start"], "Validating file...")
        extraction = self._extract(file_bytes, filename)
        await self._report(on_progress, "", ProcessingStage.EXTRACTING,
                           PROGRESS["extraction_end"],
                           f"Extracted text ({extraction.word_count} words)")

        if not self.config.skip_duplicate_check:
            existing = await self._find_duplicate(user_id, extraction.content_hash)
            if existing is not None:
                logger.info(
                    "Duplicate upload of %s for user %s; returning existing file %s",
                    filename, user_id, existing.id,
                )
                return existing

        record, created = await self._create_record(user_id, filename, extraction)
        if not created:
            return record
        await self._report(on_progress, record.id, ProcessingStage.EXTRACTING,
                           PROGRESS["extraction_end"], "File record created")

        stage = ProcessingStage.COMPRESSING
        try:
            record = await self._advance(record, stage, PROGRESS["compression_start"],
                                         on_progress, "Starting compression...", cancel_event)
            compressed = await self._cancellable(
                self.compressor.compress_file(extraction.text, filename, extraction.file_type),
                cancel_event,
            )
            description = compressed["description"]
            await self._report(on_progress, record.id, stage,
                               PROGRESS["compression_end"], "Compression complete")

            stage = ProcessingStage.EMBEDDING
            record = await self._advance(record, stage, PROGRESS["embedding_start"],
                                         on_progress, "Generating embedding...", cancel_event)
            embedding = await self._cancellable(self.embeddings.embed(description), cancel_event)
            await self._report(on_progress, record.id, stage,
                               PROGRESS["embedding_end"], "Embedding complete")

            stage = ProcessingStage.FINALIZING
            record = await self._advance(record, stage, PROGRESS["finalization_start"],
                                         on_progress, "Finalizing...", cancel_event)
        except CancelledUpload as e:
            return await self._fail(record, "CANCELLED", str(e), stage, on_progress)
        except ExternalProviderError as e:
            return await self._fail(record, e.code, str(e), stage, on_progress)
        except Exception as e:
            await self._fail(record, "UNKNOWN_ERROR", str(e), stage, on_progress)
            raise IngestionError(
                f"Unexpected error during {stage.value}: {e}",
                code="UNKNOWN_ERROR",
                stage=stage.value,
            ) from e

        final = await self._finalize(record, description, embedding, on_progress, cancel_event)
        if final.is_ready:
            await self._report(on_progress, record.id, stage,
                               PROGRESS["finalization_end"], "Processing complete")
        return final

    # ── Stages ──

    def _extract(self, file_bytes: bytes, filename: str) -> ExtractionResult:
        try:
            return extract_text(file_bytes, filename)
        except IngestionError:
            raise
        except Exception as e:
            raise IngestionError(
                f"Unexpected error during file extraction: {e}",
                code="EXTRACTION_ERROR",
                stage=ProcessingStage.EXTRACTING.value,
            ) from e

    async def _find_duplicate(self, user_id: str, digest: str) -> Optional[FileRecord]:
        try:
            return await self.store.find_file_by_hash(user_id, digest)
        except Exception as e:
            raise IngestionError(
                f"Duplicate check failed: {e}",
                code="DATABASE_ERROR",
                stage=ProcessingStage.EXTRACTING.value,
            ) from e

    async def _create_record(
        self, user_id: str, filename: str, extraction: ExtractionResult
    ) -> tuple[FileRecord, bool]:
        """Insert the pending record; returns (record, created)."""
        record = FileRecord(
            user_id=user_id,
            filename=filename,
            file_type=extraction.file_type,
            content_hash=extraction.content_hash,
            status=FileStatus.PENDING,
            progress=0,
        )
        try:
            await self.store.create_file_record(record)
        except Exception as e:
            # A concurrent upload of the same bytes may have won the insert.
            existing = await self._find_duplicate(user_id, extraction.content_hash)
            if existing is not None:
                logger.info("Lost insert race for %s; returning file %s", filename, existing.id)
                return existing, False
            raise IngestionError(
                f"Failed to create database record: {e}",
                code="DATABASE_ERROR",
                stage=ProcessingStage.EXTRACTING.value,
            ) from e
        logger.info("Created file %s (%s, %s) for user %s",
                    record.id, filename, extraction.file_type.value, user_id)
        return record, True

    async def _advance(
        self,
        record: FileRecord,
        stage: ProcessingStage,
        progress: int,
        on_progress: Optional[ProgressCallback],
        message: str,
        cancel_event: Optional[asyncio.Event],
    ) -> FileRecord:
        """Enter a stage: check for cancellation, persist progress (best effort), report."""
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledUpload(f"Upload cancelled before {stage.value}")
        patch = {"status": FileStatus.PROCESSING, "processing_stage": stage, "progress": progress}
        try:
            record = await self.store.update_file_record(record.id, patch)
        except Exception as e:
            logger.warning("Failed to persist progress for file %s at %s: %s", record.id, stage.value, e)
            record = replace(record, **patch)
        logger.info("File %s → %s (%d%%)", record.id, stage.value, progress)
        await self._report(on_progress, record.id, stage, progress, message)
        return record

    async def _cancellable(self, call: Awaitable[T], cancel_event: Optional[asyncio.Event]) -> T:
        """Await a provider call, abandoning it if the upload is cancelled."""
        if cancel_event is None:
            return await call
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(cancel_event.wait())
        finished = False
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finished = task.done()
        finally:
            waiter.cancel()
            # Also runs when the caller itself is cancelled mid-wait.
            if not task.done():
                task.cancel()
        if finished:
            return task.result()
        raise CancelledUpload("Upload cancelled during provider call")

    async def _finalize(
        self,
        record: FileRecord,
        description: str,
        embedding: list[float],
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> FileRecord:
        patch = {
            "status": FileStatus.READY,
            "processing_stage": ProcessingStage.FINALIZING,
            "progress": PROGRESS["finalization_end"],
            "description": description,
            "embedding": embedding,
            "error_message": None,
        }
        try:
            final = await retry_async(
                lambda: self.store.update_file_record(record.id, patch),
                self.retry_policy,
                description=f"Finalize file {record.id}",
                cancel_event=cancel_event,
            )
        except CancelledUpload as e:
            return await self._fail(record, "CANCELLED", str(e), ProcessingStage.FINALIZING, on_progress)
        except Exception as e:
            self.pending_finalization[record.id] = (record, description, embedding)
            logger.error(
                "Failed to mark file %s ready after %d attempts: %s (kept for retry_finalize)",
                record.id, self.retry_policy.max_attempts, e,
            )
            return record
        self.pending_finalization.pop(record.id, None)
        logger.info("File %s ready", record.id)
        return final

    async def _fail(
        self,
        record: FileRecord,
        code: str,
        message: str,
        stage: ProcessingStage,
        on_progress: Optional[ProgressCallback],
    ) -> FileRecord:
        error_message = f"[{code}] {message}"
        patch = {
            "status": FileStatus.FAILED,
            "processing_stage": stage,
            "error_message": error_message,
            "description": None,
            "embedding": None,
        }
        logger.warning("File %s failed at %s: %s", record.id, stage.value, error_message)
        try:
            failed = await retry_async(
                lambda: self.store.update_file_record(record.id, patch),
                self.retry_policy,
                description=f"Mark file {record.id} failed",
            )
        except Exception as e:
            logger.error(
                "Failed to mark file %s failed after %d attempts: %s",
                record.id, self.retry_policy.max_attempts, e,
            )
            failed = replace(record, **patch)
        await self._report(on_progress, record.id, stage, record.progress, error_message)
        return failed

    async def _report(
        self,
        on_progress: Optional[ProgressCallback],
        file_id: str,
        stage: ProcessingStage,
        progress: int,
        message: str,
    ) -> None:
        await emit_progress(on_progress, ProgressUpdate(file_id, stage, progress, message))

    # ── Management ──

    async def retry_finalize(self, file_id: str) -> Optional[FileRecord]:
        """Re-attempt the ready write for a file whose finalize gave up earlier."""
        pending = self.pending_finalization.get(file_id)
        if pending is None:
            return None
        record, description, embedding = pending
        final = await self._finalize(record, description, embedding)
        return final if final.is_ready else None

    async def get_file(self, user_id: str, file_id: str) -> Optional[FileRecord]:
        return await self.store.get_file(user_id, file_id)

    async def list_files(self, user_id: str) -> list[FileRecord]:
        return await self.store.list_files(user_id)

    async def delete_file(self, user_id: str, file_id: str) -> bool:
        try:
            deleted = await self.store.delete_file(user_id, file_id)
        except Exception as e:
            raise PersistenceError(f"Failed to delete file {file_id}: {e}") from e
        if deleted:
            self.pending_finalization.pop(file_id, None)
            logger.info("Deleted file %s for user %s", file_id, user_id)
        return deleted
