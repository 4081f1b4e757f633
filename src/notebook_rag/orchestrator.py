"""Background ingestion: file -> text -> chunks -> vectors -> index -> ledger status."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .embedding import EmbeddingEngine
from .errors import ExtractionFailure
from .events import EventSink, IngestionEvent, IngestionEventKind, LoggingEventSink
from .index import EmbeddingRecord, VectorIndex
from .ingest import check_supported, chunk_text, extract_text
from .ledger import Attachment, AttachmentStatus, Ledger

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Failed to process the file."


class IngestionOrchestrator:
    """Runs one detached ingestion job per uploaded attachment.

    ``upload`` does the synchronous pre-checks, commits a ``pending`` ledger
    row and returns; the rest happens in an ``asyncio.Task`` the orchestrator
    keeps a handle to, so callers (and tests) can ``wait`` for it.

    A job ends in exactly one of two states. ``ready`` is only written after
    the whole batch of vectors is in the index; on any failure the vectors
    for the attachment are purged and the row is moved to ``error`` on a
    best-effort basis.
    """

    def __init__(
        self,
        ledger: Ledger,
        index: VectorIndex,
        embedder: EmbeddingEngine,
        events: Optional[EventSink] = None,
        extract_timeout: Optional[float] = None,
        embed_timeout: Optional[float] = None,
    ) -> None:
        self.ledger = ledger
        self.index = index
        self.embedder = embedder
        self.events = events or LoggingEventSink()
        self.extract_timeout = extract_timeout
        self.embed_timeout = embed_timeout
        self._tasks: Dict[str, asyncio.Task] = {}

    async def upload(self, notebook_id: str, file_path: Path | str) -> Attachment:
        """Register `file_path` in `notebook_id` and start ingesting it.

        Raises UnsupportedFormat, ExtractionFailure (file missing) or
        NotebookNotFound before any ledger row is written.
        """
        path = Path(file_path).expanduser().resolve()
        check_supported(path)
        if not path.is_file():
            raise ExtractionFailure(f"File not found: {path}")

        attachment = await asyncio.to_thread(self.ledger.create_attachment, notebook_id, path)
        logger.info("Queued %s as attachment %s", attachment.file_name, attachment.id)

        task = asyncio.create_task(self._run(attachment), name=f"ingest-{attachment.id}")
        self._tasks[attachment.id] = task
        task.add_done_callback(lambda _t, key=attachment.id: self._tasks.pop(key, None))
        return attachment

    def task(self, attachment_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(attachment_id)

    def pending_jobs(self) -> List[str]:
        return list(self._tasks)

    async def wait(self, attachment_id: str) -> Optional[AttachmentStatus]:
        """Wait for the job of `attachment_id` (if any) and return the ledger status."""
        task = self._tasks.get(attachment_id)
        if task is not None:
            await task
        attachment = await asyncio.to_thread(self.ledger.get_attachment, attachment_id)
        return attachment.status if attachment is not None else None

    async def drain(self) -> None:
        """Wait until every running job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()))

    async def _run(self, attachment: Attachment) -> None:
        attachment_id = attachment.id
        self._emit(IngestionEventKind.STARTED, attachment_id)
        try:
            records = await self._build_records(attachment)
            await asyncio.to_thread(self.index.add, records)
            still_exists = await asyncio.to_thread(
                self.ledger.set_status, attachment_id, AttachmentStatus.READY
            )
        except Exception:
            logger.exception("Ingestion of attachment %s failed", attachment_id)
            await self._fail(attachment_id)
            return

        if not still_exists:
            logger.info("Attachment %s was deleted during ingestion; dropping its vectors", attachment_id)
            await self._purge(attachment_id)
            return

        logger.info("Attachment %s ready (%d chunks)", attachment_id, len(records))
        self._emit(IngestionEventKind.SUCCEEDED, attachment_id)

    async def _build_records(self, attachment: Attachment) -> List[EmbeddingRecord]:
        text = await asyncio.wait_for(
            asyncio.to_thread(extract_text, attachment.file_path), self.extract_timeout
        )
        chunks = chunk_text(text)
        if not chunks:
            raise ExtractionFailure(f"No extractable text in {attachment.file_path}")

        logger.debug("Embedding %d chunks of %s", len(chunks), attachment.file_name)
        vectors = await asyncio.wait_for(self.embedder.embed_many(chunks), self.embed_timeout)
        return [
            EmbeddingRecord(
                attachment_id=attachment.id,
                notebook_id=attachment.notebook_id,
                path=attachment.file_path,
                text=chunk,
                vector=vector,
            )
            for chunk, vector in zip(chunks, vectors)
        ]

    async def _purge(self, attachment_id: str) -> None:
        try:
            await asyncio.to_thread(self.index.delete_by_attachment, attachment_id)
        except Exception:
            logger.exception("Could not remove vectors of attachment %s", attachment_id)

    async def _fail(self, attachment_id: str) -> None:
        await self._purge(attachment_id)
        try:
            await asyncio.to_thread(self.ledger.set_status, attachment_id, AttachmentStatus.ERROR)
        except Exception:
            logger.exception("Could not mark attachment %s as failed", attachment_id)
        self._emit(IngestionEventKind.FAILED, attachment_id, FAILURE_MESSAGE)

    def _emit(self, kind: IngestionEventKind, attachment_id: str, error: Optional[str] = None) -> None:
        try:
            self.events.emit(IngestionEvent(kind=kind, attachment_id=attachment_id, error=error))
        except Exception:
            logger.exception("Event sink failed on %s for %s", kind.value, attachment_id)


__all__ = ["FAILURE_MESSAGE", "IngestionOrchestrator"]
