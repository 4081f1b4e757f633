"""Wires the ledger, vector index, embedding engine and language model together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .config import AppConfig, load_config
from .embedding import EmbeddingEngine
from .events import EventSink
from .index import VectorIndex
from .ledger import Attachment, AttachmentStatus, ChatEntry, Ledger, Notebook
from .llm import LanguageModel, OpenAIChatModel
from .orchestrator import IngestionOrchestrator
from .query import ChatEngine

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    interrupted: int = 0
    orphaned: int = 0


class Workspace:
    """One process-wide set of stores shared by ingestion and chat.

    The orchestrator and the chat engine hold references to the same ledger,
    index and embedding engine. Deletes touch the vector index before the
    ledger, so an interrupted delete leaves a ledger row that can simply be
    deleted again rather than vectors nobody owns; :meth:`recover` sweeps up
    whatever a crash left behind.
    """

    def __init__(
        self,
        cfg: AppConfig,
        ledger: Ledger,
        index: VectorIndex,
        embedder: EmbeddingEngine,
        llm: LanguageModel,
        events: Optional[EventSink] = None,
    ) -> None:
        self.cfg = cfg
        self.ledger = ledger
        self.index = index
        self.embedder = embedder
        self.llm = llm
        self.startup_recovery: Optional[RecoveryReport] = None
        self.orchestrator = IngestionOrchestrator(
            ledger,
            index,
            embedder,
            events=events,
            extract_timeout=cfg.extract_timeout,
            embed_timeout=cfg.embed_timeout,
        )
        self.chat = ChatEngine(
            ledger,
            index,
            embedder,
            llm,
            top_k=cfg.top_k,
            history_messages=cfg.history_messages,
            llm_timeout=cfg.llm_timeout,
            embed_timeout=cfg.embed_timeout,
        )

    @classmethod
    def open(
        cls,
        cfg: AppConfig | None = None,
        embedder: Optional[EmbeddingEngine] = None,
        llm: Optional[LanguageModel] = None,
        events: Optional[EventSink] = None,
    ) -> "Workspace":
        if cfg is None:
            cfg = load_config()

        if embedder is None:
            embedder = EmbeddingEngine.load(
                cfg.embedding_model_name,
                cfg.embedding_cache_dir_resolved,
                batch_size=cfg.embedding_batch_size,
            )
        logger.info("Embedding model %(model_name)s, dimension %(dimension)d", embedder.info())
        index = VectorIndex(cfg.index_dir_resolved, embedder.dim, embedder.model_name).open()
        ledger = Ledger(cfg.ledger_path)
        if llm is None:
            llm = OpenAIChatModel(
                cfg.openai_model, base_url=cfg.openai_base_url, timeout=cfg.llm_timeout
            )
        return cls(cfg, ledger, index, embedder, llm, events=events)

    async def close(self) -> None:
        await self.orchestrator.drain()
        self.embedder.close()
        self.ledger.close()

    async def __aenter__(self) -> "Workspace":
        if self.cfg.recover_on_start:
            self.startup_recovery = await self.recover()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # Notebooks

    async def create_notebook(self, title: str) -> Notebook:
        return await asyncio.to_thread(self.ledger.create_notebook, title)

    async def list_notebooks(self) -> List[Notebook]:
        return await asyncio.to_thread(self.ledger.list_notebooks)

    async def open_notebook(self, notebook_id: str) -> Notebook:
        return await asyncio.to_thread(self.ledger.mark_accessed, notebook_id)

    async def delete_notebook(self, notebook_id: str) -> bool:
        attachments = await asyncio.to_thread(self.ledger.list_attachments, notebook_id)
        for attachment in attachments:
            await asyncio.to_thread(self.index.delete_by_attachment, attachment.id)
        return await asyncio.to_thread(self.ledger.delete_notebook, notebook_id)

    # Attachments

    async def upload(self, notebook_id: str, file_path: Path | str) -> Attachment:
        return await self.orchestrator.upload(notebook_id, file_path)

    async def list_attachments(self, notebook_id: str) -> List[Attachment]:
        return await asyncio.to_thread(self.ledger.list_attachments, notebook_id)

    async def delete_attachment(self, attachment_id: str) -> bool:
        removed = await asyncio.to_thread(self.index.delete_by_attachment, attachment_id)
        deleted = await asyncio.to_thread(self.ledger.delete_attachment, attachment_id)
        logger.info("Deleted attachment %s (%d vectors)", attachment_id, removed)
        return deleted

    # Chat

    async def send_message(self, notebook_id: str, message: str) -> ChatEntry:
        return await self.chat.send_message(notebook_id, message)

    async def chat_history(self, notebook_id: str) -> List[ChatEntry]:
        return await asyncio.to_thread(
            self.ledger.chat_history, notebook_id, self.cfg.chat_history_limit
        )

    # Recovery

    async def recover(self) -> RecoveryReport:
        """Repair state left by a crash: interrupted jobs and orphaned vectors."""
        report = RecoveryReport()

        running = set(self.orchestrator.pending_jobs())
        stuck = await asyncio.to_thread(self.ledger.list_by_status, AttachmentStatus.PENDING)
        for attachment in stuck:
            if attachment.id in running:
                continue
            await asyncio.to_thread(self.index.delete_by_attachment, attachment.id)
            await asyncio.to_thread(self.ledger.set_status, attachment.id, AttachmentStatus.ERROR)
            report.interrupted += 1

        live = await asyncio.to_thread(self.ledger.attachment_ids)
        indexed = await asyncio.to_thread(self.index.attachment_ids)
        for attachment_id in indexed - live - running:
            await asyncio.to_thread(self.index.delete_by_attachment, attachment_id)
            report.orphaned += 1

        if report.interrupted or report.orphaned:
            logger.warning(
                "Recovered %d interrupted attachments and %d orphaned vector sets",
                report.interrupted,
                report.orphaned,
            )
        return report


__all__ = ["RecoveryReport", "Workspace"]
