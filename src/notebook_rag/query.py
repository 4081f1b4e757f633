from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .embedding import EmbeddingEngine
from .errors import EmbeddingFailure, LanguageModelFailure
from .index import SearchResult, VectorIndex
from .ledger import ChatEntry, Ledger, Role
from .llm import LanguageModel, Message

logger = logging.getLogger(__name__)

REFUSAL = "I don't have enough information in the uploaded files to answer that."

SYSTEM_PROMPT = f"""You are a helpful assistant.

IMPORTANT RULES:
1. You MUST answer using ONLY the provided context.
2. If the context does not contain the answer, respond EXACTLY with:
   '{REFUSAL}'
3. Do NOT make up information.
4. You MUST answer in the SAME language as the user's question.
5. The language rule has priority over all stylistic preferences."""


def _build_prompt(question: str, contexts: Sequence[SearchResult]) -> str:
    parts = [f"Question: {question}\n\nContext:\n\n"]
    for chunk in contexts:
        parts.append(f"----\nFILE_PATH: {chunk.path}\nCONTENT: {chunk.text}\n\n")
    return "".join(parts)


def _history_messages(entries: Sequence[ChatEntry]) -> List[Message]:
    return [
        {"role": entry.role.value, "content": entry.message}
        for entry in entries
        if entry.role in (Role.USER, Role.ASSISTANT)
    ]


@dataclass
class Exchange:
    reply: ChatEntry
    contexts: List[SearchResult] = field(default_factory=list)


class ChatEngine:
    """Answers questions inside a notebook from that notebook's attachments only."""

    def __init__(
        self,
        ledger: Ledger,
        index: VectorIndex,
        embedder: EmbeddingEngine,
        llm: LanguageModel,
        top_k: int = 5,
        history_messages: int = 6,
        llm_timeout: Optional[float] = None,
        embed_timeout: Optional[float] = None,
    ) -> None:
        self.ledger = ledger
        self.index = index
        self.embedder = embedder
        self.llm = llm
        self.top_k = top_k
        self.history_messages = history_messages
        self.llm_timeout = llm_timeout
        self.embed_timeout = embed_timeout

    async def retrieve(self, notebook_id: str, question: str) -> List[SearchResult]:
        try:
            vector = await asyncio.wait_for(self.embedder.embed_one(question), self.embed_timeout)
        except asyncio.TimeoutError as exc:
            raise EmbeddingFailure(
                f"Embedding the question took longer than {self.embed_timeout}s"
            ) from exc
        return await asyncio.to_thread(self.index.search, notebook_id, vector, self.top_k)

    async def send_message(self, notebook_id: str, message: str) -> ChatEntry:
        """Run one exchange and return the persisted assistant entry."""
        return (await self.exchange(notebook_id, message)).reply

    async def exchange(self, notebook_id: str, message: str) -> Exchange:
        """
        Run one retrieval-augmented exchange.

        Embedding or search failures abort before anything is written. Once
        the user entry is stored it stays, even if the language model then
        fails; the error propagates to the caller.
        """
        history: List[ChatEntry] = []
        if self.history_messages:
            history = await asyncio.to_thread(
                self.ledger.chat_history, notebook_id, self.history_messages
            )

        contexts = await self.retrieve(notebook_id, message)
        logger.debug("Retrieved %d chunks for notebook %s", len(contexts), notebook_id)

        await asyncio.to_thread(self.ledger.add_chat_entry, notebook_id, Role.USER, message)

        if not contexts:
            answer = REFUSAL
        else:
            answer = await self._ask(message, contexts, history)

        reply = await asyncio.to_thread(
            self.ledger.add_chat_entry, notebook_id, Role.ASSISTANT, answer
        )
        return Exchange(reply=reply, contexts=contexts)

    async def _ask(
        self, question: str, contexts: Sequence[SearchResult], history: Sequence[ChatEntry]
    ) -> str:
        prompt = _build_prompt(question, contexts)
        call = asyncio.to_thread(
            self.llm.generate, SYSTEM_PROMPT, prompt, _history_messages(history)
        )
        try:
            return await asyncio.wait_for(call, self.llm_timeout)
        except asyncio.TimeoutError as exc:
            raise LanguageModelFailure(
                f"Language model did not answer within {self.llm_timeout}s"
            ) from exc


__all__ = ["ChatEngine", "Exchange", "REFUSAL", "SYSTEM_PROMPT"]
