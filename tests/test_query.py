"""Tests for the retrieval-augmented chat engine."""

import pytest

from notebook_rag.errors import EmbeddingFailure, LanguageModelFailure
from notebook_rag.ledger import Role
from notebook_rag.query import REFUSAL, SYSTEM_PROMPT, _build_prompt
from notebook_rag.index import SearchResult


async def _ingest(workspace, notebook_id, path):
    att = await workspace.upload(notebook_id, path)
    await workspace.orchestrator.wait(att.id)
    return att


class TestBuildPrompt:
    def test_every_chunk_is_delimited_and_attributed(self):
        contexts = [
            SearchResult("a1", "nb", "/docs/one.md", "First fact.", 0.1),
            SearchResult("a2", "nb", "/docs/two.pdf", "Second fact.", 0.2),
        ]

        prompt = _build_prompt("What are the facts?", contexts)

        assert prompt.startswith("Question: What are the facts?")
        assert prompt.count("----\n") == 2
        assert "FILE_PATH: /docs/one.md\nCONTENT: First fact." in prompt
        assert "FILE_PATH: /docs/two.pdf\nCONTENT: Second fact." in prompt

    def test_system_prompt_rules(self):
        assert REFUSAL in SYSTEM_PROMPT
        assert "ONLY the provided context" in SYSTEM_PROMPT
        assert "SAME language" in SYSTEM_PROMPT


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_empty_notebook_gets_fixed_refusal(self, workspace, llm):
        nb = await workspace.create_notebook("Empty")

        reply = await workspace.send_message(nb.id, "What is the capital of France?")

        assert reply.message == REFUSAL
        assert reply.role is Role.ASSISTANT
        assert llm.calls == []
        history = await workspace.chat_history(nb.id)
        assert [(e.role, e.message) for e in history] == [
            (Role.USER, "What is the capital of France?"),
            (Role.ASSISTANT, REFUSAL),
        ]

    @pytest.mark.asyncio
    async def test_answer_is_grounded_in_notebook_chunks(self, workspace, llm, docs):
        nb = await workspace.create_notebook("Geology")
        await _ingest(workspace, nb.id, docs / "volcanoes.md")

        exchange = await workspace.chat.exchange(nb.id, "Where is the volcano Mount Etna?")

        assert exchange.reply.message == "The answer is 42."
        assert len(llm.calls) == 1
        call = llm.calls[0]
        assert call["system"] == SYSTEM_PROMPT
        assert call["prompt"].startswith("Question: Where is the volcano Mount Etna?")
        assert "Mount Etna is an active volcano" in call["prompt"]
        assert f"FILE_PATH: {(docs / 'volcanoes.md').resolve()}" in call["prompt"]
        assert exchange.contexts[0].text.startswith("Mount Etna")
        assert len(exchange.contexts) <= workspace.cfg.top_k

    @pytest.mark.asyncio
    async def test_other_notebooks_never_supply_context(self, workspace, llm, docs, tmp_path):
        near = tmp_path / "twin.md"
        near.write_text("Sourdough bread needs a starter culture.", encoding="utf-8")
        nb_a = await workspace.create_notebook("A")
        nb_b = await workspace.create_notebook("B")
        await _ingest(workspace, nb_a.id, docs / "volcanoes.md")
        await _ingest(workspace, nb_b.id, near)

        exchange = await workspace.chat.exchange(nb_a.id, "Sourdough bread needs a starter culture.")

        assert exchange.contexts
        assert all(c.notebook_id == nb_a.id for c in exchange.contexts)
        assert "Sourdough" not in llm.calls[0]["prompt"].split("Context:", 1)[1]

    @pytest.mark.asyncio
    async def test_history_is_resupplied(self, workspace, llm, docs):
        nb = await workspace.create_notebook("Cooking")
        await _ingest(workspace, nb.id, docs / "bread.txt")

        await workspace.send_message(nb.id, "How long do I bake bread?")
        await workspace.send_message(nb.id, "And the starter?")

        assert llm.calls[0]["history"] == []
        assert llm.calls[1]["history"] == [
            {"role": "user", "content": "How long do I bake bread?"},
            {"role": "assistant", "content": "The answer is 42."},
        ]

    @pytest.mark.asyncio
    async def test_model_failure_keeps_user_entry(self, workspace, llm, docs):
        nb = await workspace.create_notebook("Cooking")
        await _ingest(workspace, nb.id, docs / "bread.txt")
        llm.error = LanguageModelFailure("server down")

        with pytest.raises(LanguageModelFailure):
            await workspace.send_message(nb.id, "How long do I bake bread?")

        history = await workspace.chat_history(nb.id)
        assert [(e.role, e.message) for e in history] == [(Role.USER, "How long do I bake bread?")]

    @pytest.mark.asyncio
    async def test_model_timeout(self, workspace, llm, docs):
        nb = await workspace.create_notebook("Cooking")
        await _ingest(workspace, nb.id, docs / "bread.txt")
        workspace.chat.llm_timeout = 0.01
        llm.delay = 0.2

        with pytest.raises(LanguageModelFailure):
            await workspace.send_message(nb.id, "How long do I bake bread?")

    @pytest.mark.asyncio
    async def test_embedding_failure_writes_nothing(self, workspace, encoder):
        nb = await workspace.create_notebook("Anything")
        encoder.fail_on = "boom"

        with pytest.raises(EmbeddingFailure):
            await workspace.send_message(nb.id, "boom?")

        assert await workspace.chat_history(nb.id) == []

    @pytest.mark.asyncio
    async def test_slow_question_embedding_times_out(self, workspace, encoder, docs):
        nb = await workspace.create_notebook("Cooking")
        await _ingest(workspace, nb.id, docs / "bread.txt")
        workspace.chat.embed_timeout = 0.01
        encoder.delay = 0.2

        with pytest.raises(EmbeddingFailure):
            await workspace.send_message(nb.id, "How long do I bake bread?")

        assert await workspace.chat_history(nb.id) == []

    @pytest.mark.asyncio
    async def test_workspace_passes_embedding_timeout(self, workspace, cfg):
        assert workspace.chat.embed_timeout == cfg.embed_timeout
