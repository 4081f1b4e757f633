"""
Notebook RAG.

Attach documents to notebooks and ask questions answered only from them:
background ingestion into a notebook-scoped vector index, kept consistent
with a relational ledger of attachment state and chat history.
"""

__all__ = [
    "config",
    "embedding",
    "errors",
    "events",
    "index",
    "ingest",
    "ledger",
    "llm",
    "orchestrator",
    "query",
    "workspace",
]
