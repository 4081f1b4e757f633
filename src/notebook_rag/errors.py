"""Exceptions raised by the ingestion and retrieval pipeline."""

from __future__ import annotations


class NotebookRagError(Exception):
    """Base class for every error this package raises on purpose."""


class UnsupportedFormat(NotebookRagError):
    def __init__(self, extension: str) -> None:
        self.extension = extension
        shown = f".{extension}" if extension else "(no extension)"
        super().__init__(f"Unsupported file format: {shown}")


class ExtractionFailure(NotebookRagError):
    pass


class EmbeddingModelUnavailable(NotebookRagError):
    """The embedding model could not be loaded from the local cache."""


class EmbeddingFailure(NotebookRagError):
    pass


class IndexWriteFailure(NotebookRagError):
    pass


class IndexSearchFailure(NotebookRagError):
    pass


class IndexSchemaMismatch(NotebookRagError):
    """The on-disk vector index was built for a different embedding model."""


class LedgerFailure(NotebookRagError):
    pass


class NotebookNotFound(LedgerFailure):
    def __init__(self, notebook_id: str) -> None:
        self.notebook_id = notebook_id
        super().__init__(f"Notebook {notebook_id} not found")


class LanguageModelFailure(NotebookRagError):
    pass


__all__ = [
    "NotebookRagError",
    "UnsupportedFormat",
    "ExtractionFailure",
    "EmbeddingModelUnavailable",
    "EmbeddingFailure",
    "IndexWriteFailure",
    "IndexSearchFailure",
    "IndexSchemaMismatch",
    "LedgerFailure",
    "NotebookNotFound",
    "LanguageModelFailure",
]
