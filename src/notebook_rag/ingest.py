from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .errors import ExtractionFailure, UnsupportedFormat

logger = logging.getLogger(__name__)

PARAGRAPH_BREAK = "\n\n"
PDF_EXTENSIONS = frozenset({"pdf"})
TEXT_EXTENSIONS = frozenset({"md", "txt"})
SUPPORTED_EXTENSIONS = PDF_EXTENSIONS | TEXT_EXTENSIONS


def file_extension(path: Path | str) -> str:
    return Path(path).suffix.lstrip(".").lower()


def check_supported(path: Path | str) -> str:
    """Return the normalised extension of `path` or raise UnsupportedFormat."""
    ext = file_extension(path)
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormat(ext)
    return ext


def load_markdown(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def load_pdf(path: Path) -> str:
    reader = PdfReader(str(path))
    pages = []
    for number, page in enumerate(reader.pages, start=1):
        try:
            pages.append(page.extract_text() or "")
        except Exception as exc:
            logger.warning("Could not extract page %d of %s: %s", number, path, exc)
            pages.append("")
    # Page boundaries become paragraph boundaries for the chunker.
    return PARAGRAPH_BREAK.join(pages)


def extract_text(path: Path | str) -> str:
    """
    Turn a stored attachment into raw text.

    Dispatches on the (case-insensitive) extension. Unsupported types fail
    with UnsupportedFormat before the file is touched; read or parse errors
    surface as ExtractionFailure.
    """
    path = Path(path)
    ext = check_supported(path)
    try:
        if ext in PDF_EXTENSIONS:
            return load_pdf(path)
        return load_markdown(path)
    except (OSError, UnicodeDecodeError, PyPdfError) as exc:
        raise ExtractionFailure(f"Failed to extract text from {path}") from exc


def chunk_text(text: str) -> List[str]:
    """
    Split raw text into paragraph chunks.

    Source order is preserved, empty and whitespace-only spans are dropped and
    no chunk crosses a blank-line boundary. There is no size cap: one long
    paragraph stays one chunk.
    """
    cleaned = text.replace("\r\n", "\n")
    chunks: List[str] = []
    for span in cleaned.split(PARAGRAPH_BREAK):
        span = span.strip()
        if span:
            chunks.append(span)
    return chunks


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "check_supported",
    "chunk_text",
    "extract_text",
    "file_extension",
]
