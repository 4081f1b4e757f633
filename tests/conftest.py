"""Shared fixtures: deterministic stand-ins for the embedding model and the LLM."""

import re
import threading
import time
import zlib
from pathlib import Path
from typing import Generator, List, Optional

import numpy as np
import pytest

from notebook_rag.config import AppConfig
from notebook_rag.embedding import EmbeddingEngine
from notebook_rag.index import VectorIndex
from notebook_rag.ledger import Ledger
from notebook_rag.workspace import Workspace

DIM = 128


class HashingEncoder:
    """Bag-of-words hashing encoder with the SentenceTransformer call signature.

    Texts sharing words land close together in cosine space, which is all the
    retrieval tests need. Also records batch sizes and call overlap.
    """

    def __init__(self, dim: int = DIM, delay: float = 0.0, fail_on: Optional[str] = None):
        self.dim = dim
        self.delay = delay
        self.fail_on = fail_on
        self.batch_sizes: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def get_sentence_embedding_dimension(self):
        return self.dim

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            vec[zlib.crc32(word.encode("utf-8")) % self.dim] += 1.0
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec

    def encode(self, sentences, **kwargs):
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            batch = [sentences] if isinstance(sentences, str) else list(sentences)
            self.batch_sizes.append(len(batch))
            if self.fail_on and any(self.fail_on in s for s in batch):
                raise RuntimeError("encoder exploded")
            return np.vstack([self._vector(s) for s in batch])
        finally:
            with self._lock:
                self.in_flight -= 1


class ScriptedLanguageModel:
    """Returns a fixed reply and records every call."""

    def __init__(self, reply: str = "The answer is 42.", error: Optional[Exception] = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[dict] = []

    def generate(self, system, prompt, history=()):
        self.calls.append({"system": system, "prompt": prompt, "history": list(history)})
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self, attachment_id):
        return [e.kind for e in self.events if e.attachment_id == attachment_id]


@pytest.fixture
def cfg(tmp_path: Path) -> AppConfig:
    config = AppConfig(
        data_dir=tmp_path / "data",
        extract_timeout=10,
        embed_timeout=10,
        llm_timeout=5,
    )
    config.index_dir_resolved.mkdir(parents=True, exist_ok=True)
    return config


@pytest.fixture
def encoder() -> HashingEncoder:
    return HashingEncoder()


@pytest.fixture
def embedder(encoder: HashingEncoder) -> Generator[EmbeddingEngine, None, None]:
    engine = EmbeddingEngine(encoder, model_name="hashing-encoder", batch_size=4)
    yield engine
    engine.close()


@pytest.fixture
def ledger(tmp_path: Path) -> Generator[Ledger, None, None]:
    db = Ledger(tmp_path / "ledger.sqlite3")
    yield db
    db.close()


@pytest.fixture
def index(tmp_path: Path, embedder: EmbeddingEngine) -> VectorIndex:
    return VectorIndex(tmp_path / "index", embedder.dim, embedder.model_name).open()


@pytest.fixture
def llm() -> ScriptedLanguageModel:
    return ScriptedLanguageModel()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def workspace(cfg, embedder, llm, sink) -> Generator[Workspace, None, None]:
    ws = Workspace.open(cfg, embedder=embedder, llm=llm, events=sink)
    yield ws
    ws.ledger.close()


@pytest.fixture
def docs(tmp_path: Path) -> Path:
    """A directory with a few small documents."""
    root = tmp_path / "docs"
    root.mkdir()
    (root / "volcanoes.md").write_text(
        "# Volcanoes\n\n"
        "Mount Etna is an active volcano on the island of Sicily.\n\n"
        "Lava from basaltic volcanoes is hot and runny.\n",
        encoding="utf-8",
    )
    (root / "bread.txt").write_text(
        "Sourdough bread needs a starter culture.\n\n"
        "Bake the bread loaf in a hot oven for forty minutes.\n",
        encoding="utf-8",
    )
    (root / "installer.exe").write_bytes(b"MZ\x90\x00")
    return root


@pytest.fixture
def blank_pdf(tmp_path: Path) -> Path:
    """A one-page PDF with no extractable text."""
    from pypdf import PdfWriter

    path = tmp_path / "scan.pdf"
    writer = PdfWriter()
    writer.add_blank_page(width=72, height=72)
    with path.open("wb") as f:
        writer.write(f)
    return path
