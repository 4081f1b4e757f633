from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = Path("config.yaml")
ENV_PREFIX = "NOTEBOOK_RAG_"


class AppConfig(BaseModel):
    # Storage: the ledger and the vector index both live under data_dir.
    data_dir: Path = Field(default=Path("data"))

    # Embeddings
    embedding_model_name: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2"
    )
    embedding_cache_dir: Optional[Path] = Field(default=None)
    embedding_batch_size: int = Field(default=32, ge=1)

    # Chat
    openai_model: str = Field(default="gpt-4o-mini")
    openai_base_url: Optional[str] = Field(default=None)
    top_k: int = Field(default=5, ge=1)
    history_messages: int = Field(default=6, ge=0)
    chat_history_limit: int = Field(default=100, ge=1)

    # Run Workspace.recover() when a workspace is entered.
    recover_on_start: bool = Field(default=True)

    # Seconds
    extract_timeout: float = Field(default=120.0, gt=0)
    embed_timeout: float = Field(default=600.0, gt=0)
    llm_timeout: float = Field(default=120.0, gt=0)

    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def data_dir_resolved(self) -> Path:
        return self.data_dir.resolve()

    @property
    def index_dir_resolved(self) -> Path:
        return self.data_dir_resolved / "index"

    @property
    def ledger_path(self) -> Path:
        return self.data_dir_resolved / "ledger.sqlite3"

    @property
    def embedding_cache_dir_resolved(self) -> Path:
        if self.embedding_cache_dir is not None:
            return self.embedding_cache_dir.resolve()
        return self.data_dir_resolved / "embedding_cache"


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid configuration in {path}: expected a mapping at the top level")
    return raw


def _env_overrides() -> Dict[str, str]:
    """Values from NOTEBOOK_RAG_<FIELD> variables, e.g. NOTEBOOK_RAG_TOP_K=3."""
    overrides = {}
    for name in AppConfig.model_fields:
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = value
    return overrides


def load_config(path: Optional[Path] = None) -> AppConfig:
    """
    Build the configuration from defaults, a YAML file and the environment.

    The YAML file (default `config.yaml` in the working directory) is
    optional. `.env` is loaded first, and NOTEBOOK_RAG_* variables win over
    the file. Creates the data and index directories.
    """
    load_dotenv()

    path = DEFAULT_CONFIG_PATH if path is None else Path(path)
    values = {**_read_yaml(path), **_env_overrides()}

    try:
        cfg = AppConfig(**values)
    except ValidationError as e:
        raise SystemExit(f"Invalid configuration in {path}:\n{e}") from e

    cfg.index_dir_resolved.mkdir(parents=True, exist_ok=True)
    return cfg


__all__ = ["AppConfig", "load_config"]
