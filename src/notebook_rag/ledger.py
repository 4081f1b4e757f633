"""Relational record of notebooks, attachment lifecycle and chat history."""

from __future__ import annotations

import enum
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import LedgerFailure, NotebookNotFound
from .ingest import file_extension

logger = logging.getLogger(__name__)

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class AttachmentStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


class Role(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Notebook(Base):
    __tablename__ = "notebooks"

    id = Column(String(36), primary_key=True, default=_new_id)
    title = Column(String(200), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    last_accessed = Column(DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_accessed": self.last_accessed.isoformat() if self.last_accessed else None,
        }


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(String(36), primary_key=True, default=_new_id)
    notebook_id = Column(
        String(36), ForeignKey("notebooks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_name = Column(Text, nullable=False)
    file_path = Column(Text, nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_type = Column(String(16), nullable=False)
    status = Column(
        Enum(AttachmentStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
        default=AttachmentStatus.PENDING,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "notebook_id": self.notebook_id,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_size": self.file_size,
            "file_type": self.file_type,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ChatEntry(Base):
    __tablename__ = "chat_entries"
    __table_args__ = (Index("ix_chat_entries_notebook_ts", "notebook_id", "timestamp", "seq"),)

    # Insertion order; breaks ties between entries with the same timestamp.
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False, default=_new_id)
    notebook_id = Column(
        String(36), ForeignKey("notebooks.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(
        Enum(Role, values_callable=lambda e: [m.value for m in e], native_enum=False),
        nullable=False,
    )
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_now)

    def to_dict(self):
        return {
            "id": self.id,
            "notebook_id": self.notebook_id,
            "role": self.role.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Ledger:
    """Repository over the SQLite ledger.

    Every public method runs in its own transaction and returns detached ORM
    objects that stay readable after the session closes. Database errors are
    re-raised as :class:`LedgerFailure`.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        event.listen(self.engine, "connect", _enable_foreign_keys)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise LedgerFailure(f"Could not open ledger at {self.db_path}") from exc

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as exc:
            raise LedgerFailure(str(exc)) from exc

    def close(self) -> None:
        self.engine.dispose()

    # Notebooks

    def create_notebook(self, title: str) -> Notebook:
        notebook = Notebook(title=title)
        with self.transaction() as session:
            session.add(notebook)
        logger.debug("Created notebook %s (%s)", notebook.id, title)
        return notebook

    def list_notebooks(self) -> List[Notebook]:
        with self.transaction() as session:
            stmt = select(Notebook).order_by(Notebook.last_accessed.desc())
            return list(session.scalars(stmt))

    def get_notebook(self, notebook_id: str) -> Notebook:
        with self.transaction() as session:
            notebook = session.get(Notebook, notebook_id)
            if notebook is None:
                raise NotebookNotFound(notebook_id)
            return notebook

    def mark_accessed(self, notebook_id: str) -> Notebook:
        with self.transaction() as session:
            notebook = self._require_notebook(session, notebook_id)
            notebook.last_accessed = _now()
            return notebook

    def delete_notebook(self, notebook_id: str) -> bool:
        """Delete a notebook with its attachments and chat history."""
        with self.transaction() as session:
            notebook = session.get(Notebook, notebook_id)
            if notebook is None:
                return False
            for model in (Attachment, ChatEntry):
                session.execute(delete(model).where(model.notebook_id == notebook_id))
            session.delete(notebook)
        return True

    @staticmethod
    def _require_notebook(session: Session, notebook_id: str) -> Notebook:
        notebook = session.get(Notebook, notebook_id)
        if notebook is None:
            raise NotebookNotFound(notebook_id)
        return notebook

    # Attachments

    def create_attachment(self, notebook_id: str, file_path: Path | str) -> Attachment:
        """Insert a pending attachment for `file_path` and touch its notebook."""
        path = Path(file_path).resolve()
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise LedgerFailure(f"Failed to read file metadata: {exc}") from exc

        attachment = Attachment(
            notebook_id=notebook_id,
            file_name=path.name,
            file_path=str(path),
            file_size=size,
            file_type=file_extension(path) or "bin",
            status=AttachmentStatus.PENDING,
        )
        with self.transaction() as session:
            notebook = self._require_notebook(session, notebook_id)
            notebook.last_accessed = _now()
            session.add(attachment)
        return attachment

    def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        with self.transaction() as session:
            return session.get(Attachment, attachment_id)

    def list_attachments(self, notebook_id: str) -> List[Attachment]:
        with self.transaction() as session:
            stmt = (
                select(Attachment)
                .where(Attachment.notebook_id == notebook_id)
                .order_by(Attachment.created_at.desc())
            )
            return list(session.scalars(stmt))

    def list_by_status(self, status: AttachmentStatus) -> List[Attachment]:
        with self.transaction() as session:
            stmt = select(Attachment).where(Attachment.status == status)
            return list(session.scalars(stmt))

    def attachment_ids(self) -> set[str]:
        with self.transaction() as session:
            return set(session.scalars(select(Attachment.id)))

    def set_status(self, attachment_id: str, status: AttachmentStatus) -> bool:
        """Update an attachment's status. Returns False if the row is gone."""
        with self.transaction() as session:
            attachment = session.get(Attachment, attachment_id)
            if attachment is None:
                return False
            attachment.status = status
        return True

    def delete_attachment(self, attachment_id: str) -> bool:
        with self.transaction() as session:
            attachment = session.get(Attachment, attachment_id)
            if attachment is None:
                return False
            session.delete(attachment)
        return True

    # Chat history

    def add_chat_entry(self, notebook_id: str, role: Role, message: str) -> ChatEntry:
        entry = ChatEntry(notebook_id=notebook_id, role=Role(role), message=message)
        with self.transaction() as session:
            self._require_notebook(session, notebook_id)
            session.add(entry)
        return entry

    def chat_history(self, notebook_id: str, limit: int = 100) -> List[ChatEntry]:
        """Most recent `limit` entries of a notebook, oldest first."""
        with self.transaction() as session:
            stmt = (
                select(ChatEntry)
                .where(ChatEntry.notebook_id == notebook_id)
                .order_by(ChatEntry.timestamp.desc(), ChatEntry.seq.desc())
                .limit(limit)
            )
            entries = list(session.scalars(stmt))
        entries.reverse()
        return entries


__all__ = [
    "Attachment",
    "AttachmentStatus",
    "ChatEntry",
    "Ledger",
    "Notebook",
    "Role",
]
