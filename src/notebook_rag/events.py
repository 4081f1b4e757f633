"""Notifications emitted while an attachment is being ingested."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class IngestionEventKind(str, enum.Enum):
    STARTED = "processing-started"
    SUCCEEDED = "processing-succeeded"
    FAILED = "processing-failed"


@dataclass(frozen=True)
class IngestionEvent:
    kind: IngestionEventKind
    attachment_id: str
    error: Optional[str] = None


class EventSink(Protocol):
    def emit(self, event: IngestionEvent) -> None:
        ...


class LoggingEventSink:
    """Default sink: writes every event to the log."""

    def emit(self, event: IngestionEvent) -> None:
        if event.kind is IngestionEventKind.FAILED:
            logger.warning("%s: %s (%s)", event.kind.value, event.attachment_id, event.error)
        else:
            logger.info("%s: %s", event.kind.value, event.attachment_id)


class CallbackEventSink:
    """Fans events out to registered callables (e.g. a UI bridge)."""

    def __init__(self) -> None:
        self._listeners: List[Callable[[IngestionEvent], None]] = []

    def subscribe(self, listener: Callable[[IngestionEvent], None]) -> None:
        self._listeners.append(listener)

    def emit(self, event: IngestionEvent) -> None:
        for listener in list(self._listeners):
            listener(event)


__all__ = [
    "CallbackEventSink",
    "EventSink",
    "IngestionEvent",
    "IngestionEventKind",
    "LoggingEventSink",
]
