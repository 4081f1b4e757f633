"""Tests for ingestion event sinks."""

import logging

from notebook_rag.events import (
    CallbackEventSink,
    IngestionEvent,
    IngestionEventKind,
    LoggingEventSink,
)


def test_callback_sink_fans_out_in_order():
    sink = CallbackEventSink()
    first, second = [], []
    sink.subscribe(first.append)
    sink.subscribe(second.append)

    started = IngestionEvent(IngestionEventKind.STARTED, "a1")
    failed = IngestionEvent(IngestionEventKind.FAILED, "a1", "Failed to process the file.")
    sink.emit(started)
    sink.emit(failed)

    assert first == second == [started, failed]


def test_logging_sink_warns_on_failure(caplog):
    sink = LoggingEventSink()

    with caplog.at_level(logging.INFO, logger="notebook_rag.events"):
        sink.emit(IngestionEvent(IngestionEventKind.SUCCEEDED, "a1"))
        sink.emit(IngestionEvent(IngestionEventKind.FAILED, "a2", "Failed to process the file."))

    levels = [(r.levelno, r.getMessage()) for r in caplog.records]
    assert levels[0] == (logging.INFO, "processing-succeeded: a1")
    assert levels[1][0] == logging.WARNING
    assert "a2" in levels[1][1]


def test_event_kinds_use_wire_names():
    assert [k.value for k in IngestionEventKind] == [
        "processing-started",
        "processing-succeeded",
        "processing-failed",
    ]
