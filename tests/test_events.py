from __future__ import annotations

import logging

from sadhana_console.services.events import (
    DB_QUERY,
    DEFAULT_EVENT_LOGGER,
    emit_db_event,
    emit_media_event,
    emit_structured_event,
)


def test_structured_event_flattens_fields(caplog) -> None:
    with caplog.at_level(logging.INFO, logger=DEFAULT_EVENT_LOGGER.name):
        emit_structured_event(
            "APP_EVENT",
            "Creating category ",
            context={"name": "Meditation", "empty": "  ", "missing": None},
            correlation={"request_id": "abc"},
            duration_ms=1.23456,
        )

    record = caplog.records[-1]
    assert record.getMessage() == (
        "[APP_EVENT] Creating category request_id=abc name=Meditation duration_ms=1.23"
    )
    assert record.event_type == "APP_EVENT"
    assert record.event_fields == {"request_id": "abc", "name": "Meditation", "duration_ms": 1.23}


def test_long_values_are_trimmed(caplog) -> None:
    with caplog.at_level(logging.INFO, logger=DEFAULT_EVENT_LOGGER.name):
        emit_media_event("upload", payload={"url": "x" * 500, "size": 10, "existed": False})

    fields = caplog.records[-1].event_fields
    assert fields["url"] == "x" * 200 + "…"
    assert fields["size"] == 10
    assert fields["existed"] is False


def test_db_events_default_to_debug(caplog) -> None:
    with caplog.at_level(logging.INFO, logger=DEFAULT_EVENT_LOGGER.name):
        emit_db_event("get", payload={"collection": "books"})
    assert caplog.records == []

    with caplog.at_level(logging.DEBUG, logger=DEFAULT_EVENT_LOGGER.name):
        emit_db_event("get", payload={"collection": "books"})

    record = caplog.records[-1]
    assert record.levelno == logging.DEBUG
    assert record.event_type == DB_QUERY
