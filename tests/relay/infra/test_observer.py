"""Tests for LoggingObserver and logging helpers."""

import logging

from relay.infra.logging_config import get_logger
from relay.infra.observer import LoggingObserver


def test_logging_observer_counts_and_levels(caplog):
    observer = LoggingObserver()
    with caplog.at_level(logging.INFO, logger="relay"):
        observer.emit("connected", attempt=0)
        observer.emit("backend_error", kind="rejected", sequence=2)
        observer.emit("backend_error", kind="timeout", sequence=3)

    assert observer.snapshot() == {"connected": 1, "backend_error": 2}
    levels = {r.relay_event: r.levelno for r in caplog.records}
    assert levels["connected"] == logging.INFO
    assert levels["backend_error"] == logging.WARNING
    assert "kind=rejected sequence=2" in caplog.records[1].getMessage()


def test_get_logger_namespace():
    assert get_logger().name == "relay"
    assert get_logger("sessions").name == "relay.sessions"
