"""Tests for logging configuration"""

import logging

from dossier.utils.logging_config import configure_logging, resolve_level


def test_resolve_level(monkeypatch):
    monkeypatch.delenv("DOSSIER_LOG_LEVEL", raising=False)
    assert resolve_level() == logging.WARNING
    assert resolve_level("debug") == logging.DEBUG
    assert resolve_level("loud") == logging.WARNING

    monkeypatch.setenv("DOSSIER_LOG_LEVEL", "error")
    assert resolve_level() == logging.ERROR


def test_http_client_request_logs_are_quiet_unless_debugging():
    configure_logging("INFO")
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING

    configure_logging("ERROR")
    assert logging.getLogger("httpx").level == logging.ERROR

    configure_logging("DEBUG")
    assert logging.getLogger("httpx").level == logging.DEBUG

    configure_logging("WARNING")
