"""Tests for homemetrics.logging."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from homemetrics.logging import SERVICE_NAME, setup_logging


def _last_event(capsys) -> dict:
    line = capsys.readouterr().out.strip().splitlines()[-1]
    return json.loads(line)


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_console_mode(self):
        setup_logging(json=False, level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_case_insensitive(self):
        setup_logging(level=" warning ")
        assert logging.getLogger().level == logging.WARNING

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level 'loud'"):
            setup_logging(level="loud")

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1

    def test_quiets_http_client_loggers(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_quiet_loggers_never_below_root(self):
        setup_logging(level="ERROR")
        assert logging.getLogger("uvicorn.access").level == logging.ERROR


class TestJsonLines:
    def test_bound_context_and_service(self, capsys):
        setup_logging(json=True, level="INFO")
        with structlog.contextvars.bound_contextvars(stream="xsense"):
            structlog.get_logger("homemetrics.test").info("batch_started", limit=5)

        event = _last_event(capsys)
        assert event["event"] == "batch_started"
        assert event["stream"] == "xsense"
        assert event["limit"] == 5
        assert event["level"] == "info"
        assert event["service"] == SERVICE_NAME
        assert event["timestamp"].endswith("Z")

    def test_stdlib_records_share_the_format(self, capsys):
        setup_logging(json=True, level="INFO")
        logging.getLogger("googleapiclient.http").warning("retrying request")

        event = _last_event(capsys)
        assert event["event"] == "retrying request"
        assert event["logger"] == "googleapiclient.http"
        assert event["service"] == SERVICE_NAME

    def test_exceptions_are_structured(self, capsys):
        setup_logging(json=True, level="INFO")
        try:
            raise KeyError("cabane")
        except KeyError:
            structlog.get_logger("homemetrics.test").exception("stream_batch_crashed")

        event = _last_event(capsys)
        assert event["exception"][0]["exc_type"] == "KeyError"
