"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from cardsync.core.logging import (
    _NOISE_LOGGERS,
    _service_context,
    add_otel_context,
    add_service_context,
    bind_sync_run,
    configure_logging,
    get_service_context,
    get_sync_run,
    reset_sync_run,
    set_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and service context between tests."""
    token = _service_context.set(None)
    yield
    _service_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


class TestContext:
    def test_service_context(self):
        set_service_context("cardsync")
        assert get_service_context() == "cardsync"

    def test_sync_run_binding_is_reset(self):
        token = bind_sync_run("run-1")
        assert get_sync_run() == "run-1"
        reset_sync_run(token)
        assert get_sync_run() is None


class TestProcessors:
    def test_service_and_sync_run_injected(self):
        set_service_context("cardsync")
        token = bind_sync_run("abc123")
        try:
            result = add_service_context(None, "info", {"event": "x"})
        finally:
            reset_sync_run(token)
        assert result["service"] == "cardsync"
        assert result["sync_run"] == "abc123"

    def test_sync_run_omitted_outside_a_run(self):
        result = add_service_context(None, "info", {"event": "x"})
        assert result["service"] is None
        assert "sync_run" not in result

    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "x"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "x"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    def test_text_format_uses_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_uses_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_noise_loggers_suppressed(self):
        configure_logging()
        for name in ("httpx", "httpcore", "uvicorn.access"):
            assert logging.getLogger(name).level >= logging.WARNING

    def test_level_and_service_applied(self):
        configure_logging(level="debug", service_name="cardsync")
        assert logging.getLogger().level == logging.DEBUG
        assert get_service_context() == "cardsync"

    def test_log_root_layout(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="cardsync")
        assert (tmp_path / "cardsync").is_dir()
        assert (tmp_path / "http").is_dir()
        file_handlers = [
            h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)
        ]
        assert str(file_handlers[0].baseFilename).endswith("cardsync/cardsync.log")
        http_handlers = [
            h for h in logging.getLogger("httpx").handlers if isinstance(h, logging.FileHandler)
        ]
        assert str(http_handlers[0].baseFilename).endswith("http/cardsync.log")

    def test_file_output_is_json_with_sync_run(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path, service_name="cardsync")
        token = bind_sync_run("run-42")
        try:
            logging.getLogger("cardsync.test").warning("calendar sync finished")
        finally:
            reset_sync_run(token)
        for handler in logging.getLogger().handlers:
            handler.flush()

        line = (tmp_path / "cardsync" / "cardsync.log").read_text().strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["event"] == "calendar sync finished"
        assert entry["service"] == "cardsync"
        assert entry["sync_run"] == "run-42"
        assert entry["level"] == "warning"
