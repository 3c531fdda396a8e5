"""Unit tests for logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from io import StringIO
from pathlib import Path
from typing import Any

import pytest
import structlog

from taskrelay.config import LoggingConfig
from taskrelay.logging import (
    add_correlation_id,
    bind_actor_context,
    clear_actor_context,
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_logging() -> None:
    """Reset logging configuration before each test."""
    root = logging.getLogger()
    root.handlers.clear()
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    set_correlation_id(None)


@pytest.fixture
def capture_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_config() -> LoggingConfig:
    return LoggingConfig(level="INFO", format="json", file=None)


def _capture(stream: StringIO) -> None:
    """Point the stdout handler installed by setup_logging at a buffer."""
    logging.getLogger().handlers[0].stream = stream  # type: ignore[attr-defined]


def _last_entry(stream: StringIO) -> dict[str, Any]:
    return json.loads(stream.getvalue().strip().splitlines()[-1])


def test_json_output_format(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    setup_logging(json_config)
    _capture(capture_stream)

    get_logger("taskrelay.test").info("task_created", task_id="T-1", duration_minutes=30)

    entry = _last_entry(capture_stream)
    assert entry["event"] == "task_created"
    assert entry["task_id"] == "T-1"
    assert entry["duration_minutes"] == 30
    assert entry["level"] == "info"
    assert entry["logger"] == "taskrelay.test"
    assert "timestamp" in entry


def test_console_output_format(capture_stream: StringIO) -> None:
    setup_logging(LoggingConfig(level="DEBUG", format="console"))
    _capture(capture_stream)

    get_logger("taskrelay.test").debug("heartbeat_sent", probed=2)

    output = capture_stream.getvalue()
    assert "heartbeat_sent" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output.strip())


def test_log_level_filtering(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    setup_logging(json_config)
    _capture(capture_stream)
    logger = get_logger("taskrelay.test")

    logger.debug("debug_message")
    assert capture_stream.getvalue() == ""

    logger.warning("warning_message")
    assert "warning_message" in capture_stream.getvalue()


def test_correlation_id_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    setup_logging(json_config)
    _capture(capture_stream)
    logger = get_logger("taskrelay.test")

    set_correlation_id("corr-12345")
    assert get_correlation_id() == "corr-12345"
    logger.info("with_correlation")
    assert _last_entry(capture_stream)["correlation_id"] == "corr-12345"

    set_correlation_id(None)
    logger.info("without_correlation")
    assert "correlation_id" not in _last_entry(capture_stream)


def test_correlation_id_processor() -> None:
    event_dict: dict[str, Any] = {"event": "test"}

    assert "correlation_id" not in add_correlation_id(None, "", event_dict.copy())

    set_correlation_id("test-id")
    assert add_correlation_id(None, "", event_dict.copy())["correlation_id"] == "test-id"
    set_correlation_id(None)


def test_actor_context_binding(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    setup_logging(json_config)
    _capture(capture_stream)
    logger = get_logger("taskrelay.test")

    bind_actor_context(user_id="U-1", role="dispatcher")
    logger.info("task_created")
    entry = _last_entry(capture_stream)
    assert entry["actor_id"] == "U-1"
    assert entry["actor_role"] == "dispatcher"

    clear_actor_context()
    logger.info("after_request")
    entry = _last_entry(capture_stream)
    assert "actor_id" not in entry
    assert "actor_role" not in entry


def test_file_rotation_handler_configuration(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "taskrelay.log"
    setup_logging(
        LoggingConfig(
            level="INFO",
            format="json",
            file=log_file,
            rotation_size_mb=10,
            retention_count=3,
        )
    )

    handler = logging.getLogger().handlers[0]
    assert isinstance(handler, logging.handlers.RotatingFileHandler)
    assert handler.maxBytes == 10 * 1024 * 1024
    assert handler.backupCount == 3
    assert log_file.parent.exists()

    get_logger("taskrelay.test").info("file_write", data="x")
    handler.flush()
    entry = json.loads(log_file.read_text().strip())
    assert entry["event"] == "file_write"


def test_exception_formatting(json_config: LoggingConfig, capture_stream: StringIO) -> None:
    setup_logging(json_config)
    _capture(capture_stream)

    try:
        raise ValueError("store unavailable")
    except ValueError:
        get_logger("taskrelay.test").exception("overtime_scan_failed")

    entry = _last_entry(capture_stream)
    assert entry["level"] == "error"
    assert "ValueError: store unavailable" in entry["exception"]
