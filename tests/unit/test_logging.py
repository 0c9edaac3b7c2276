"""Tests for the Rich console logger and its JSON Lines file sink."""

from __future__ import annotations

import io
import json

import pytest
from rich.console import Console

from aidriver.core.config import Settings
from aidriver.core.logging import REDACTED, DriverLogger, get_logger

pytestmark = pytest.mark.unit


def _console() -> Console:
    return Console(file=io.StringIO(), force_terminal=False, width=200)


def _output(logger: DriverLogger) -> str:
    return logger.console.file.getvalue()


def test_console_respects_level():
    logger = DriverLogger(Settings(log_level="WARNING"), _console())

    logger.info("hidden")
    logger.warning("shown")

    output = _output(logger)
    assert "hidden" not in output
    assert "shown" in output


def test_bound_provider_prefixes_console_lines():
    logger = DriverLogger(Settings(), _console()).bind(provider="openai")
    logger.error("request failed")
    assert "openai: request failed" in _output(logger)


def test_markup_in_messages_is_escaped():
    logger = DriverLogger(Settings(), _console())
    logger.info("value [bold]x[/bold]")
    assert "[bold]x[/bold]" in _output(logger)


def test_file_sink_writes_structured_redacted_records(tmp_path):
    path = tmp_path / "logs" / "aidriver.log"
    logger = DriverLogger(Settings(log_file=str(path)), _console()).bind(provider="xai", model="grok-beta")

    logger.warning(
        "rate limited",
        delay=2.0,
        api_key="xai-secret",
        input_tokens=12,
        headers={"Authorization": "Bearer abc"},
        message="collides",
    )
    logger.close()

    record = json.loads(path.read_text(encoding="utf-8").strip())
    assert record["level"] == "WARNING"
    assert record["message"] == "rate limited"
    assert record["provider"] == "xai"
    assert record["model"] == "grok-beta"
    assert record["delay"] == 2.0
    assert record["api_key"] == REDACTED
    assert record["input_tokens"] == 12
    assert record["headers"]["Authorization"] == REDACTED
    assert record["data"] == {"message": "collides"}


def test_close_is_idempotent(tmp_path):
    logger = DriverLogger(Settings(log_file=str(tmp_path / "a.log")), _console())
    logger.close()
    logger.close()
    assert logger.file_handler is None


def test_get_logger_has_no_file_by_default():
    assert get_logger(Settings()).file_handler is None
