"""Logging for the driver pipeline.

Console output goes through Rich with one icon per level; an optional JSON
Lines file receives the same records plus their structured fields.

Console:
    ℹ openai: sending request (gpt-4o-mini)
    ⚠ openai: rate limited, retrying in 2.00s (attempt 1/5)
    ✗ openai: request failed after 3 attempt(s)

File (aidriver.log):
    {"timestamp": "2026-01-08T10:23:45.123456+00:00", "level": "WARNING",
     "message": "rate limited, retrying", "provider": "openai", "delay": 2.0}

Usage:
    from aidriver.core import Settings, get_logger

    logger = get_logger(Settings(log_file="aidriver.log"))
    provider_logger = logger.bind(provider="openai", model="gpt-4o-mini")
    provider_logger.warning("rate limited", delay=2.0)
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from aidriver.core.config import Settings

# "tokens" and "input_tokens" are usage counters, not credentials
_SENSITIVE_KEY_PATTERN = re.compile(
    r"(api[_-]?key|(?<![a-z_])token(?!s)|secret|password|credential|authorization|x-goog-api-key)",
    re.IGNORECASE,
)

REDACTED = "***REDACTED***"


class LoggerProtocol(Protocol):
    """Minimal logger interface accepted by drivers, adapters and the retry layer.

    Satisfied by ``DriverLogger``. Structured fields are passed as keyword arguments.
    """

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


def _sanitize(data: Any) -> Any:
    """Return a copy of ``data`` with values under secret-looking keys redacted."""
    if isinstance(data, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and _SENSITIVE_KEY_PATTERN.search(key)
            else _sanitize(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [_sanitize(item) for item in data]
    return data


class StructuredFileHandler(RotatingFileHandler):
    """Rotating handler that writes one JSON object per record.

    Structured fields attached as ``record.extra`` are merged at the top level.
    Fields that collide with the handler's own keys are kept under ``"data"``.
    """

    _RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "message", "logger", "data"})

    def __init__(
        self,
        filepath: Path | str,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 3,
    ) -> None:
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            filename=str(filepath),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.name and record.name != "root":
            entry["logger"] = record.name

        collisions: dict[str, Any] = {}
        for key, value in _sanitize(getattr(record, "extra", {}) or {}).items():
            if key in self._RESERVED_KEYS:
                collisions[key] = value
            else:
                entry[key] = value
        if collisions:
            entry["data"] = collisions

        return json.dumps(entry, default=str)


class DriverLogger:
    """Rich console logger with an optional structured JSON file.

    Both sinks share the threshold from ``settings.log_level``. Keyword
    arguments passed to the log methods only reach the file; the console shows
    the message prefixed with any bound ``provider``.

    Args:
        settings: Object with ``log_level`` and ``log_file`` attributes
        console: Rich console to print to (defaults to stderr)
    """

    _LEVEL_MAP = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    def __init__(
        self,
        settings: Settings,
        console: Console | None = None,
        *,
        _context: dict[str, Any] | None = None,
        _file_handler: StructuredFileHandler | None = None,
    ) -> None:
        self.console = console or Console(stderr=True)
        level_name = str(getattr(settings, "log_level", "INFO")).upper()
        self._level = self._LEVEL_MAP.get(level_name, logging.INFO)
        self._settings = settings
        self._context = dict(_context or {})

        if _file_handler is not None:
            self.file_handler: StructuredFileHandler | None = _file_handler
        elif getattr(settings, "log_file", None):
            self.file_handler = StructuredFileHandler(settings.log_file)
            self.file_handler.setLevel(self._level)
        else:
            self.file_handler = None

    def bind(self, **context: Any) -> DriverLogger:
        """Return a logger that adds ``context`` to every record.

        The child shares the console and file handler with its parent.
        """
        return DriverLogger(
            self._settings,
            self.console,
            _context={**self._context, **context},
            _file_handler=self.file_handler,
        )

    def _emit(self, level: int, markup: str, msg: str, extra: dict[str, Any]) -> None:
        if level < self._level:
            return
        provider = self._context.get("provider")
        text = escape(f"{provider}: {msg}" if provider else msg)
        self.console.print(markup.format(text=text))

        if self.file_handler is not None:
            record = logging.LogRecord(
                name="aidriver",
                level=level,
                pathname="",
                lineno=0,
                msg=msg,
                args=(),
                exc_info=None,
            )
            record.extra = {**self._context, **extra}
            self.file_handler.handle(record)

    def debug(self, msg: str, **extra: Any) -> None:
        self._emit(logging.DEBUG, "[dim]🔍 {text}[/dim]", msg, extra)

    def info(self, msg: str, **extra: Any) -> None:
        self._emit(logging.INFO, "[blue]ℹ[/blue] {text}", msg, extra)

    def success(self, msg: str, **extra: Any) -> None:
        """Log at INFO level with a green check mark."""
        self._emit(logging.INFO, "[green]✓[/green] {text}", msg, extra)

    def warning(self, msg: str, **extra: Any) -> None:
        self._emit(logging.WARNING, "[yellow]⚠[/yellow] {text}", msg, extra)

    def error(self, msg: str, **extra: Any) -> None:
        self._emit(logging.ERROR, "[red]✗[/red] {text}", msg, extra)

    def close(self) -> None:
        """Close the file handler. Safe to call more than once."""
        if self.file_handler is not None:
            self.file_handler.close()
            self.file_handler = None


def get_logger(settings: Settings) -> DriverLogger:
    """Create a DriverLogger configured from settings."""
    return DriverLogger(settings)
