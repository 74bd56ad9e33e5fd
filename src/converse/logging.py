"""
Structured logging for the converse cache service.

Provides:
- Context variables for request_id, user_id, event (using contextvars)
- JSONFormatter for machine-readable logs to file
- RichHandler for pretty console output
- ContextLogger wrapper that attaches context to all log calls
- setup_logging() that configures both file and console handlers
- Context manager log_context() for scoped context
- get_logger() factory
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

import orjson
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

# Context variables for structured logging
_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
_user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
_event_var: ContextVar[str | None] = ContextVar("event", default=None)


def get_request_id() -> str | None:
    """Get the current request ID from context."""
    return _request_id_var.get()


def get_user_id() -> str | None:
    """Get the current user ID from context."""
    return _user_id_var.get()


def get_event() -> str | None:
    """Get the current invalidation event type from context."""
    return _event_var.get()


def set_request_id(request_id: str | None) -> None:
    """Set the current request ID in context."""
    _request_id_var.set(request_id)


def set_user_id(user_id: str | None) -> None:
    """Set the current user ID in context."""
    _user_id_var.set(user_id)


@contextmanager
def log_context(
    request_id: str | None = None,
    user_id: str | None = None,
    event: str | None = None,
) -> Generator[None, None, None]:
    """Context manager for scoped logging context.

    Args:
        request_id: Request ID to set in context.
        user_id: Internal user ID to set in context.
        event: Invalidation event type to set in context.

    Yields:
        None. Context variables are set for the duration of the context.
    """
    old_request_id = _request_id_var.get()
    old_user_id = _user_id_var.get()
    old_event = _event_var.get()

    try:
        if request_id is not None:
            _request_id_var.set(request_id)
        if user_id is not None:
            _user_id_var.set(user_id)
        if event is not None:
            _event_var.set(event)
        yield
    finally:
        _request_id_var.set(old_request_id)
        _user_id_var.set(old_user_id)
        _event_var.set(old_event)


def _current_context() -> dict[str, str]:
    context: dict[str, str] = {}
    request_id = get_request_id()
    user_id = get_user_id()
    event = get_event()
    if request_id:
        context["request_id"] = request_id
    if user_id:
        context["user_id"] = user_id
    if event:
        context["event"] = event
    return context


class JSONFormatter(logging.Formatter):
    """JSON formatter for machine-readable log files.

    Produces JSON Lines format with structured context.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(_current_context())

        if hasattr(record, "extra"):
            log_obj["extra"] = record.extra

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return orjson.dumps(log_obj, default=str).decode("utf-8")


class ContextRichHandler(RichHandler):
    """Rich handler that includes context in console output."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        """Override to add context prefix."""
        level_text = super().get_level_text(record)

        parts: list[str] = []
        request_id = get_request_id()
        user_id = get_user_id()
        event = get_event()

        if request_id:
            # uuid7 ids share their leading timestamp bits, keep the tail
            parts.append(f"[dim]{request_id[-8:]}[/dim]")
        if event:
            parts.append(f"[cyan]{event}[/cyan]")
        if user_id:
            parts.append(f"[magenta]{user_id}[/magenta]")

        if parts:
            prefix = " ".join(parts)
            return Text.from_markup(f"{level_text} {prefix}")

        return level_text

    def render_message(self, record: logging.LogRecord, message: str):
        """Append keyword context to the console message."""
        extra = getattr(record, "extra", None) or {}
        fields = {k: v for k, v in extra.items() if k not in ("request_id", "user_id", "event")}
        if fields:
            rendered = " ".join(f"{k}={v}" for k, v in fields.items())
            message = f"{message} [dim]{rendered}[/dim]" if self.markup else f"{message} {rendered}"
        return super().render_message(record, message)


class ContextLogger:
    """Logger wrapper that automatically attaches context to log calls.

    Wraps a standard logger and adds context variables to all log calls.
    Keyword arguments become structured fields:

        logger.info("Cache miss", key=key, ttl=ttl)
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        """Get the logger name."""
        return self._logger.name

    def isEnabledFor(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **kwargs: Any,
    ) -> None:
        """Internal logging method that adds context."""
        extra = kwargs.pop("extra", {})
        extra.update(_current_context())

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel"):
                extra[key] = kwargs.pop(key)

        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"extra": extra})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log debug message."""
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log info message."""
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log warning message."""
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        """Log error message."""
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def critical(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        """Log critical message."""
        self._log(logging.CRITICAL, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log exception with traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


# Global console for rich output
_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the global rich console."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Set up logging with JSON file handler and rich console handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. If None, only console logging is enabled.
        console_output: Whether to enable console output.
    """
    global _setup_done

    root_logger = logging.getLogger("converse")
    root_logger.setLevel(getattr(logging, log_level.upper()))

    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        console = get_console()
        rich_handler = ContextRichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )
        rich_handler.setLevel(getattr(logging, log_level.upper()))
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ["httpx", "httpcore", "asyncio", "aiosqlite"]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger.

    Args:
        name: Logger name (usually __name__).

    Returns:
        ContextLogger wrapper around the standard logger.
    """
    global _setup_done

    if not _setup_done:
        setup_logging()

    if not name.startswith("converse"):
        name = f"converse.{name}"

    logger = logging.getLogger(name)
    return ContextLogger(logger)
