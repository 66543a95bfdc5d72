"""
Structured logging for the workflow run engine.

Every record carries the run it belongs to. ``log_context()`` binds
``run_id``, ``workflow`` and ``step`` for the duration of a block; the bound
values are stored in a single context variable so that each asyncio task
driving a run sees only its own context.

Two sinks are configured by ``setup_logging()``:
- a JSON Lines file (one object per record) when a log file is given
- a rich console handler that prefixes the level with the bound context
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, Generator, Mapping

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

ROOT_LOGGER = "agentrun"

# Order here is the order fields appear in console prefixes.
CONTEXT_FIELDS = ("run_id", "workflow", "step")
_CONSOLE_STYLES = {"run_id": "dim", "workflow": "cyan", "step": "magenta"}

_EMPTY: Mapping[str, Any] = MappingProxyType({})
_log_context: ContextVar[Mapping[str, Any]] = ContextVar("agentrun_log_context", default=_EMPTY)

# Record attributes the logging module sets itself.
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def get_log_context() -> dict[str, Any]:
    """Return a copy of the context bound to the current task."""
    return dict(_log_context.get())


@contextmanager
def log_context(
    run_id: int | None = None,
    workflow: str | None = None,
    step: str | None = None,
) -> Generator[None, None, None]:
    """Bind run context for the enclosed block.

    Arguments left as None keep their outer value.
    """
    updates = {
        key: value
        for key, value in (("run_id", run_id), ("workflow", workflow), ("step", step))
        if value is not None
    }
    token = _log_context.set(MappingProxyType({**_log_context.get(), **updates}))
    try:
        yield
    finally:
        _log_context.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with bound context and keyword fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "context", None) or {})

        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED and key != "context"
        }
        if fields:
            entry["fields"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextRichHandler(RichHandler):
    """Console handler showing ``#run workflow step`` after the level."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        context = getattr(record, "context", None) or {}

        prefix = Text()
        for key in CONTEXT_FIELDS:
            if key not in context:
                continue
            label = f"#{context[key]}" if key == "run_id" else str(context[key])
            prefix.append(" ")
            prefix.append(label, style=_CONSOLE_STYLES[key])

        if not prefix:
            return level_text
        return Text.assemble(level_text, prefix)


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps records with the bound run context.

    Keyword arguments that are not logging options become structured fields:
    ``logger.info("Step completed", step_name="fetch_data", duration_ms=12)``.
    """

    _OPTIONS = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        options = {key: kwargs.pop(key) for key in self._OPTIONS if key in kwargs}
        extra = dict(options.pop("extra", None) or {})
        extra.update({key: value for key, value in kwargs.items() if key not in _RESERVED})
        extra["context"] = get_log_context()
        options["extra"] = extra
        return msg, options


_console: Console | None = None
_configured = False


def get_console() -> Console:
    """The shared stderr console used by the log handler."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``agentrun`` logger tree.

    Args:
        log_level: Level name for the console handler and the logger itself.
        log_file: JSON Lines destination. Without it only the console is used.
        console_output: Whether to attach the rich console handler.
    """
    global _configured

    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    if console_output:
        console_handler = ContextRichHandler(
            console=get_console(),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())
    root.propagate = False

    for noisy in ("aiosqlite", "asyncio", "httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> ContextLogger:
    """Return a context-aware logger under the ``agentrun`` namespace."""
    if not _configured:
        setup_logging()

    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name), {})
