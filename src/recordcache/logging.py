"""Logging for recordcache.

Events go through structlog and are rendered by stdlib handlers:

- ``recordcache.log`` receives every event, console-formatted
- ``sync.log`` receives cache-engine events only, one JSON object per line

Engine entry points are wrapped with :func:`sync_operation`, so everything
logged underneath them (including Discogs client retries) carries the
``username`` and ``operation`` it belongs to.  Background jobs add their
``job_id`` the same way.
"""

from __future__ import annotations

import functools
import logging
import sys
from collections.abc import Awaitable, Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, TypeVar

import structlog

MAIN_LOG = "recordcache.log"
SYNC_LOG = "sync.log"

_ROTATE_BYTES = 10 * 1024 * 1024
_ROTATE_KEEP = 5

_QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "httpcore", "aiosqlite")
_SECRET_KEYS = frozenset({"token", "authorization", "user_token"})

_T = TypeVar("_T")


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask credential-looking keys before any renderer sees them."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


_PRE_CHAIN: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    redact_secrets,
    structlog.processors.TimeStamper(fmt="iso"),
]


class SyncEventFilter(logging.Filter):
    """Admit records emitted by the cache engine and its helpers."""

    prefixes: tuple[str, ...] = ("recordcache.sync.",)

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name.startswith(self.prefixes)


def sync_operation(
    operation: str,
) -> Callable[[Callable[..., Awaitable[_T]]], Callable[..., Awaitable[_T]]]:
    """Bind ``username`` and *operation* for the duration of an engine call.

    The decorated coroutine must take the username as its first argument
    after ``self``.
    """

    def decorator(func: Callable[..., Awaitable[_T]]) -> Callable[..., Awaitable[_T]]:
        @functools.wraps(func)
        async def wrapper(self: Any, username: str, *args: Any, **kwargs: Any) -> _T:
            with structlog.contextvars.bound_contextvars(username=username, operation=operation):
                return await func(self, username, *args, **kwargs)

        return wrapper

    return decorator


def _formatter(renderer: structlog.types.Processor, *extra: structlog.types.Processor):
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *extra,
            renderer,
        ],
        foreign_pre_chain=_PRE_CHAIN,
    )


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path, maxBytes=_ROTATE_BYTES, backupCount=_ROTATE_KEEP, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    return handler


def _log_uncaught(exc_type: type[BaseException], exc_value: BaseException, exc_tb: Any) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    structlog.get_logger("recordcache").critical(
        "unhandled_exception", exc_info=(exc_type, exc_value, exc_tb)
    )


def setup_logging(
    log_level: str = "info",
    log_dir: Path | None = None,
    *,
    console: bool = False,
) -> None:
    """Install the recordcache handlers on the root logger.

    *log_dir* enables the two rotating files; *console* adds a stderr
    stream for interactive CLI commands.  Calling this again replaces the
    previous handlers.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    console_format = _formatter(structlog.dev.ConsoleRenderer(colors=False))
    handlers: list[logging.Handler] = []

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(console_format)
        handlers.append(stream)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating(log_dir / MAIN_LOG, console_format))
        sync = _rotating(
            log_dir / SYNC_LOG,
            _formatter(structlog.processors.JSONRenderer(), structlog.processors.format_exc_info),
        )
        sync.addFilter(SyncEventFilter())
        handlers.append(sync)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    sys.excepthook = _log_uncaught
