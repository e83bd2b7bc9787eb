"""
Structured logging for the questionnaire and scoring engine.

Every record carries the request, tenant and operation it was emitted under,
so a submission can be followed from the HTTP call through scoring to the
LLM ledger. Context is held in a ``ContextVar``: concurrent requests and
worker threads each see their own values.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
import time
from collections.abc import Callable
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from functools import wraps
from types import TracebackType
from typing import Any, ParamSpec, TypeVar

from .config import LoggingConfig

P = ParamSpec("P")
R = TypeVar("R")

ROOT_LOGGER = "moobee"
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "uvicorn.access")
SLOW_QUERY_SECONDS = 0.5

# Attributes every LogRecord has; anything else arrived through ``extra`` or the context.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_log_context: ContextVar[dict[str, Any]] = ContextVar("moobee_log_context", default={})

# Profiles selected by the ENVIRONMENT variable at import time.
PROFILES: dict[str, dict[str, Any]] = {
    "development": {"level": "DEBUG", "file_path": "./logs/development.log", "structured": False},
    "production": {"level": "INFO", "file_path": "./logs/production.log", "console_enabled": False},
    "test": {"level": "WARNING", "file_path": None, "structured": False, "console_enabled": False},
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, including context and ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_")
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Copy the active log context onto each record; explicit ``extra`` wins."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def current_context() -> dict[str, Any]:
    return dict(_log_context.get())


def set_context(**kwargs: Any) -> None:
    """
    Add values to the current log context.

    Inside a ``LogContext`` block the values last until the block exits.

    Example:
        >>> set_context(tenant_id="t-1", user_id="u-9")
    """
    _log_context.set({**_log_context.get(), **kwargs})


def clear_context() -> None:
    _log_context.set({})


class LogContext:
    """Scope log context to a block, restoring the outer values on exit."""

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self._token: Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**_log_context.get(), **self.context})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


def configure_logging(config: LoggingConfig) -> None:
    """
    Install handlers for the ``moobee`` tree from a ``LoggingConfig``.

    Console output follows ``config.structured``; the rotating file is always JSON.

    Example:
        >>> configure_logging(LoggingConfig(level="DEBUG", file_path="./logs/moobee.log"))
    """
    handlers: dict[str, dict[str, Any]] = {}
    if config.console_enabled:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "structured" if config.structured else "standard",
            "filters": ["context"],
            "stream": "ext://sys.stdout",
        }
    file_handler = config.get_file_handler_config()
    if file_handler:
        handlers["file"] = {**file_handler, "formatter": "structured", "filters": ["context"]}

    names = list(handlers)
    loggers: dict[str, dict[str, Any]] = {
        ROOT_LOGGER: {"level": config.level, "handlers": names, "propagate": False},
    }
    for noisy in NOISY_LOGGERS:
        loggers[noisy] = {"level": "WARNING", "handlers": names, "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {"()": StructuredFormatter},
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "filters": {"context": {"()": ContextFilter}},
            "handlers": handlers,
            "loggers": loggers,
            "root": {"level": config.level, "handlers": names},
        }
    )


def auto_configure_logging() -> None:
    """Configure logging from the profile named by ``ENVIRONMENT``."""
    env = os.getenv("ENVIRONMENT", "development").lower()
    configure_logging(LoggingConfig(**PROFILES.get(env, PROFILES["development"])))
    get_logger(__name__).info(f"Logging configured for {env} environment")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``moobee`` namespace.

    Example:
        >>> get_logger("domain.scoring").name
        'moobee.domain.scoring'
    """
    prefix = f"{ROOT_LOGGER}."
    full = name if name.startswith(prefix) or name == ROOT_LOGGER else f"{prefix}{name}"
    return logging.getLogger(full)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


def log_operation(
    operation: str, logger: logging.Logger | None = None
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Run an application operation under its own log context and time it.

    Example:
        >>> @log_operation("submit_assignment")
        ... def submit(session, assignment_id, payload):
        ...     pass
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            func_logger = logger or get_logger(func.__module__)

            with LogContext(operation=operation):
                func_logger.info(f"Starting {operation}")
                started = time.perf_counter()
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    func_logger.error(
                        f"Failed {operation}: {e}",
                        exc_info=True,
                        extra={"duration_ms": _elapsed_ms(started)},
                    )
                    raise
                func_logger.info(
                    f"Completed {operation} successfully", extra={"duration_ms": _elapsed_ms(started)}
                )
                return result

        return wrapper

    return decorator


def log_database_operation(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Time a repository call; slow calls are raised to WARNING.

    Example:
        >>> @log_database_operation("template.get")
        ... def get(self, id_):
        ...     pass
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            logger = get_logger("database")
            started = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Database operation {operation} failed: {e}",
                    exc_info=True,
                    extra={"db_operation": operation, "duration_ms": _elapsed_ms(started)},
                )
                raise
            elapsed = _elapsed_ms(started)
            level = logging.WARNING if elapsed >= SLOW_QUERY_SECONDS * 1000 else logging.DEBUG
            logger.log(level, f"Database operation {operation} took {elapsed}ms", extra={"db_operation": operation})
            return result

        return wrapper

    return decorator


if not logging.getLogger().handlers:
    auto_configure_logging()
