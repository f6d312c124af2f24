"""structlog setup and logger-agnostic event helpers.

Components accept either a structlog logger or a stdlib ``logging.Logger``.
Structured fields go to keyword arguments for the former and to ``extra`` for
the latter, so the same call site works with both.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Mapping
from typing import Literal, Protocol

import structlog
from structlog.typing import EventDict, Processor

LevelName = Literal["info", "warning", "error", "exception"]

_LEVELS = {
    name: getattr(logging, name)
    for name in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
}
_SECRET_MARKERS = ("password", "api_key", "apikey", "token", "secret")
_MASK = "***"

_StdlibLogger = logging.Logger | logging.LoggerAdapter[logging.Logger]


class StructuredLogger(Protocol):
    """Anything with structlog-style ``event, **fields`` level methods."""

    def info(self, event: str, **kwargs: object) -> None: ...

    def warning(self, event: str, **kwargs: object) -> None: ...

    def error(self, event: str, **kwargs: object) -> None: ...

    def exception(self, event: str, **kwargs: object) -> None: ...


AnyLogger = StructuredLogger | _StdlibLogger


def get_log_level_value(level: str) -> int:
    """Map a level name such as ``" info "`` onto its stdlib constant."""
    value = _LEVELS.get(level.strip().upper())
    if value is None:
        raise ValueError(f"log_level must be one of: {', '.join(sorted(_LEVELS))}")
    return value


def _looks_secret(key: object) -> bool:
    name = str(key).lower()
    return any(marker in name for marker in _SECRET_MARKERS)


def _mask(key: object, value: object) -> object:
    if _looks_secret(key):
        return _MASK
    if isinstance(value, Mapping):
        return {inner_key: _mask(inner_key, item) for inner_key, item in value.items()}
    return value


def redact_sensitive_fields(
    _: object,
    __: str,
    event_dict: EventDict,
) -> EventDict:
    """Replace credential-looking values, also inside nested mappings."""
    for key, value in list(event_dict.items()):
        if key != "event":
            event_dict[key] = _mask(key, value)
    return event_dict


def _emit(
    logger: AnyLogger,
    level: LevelName,
    event: str,
    fields: dict[str, object],
) -> None:
    method = getattr(logger, level)
    if isinstance(logger, (logging.Logger, logging.LoggerAdapter)):
        method(event, extra=fields)
    else:
        method(event, **fields)


def log_info(logger: AnyLogger, event: str, **fields: object) -> None:
    _emit(logger, "info", event, fields)


def log_warning(logger: AnyLogger, event: str, **fields: object) -> None:
    _emit(logger, "warning", event, fields)


def log_error(logger: AnyLogger, event: str, **fields: object) -> None:
    _emit(logger, "error", event, fields)


def log_exception(logger: AnyLogger, event: str, **fields: object) -> None:
    _emit(logger, "exception", event, fields)


def _renderer() -> Processor:
    if sys.stderr.isatty():
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _stderr_handler(pre_chain: list[Processor]) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(),
            ],
        )
    )
    return handler


def configure_structlog(*, log_level: str) -> structlog.stdlib.BoundLogger:
    """Route structlog and stdlib records through one redacting stderr handler.

    Safe to call repeatedly; the root handler is replaced each time.
    """
    level = get_log_level_value(log_level)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        timestamper,
        redact_sensitive_fields,
    ]
    logging.basicConfig(
        format="%(message)s",
        handlers=[_stderr_handler(pre_chain)],
        level=level,
        force=True,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            *pre_chain,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.get_logger()
