"""Structured logging for crashwatch.

All crashwatch components log through structlog as one JSON object per
line on stderr. Third-party libraries that use the stdlib ``logging``
module (httpx, kubernetes-asyncio, uvicorn) are rendered through the same
processor chain and held at WARNING unless crashwatch runs at debug.
"""

from __future__ import annotations

import logging
import sys

import structlog

LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
}

_THIRD_PARTY_LOGGERS = ("httpx", "httpcore", "kubernetes_asyncio", "uvicorn", "uvicorn.error")


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
    ]


def setup_logging(level: str = "info") -> None:
    """Configure structlog (and stdlib logging) for JSON output to stderr.

    Raises:
        ValueError: if *level* is not one of debug, info, error.
    """
    try:
        log_level = LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(LEVELS)}") from None

    structlog.configure(
        processors=[*_shared_processors(), structlog.processors.JSONRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service="crashwatch")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[structlog.stdlib.add_logger_name, *_shared_processors()],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(log_level)

    library_level = logging.DEBUG if log_level == logging.DEBUG else logging.WARNING
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]
