from __future__ import annotations

import logging
import sys

import structlog


def _coerce_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(level: str | int = "INFO") -> None:
    """Configure structured logging for the message store reader.

    Everything is written to stderr so that a stdio transport owning stdout
    never sees log lines interleaved with its frames.
    """

    logging_level = _coerce_level(level)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=logging_level,
    )
    logging.getLogger().setLevel(logging_level)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def ensure_logging(level: str | int = "INFO") -> bool:
    """Run :func:`setup_logging` unless structlog is already configured."""

    if structlog.is_configured():
        return False
    setup_logging(level)
    return True


def get_logger(name: str):
    return structlog.get_logger(name, component=name)


__all__ = ["ensure_logging", "get_logger", "setup_logging"]
