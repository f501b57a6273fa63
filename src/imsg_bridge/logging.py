from __future__ import annotations

import logging
import sys

import structlog


def _coerce_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return level


def setup_logging(level: str | int = "INFO") -> None:
    """Configure structured logging for the bridge.

    Everything goes to stderr. stdout carries the JSON-RPC stream and must
    never receive diagnostic output.
    """

    logging_level = _coerce_level(level)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=logging_level,
        force=True,
    )

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


def get_logger(name: str):
    return structlog.get_logger(name, component=name)
