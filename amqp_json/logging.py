"""Structured logging for amqp-json.

Library modules log through :func:`get_logger`. Applications call
:func:`setup_logging` once; level and renderer default to the
``AMQP_JSON_LOG_LEVEL`` and ``AMQP_JSON_LOG_JSON`` settings.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Union

import structlog
from structlog.types import Processor

# aio-pika and aiormq log every frame at debug
_BROKER_LOGGERS = ("aio_pika", "aiormq")


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, int):
        return level
    value = getattr(logging, level.upper(), None)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Union[str, int, None] = None, json_format: Optional[bool] = None) -> None:
    """
    Route stdlib and structlog output to stdout.

    Args:
        level: Log level name or number; defaults to ``Settings.log_level``
        json_format: JSON lines instead of console output; defaults to
            ``Settings.log_json``
    """
    if level is None or json_format is None:
        from .config import get_settings

        settings = get_settings()
        level = settings.log_level if level is None else level
        json_format = settings.log_json if json_format is None else json_format

    level = _resolve_level(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)

    for name in _BROKER_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: List[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind values to every log line emitted from the current task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def delivery_context(queue: str, routing_key: str, consumer_tag: Optional[str]) -> Iterator[None]:
    """Bind one delivery's queue, routing key and consumer tag while its handler runs."""
    bind_context(queue=queue, routing_key=routing_key, consumer_tag=consumer_tag)
    try:
        yield
    finally:
        clear_context("queue", "routing_key", "consumer_tag")
