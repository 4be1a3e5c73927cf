from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from .config import ObservabilitySettings


def configure_logging(observability: ObservabilitySettings | str = "INFO") -> None:
    """Route structlog through stdlib logging as JSON lines.

    Turn-scoped values bound with :func:`turn_log_context` are merged into every
    event, including events emitted from tool tasks spawned during the turn.
    """
    level = observability if isinstance(observability, str) else observability.log_level
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def turn_log_context(turn_id: str, **values: Any) -> Iterator[None]:
    with structlog.contextvars.bound_contextvars(turn_id=turn_id, **values):
        yield


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    return logger.bind(**kwargs) if kwargs else logger
