import logging
from typing import Any

import structlog


def configure_logging(level: int | str = logging.WARNING, json_output: bool = False) -> None:
    """Configure structlog/standard logging bridge."""

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            timestamper,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(level=level, format="%(message)s", force=True)


def bind_context(**kwargs: Any) -> None:
    """Bind contextual fields (stage, command) for downstream logs."""

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**kwargs)
