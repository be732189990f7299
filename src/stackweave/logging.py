import logging
import sys
from typing import Any

import structlog


def configure_logging(level: int | str = logging.INFO, *, json_output: bool | None = None) -> None:
    """Configure structlog/standard logging bridge.

    JSON lines are emitted when stderr is not a terminal (CI, log shipping);
    interactive sessions get the console renderer.
    """

    if json_output is None:
        json_output = not sys.stderr.isatty()

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

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)


def bind_context(**kwargs: Any) -> structlog.stdlib.BoundLogger:
    """Bind contextual fields for downstream logs."""

    logger = structlog.get_logger()
    return logger.bind(**kwargs)


def bind_run_context(stack: str, run_id: str, command: str) -> None:
    """Attach stack/run identifiers to every log event of the current invocation."""

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(stack=stack, run_id=run_id, command=command)
