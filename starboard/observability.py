"""structlog configuration.

Call ``configure_logging()`` once at application startup, then log through
``structlog.get_logger(__name__)``::

    log = structlog.get_logger(__name__)
    log.info("task_approved", instance_id=12, stars=5)

Production renders JSON lines; development renders colored console output.
"""

import logging
import os
from typing import Optional

import structlog
from structlog.typing import Processor

LOG_LEVEL_ENV = "LOG_LEVEL"
DEFAULT_LOG_LEVEL = "INFO"
APP_ENV = os.getenv("APP_ENV", "production")


def _get_log_level() -> int:
    level_name = os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper()
    return getattr(logging, level_name, logging.INFO)


def configure_logging(environment: Optional[str] = None) -> None:
    """Configure structlog for the given environment.

    Args:
        environment: 'production' for JSON output, 'development' for console.
            Defaults to the ``APP_ENV`` environment variable.
    """
    environment = environment or APP_ENV
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        shared_processors.append(structlog.processors.format_exc_info)
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(_get_log_level()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(**values) -> None:
    """Attach values (member_id, family_id, ...) to every log line of this request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)
