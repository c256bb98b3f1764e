"""
Structured logging for the outreach service.

Every module logs through structlog with an event name plus keyword context:

    logger = get_logger(__name__)
    logger.info("batch_window_started", window=2, size=5)

JSON lines by default; a readable console format when DEBUG is on.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from concierge.config import config

# Vendor SDKs and HTTP clients log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "twilio", "urllib3", "sqlalchemy.engine")

SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def configure_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    level_name = (level or config.LOG_LEVEL).upper()
    json_logs = (not config.DEBUG) if json_logs is None else json_logs

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name, logging.INFO),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if json_logs:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderers = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=SHARED_PROCESSORS + renderers,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> Any:
    return structlog.get_logger(name)


configure_logging()

logger = get_logger("concierge")
