"""
Structured Logging with Structlog.

Event names are snake_case ("hint_redeemed", "qpay_webhook_received");
details go in keyword arguments. Per-request fields are bound with
`structlog.contextvars.bound_contextvars` by the HTTP middleware.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from wispr.config import settings

# Loggers that emit one INFO line per outbound call; the gateway and
# notifier clients already log their own events for those calls.
CHATTY_LOGGERS = ("httpx", "httpcore", "openai")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def setup_logging() -> None:
    """Route structlog through stdlib logging on stdout, as JSON or console lines."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
