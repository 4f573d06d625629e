"""
Structured Logging with Structlog.

Provides JSON-formatted logs with correlation IDs and context. License
codes never reach the log stream and buyer emails are masked.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from keymarket.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


# Keys whose values are deliverables, not diagnostics
REDACTED_KEYS = frozenset({"license_code", "license_key", "private"})
EMAIL_KEYS = frozenset({"buyer_email", "email"})


def mask_email(value: str) -> str:
    """Keep the first character and the domain: b***@example.com."""
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return "***"
    return f"{local[0]}***@{domain}"


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Strip license codes and mask buyer emails before rendering."""
    for key in REDACTED_KEYS & event_dict.keys():
        if event_dict[key] is not None:
            event_dict[key] = "[REDACTED]"
    for key in EMAIL_KEYS & event_dict.keys():
        if isinstance(event_dict[key], str):
            event_dict[key] = mask_email(event_dict[key])
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing with the following structure:
    {
        "event": "order_completed",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "keymarket.services.ledger",
        "service": "keymarket-orders",
        "version": "0.1.0",
        "order_code": "ORD-1A2B3C4D",
        ...additional context
    }
    """
    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    # Processors for structlog
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    # Add exception info
    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    # Choose renderer based on format
    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("key_assigned", order_code=order_code, product_id=str(product_id))
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Context manager for adding structured logging context.

    Usage:
        with log_context(request_id="req-123", order_code="ORD-1A2B3C4D"):
            logger.info("processing_payment")
            # All logs within this context include request_id and order_code
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        """Enter context - bind context variables."""
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit context - clear context variables."""
        structlog.contextvars.unbind_contextvars(*self.context.keys())
