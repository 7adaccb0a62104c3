"""
Structured Logging with Structlog.

JSON logs carrying the service identity, any order/user context bound with
log_context, and domain values (UUIDs, status enums) rendered as plain
strings.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any
from uuid import UUID

import structlog
from structlog.types import EventDict, Processor

from commerce.config import settings


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.service_version
    return event_dict


def render_domain_values(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Render ids and status enums as their string values.

    Lets services log `order_id=order.id` or `status=OrderStatus.FAILED`
    and still get `"FAILED"` rather than the enum repr in the output.
    Lists of such values (e.g. failed saga steps) are rendered item by item.
    """
    for key, value in event_dict.items():
        if isinstance(value, list):
            event_dict[key] = [_render(item) for item in value]
        else:
            event_dict[key] = _render(value)
    return event_dict


def _render(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    A payment log line looks like:
    {
        "event": "payment_completed",
        "level": "info",
        "timestamp": "2025-01-08T12:00:00.123456Z",
        "logger": "commerce.services.orders",
        "service": "commerce-core",
        "version": "0.1.0",
        "order_id": "5b0c...",
        "user_id": "9e21...",
        "amount": 63000
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        render_domain_values,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

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
    """Get a structured logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind context (e.g. order_id, user_id) to every log line inside the block.

    Keys bound by an enclosing block are restored on exit, so nested
    payment and saga contexts do not clobber each other.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
