"""
Shared logging configuration for the storefront customer services.

Request and caller context lives in structlog's contextvars so every log
line emitted while serving a request carries request_id, user_id and
customer_id without passing them around.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Dict, Optional

from opentelemetry import trace

REDACTED = "[REDACTED]"

# Matched case-insensitively as substrings of the event key
SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "authorization", "cookie")


def configure_logging(service_name: str, log_level: str = "info", json_output: bool = True) -> None:
    """Configure structured logging for a service.

    JSON lines outside local development, a readable console format otherwise.
    """
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            add_service_context,
            add_trace_context,
            redact_sensitive,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to log events."""
    # Logger names are "<service>.<component>"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict["service"] = logger_name.split(".")[0]

    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Replace values of credential-like keys before rendering."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            event_dict[key] = REDACTED
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request ID (generated when absent) to the logging context."""
    if request_id is None:
        request_id = str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def set_user_context(user_id: Optional[str] = None, customer_id: Optional[str] = None):
    """Bind acting user and target customer to the logging context."""
    bound = {}
    if user_id:
        bound["user_id"] = user_id
    if customer_id:
        bound["customer_id"] = customer_id
    if bound:
        structlog.contextvars.bind_contextvars(**bound)


def clear_context():
    structlog.contextvars.clear_contextvars()


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
