"""
Structured logging utilities for CloudWatch Logs Insights.
"""

import json
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Optional

from .request_utils import get_header

# Context variable for request correlation
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

_STANDARD_ATTRS = frozenset((
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "asctime", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": request_id_var.get(""),
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", ""),
        }

        # Fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def configure_structured_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure structured JSON logging for Lambda.

    Call this at the start of your handler.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(handler)

    return root_logger


def set_request_id(event: dict) -> str:
    """
    Set the correlation id for this invocation.

    API Gateway's requestId wins, then an ``X-Request-Id`` header (any case),
    then a fresh uuid4. The same id is the idempotency identity of
    user-initiated subscription changes.
    """
    request_id = (
        (event.get("requestContext") or {}).get("requestId")
        or get_header(event, "x-request-id")
        or str(uuid.uuid4())
    )
    request_id_var.set(request_id)
    return request_id


def log_external_call(
    logger: logging.Logger,
    service: str,
    operation: str,
    success: bool,
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Log a call to the payment provider or another external service."""
    level = logging.INFO if success else logging.WARNING
    logger.log(
        level,
        f"External call to {service}: {operation} -> {'success' if success else 'failed'}",
        extra={
            "service": service,
            "operation": operation,
            "success": success,
            "latency_ms": latency_ms,
            "error": error,
        },
    )


def log_webhook_outcome(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    outcome: str,
    error: Optional[str] = None,
) -> None:
    """Log how a provider webhook event ended: success, duplicate, ignored, rejected or failed."""
    level = logging.WARNING if outcome in ("rejected", "failed") else logging.INFO
    message = f"Webhook {event_type} ({event_id}) -> {outcome}"
    if error:
        message += f": {error}"
    logger.log(
        level,
        message,
        extra={
            "event_type": event_type,
            "event_id": event_id,
            "outcome": outcome,
            "error": error,
        },
    )
