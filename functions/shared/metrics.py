"""
CloudWatch Metrics Helper

Best-effort custom metrics for the payments core: donations, capacity
exhaustion, subscription admission and webhook outcomes.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from .aws_clients import get_cloudwatch

logger = logging.getLogger(__name__)

NAMESPACE = os.environ.get("CLOUDWATCH_NAMESPACE", "Fundify/Payments")


def emit_metric(
    metric_name: str,
    value: float = 1.0,
    unit: str = "Count",
    dimensions: Optional[Dict[str, str]] = None,
) -> None:
    """
    Emit a custom metric to CloudWatch.

    Example:
        emit_metric("DonationRecorded")
        emit_metric("WebhookEvent", dimensions={"EventType": "invoice.paid", "Outcome": "success"})
    """
    try:
        metric_data = {
            "MetricName": metric_name,
            "Value": value,
            "Unit": unit,
            "Timestamp": datetime.now(timezone.utc),
        }

        if dimensions:
            metric_data["Dimensions"] = [
                {"Name": k, "Value": v} for k, v in dimensions.items()
            ]

        get_cloudwatch().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[metric_data],
        )

        logger.debug(
            f"Emitted metric: {metric_name}={value} {unit}",
            extra={"dimensions": dimensions},
        )

    except Exception as e:
        # Don't fail the Lambda if metrics fail
        logger.warning(f"Failed to emit metric {metric_name}: {e}")


def emit_error_metric(error_type: str, handler: Optional[str] = None) -> None:
    """Emit an error metric with standard dimensions."""
    dimensions = {"ErrorType": error_type}
    if handler:
        dimensions["Handler"] = handler

    emit_metric("Errors", dimensions=dimensions)


def emit_webhook_metric(event_type: str, outcome: str) -> None:
    """
    Emit webhook processing metric.

    Args:
        event_type: Stripe event type
        outcome: 'success', 'duplicate', 'ignored', 'rejected', 'failed'
    """
    emit_metric("WebhookEvent", dimensions={"EventType": event_type[:50], "Outcome": outcome})
