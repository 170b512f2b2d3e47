"""
Subscription Actions Endpoint - POST /subscriptions/{subscriptionId}/{action}

Cancel, pause or resume the caller's own subscription. Provider-backed
subscriptions are changed on Stripe first, then locally through the same
lifecycle transition the webhook uses, keyed by the API Gateway request id
so a retried request is applied once.
"""

import logging
import time

import stripe

from shared.billing_utils import configure_stripe, get_stripe_secrets
from shared.constants import ACTIVE, CANCELLED, PAUSED
from shared.errors import APIError, ExternalServiceError, NotFoundError
from shared.logging_utils import configure_structured_logging, log_external_call, set_request_id
from shared.metrics import emit_error_metric
from shared.request_utils import get_origin, get_principal_id
from shared.response_utils import api_error_response, error_response, success_response
from shared.subscriptions import (
    cancel_subscription,
    get_owned_subscription,
    pause_subscription,
    resume_subscription,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ACTIONS = {
    "cancel": cancel_subscription,
    "pause": pause_subscription,
    "resume": resume_subscription,
}


def _needs_provider_call(action: str, status: str) -> bool:
    """Only forward changes the lifecycle would actually apply."""
    if action == "cancel":
        return status != CANCELLED
    if action == "pause":
        return status == ACTIVE
    return status == PAUSED


def _update_provider(action: str, external_subscription_id: str):
    if action == "cancel":
        stripe.Subscription.cancel(external_subscription_id)
    elif action == "pause":
        stripe.Subscription.modify(external_subscription_id, pause_collection={"behavior": "void"})
    else:
        stripe.Subscription.modify(external_subscription_id, pause_collection="")


def handler(event, context):
    """
    Lambda handler for POST /subscriptions/{subscriptionId}/{action}.

    Returns:
    {
        "subscription_id": "...",
        "status": "CANCELLED",
        "changed": true
    }
    """
    configure_structured_logging()
    request_id = set_request_id(event)
    origin = get_origin(event)

    path_params = event.get("pathParameters") or {}
    subscription_id = path_params.get("subscriptionId")
    action = (path_params.get("action") or "").lower()

    try:
        user_id = get_principal_id(event)
        if not subscription_id:
            raise NotFoundError("subscription", "")
        if action not in ACTIONS:
            raise NotFoundError("action", action)

        subscription = get_owned_subscription(subscription_id, user_id)
        external_id = subscription.get("external_subscription_id")

        if external_id and _needs_provider_call(action, subscription["status"]):
            stripe_api_key, _ = get_stripe_secrets()
            if not stripe_api_key:
                logger.error("Stripe API key not configured")
                return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)
            configure_stripe(stripe_api_key)

            start = time.time()
            try:
                _update_provider(action, external_id)
            except stripe.StripeError as e:
                log_external_call(logger, "stripe", f"Subscription.{action}", False, (time.time() - start) * 1000, str(e))
                raise ExternalServiceError(f"Failed to {action} subscription with payment provider") from e
            log_external_call(logger, "stripe", f"Subscription.{action}", True, (time.time() - start) * 1000)

        result = ACTIONS[action](subscription_id, user_id, f"{subscription_id}#{action}#{request_id}")

    except APIError as e:
        return api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Error updating subscription {subscription_id}: {e}", exc_info=True)
        emit_error_metric(type(e).__name__, handler="update_subscription")
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    logger.info(
        f"Subscription {subscription_id} {action}: {result.previous_status} -> {result.status}",
        extra={"subscription_id": subscription_id, "applied": result.applied, "reason": result.reason},
    )
    return success_response(
        {"subscription_id": subscription_id, "status": result.status, "changed": result.applied},
        origin=origin,
    )
