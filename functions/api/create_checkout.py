"""
Create Checkout Session Endpoint - POST /subscriptions

Creates a Stripe Checkout session for a membership tier. The subscription
itself is only created when the webhook reports the checkout as completed.
Requires an authenticated principal (API Gateway authorizer).
"""

import logging
import os
import time

import stripe

from shared.billing_utils import configure_stripe, get_stripe_secrets, to_minor_units
from shared.constants import STRIPE_INTERVALS
from shared.errors import (
    AlreadySubscribedError,
    APIError,
    ExternalServiceError,
    NotFoundError,
    ResourceExhaustedError,
    ValidationError,
)
from shared.logging_utils import configure_structured_logging, log_external_call, set_request_id
from shared.metrics import emit_error_metric
from shared.request_utils import get_origin, get_principal_id, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response
from shared.subscriptions import get_live_subscription, get_tier

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

FRONTEND_URL = os.environ.get("FRONTEND_URL", "https://fundify.app")


def _line_item(tier: dict) -> dict:
    """Use the tier's Stripe price when configured, otherwise inline price data."""
    if tier.get("stripe_price_id"):
        return {"price": tier["stripe_price_id"], "quantity": 1}

    return {
        "price_data": {
            "currency": (tier.get("currency") or "usd").lower(),
            "unit_amount": to_minor_units(tier["price"]),
            "recurring": {"interval": STRIPE_INTERVALS[tier.get("interval", "MONTHLY")]},
            "product_data": {"name": tier.get("name") or "Membership"},
        },
        "quantity": 1,
    }


def _check_admission(tier: dict, tier_id: str, user_id: str):
    """Preflight checks; the webhook re-checks all of them atomically."""
    if not tier.get("is_active", True):
        raise ValidationError("Membership tier is not accepting subscribers", details={"tier_id": tier_id})

    max_subscribers = tier.get("max_subscribers")
    if max_subscribers is not None and int(tier.get("current_subscribers", 0)) >= int(max_subscribers):
        raise ResourceExhaustedError("This membership tier is full", details={"tier_id": tier_id})

    if get_live_subscription(user_id, tier["creator_id"]):
        raise AlreadySubscribedError(user_id, tier["creator_id"])


def handler(event, context):
    """
    Lambda handler for POST /subscriptions.

    Request body:
    {
        "tierId": "<tier id>"
    }

    Returns:
    {
        "checkout_url": "https://checkout.stripe.com/...",
        "session_id": "cs_..."
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        user_id = get_principal_id(event)
        body = parse_json_body(event)

        tier_id = body.get("tierId")
        if not tier_id or not isinstance(tier_id, str):
            raise ValidationError("tierId is required")

        tier = get_tier(tier_id)
        if tier is None:
            raise NotFoundError("tier", tier_id)
        _check_admission(tier, tier_id, user_id)

    except APIError as e:
        return api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Error preparing checkout: {e}", exc_info=True)
        emit_error_metric(type(e).__name__, handler="create_checkout")
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    stripe_api_key, _ = get_stripe_secrets()
    if not stripe_api_key:
        logger.error("Stripe API key not configured")
        return error_response(500, "stripe_not_configured", "Payment system not configured", origin=origin)

    configure_stripe(stripe_api_key)

    metadata = {
        "userId": user_id,
        "tierId": tier_id,
        "creatorId": tier["creator_id"],
    }
    checkout_params = {
        "mode": "subscription",
        "line_items": [_line_item(tier)],
        "success_url": f"{FRONTEND_URL}/memberships?checkout=success",
        "cancel_url": f"{FRONTEND_URL}/creators/{tier['creator_id']}?checkout=cancelled",
        "client_reference_id": user_id,
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }

    start = time.time()
    try:
        session = stripe.checkout.Session.create(**checkout_params)
    except stripe.StripeError as e:
        log_external_call(logger, "stripe", "checkout.Session.create", False, (time.time() - start) * 1000, str(e))
        return api_error_response(ExternalServiceError("Failed to create checkout session"), origin=origin)
    except Exception as e:
        logger.error(f"Error creating checkout session: {e}", exc_info=True)
        emit_error_metric(type(e).__name__, handler="create_checkout")
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    log_external_call(logger, "stripe", "checkout.Session.create", True, (time.time() - start) * 1000)
    logger.info(f"Created checkout session for user {user_id}, tier {tier_id}")

    return success_response({"checkout_url": session.url, "session_id": session.id}, origin=origin)
