"""
Stripe Webhook Endpoint - POST /webhooks/provider

Reconciles subscription and donation state with Stripe's event feed.
Uses Stripe signature verification instead of user auth. Events may arrive
more than once and out of order; every state change goes through the
subscription lifecycle, which de-duplicates by event identity and validates
against the currently stored status.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.billing_utils import configure_stripe, from_minor_units, get_stripe_secrets
from shared.constants import (
    ACTIVE,
    BILLING_EVENT_TTL_DAYS,
    BILLING_EVENTS_TABLE,
    CANCELLED,
    DONATION_REFUNDED,
    EXPIRED,
    PAUSED,
)
from shared.donations import create_donation, find_donation_by_transaction, refund_donation
from shared.dynamo import UNSET
from shared.errors import (
    APIError,
    ConflictError,
    InternalError,
    NotFoundError,
    ResourceExhaustedError,
    ValidationError,
)
from shared.logging_utils import configure_structured_logging, log_webhook_outcome, set_request_id
from shared.metrics import emit_error_metric, emit_metric, emit_webhook_metric
from shared.request_utils import get_header, get_raw_body
from shared.response_utils import error_response
from shared.subscriptions import (
    compute_next_billing_date,
    create_subscription,
    find_by_external_id,
    get_tier,
    transition,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

# Stripe subscription status -> lifecycle status
STRIPE_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": EXPIRED,
    "unpaid": EXPIRED,
    "paused": PAUSED,
    "canceled": CANCELLED,
}

# Subscription objects in these states have not been paid for yet
ADMITTABLE_STRIPE_STATUSES = ("active", "trialing")


# ===========================================
# Billing Event Audit Trail
# ===========================================


def _record_billing_event(event: dict, status: str, error: str = None):
    """Record webhook event for audit trail (best-effort).

    Rows with status "rejected" are the work queue for the refund side-flow
    (e.g. a checkout that completed after its tier filled up).

    Args:
        event: Stripe event dict
        status: "success", "duplicate", "ignored", "rejected" or "failed"
        error: Error message if the event was not processed
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        ttl = int((datetime.now(timezone.utc) + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp())
        data = event.get("data", {}).get("object", {})

        item = {
            "pk": event["id"],
            "sk": event["type"],
            "customer_id": data.get("customer") or "unknown",
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "event_created_at": event.get("created"),
            "livemode": event.get("livemode"),
            "status": status,
            "ttl": ttl,
        }
        if error:
            item["error"] = error
        table.put_item(Item={k: v for k, v in item.items() if v is not None})
    except Exception as e:
        # Best-effort - audit recording should not block webhook response
        logger.error(f"Failed to record billing event {event.get('id')}: {e}")


def _finish(stripe_event: dict, outcome: str, error: str = None):
    _record_billing_event(stripe_event, outcome, error)
    emit_webhook_metric(stripe_event["type"], outcome)
    log_webhook_outcome(logger, stripe_event["type"], stripe_event["id"], outcome, error)


def _received(**extra) -> dict:
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"received": True, **extra}),
    }


def _not_processed(code: str, message: str) -> dict:
    # 200 so Stripe does not retry an event that can never succeed
    return _received(processed=False, error={"code": code, "message": message})


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: admit subscription / record donation
    - customer.subscription.created: admit subscription
    - customer.subscription.updated: status sync
    - customer.subscription.deleted: cancel
    - invoice.paid / invoice.payment_succeeded: reactivate, refresh billing date
    - invoice.payment_failed: expire
    - charge.refunded: refund donation
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    configure_stripe(stripe_api_key)

    sig_header = get_header(event, "stripe-signature") or get_header(event, "x-signature")
    if not sig_header:
        logger.warning("Missing Stripe signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    try:
        payload = get_raw_body(event)
    except ValueError as e:
        logger.warning(f"Undecodable webhook body: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    # Verify the signature over the raw body before trusting any of it
    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        return error_response(400, "invalid_signature", "Invalid signature")

    try:
        stripe_event = json.loads(payload)
        event_type = stripe_event["type"]
        event_id = stripe_event["id"]
        data = stripe_event["data"]["object"]
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Webhook error: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    logger.info(f"Processing Stripe event: {event_type} (id={event_id})")

    try:
        if event_type == "checkout.session.completed":
            outcome = _handle_checkout_completed(stripe_event, data)

        elif event_type == "customer.subscription.created":
            outcome = _handle_subscription_created(stripe_event, data)

        elif event_type == "customer.subscription.updated":
            outcome = _handle_subscription_updated(stripe_event, data)

        elif event_type == "customer.subscription.deleted":
            outcome = _handle_subscription_deleted(stripe_event, data)

        elif event_type in ("invoice.paid", "invoice.payment_succeeded"):
            outcome = _handle_invoice_paid(stripe_event, data)

        elif event_type == "invoice.payment_failed":
            outcome = _handle_payment_failed(stripe_event, data)

        elif event_type == "charge.refunded":
            outcome = _handle_charge_refunded(stripe_event, data)

        else:
            logger.info(f"Unhandled event type: {event_type}")
            outcome = "ignored"

    except ResourceExhaustedError as e:
        # Payment taken but no capacity left: leave it for the refund side-flow
        _finish(stripe_event, "rejected", e.message)
        return _not_processed(e.code, e.message)
    except InternalError as e:
        _finish(stripe_event, "failed", e.message)
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except APIError as e:
        # Not found, validation, already subscribed: permanent, don't retry
        _finish(stripe_event, "failed", f"{e.code}: {e.message}")
        return _not_processed(e.code, e.message)
    except ClientError as e:
        # DynamoDB errors are transient - nothing was applied, Stripe retry re-processes
        _finish(stripe_event, "failed", str(e))
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        _finish(stripe_event, "failed", str(e))
        return error_response(500, "stripe_error", "Stripe error, please retry")
    except stripe.StripeError as e:
        _finish(stripe_event, "failed", str(e))
        return _not_processed("stripe_validation_error", "Stripe validation error")
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Malformed event data is permanent - don't leak internal field names
        _finish(stripe_event, "failed", f"{type(e).__name__}: {e}")
        return _not_processed("invalid_event_data", "Invalid event data")
    except Exception as e:
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        emit_error_metric(type(e).__name__, handler="stripe_webhook")
        _finish(stripe_event, "failed", str(e))
        return error_response(500, "processing_failed", "Processing failed")

    _finish(stripe_event, outcome)
    if outcome == "duplicate":
        return _received(duplicate=True)
    return _received()


# ===========================================
# Helpers
# ===========================================


def _event_identity(stripe_event: dict, external_subscription_id: str) -> str:
    return f"{external_subscription_id}#{stripe_event['type']}#{stripe_event['id']}"


def _timestamp_to_iso(value) -> str | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


def _subscription_period_end(subscription: dict):
    """current_period_end moved onto subscription items in newer API versions."""
    if subscription.get("current_period_end"):
        return subscription["current_period_end"]
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


def _invoice_subscription_id(invoice: dict) -> str | None:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _invoice_period_end(invoice: dict):
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        return (lines[0].get("period") or {}).get("end")
    return None


def _require_subscription(external_subscription_id: str) -> dict:
    subscription = find_by_external_id(external_subscription_id)
    if subscription is None:
        raise NotFoundError("subscription", external_subscription_id)
    return subscription


def _apply(stripe_event: dict, subscription: dict, target: str, **changes) -> str:
    """Drive the lifecycle and translate the result into a webhook outcome."""
    identity = _event_identity(stripe_event, subscription["external_subscription_id"])
    result = transition(
        subscription["subscription_id"],
        target,
        identity,
        event_created=stripe_event.get("created"),
        **changes,
    )
    if result.reason == "duplicate":
        return "duplicate"
    if not result.applied:
        return "ignored"
    return "success"


def _admit(
    stripe_event: dict,
    metadata: dict,
    external_subscription_id: str,
    customer_id: str | None,
) -> str:
    user_id = metadata.get("userId")
    tier_id = metadata.get("tierId")
    if not user_id or not tier_id or not external_subscription_id:
        raise ValidationError("Subscription metadata is incomplete")

    if find_by_external_id(external_subscription_id):
        logger.info(f"Subscription {external_subscription_id} already recorded")
        return "duplicate"

    try:
        create_subscription(
            user_id,
            tier_id,
            creator_id=metadata.get("creatorId"),
            external_subscription_id=external_subscription_id,
            external_customer_id=customer_id,
            event_created=stripe_event.get("created"),
        )
    except ResourceExhaustedError:
        logger.warning(
            f"Tier {tier_id} full, subscription {external_subscription_id} for {user_id} not admitted",
            extra={"tier_id": tier_id, "external_subscription_id": external_subscription_id},
        )
        emit_metric("TierAdmissionRejected")
        raise
    except ConflictError as e:
        if e.code == "subscription_exists":
            return "duplicate"
        raise

    return "success"


# ===========================================
# Event handlers
# ===========================================


def _handle_checkout_completed(stripe_event: dict, session: dict) -> str:
    """Handle successful checkout - admit subscriber or record donation."""
    mode = session.get("mode", "subscription")

    if mode == "payment":
        return _record_checkout_donation(session)
    if mode != "subscription":
        logger.info(f"Ignoring checkout session {session.get('id')} in {mode} mode")
        return "ignored"

    return _admit(
        stripe_event,
        session.get("metadata") or {},
        session.get("subscription"),
        session.get("customer"),
    )


def _handle_subscription_created(stripe_event: dict, subscription: dict) -> str:
    """Admit from the subscription object when it arrives before the checkout event."""
    if subscription.get("status") not in ADMITTABLE_STRIPE_STATUSES:
        logger.info(f"Subscription {subscription.get('id')} created as {subscription.get('status')}, waiting")
        return "ignored"

    return _admit(
        stripe_event,
        subscription.get("metadata") or {},
        subscription.get("id"),
        subscription.get("customer"),
    )


def _handle_subscription_updated(stripe_event: dict, subscription: dict) -> str:
    """Sync lifecycle status with Stripe's subscription status."""
    stripe_status = subscription.get("status")
    target = STRIPE_STATUS_MAP.get(stripe_status)
    if target == ACTIVE and subscription.get("pause_collection"):
        target = PAUSED

    if target is None:
        logger.info(f"Ignoring subscription status {stripe_status} for {subscription.get('id')}")
        return "ignored"

    local = _require_subscription(subscription["id"])
    next_billing_date = _timestamp_to_iso(_subscription_period_end(subscription))

    return _apply(
        stripe_event,
        local,
        target,
        next_billing_date=next_billing_date if next_billing_date and target != CANCELLED else UNSET,
    )


def _handle_subscription_deleted(stripe_event: dict, subscription: dict) -> str:
    """Handle subscription cancellation on Stripe's side."""
    local = _require_subscription(subscription["id"])
    return _apply(stripe_event, local, CANCELLED)


def _handle_invoice_paid(stripe_event: dict, invoice: dict) -> str:
    """Successful payment reactivates the subscription and moves the billing date."""
    external_id = _invoice_subscription_id(invoice)
    if not external_id:
        logger.info(f"Invoice {invoice.get('id')} has no subscription, ignoring")
        return "ignored"

    local = _require_subscription(external_id)
    next_billing_date = _timestamp_to_iso(_invoice_period_end(invoice))
    if next_billing_date is None:
        tier = get_tier(local["tier_id"]) or {}
        next_billing_date = compute_next_billing_date(tier.get("interval", "MONTHLY"))

    return _apply(
        stripe_event,
        local,
        ACTIVE,
        next_billing_date=next_billing_date,
        reset_payment_failures=True,
    )


def _handle_payment_failed(stripe_event: dict, invoice: dict) -> str:
    """Failed payment expires the subscription; no grace period is applied."""
    external_id = _invoice_subscription_id(invoice)
    if not external_id:
        logger.info(f"Invoice {invoice.get('id')} has no subscription, ignoring")
        return "ignored"

    local = _require_subscription(external_id)
    logger.warning(
        f"Payment failed for subscription {local['subscription_id']} "
        f"(attempt {invoice.get('attempt_count', 1)})",
        extra={"subscription_id": local["subscription_id"], "invoice_id": invoice.get("id")},
    )
    return _apply(stripe_event, local, EXPIRED, record_payment_failure=True)


def _record_checkout_donation(session: dict) -> str:
    """One-off checkout paying for a donation."""
    if session.get("payment_status") not in ("paid", "no_payment_required"):
        logger.info(f"Checkout session {session.get('id')} not paid yet ({session.get('payment_status')})")
        return "ignored"

    metadata = session.get("metadata") or {}
    campaign_id = metadata.get("campaignId")
    donor_id = metadata.get("userId")
    if not campaign_id or not donor_id:
        raise ValidationError("Donation metadata is incomplete")

    # Same session always maps to the same donation id, so replays hit the put guard
    donation_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"stripe:checkout:{session['id']}"))

    try:
        create_donation(
            campaign_id,
            donor_id,
            from_minor_units(session["amount_total"]),
            metadata.get("rewardId") or None,
            message=metadata.get("message") or None,
            anonymous=metadata.get("anonymous") == "true",
            payment_method="stripe",
            currency=session.get("currency"),
            transaction_id=session.get("payment_intent"),
            donation_id=donation_id,
        )
    except ConflictError as e:
        if e.code == "duplicate_donation":
            return "duplicate"
        raise

    return "success"


def _handle_charge_refunded(stripe_event: dict, charge: dict) -> str:
    """Full refunds reverse the donation they paid for."""
    if not charge.get("refunded"):
        logger.info(f"Partial refund on charge {charge.get('id')}, ignoring")
        return "ignored"

    payment_intent = charge.get("payment_intent")
    donation = find_donation_by_transaction(payment_intent) if payment_intent else None
    if donation is None:
        logger.info(f"Charge {charge.get('id')} does not belong to a donation")
        return "ignored"

    if donation.get("status") == DONATION_REFUNDED:
        return "duplicate"

    refund_donation(donation["donation_id"])
    return "success"
