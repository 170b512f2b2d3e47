"""
Subscription lifecycle.

Owns the subscription state machine and the tier subscriber count. Both user
actions and provider webhooks go through ``transition()``, which validates
every change against the currently stored status:

    ACTIVE  -> ACTIVE (billing refresh) | PAUSED | EXPIRED | CANCELLED
    PAUSED  -> ACTIVE | CANCELLED
    EXPIRED -> ACTIVE | CANCELLED
    CANCELLED is absorbing

Anything outside the table is a no-op success, not an error: the stored
status may already reflect a newer event that arrived first.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from boto3.dynamodb.conditions import Key

from .capacity import claim_item, execute_with_releases, release_item
from .constants import (
    ACTIVE,
    ALLOWED_TRANSITIONS,
    BILLING_EVENT_TTL_DAYS,
    BILLING_EVENTS_TABLE,
    BILLING_INTERVAL_DAYS,
    CANCELLED,
    GUARD_SK,
    MARKER_SK,
    PAUSED,
    SUBSCRIPTION_SK,
    SUBSCRIPTION_STATUSES,
    SUBSCRIPTIONS_TABLE,
    TIER_SK,
    TIERS_TABLE,
)
from .dynamo import (
    UNSET,
    TransactionCancelled,
    build_update,
    execute_transaction,
    get_item,
    query_all,
    tx_delete,
    tx_put,
    tx_update,
)
from .errors import (
    AlreadySubscribedError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ResourceExhaustedError,
    ValidationError,
)
from .metrics import emit_metric
from .types import MembershipTier, Subscription

logger = logging.getLogger(__name__)

MAX_TRANSITION_ATTEMPTS = 3


@dataclass
class TransitionResult:
    """Outcome of transition().

    ``applied`` is False for no-ops; ``reason`` is then one of
    "duplicate", "illegal_transition" or "stale_event".
    """

    applied: bool
    status: str
    previous_status: Optional[str] = None
    reason: Optional[str] = None
    subscription: Optional[dict] = None


def _tier_key(tier_id: str) -> dict:
    return {"pk": tier_id, "sk": TIER_SK}


def _subscription_key(subscription_id: str) -> dict:
    return {"pk": subscription_id, "sk": SUBSCRIPTION_SK}


def _member_guard_key(subscriber_id: str, creator_id: str) -> dict:
    return {"pk": f"MEMBER#{subscriber_id}#{creator_id}", "sk": GUARD_SK}


def _external_guard_key(external_subscription_id: str) -> dict:
    return {"pk": f"EXTERNAL#{external_subscription_id}", "sk": GUARD_SK}


def _marker_key(identity: str) -> dict:
    return {"pk": f"APPLIED#{identity}", "sk": MARKER_SK}


def compute_next_billing_date(interval: str, now: Optional[datetime] = None) -> str:
    """Next billing date for a tier interval: +30 days (MONTHLY) or +365 days (YEARLY)."""
    days = BILLING_INTERVAL_DAYS.get(interval)
    if days is None:
        raise ValidationError(f"Unknown billing interval: {interval}")
    now = now or datetime.now(timezone.utc)
    return (now + timedelta(days=days)).isoformat()


def get_tier(tier_id: str) -> Optional[MembershipTier]:
    return get_item(TIERS_TABLE, _tier_key(tier_id))


def get_subscription(subscription_id: str) -> Optional[Subscription]:
    return get_item(SUBSCRIPTIONS_TABLE, _subscription_key(subscription_id))


def find_by_external_id(external_subscription_id: str) -> Optional[Subscription]:
    """Resolve a provider subscription id through its uniqueness guard (strongly consistent)."""
    guard = get_item(SUBSCRIPTIONS_TABLE, _external_guard_key(external_subscription_id))
    if guard is None:
        return None
    return get_subscription(guard["subscription_id"])


def get_live_subscription(subscriber_id: str, creator_id: str) -> Optional[Subscription]:
    """The subscriber's non-cancelled subscription to ``creator_id``, if any."""
    guard = get_item(SUBSCRIPTIONS_TABLE, _member_guard_key(subscriber_id, creator_id))
    if guard is None:
        return None
    return get_subscription(guard["subscription_id"])


def count_live_subscriptions(tier_id: str) -> int:
    """Count non-cancelled subscriptions on a tier (ledger audit)."""
    items = query_all(
        SUBSCRIPTIONS_TABLE,
        IndexName="tier-index",
        KeyConditionExpression=Key("tier_id").eq(tier_id),
    )
    return sum(1 for item in items if item.get("status") != CANCELLED)


def create_subscription(
    subscriber_id: str,
    tier_id: str,
    *,
    creator_id: Optional[str] = None,
    external_subscription_id: Optional[str] = None,
    external_customer_id: Optional[str] = None,
    event_created: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Admit a subscriber to a tier as ACTIVE.

    One transaction claims a tier seat, writes the member guard (one live
    subscription per subscriber/creator), the external-id guard and the
    Subscription row. Nothing is written if any part fails.

    Raises:
        NotFoundError: tier missing
        ValidationError: tier inactive, or creator_id does not own the tier
        ResourceExhaustedError: tier is full
        AlreadySubscribedError: subscriber already holds a live subscription
        ConflictError: external_subscription_id already recorded (replay)
    """
    tier = get_tier(tier_id)
    if tier is None:
        raise NotFoundError("tier", tier_id)
    if not tier.get("is_active", True):
        raise ValidationError("Membership tier is not accepting subscribers", details={"tier_id": tier_id})

    tier_creator = tier.get("creator_id")
    if creator_id and tier_creator and creator_id != tier_creator:
        raise ValidationError("Tier does not belong to this creator", details={"tier_id": tier_id})
    creator_id = tier_creator or creator_id

    now = now or datetime.now(timezone.utc)
    now_iso = now.isoformat()
    subscription_id = str(uuid.uuid4())

    subscription = {
        **_subscription_key(subscription_id),
        "subscription_id": subscription_id,
        "subscriber_id": subscriber_id,
        "creator_id": creator_id,
        "tier_id": tier_id,
        "campaign_id": tier.get("campaign_id"),
        "status": ACTIVE,
        "external_subscription_id": external_subscription_id,
        "external_customer_id": external_customer_id,
        "start_date": now_iso,
        "next_billing_date": compute_next_billing_date(tier.get("interval", "MONTHLY"), now),
        "payment_failures": 0,
        "last_event_at": event_created,
        "created_at": now_iso,
        "updated_at": now_iso,
    }

    items = [
        claim_item(
            TIERS_TABLE,
            _tier_key(tier_id),
            "current_subscribers",
            "max_subscribers",
            extra_condition="attribute_not_exists(#is_active) OR #is_active = :true",
            extra_names={"#is_active": "is_active"},
            extra_values={":true": True},
        ),
        tx_put(
            SUBSCRIPTIONS_TABLE,
            {
                **_member_guard_key(subscriber_id, creator_id),
                # Guards stay out of the subscriber/tier GSIs: no subscriber_id or tier_id
                "subscription_id": subscription_id,
                "guarded_at": now_iso,
            },
            condition="attribute_not_exists(pk)",
        ),
    ]
    external_index = None
    if external_subscription_id:
        external_index = len(items)
        items.append(
            tx_put(
                SUBSCRIPTIONS_TABLE,
                {
                    **_external_guard_key(external_subscription_id),
                    "subscription_id": subscription_id,
                    "external_subscription_id": external_subscription_id,
                    "guarded_at": now_iso,
                },
                condition="attribute_not_exists(pk)",
            )
        )
    items.append(tx_put(SUBSCRIPTIONS_TABLE, subscription, condition="attribute_not_exists(pk)"))

    try:
        execute_transaction(items)
    except TransactionCancelled as e:
        # Replay check first: a replayed checkout also trips the member guard
        if external_index is not None and e.failed(external_index):
            raise ConflictError(
                "Subscription already recorded",
                code="subscription_exists",
                details={"external_subscription_id": external_subscription_id},
            ) from e
        if e.failed(1):
            raise AlreadySubscribedError(subscriber_id, creator_id) from e
        if e.failed(0):
            current = get_tier(tier_id)
            if current is None:
                raise NotFoundError("tier", tier_id) from e
            if not current.get("is_active", True):
                raise ValidationError(
                    "Membership tier is not accepting subscribers", details={"tier_id": tier_id}
                ) from e
            raise ResourceExhaustedError(
                "This membership tier is full",
                details={"tier_id": tier_id, "max_subscribers": current.get("max_subscribers")},
            ) from e
        raise

    logger.info(
        f"Subscription {subscription_id} admitted to tier {tier_id}",
        extra={"subscription_id": subscription_id, "tier_id": tier_id, "subscriber_id": subscriber_id},
    )
    emit_metric("SubscriptionAdmitted")

    return {k: v for k, v in subscription.items() if v is not None}


def transition(
    subscription_id: str,
    new_status: str,
    external_event_identity: Optional[str] = None,
    *,
    event_created: Optional[int] = None,
    next_billing_date=UNSET,
    reset_payment_failures: bool = False,
    record_payment_failure: bool = False,
    from_statuses: Optional[set] = None,
) -> TransitionResult:
    """
    Move a subscription to ``new_status``.

    Args:
        subscription_id: Subscription to change
        new_status: Target status
        external_event_identity: Idempotency key; an identity is applied at
            most once (its marker is written in the same transaction)
        event_created: Source event time (epoch seconds); events older than
            the last applied one are ignored
        next_billing_date: UNSET keeps the stored value, a string replaces it
        reset_payment_failures: Zero the payment failure counter
        record_payment_failure: Add one to the payment failure counter
        from_statuses: Further restrict the statuses this change may start from

    Returns:
        TransitionResult; no-ops report applied=False with a reason

    Raises:
        NotFoundError: subscription missing
        ValidationError: unknown status
        InternalError: status kept changing underneath after retries
    """
    if new_status not in SUBSCRIPTION_STATUSES:
        raise ValidationError(f"Unknown subscription status: {new_status}")

    for attempt in range(MAX_TRANSITION_ATTEMPTS):
        if external_event_identity and get_item(BILLING_EVENTS_TABLE, _marker_key(external_event_identity)):
            logger.info(f"Event {external_event_identity} already applied to {subscription_id}")
            current = get_subscription(subscription_id) or {}
            return TransitionResult(
                applied=False,
                status=current.get("status", new_status),
                previous_status=current.get("status"),
                reason="duplicate",
                subscription=current or None,
            )

        current = get_subscription(subscription_id)
        if current is None:
            raise NotFoundError("subscription", subscription_id)
        current_status = current["status"]

        allowed = ALLOWED_TRANSITIONS.get(current_status, set())
        if new_status not in allowed or (from_statuses is not None and current_status not in from_statuses):
            logger.info(
                f"Ignoring {current_status} -> {new_status} for {subscription_id}",
                extra={"subscription_id": subscription_id, "identity": external_event_identity},
            )
            return TransitionResult(
                applied=False,
                status=current_status,
                previous_status=current_status,
                reason="illegal_transition",
                subscription=current,
            )

        # CANCELLED is absorbing and applies whatever order events arrive in
        last_event_at = current.get("last_event_at")
        ordered = event_created is not None and new_status != CANCELLED
        is_stale = event_created is not None and last_event_at is not None and int(event_created) < int(last_event_at)
        if ordered and is_stale:
            logger.info(
                f"Ignoring stale event for {subscription_id}: {event_created} < {last_event_at}",
                extra={"subscription_id": subscription_id, "identity": external_event_identity},
            )
            return TransitionResult(
                applied=False,
                status=current_status,
                previous_status=current_status,
                reason="stale_event",
                subscription=current,
            )

        now_iso = datetime.now(timezone.utc).isoformat()
        set_fields = {
            "status": new_status,
            "updated_at": now_iso,
            "last_event_at": int(event_created) if event_created is not None and not is_stale else UNSET,
            "next_billing_date": next_billing_date,
            "payment_failures": 0 if reset_payment_failures else UNSET,
        }
        add_fields = {"payment_failures": 1 if record_payment_failure and not reset_payment_failures else UNSET}

        if new_status == CANCELLED:
            set_fields["cancelled_at"] = now_iso
            set_fields["end_date"] = current.get("next_billing_date") or now_iso
            set_fields["next_billing_date"] = None

        patch = build_update(set_fields, add_fields)
        condition = "#status = :expected_status"
        if ordered:
            condition += " AND (attribute_not_exists(#last_event_at) OR #last_event_at <= :last_event_at)"

        items = [
            tx_update(
                SUBSCRIPTIONS_TABLE,
                _subscription_key(subscription_id),
                patch.expression,
                condition=condition,
                names=patch.names,
                values={**patch.values, ":expected_status": current_status},
            )
        ]
        marker_index = None
        if external_event_identity:
            marker_index = len(items)
            expires = datetime.now(timezone.utc) + timedelta(days=BILLING_EVENT_TTL_DAYS)
            items.append(
                tx_put(
                    BILLING_EVENTS_TABLE,
                    {
                        **_marker_key(external_event_identity),
                        "identity": external_event_identity,
                        "subscription_id": subscription_id,
                        "from_status": current_status,
                        "to_status": new_status,
                        "applied_at": now_iso,
                        "ttl": int(expires.timestamp()),
                    },
                    condition="attribute_not_exists(pk)",
                )
            )

        release_indexes = set()
        if new_status == CANCELLED:
            release_indexes.add(len(items))
            items.append(release_item(TIERS_TABLE, _tier_key(current["tier_id"]), "current_subscribers"))
            items.append(
                tx_delete(
                    SUBSCRIPTIONS_TABLE,
                    _member_guard_key(current["subscriber_id"], current["creator_id"]),
                    condition="attribute_not_exists(pk) OR subscription_id = :sid",
                    values={":sid": subscription_id},
                )
            )

        try:
            skipped = execute_with_releases(items, release_indexes)
        except TransactionCancelled as e:
            if marker_index is not None and e.failed(marker_index):
                # Concurrent delivery of the same event won
                logger.info(f"Event {external_event_identity} applied concurrently to {subscription_id}")
                latest = get_subscription(subscription_id) or current
                return TransitionResult(
                    applied=False,
                    status=latest.get("status"),
                    previous_status=current_status,
                    reason="duplicate",
                    subscription=latest,
                )
            if e.failed(0):
                logger.warning(
                    f"Subscription {subscription_id} changed during transition, "
                    f"retry {attempt + 1}/{MAX_TRANSITION_ATTEMPTS}"
                )
                continue
            raise ConflictError(
                "Subscription guard is held by another subscription",
                details={"subscription_id": subscription_id},
            ) from e

        if skipped:
            logger.warning(
                f"Tier {current['tier_id']} subscriber count already at zero when cancelling {subscription_id}",
                extra={"subscription_id": subscription_id, "tier_id": current["tier_id"]},
            )

        updated = dict(current)
        for name, value in set_fields.items():
            if value is UNSET:
                continue
            if value is None:
                updated.pop(name, None)
            else:
                updated[name] = value
        if add_fields["payment_failures"] is not UNSET:
            updated["payment_failures"] = int(current.get("payment_failures", 0)) + 1

        logger.info(
            f"Subscription {subscription_id}: {current_status} -> {new_status}",
            extra={
                "subscription_id": subscription_id,
                "from_status": current_status,
                "to_status": new_status,
                "identity": external_event_identity,
            },
        )
        return TransitionResult(
            applied=True,
            status=new_status,
            previous_status=current_status,
            subscription=updated,
        )

    raise InternalError(f"Subscription {subscription_id} was modified concurrently, please retry")


def get_owned_subscription(subscription_id: str, actor_id: str) -> Subscription:
    """Load a subscription and check ``actor_id`` is its subscriber."""
    subscription = get_subscription(subscription_id)
    if subscription is None:
        raise NotFoundError("subscription", subscription_id)
    if subscription.get("subscriber_id") != actor_id:
        raise ForbiddenError("You can only manage your own subscriptions")
    return subscription


def cancel_subscription(subscription_id: str, actor_id: str, identity: Optional[str] = None) -> TransitionResult:
    get_owned_subscription(subscription_id, actor_id)
    return transition(subscription_id, CANCELLED, identity, event_created=int(time.time()))


def pause_subscription(subscription_id: str, actor_id: str, identity: Optional[str] = None) -> TransitionResult:
    get_owned_subscription(subscription_id, actor_id)
    return transition(subscription_id, PAUSED, identity, event_created=int(time.time()), from_statuses={ACTIVE})


def resume_subscription(subscription_id: str, actor_id: str, identity: Optional[str] = None) -> TransitionResult:
    """Resume a paused subscription. EXPIRED subscriptions only recover through a paid invoice."""
    get_owned_subscription(subscription_id, actor_id)
    return transition(subscription_id, ACTIVE, identity, event_created=int(time.time()), from_statuses={PAUSED})
