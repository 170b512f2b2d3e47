"""
Donation processing.

A donation is recorded as one TransactWriteItems: the campaign running total,
the optional reward claim and the Donation row either all land or none do,
so ``campaign.current_amount`` always equals the sum of its COMPLETED
donations between transactions.
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from boto3.dynamodb.conditions import Key

from .capacity import claim_item, execute_with_releases, increment_item, release_item
from .constants import (
    CAMPAIGN_ACTIVE,
    CAMPAIGN_SK,
    CAMPAIGNS_TABLE,
    DEFAULT_CURRENCY,
    DONATION_COMPLETED,
    DONATION_REFUNDED,
    DONATION_SK,
    DONATIONS_TABLE,
    MAX_DONATION_AMOUNT,
    MONEY_QUANTUM,
    REWARD_SK,
    REWARDS_TABLE,
)
from .dynamo import TransactionCancelled, build_update, execute_transaction, get_item, query_all, tx_put, tx_update
from .errors import (
    CampaignNotAcceptingDonationsError,
    ConflictError,
    InvalidRewardError,
    NotFoundError,
    ResourceExhaustedError,
    ValidationError,
)
from .metrics import emit_metric
from .types import Campaign, Donation, Reward

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 500
MAX_PAYMENT_METHOD_LENGTH = 50


def parse_amount(value) -> Decimal:
    """
    Parse a money amount from request input.

    Accepts numbers or numeric strings. The result is a Decimal with exactly
    two decimal places.

    Raises:
        ValidationError: missing, non-numeric, non-positive, more than two
            decimal places, or above MAX_DONATION_AMOUNT
    """
    if value is None or isinstance(value, bool):
        raise ValidationError("Amount is required")

    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number", details={"amount": str(value)})

    if not amount.is_finite():
        raise ValidationError("Amount must be a number", details={"amount": str(value)})
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount.as_tuple().exponent < -2:
        raise ValidationError("Amount cannot have more than 2 decimal places")
    if amount > MAX_DONATION_AMOUNT:
        raise ValidationError(f"Amount cannot exceed {MAX_DONATION_AMOUNT}")

    return amount.quantize(MONEY_QUANTUM)


def _campaign_key(campaign_id: str) -> dict:
    return {"pk": campaign_id, "sk": CAMPAIGN_SK}


def _reward_key(reward_id: str) -> dict:
    return {"pk": reward_id, "sk": REWARD_SK}


def _donation_key(donation_id: str) -> dict:
    return {"pk": donation_id, "sk": DONATION_SK}


def get_campaign(campaign_id: str) -> Optional[Campaign]:
    return get_item(CAMPAIGNS_TABLE, _campaign_key(campaign_id))


def get_reward(reward_id: str) -> Optional[Reward]:
    return get_item(REWARDS_TABLE, _reward_key(reward_id))


def get_donation(donation_id: str) -> Optional[Donation]:
    return get_item(DONATIONS_TABLE, _donation_key(donation_id))


def _validate_reward(reward_id: str, campaign_id: str, amount: Decimal) -> dict:
    reward = get_reward(reward_id)
    if reward is None:
        raise NotFoundError("reward", reward_id)

    if reward.get("campaign_id") != campaign_id:
        raise InvalidRewardError(
            "Reward does not belong to this campaign",
            details={"reward_id": reward_id, "campaign_id": campaign_id},
        )

    minimum = Decimal(str(reward.get("minimum_amount", 0)))
    if amount < minimum:
        raise InvalidRewardError(
            f"Amount is below the reward minimum of {minimum}",
            details={"reward_id": reward_id, "minimum_amount": str(minimum)},
        )
    return reward


def create_donation(
    campaign_id: str,
    donor_id: str,
    amount,
    reward_id: Optional[str] = None,
    *,
    message: Optional[str] = None,
    anonymous: bool = False,
    payment_method: Optional[str] = None,
    currency: Optional[str] = None,
    transaction_id: Optional[str] = None,
    donation_id: Optional[str] = None,
) -> Donation:
    """
    Validate and record a donation, claiming a limited reward if referenced.

    The campaign status is re-checked inside the transaction, so a campaign
    closed between validation and commit still rejects the donation.

    Args:
        campaign_id: Campaign receiving the donation
        donor_id: Authenticated donor
        amount: Money amount (number or numeric string)
        reward_id: Optional reward to claim
        message: Optional donor message (max 500 chars)
        anonymous: Hide the donor on public listings
        payment_method: Free-form payment method label
        currency: Must match the campaign currency when given
        transaction_id: Payment provider reference (e.g. PaymentIntent id)
        donation_id: Caller-chosen id; replays of the same id are rejected
            with ConflictError instead of being counted twice

    Returns:
        The stored Donation item

    Raises:
        ValidationError, NotFoundError, CampaignNotAcceptingDonationsError,
        InvalidRewardError, ResourceExhaustedError, ConflictError
    """
    amount = parse_amount(amount)

    if not donor_id:
        raise ValidationError("Donor is required")
    if message is not None and len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    if payment_method is not None and len(payment_method) > MAX_PAYMENT_METHOD_LENGTH:
        raise ValidationError("Invalid payment method")

    campaign = get_campaign(campaign_id)
    if campaign is None:
        raise NotFoundError("campaign", campaign_id)
    if campaign.get("status") != CAMPAIGN_ACTIVE:
        raise CampaignNotAcceptingDonationsError(campaign_id, campaign.get("status"))

    campaign_currency = campaign.get("currency") or DEFAULT_CURRENCY
    if currency and currency.upper() != campaign_currency:
        raise ValidationError(
            f"Campaign only accepts {campaign_currency}",
            details={"currency": currency},
        )

    if reward_id:
        _validate_reward(reward_id, campaign_id, amount)

    now = datetime.now(timezone.utc).isoformat()
    donation_id = donation_id or str(uuid.uuid4())
    donation = {
        **_donation_key(donation_id),
        "donation_id": donation_id,
        "campaign_id": campaign_id,
        "donor_id": donor_id,
        "amount": amount,
        "currency": campaign_currency,
        "reward_id": reward_id,
        "message": message,
        "anonymous": bool(anonymous),
        "payment_method": payment_method,
        "transaction_id": transaction_id,
        "status": DONATION_COMPLETED,
        "created_at": now,
        "updated_at": now,
    }

    items = [
        increment_item(
            CAMPAIGNS_TABLE,
            _campaign_key(campaign_id),
            "current_amount",
            amount,
            extra_condition="#status = :active",
            extra_names={"#status": "status"},
            extra_values={":active": CAMPAIGN_ACTIVE},
        ),
    ]
    reward_index = None
    if reward_id:
        reward_index = len(items)
        items.append(
            claim_item(
                REWARDS_TABLE,
                _reward_key(reward_id),
                "claimed_count",
                "limited_quantity",
                extra_condition="campaign_id = :campaign_id",
                extra_values={":campaign_id": campaign_id},
            )
        )
    donation_index = len(items)
    items.append(tx_put(DONATIONS_TABLE, donation, condition="attribute_not_exists(pk)"))

    try:
        execute_transaction(items)
    except TransactionCancelled as e:
        if e.failed(donation_index):
            logger.info(f"Donation {donation_id} already recorded")
            raise ConflictError(
                "Donation already recorded",
                code="duplicate_donation",
                details={"donation_id": donation_id},
            ) from e

        if e.failed(0):
            current = get_campaign(campaign_id)
            if current is None:
                raise NotFoundError("campaign", campaign_id) from e
            raise CampaignNotAcceptingDonationsError(campaign_id, current.get("status")) from e

        if reward_index is not None and e.failed(reward_index):
            if get_reward(reward_id) is None:
                raise NotFoundError("reward", reward_id) from e
            logger.info(
                f"Reward {reward_id} exhausted, donation to {campaign_id} rejected",
                extra={"campaign_id": campaign_id, "reward_id": reward_id},
            )
            emit_metric("RewardExhausted")
            raise ResourceExhaustedError(
                "This reward is no longer available",
                details={"reward_id": reward_id},
            ) from e
        raise

    logger.info(
        f"Recorded donation {donation_id} of {amount} to campaign {campaign_id}",
        extra={"donation_id": donation_id, "campaign_id": campaign_id, "reward_id": reward_id},
    )
    emit_metric("DonationRecorded")

    return {k: v for k, v in donation.items() if v is not None}


def refund_donation(donation_id: str) -> Donation:
    """
    Refund a completed donation.

    In one transaction: COMPLETED -> REFUNDED, the amount is subtracted from
    the campaign total and the reward slot is given back (clamped at zero).
    Refunding an already refunded donation returns it unchanged.
    """
    donation = get_donation(donation_id)
    if donation is None:
        raise NotFoundError("donation", donation_id)
    if donation.get("status") == DONATION_REFUNDED:
        logger.info(f"Donation {donation_id} already refunded")
        return donation

    amount = Decimal(str(donation["amount"]))
    campaign_id = donation["campaign_id"]
    reward_id = donation.get("reward_id")
    now = datetime.now(timezone.utc).isoformat()

    patch = build_update({"status": DONATION_REFUNDED, "refunded_at": now, "updated_at": now})
    items = [
        tx_update(
            DONATIONS_TABLE,
            _donation_key(donation_id),
            patch.expression,
            condition="#status = :completed",
            names=patch.names,
            values={**patch.values, ":completed": DONATION_COMPLETED},
        ),
        increment_item(
            CAMPAIGNS_TABLE,
            _campaign_key(campaign_id),
            "current_amount",
            -amount,
            extra_condition="#total >= :refund",
            extra_values={":refund": amount},
        ),
    ]
    release_indexes = set()
    if reward_id:
        release_indexes.add(len(items))
        items.append(release_item(REWARDS_TABLE, _reward_key(reward_id), "claimed_count"))

    try:
        execute_with_releases(items, release_indexes)
    except TransactionCancelled as e:
        if e.failed(0):
            current = get_donation(donation_id)
            if current and current.get("status") == DONATION_REFUNDED:
                return current
            raise ConflictError("Donation cannot be refunded", details={"donation_id": donation_id}) from e
        if e.failed(1):
            if get_campaign(campaign_id) is None:
                raise NotFoundError("campaign", campaign_id) from e
            logger.error(
                f"Campaign {campaign_id} total is below refund amount {amount}",
                extra={"campaign_id": campaign_id, "donation_id": donation_id},
            )
            emit_metric("LedgerDrift", dimensions={"Ledger": "campaign"})
            raise ConflictError(
                "Campaign total is lower than the refund amount",
                code="ledger_mismatch",
                details={"campaign_id": campaign_id},
            ) from e
        raise

    logger.info(
        f"Refunded donation {donation_id} ({amount}) from campaign {campaign_id}",
        extra={"donation_id": donation_id, "campaign_id": campaign_id},
    )
    return {**donation, "status": DONATION_REFUNDED, "refunded_at": now, "updated_at": now}


def find_donation_by_transaction(transaction_id: str) -> Optional[Donation]:
    """Look up a donation by its payment provider reference."""
    items = query_all(
        DONATIONS_TABLE,
        IndexName="transaction-index",
        KeyConditionExpression=Key("transaction_id").eq(transaction_id),
    )
    return items[0] if items else None


def completed_donations(campaign_id: str) -> list[Donation]:
    """All COMPLETED donations of a campaign; their amounts sum to current_amount."""
    items = query_all(
        DONATIONS_TABLE,
        IndexName="campaign-index",
        KeyConditionExpression=Key("campaign_id").eq(campaign_id),
    )
    return [item for item in items if item.get("status") == DONATION_COMPLETED]
