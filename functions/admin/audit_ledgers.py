"""Audit running totals against the rows that produced them.

Triggered daily by EventBridge. Recomputes each campaign's current_amount
from its COMPLETED donations, each reward's claimed_count from the donations
that claimed it and each tier's current_subscribers from its live
subscriptions. Mismatches are logged and emitted as LedgerDrift; counters are
never written here.
"""

import logging
from collections import Counter
from decimal import Decimal

from shared.aws_clients import get_dynamodb
from shared.constants import (
    CAMPAIGN_SK,
    CAMPAIGNS_TABLE,
    MONEY_QUANTUM,
    REWARD_SK,
    REWARDS_TABLE,
    TIER_SK,
    TIERS_TABLE,
)
from shared.donations import completed_donations
from shared.metrics import emit_metric
from shared.subscriptions import count_live_subscriptions

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def scan_items(table_name: str, sk: str) -> list[dict]:
    """Scan all items of one kind, handling pagination."""
    table = get_dynamodb().Table(table_name)
    scan_kwargs = {
        "FilterExpression": "sk = :sk",
        "ExpressionAttributeValues": {":sk": sk},
    }

    items = []
    while True:
        response = table.scan(**scan_kwargs)
        items.extend(response.get("Items", []))

        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

    return items


def audit_campaign(campaign: dict, reward_claims: Counter) -> dict | None:
    """Compare a campaign total with its donations; tallies reward claims as a side effect."""
    campaign_id = campaign["campaign_id"]

    expected = Decimal("0")
    for donation in completed_donations(campaign_id):
        expected += Decimal(str(donation["amount"]))
        if donation.get("reward_id"):
            reward_claims[donation["reward_id"]] += 1

    expected = expected.quantize(MONEY_QUANTUM)
    stored = Decimal(str(campaign.get("current_amount", 0))).quantize(MONEY_QUANTUM)
    if stored == expected:
        return None
    return {"kind": "campaign", "id": campaign_id, "stored": str(stored), "expected": str(expected)}


def audit_reward(reward: dict, reward_claims: Counter) -> dict | None:
    reward_id = reward["reward_id"]
    stored = int(reward.get("claimed_count", 0))
    expected = reward_claims.get(reward_id, 0)
    if stored == expected:
        return None
    return {"kind": "reward", "id": reward_id, "stored": stored, "expected": expected}


def audit_tier(tier: dict) -> dict | None:
    tier_id = tier["tier_id"]
    stored = int(tier.get("current_subscribers", 0))
    expected = count_live_subscriptions(tier_id)
    if stored == expected:
        return None
    return {"kind": "tier", "id": tier_id, "stored": stored, "expected": expected}


def handler(event, context):
    """Run the ledger audit and report every drift found."""
    drifts = []
    reward_claims: Counter = Counter()

    campaigns = scan_items(CAMPAIGNS_TABLE, CAMPAIGN_SK)
    for campaign in campaigns:
        drift = audit_campaign(campaign, reward_claims)
        if drift:
            drifts.append(drift)

    rewards = scan_items(REWARDS_TABLE, REWARD_SK)
    for reward in rewards:
        drift = audit_reward(reward, reward_claims)
        if drift:
            drifts.append(drift)

    tiers = scan_items(TIERS_TABLE, TIER_SK)
    for tier in tiers:
        drift = audit_tier(tier)
        if drift:
            drifts.append(drift)

    for drift in drifts:
        logger.error(
            f"Ledger drift on {drift['kind']} {drift['id']}: stored={drift['stored']} expected={drift['expected']}",
            extra=drift,
        )
        emit_metric("LedgerDrift", dimensions={"Ledger": drift["kind"]})

    summary = {
        "campaigns": len(campaigns),
        "rewards": len(rewards),
        "tiers": len(tiers),
        "drift_count": len(drifts),
    }
    logger.info(f"Ledger audit complete: {summary}")

    return {"statusCode": 200, "summary": summary, "drifts": drifts}
