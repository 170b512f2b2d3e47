"""
Capacity ledger: atomic "claim under a limit" counters.

Every capacity-limited counter (reward claimed_count, tier
current_subscribers) is mutated here, either directly or as an entry of a
larger TransactWriteItems. Claims are a single conditional update that only
increments while ``limit`` is absent or ``count < limit``; a read-then-write
would race under concurrent callers and is never used.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .dynamo import TransactionCancelled, execute_transaction, tx_update
from .errors import NotFoundError

logger = logging.getLogger(__name__)

CLAIM_CONDITION = (
    "attribute_exists(pk) AND ("
    "attribute_not_exists(#limit) "
    "OR (attribute_not_exists(#count) AND #limit > :zero) "
    "OR #count < #limit)"
)
RELEASE_CONDITION = "#count > :zero"


@dataclass
class ClaimResult:
    """Outcome of a claim: Claimed (claimed=True) or Exhausted (claimed=False)."""

    claimed: bool
    count: int

    @property
    def exhausted(self) -> bool:
        return not self.claimed


def _names(count_attr: str, limit_attr: Optional[str] = None) -> dict:
    names = {"#count": count_attr}
    if limit_attr:
        names["#limit"] = limit_attr
    return names


def claim(table_name: str, key: dict, count_attr: str, limit_attr: str) -> ClaimResult:
    """
    Atomically take one unit of capacity.

    Args:
        table_name: Table holding the resource
        key: Primary key of the resource item
        count_attr: Counter attribute (e.g. "claimed_count")
        limit_attr: Limit attribute; absent on the item means unlimited

    Returns:
        ClaimResult with the new count, or claimed=False with the current
        count when the limit was already reached

    Raises:
        NotFoundError: the resource item does not exist
    """
    table = get_dynamodb().Table(table_name)

    try:
        response = table.update_item(
            Key=key,
            UpdateExpression="SET #count = if_not_exists(#count, :zero) + :one",
            ConditionExpression=CLAIM_CONDITION,
            ExpressionAttributeNames=_names(count_attr, limit_attr),
            ExpressionAttributeValues={":zero": 0, ":one": 1},
            ReturnValues="UPDATED_NEW",
        )
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
            raise

        current = table.get_item(Key=key, ConsistentRead=True).get("Item")
        if current is None:
            raise NotFoundError("resource", str(key.get("pk"))) from e

        count = int(current.get(count_attr, 0))
        logger.info(
            f"Capacity exhausted for {table_name}/{key.get('pk')}: {count_attr}={count}",
            extra={"table": table_name, "resource_id": key.get("pk"), "count": count},
        )
        return ClaimResult(claimed=False, count=count)

    new_count = int(response.get("Attributes", {}).get(count_attr, 1))
    return ClaimResult(claimed=True, count=new_count)


def release(table_name: str, key: dict, count_attr: str) -> int:
    """
    Give back one unit of capacity, clamped at zero.

    Returns:
        The new count (0 if the counter was already at zero)
    """
    table = get_dynamodb().Table(table_name)

    try:
        response = table.update_item(
            Key=key,
            UpdateExpression="SET #count = #count - :one",
            ConditionExpression=RELEASE_CONDITION,
            ExpressionAttributeNames=_names(count_attr),
            ExpressionAttributeValues={":zero": 0, ":one": 1},
            ReturnValues="UPDATED_NEW",
        )
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            logger.info(f"Release on {table_name}/{key.get('pk')} skipped: {count_attr} already at zero")
            return 0
        raise

    return int(response.get("Attributes", {}).get(count_attr, 0))


def claim_item(
    table_name: str,
    key: dict,
    count_attr: str,
    limit_attr: str,
    extra_condition: Optional[str] = None,
    extra_names: Optional[dict] = None,
    extra_values: Optional[dict] = None,
) -> dict:
    """Transaction entry equivalent to claim(), optionally AND-ed with another condition."""
    condition = CLAIM_CONDITION
    if extra_condition:
        condition = f"({CLAIM_CONDITION}) AND ({extra_condition})"

    return tx_update(
        table_name,
        key,
        "SET #count = if_not_exists(#count, :zero) + :one",
        condition=condition,
        names={**_names(count_attr, limit_attr), **(extra_names or {})},
        values={":zero": 0, ":one": 1, **(extra_values or {})},
    )


def release_item(table_name: str, key: dict, count_attr: str) -> dict:
    """Transaction entry equivalent to release(). See execute_with_releases for clamping."""
    return tx_update(
        table_name,
        key,
        "SET #count = #count - :one",
        condition=RELEASE_CONDITION,
        names=_names(count_attr),
        values={":zero": 0, ":one": 1},
    )


def increment_item(
    table_name: str,
    key: dict,
    attr: str,
    amount,
    extra_condition: Optional[str] = None,
    extra_names: Optional[dict] = None,
    extra_values: Optional[dict] = None,
) -> dict:
    """Transaction entry adding ``amount`` (may be negative) to a running total."""
    condition = "attribute_exists(pk)"
    if extra_condition:
        condition = f"{condition} AND ({extra_condition})"

    return tx_update(
        table_name,
        key,
        "ADD #total :amount",
        condition=condition,
        names={"#total": attr, **(extra_names or {})},
        values={":amount": amount, **(extra_values or {})},
    )


def execute_with_releases(items: list[dict], release_indexes: set[int]) -> set[int]:
    """
    Execute a transaction whose release entries are clamped at zero.

    A failed release condition means the counter is already at zero. Inside a
    transaction that would cancel everything, so the transaction is re-run
    without the releases that failed; every other failed condition is
    re-raised untouched.

    Returns:
        Indexes (into ``items``) of releases that were skipped
    """
    skipped: set[int] = set()

    while True:
        remaining = [i for i in range(len(items)) if i not in skipped]
        try:
            execute_transaction([items[i] for i in remaining])
            return skipped
        except TransactionCancelled as e:
            failed = {remaining[pos] for pos in range(len(remaining)) if e.failed(pos)}
            if not failed or not failed <= release_indexes:
                # Re-index reasons against the caller's original item list
                reasons = ["None"] * len(items)
                for pos, original in enumerate(remaining):
                    reasons[original] = e.reasons[pos] if pos < len(e.reasons) else "None"
                raise TransactionCancelled(reasons) from e
            logger.info(f"Counter already at zero, skipping release entries {sorted(failed)}")
            skipped |= failed
