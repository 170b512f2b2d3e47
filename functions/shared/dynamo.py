"""
DynamoDB helpers shared by the payments core.

- Consistent reads with retry for throttling
- UNSET-sentinel update builder (SET/REMOVE/ADD only for provided fields)
- TransactWriteItems building blocks and cancellation-reason decoding
"""

import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb, get_dynamodb_client
from .constants import THROTTLING_ERRORS

logger = logging.getLogger(__name__)

# Sentinel for distinguishing "not provided" from None/False/0
UNSET = object()

CONDITION_FAILED = "ConditionalCheckFailed"

# Cancellation codes worth retrying the whole transaction for
RETRYABLE_CANCELLATION_CODES = (
    "TransactionConflict",
    "ThrottlingError",
    "ProvisionedThroughputExceeded",
)

_serializer = TypeSerializer()


class TransactionCancelled(Exception):
    """A TransactWriteItems call was cancelled by one or more failed conditions.

    ``reasons`` holds one cancellation code per transaction item, in order
    ("None" for items that did not fail).
    """

    def __init__(self, reasons: list[str]):
        self.reasons = reasons
        super().__init__(f"Transaction cancelled: {reasons}")

    def failed(self, index: int) -> bool:
        """True if the item at ``index`` failed its condition."""
        return index < len(self.reasons) and self.reasons[index] == CONDITION_FAILED


@dataclass
class UpdatePatch:
    """Rendered UpdateExpression plus its placeholder maps."""

    expression: str
    names: dict = field(default_factory=dict)
    values: dict = field(default_factory=dict)


def _backoff_delay(attempt: int) -> float:
    # Exponential backoff with jitter to prevent thundering herd
    base_delay = min(0.1 * (2 ** attempt), 2.0)
    return base_delay + random.uniform(0, base_delay * 0.5)


def get_item(table_name: str, key: dict, max_retries: int = 3) -> Optional[dict]:
    """
    Strongly consistent GetItem with retry for throttling.

    Args:
        table_name: DynamoDB table name
        key: Primary key dict ({"pk": ..., "sk": ...})
        max_retries: Maximum number of attempts for throttling errors

    Returns:
        Item dict or None if not found

    Raises:
        ClientError: non-throttling errors, or throttling after max_retries
    """
    table = get_dynamodb().Table(table_name)

    for attempt in range(max_retries):
        try:
            response = table.get_item(Key=key, ConsistentRead=True)
            return response.get("Item")
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in THROTTLING_ERRORS and attempt < max_retries - 1:
                delay = _backoff_delay(attempt)
                logger.warning(
                    f"DynamoDB throttled reading {table_name} {key.get('pk')}, "
                    f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
                )
                time.sleep(delay)
                continue
            raise

    return None


def query_all(table_name: str, **query_kwargs) -> list[dict]:
    """Run a Query and follow LastEvaluatedKey until exhausted."""
    table = get_dynamodb().Table(table_name)

    items = []
    response = table.query(**query_kwargs)
    items.extend(response.get("Items", []))

    while "LastEvaluatedKey" in response:
        response = table.query(ExclusiveStartKey=response["LastEvaluatedKey"], **query_kwargs)
        items.extend(response.get("Items", []))

    return items


def build_update(set_fields: Optional[dict] = None, add_fields: Optional[dict] = None) -> UpdatePatch:
    """
    Build an UpdateExpression from a patch of optional fields.

    Each value in ``set_fields`` is either UNSET (skipped), None (REMOVE the
    attribute) or a value (SET). ``add_fields`` maps attribute -> numeric
    delta for ADD. Attribute names are always placeholder-escaped so reserved
    words like ``status`` are safe.
    """
    set_parts = []
    remove_parts = []
    add_parts = []
    names = {}
    values = {}

    for name, value in (set_fields or {}).items():
        if value is UNSET:
            continue
        names[f"#{name}"] = name
        if value is None:
            remove_parts.append(f"#{name}")
        else:
            set_parts.append(f"#{name} = :{name}")
            values[f":{name}"] = value

    for name, delta in (add_fields or {}).items():
        if delta is UNSET:
            continue
        names[f"#{name}"] = name
        add_parts.append(f"#{name} :{name}_delta")
        values[f":{name}_delta"] = delta

    clauses = []
    if set_parts:
        clauses.append("SET " + ", ".join(set_parts))
    if remove_parts:
        clauses.append("REMOVE " + ", ".join(remove_parts))
    if add_parts:
        clauses.append("ADD " + ", ".join(add_parts))

    return UpdatePatch(expression=" ".join(clauses), names=names, values=values)


def serialize(values: dict) -> dict:
    """Serialize python values (Decimal, str, bool, ...) to DynamoDB wire format."""
    return {k: _serializer.serialize(v) for k, v in values.items()}


def _with_expressions(request: dict, condition: Optional[str], names: Optional[dict], values: Optional[dict]) -> dict:
    if condition:
        request["ConditionExpression"] = condition
    if names:
        request["ExpressionAttributeNames"] = names
    if values:
        request["ExpressionAttributeValues"] = serialize(values)
    return request


def tx_put(table_name: str, item: dict, condition: Optional[str] = None,
           names: Optional[dict] = None, values: Optional[dict] = None) -> dict:
    """TransactWriteItems Put entry."""
    # Absent attribute means "not set" (e.g. unlimited capacity)
    item = {k: v for k, v in item.items() if v is not None}
    request = {"TableName": table_name, "Item": serialize(item)}
    return {"Put": _with_expressions(request, condition, names, values)}


def tx_update(table_name: str, key: dict, update_expression: str, condition: Optional[str] = None,
              names: Optional[dict] = None, values: Optional[dict] = None) -> dict:
    """TransactWriteItems Update entry."""
    request = {"TableName": table_name, "Key": serialize(key), "UpdateExpression": update_expression}
    return {"Update": _with_expressions(request, condition, names, values)}


def tx_delete(table_name: str, key: dict, condition: Optional[str] = None,
              names: Optional[dict] = None, values: Optional[dict] = None) -> dict:
    """TransactWriteItems Delete entry."""
    request = {"TableName": table_name, "Key": serialize(key)}
    return {"Delete": _with_expressions(request, condition, names, values)}


def cancellation_reasons(error: ClientError) -> list[str]:
    """Extract per-item cancellation codes from a TransactionCanceledException."""
    reasons = error.response.get("CancellationReasons")
    if reasons:
        return [reason.get("Code") or "None" for reason in reasons]

    # Older botocore models only carry the codes in the message:
    # "Transaction cancelled, please refer cancellation reasons for specific reasons [None, ConditionalCheckFailed]"
    message = error.response.get("Error", {}).get("Message", "")
    match = re.search(r"\[([^\]]*)\]", message)
    if match:
        return [code.strip() for code in match.group(1).split(",")]
    return []


def execute_transaction(items: list[dict], max_retries: int = 3) -> None:
    """
    Run TransactWriteItems atomically.

    Conflicts with concurrent transactions and throttling are retried with
    backoff. Failed conditions raise TransactionCancelled so the caller can map
    each guard to a domain error; nothing is ever partially applied.

    Raises:
        TransactionCancelled: one or more item conditions failed
        ClientError: transient failure after max_retries, or any other error
    """
    client = get_dynamodb_client()

    for attempt in range(max_retries):
        try:
            client.transact_write_items(TransactItems=items)
            return
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")

            if error_code == "TransactionCanceledException":
                reasons = cancellation_reasons(e)
                if CONDITION_FAILED in reasons:
                    raise TransactionCancelled(reasons) from e
                retryable = any(code in RETRYABLE_CANCELLATION_CODES for code in reasons)
            else:
                retryable = error_code in THROTTLING_ERRORS or error_code == "TransactionConflictException"

            if retryable and attempt < max_retries - 1:
                delay = _backoff_delay(attempt)
                logger.warning(
                    f"Transaction retry {attempt + 1}/{max_retries} after {error_code} (delay: {delay:.2f}s)"
                )
                time.sleep(delay)
                continue
            raise
