"""
Shared pytest fixtures for Fundify payments tests.
"""

import os
import sys
from decimal import Decimal

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_STRIPE_KEY = "sk_test_123"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_stripe_secrets():
    """Reset the Stripe secrets cache between tests to prevent pollution."""
    yield
    try:
        from shared.billing_utils import reset_stripe_secrets_cache
        reset_stripe_secrets_cache()
    except ImportError:
        pass


@pytest.fixture
def stripe_env(monkeypatch):
    """Stripe secrets supplied directly through the environment."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", TEST_STRIPE_KEY)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    return TEST_STRIPE_KEY, TEST_WEBHOOK_SECRET


def _pk_sk_table(dynamodb, name, extra_attributes=(), indexes=()):
    attribute_definitions = [
        {"AttributeName": "pk", "AttributeType": "S"},
        {"AttributeName": "sk", "AttributeType": "S"},
    ] + [{"AttributeName": attr, "AttributeType": "S"} for attr in extra_attributes]

    params = {
        "TableName": name,
        "KeySchema": [
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": attribute_definitions,
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        params["GlobalSecondaryIndexes"] = list(indexes)
    dynamodb.create_table(**params)


def _index(name, hash_key, range_key=None):
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return {
        "IndexName": name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    _pk_sk_table(dynamodb, "fundify-campaigns")
    _pk_sk_table(dynamodb, "fundify-rewards")
    _pk_sk_table(dynamodb, "fundify-membership-tiers")

    _pk_sk_table(
        dynamodb,
        "fundify-donations",
        extra_attributes=("campaign_id", "created_at", "transaction_id"),
        indexes=(
            _index("campaign-index", "campaign_id", "created_at"),
            _index("transaction-index", "transaction_id"),
        ),
    )

    # Subscriptions plus EXTERNAL#/MEMBER# uniqueness guard rows
    _pk_sk_table(
        dynamodb,
        "fundify-subscriptions",
        extra_attributes=("subscriber_id", "tier_id", "created_at"),
        indexes=(
            _index("subscriber-index", "subscriber_id", "created_at"),
            _index("tier-index", "tier_id", "created_at"),
        ),
    )

    # Webhook audit trail and applied-event markers
    _pk_sk_table(dynamodb, "fundify-billing-events")


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


def put_campaign(dynamodb, campaign_id="campaign_1", status="ACTIVE", current_amount="0.00", **fields):
    item = {
        "pk": campaign_id,
        "sk": "CAMPAIGN",
        "campaign_id": campaign_id,
        "creator_id": "creator_1",
        "title": "Test Campaign",
        "goal_amount": Decimal("100.00"),
        "current_amount": Decimal(current_amount),
        "currency": "USD",
        "status": status,
        **fields,
    }
    dynamodb.Table("fundify-campaigns").put_item(Item=item)
    return item


def put_reward(dynamodb, reward_id="reward_a", campaign_id="campaign_1", minimum_amount="10.00",
               limited_quantity=1, claimed_count=0):
    item = {
        "pk": reward_id,
        "sk": "REWARD",
        "reward_id": reward_id,
        "campaign_id": campaign_id,
        "title": "Signed poster",
        "minimum_amount": Decimal(minimum_amount),
        "claimed_count": claimed_count,
    }
    if limited_quantity is not None:
        item["limited_quantity"] = limited_quantity
    dynamodb.Table("fundify-rewards").put_item(Item=item)
    return item


def put_tier(dynamodb, tier_id="tier_t", max_subscribers=1, current_subscribers=0, is_active=True,
             interval="MONTHLY", creator_id="creator_1"):
    item = {
        "pk": tier_id,
        "sk": "TIER",
        "tier_id": tier_id,
        "campaign_id": "campaign_1",
        "creator_id": creator_id,
        "name": "Supporter",
        "price": Decimal("5.00"),
        "interval": interval,
        "current_subscribers": current_subscribers,
        "is_active": is_active,
    }
    if max_subscribers is not None:
        item["max_subscribers"] = max_subscribers
    dynamodb.Table("fundify-membership-tiers").put_item(Item=item)
    return item


@pytest.fixture
def seeded_campaign(mock_dynamodb):
    """Active campaign (goal 100.00) with reward A: minimum 10.00, quantity 1."""
    campaign = put_campaign(mock_dynamodb)
    reward = put_reward(mock_dynamodb)
    return campaign, reward


@pytest.fixture
def seeded_tier(mock_dynamodb):
    """Active monthly tier T with max_subscribers = 1."""
    return put_tier(mock_dynamodb)


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-123",
            "identity": {"sourceIp": "127.0.0.1"},
            "authorizer": {"user_id": "user_1"},
        },
    }
