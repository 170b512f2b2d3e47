"""
Centralized AWS client factory with lazy initialization.

Clients are created on first use and shared for the life of the Lambda
container. DynamoDB calls get short, bounded timeouts so a slow table fails
the request instead of hanging until the Lambda timeout.
"""

import os

DYNAMODB_ENDPOINT_URL = os.environ.get("DYNAMODB_ENDPOINT_URL") or None
DYNAMODB_CONNECT_TIMEOUT = float(os.environ.get("DYNAMODB_CONNECT_TIMEOUT", "2"))
DYNAMODB_READ_TIMEOUT = float(os.environ.get("DYNAMODB_READ_TIMEOUT", "5"))

_dynamodb = None
_dynamodb_client = None
_secretsmanager = None
_cloudwatch = None


def _dynamodb_config():
    from botocore.config import Config

    # Transaction conflicts and throttling are retried in shared.dynamo
    return Config(
        connect_timeout=DYNAMODB_CONNECT_TIMEOUT,
        read_timeout=DYNAMODB_READ_TIMEOUT,
        retries={"max_attempts": 3, "mode": "standard"},
    )


def get_dynamodb():
    """DynamoDB resource (local endpoint when DYNAMODB_ENDPOINT_URL is set)."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource(
            "dynamodb",
            endpoint_url=DYNAMODB_ENDPOINT_URL,
            config=_dynamodb_config(),
        )
    return _dynamodb


def get_dynamodb_client():
    """Plain low-level DynamoDB client for TransactWriteItems.

    Items are passed in wire format (already serialized), so this must not be
    the resource's ``meta.client``, which would serialize them again.
    """
    global _dynamodb_client
    if _dynamodb_client is None:
        import boto3
        _dynamodb_client = boto3.client(
            "dynamodb",
            endpoint_url=DYNAMODB_ENDPOINT_URL,
            config=_dynamodb_config(),
        )
    return _dynamodb_client


def get_secretsmanager():
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager")
    return _secretsmanager


def get_cloudwatch():
    global _cloudwatch
    if _cloudwatch is None:
        import boto3
        _cloudwatch = boto3.client("cloudwatch")
    return _cloudwatch


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _dynamodb_client, _secretsmanager, _cloudwatch
    _dynamodb = None
    _dynamodb_client = None
    _secretsmanager = None
    _cloudwatch = None
