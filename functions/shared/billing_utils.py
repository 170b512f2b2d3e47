"""Shared billing utilities for Stripe-related operations."""

import json
import logging
import os
import time
from decimal import Decimal

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import MONEY_QUANTUM

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

# Bounded provider latency, distinct from DynamoDB timeouts
STRIPE_TIMEOUT_SECONDS = int(os.environ.get("STRIPE_TIMEOUT_SECONDS", "10"))
STRIPE_MAX_NETWORK_RETRIES = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes


def _read_secret(secret_arn: str, json_key: str) -> str | None:
    try:
        response = get_secretsmanager().get_secret_value(SecretId=secret_arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {json_key}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
        return secret_json.get(json_key) or secret_value
    except json.JSONDecodeError:
        return secret_value


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Return (api_key, webhook_secret).

    STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET environment values win (local
    runs); otherwise both are read from Secrets Manager and cached with TTL.
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    env_key = os.environ.get("STRIPE_SECRET_KEY")
    env_webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET")
    if env_key and env_webhook_secret:
        return env_key, env_webhook_secret

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = env_key or (_read_secret(STRIPE_SECRET_ARN, "key") if STRIPE_SECRET_ARN else None)
    webhook_secret = env_webhook_secret or (
        _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret") if STRIPE_WEBHOOK_SECRET_ARN else None
    )

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def reset_stripe_secrets_cache():
    """Drop cached secrets. Used in tests."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0


def configure_stripe(api_key: str):
    """Point the Stripe SDK at ``api_key`` with a bounded timeout and retries."""
    import stripe

    stripe.api_key = api_key
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
    if not isinstance(stripe.default_http_client, stripe.RequestsClient):
        stripe.default_http_client = stripe.RequestsClient(timeout=STRIPE_TIMEOUT_SECONDS)


def to_minor_units(amount: Decimal) -> int:
    """Convert a money amount (dollars) to Stripe minor units (cents)."""
    return int((amount * 100).quantize(Decimal("1")))


def from_minor_units(amount: int) -> Decimal:
    """Convert Stripe minor units (cents) to a money amount (dollars)."""
    return (Decimal(int(amount)) / 100).quantize(MONEY_QUANTUM)
