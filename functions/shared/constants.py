"""
Shared constants for Fundify payments.
"""

import os
from decimal import Decimal

# Tables
CAMPAIGNS_TABLE = os.environ.get("CAMPAIGNS_TABLE", "fundify-campaigns")
REWARDS_TABLE = os.environ.get("REWARDS_TABLE", "fundify-rewards")
TIERS_TABLE = os.environ.get("TIERS_TABLE", "fundify-membership-tiers")
DONATIONS_TABLE = os.environ.get("DONATIONS_TABLE", "fundify-donations")
SUBSCRIPTIONS_TABLE = os.environ.get("SUBSCRIPTIONS_TABLE", "fundify-subscriptions")
BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "fundify-billing-events")

# Sort keys
CAMPAIGN_SK = "CAMPAIGN"
REWARD_SK = "REWARD"
TIER_SK = "TIER"
DONATION_SK = "DONATION"
SUBSCRIPTION_SK = "SUBSCRIPTION"
GUARD_SK = "GUARD"
MARKER_SK = "MARKER"

# Campaign status
CAMPAIGN_ACTIVE = "ACTIVE"
CAMPAIGN_STATUSES = ["DRAFT", "ACTIVE", "PAUSED", "COMPLETED", "CANCELLED"]

# Donation status
DONATION_COMPLETED = "COMPLETED"
DONATION_REFUNDED = "REFUNDED"

# Subscription status
ACTIVE = "ACTIVE"
PAUSED = "PAUSED"
CANCELLED = "CANCELLED"
EXPIRED = "EXPIRED"
SUBSCRIPTION_STATUSES = [ACTIVE, PAUSED, CANCELLED, EXPIRED]

# Lifecycle state machine: current status -> statuses it may move to.
# ACTIVE -> ACTIVE is a billing refresh (invoice paid). CANCELLED is absorbing.
ALLOWED_TRANSITIONS = {
    ACTIVE: {ACTIVE, PAUSED, EXPIRED, CANCELLED},
    PAUSED: {ACTIVE, CANCELLED},
    EXPIRED: {ACTIVE, CANCELLED},
    CANCELLED: set(),
}

# Billing intervals (days until next billing)
BILLING_INTERVAL_DAYS = {
    "MONTHLY": 30,
    "YEARLY": 365,
}
STRIPE_INTERVALS = {"MONTHLY": "month", "YEARLY": "year"}

# Money
DEFAULT_CURRENCY = "USD"
MAX_DONATION_AMOUNT = Decimal("1000000.00")
MONEY_QUANTUM = Decimal("0.01")

# Webhook audit rows and applied-event markers
BILLING_EVENT_TTL_DAYS = 90

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
