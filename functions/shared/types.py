"""
Shared type definitions.

TypedDict definitions for the DynamoDB items the payments core reads
and writes.
"""

from decimal import Decimal
from typing import TypedDict


class Campaign(TypedDict, total=False):
    pk: str
    sk: str
    campaign_id: str
    creator_id: str
    title: str
    goal_amount: Decimal
    current_amount: Decimal
    currency: str
    status: str


class Reward(TypedDict, total=False):
    pk: str
    sk: str
    reward_id: str
    campaign_id: str
    title: str
    minimum_amount: Decimal
    limited_quantity: int
    claimed_count: int


class Donation(TypedDict, total=False):
    pk: str
    sk: str
    donation_id: str
    campaign_id: str
    donor_id: str
    amount: Decimal
    currency: str
    reward_id: str
    message: str
    anonymous: bool
    payment_method: str
    transaction_id: str
    status: str
    created_at: str
    updated_at: str
    refunded_at: str


class MembershipTier(TypedDict, total=False):
    pk: str
    sk: str
    tier_id: str
    campaign_id: str
    creator_id: str
    name: str
    price: Decimal
    interval: str
    max_subscribers: int
    current_subscribers: int
    is_active: bool
    stripe_price_id: str


class Subscription(TypedDict, total=False):
    pk: str
    sk: str
    subscription_id: str
    subscriber_id: str
    creator_id: str
    tier_id: str
    status: str
    external_subscription_id: str
    external_customer_id: str
    start_date: str
    next_billing_date: str
    end_date: str
    cancelled_at: str
    payment_failures: int
    last_event_at: int
    created_at: str
    updated_at: str
