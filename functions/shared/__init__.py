# Shared utilities package
from .capacity import ClaimResult, claim, release
from .donations import create_donation, refund_donation
from .errors import APIError
from .response_utils import error_response, success_response
from .subscriptions import TransitionResult, create_subscription, transition

__all__ = [
    "claim",
    "release",
    "ClaimResult",
    "create_donation",
    "refund_donation",
    "create_subscription",
    "transition",
    "TransitionResult",
    "error_response",
    "success_response",
    "APIError",
]
