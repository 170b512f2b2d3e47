"""
Error taxonomy for the payments core.

Shared functions raise these; handlers turn them into API Gateway
responses with ``response_utils.api_error_response()``.
"""

from typing import Optional


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(APIError):
    """Malformed input. Not retried."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="validation_error",
            message=message,
            status_code=400,
            details=details,
        )


class NotFoundError(APIError):
    """Referenced entity is missing."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            code=f"{entity}_not_found",
            message=f"{entity.replace('_', ' ').capitalize()} '{entity_id}' not found",
            status_code=404,
        )
        self.entity = entity
        self.entity_id = entity_id


class CampaignNotAcceptingDonationsError(APIError):
    """Campaign exists but is not ACTIVE."""

    def __init__(self, campaign_id: str, status: Optional[str] = None):
        super().__init__(
            code="campaign_not_accepting_donations",
            message="Campaign is not accepting donations",
            status_code=400,
            details={"campaign_id": campaign_id, "status": status} if status else {"campaign_id": campaign_id},
        )


class InvalidRewardError(APIError):
    """Reward does not belong to the campaign or the amount is below its minimum."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_reward",
            message=message,
            status_code=400,
            details=details,
        )


class ResourceExhaustedError(APIError):
    """A capacity limit was reached (reward quantity, tier seats)."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="resource_exhausted",
            message=message,
            status_code=409,
            details=details,
        )


class ConflictError(APIError):
    """The write was already applied (duplicate id, replayed event)."""

    def __init__(self, message: str, code: str = "conflict", details: Optional[dict] = None):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details,
        )


class AlreadySubscribedError(ConflictError):
    """Subscriber already holds a live subscription to this creator."""

    def __init__(self, subscriber_id: str, creator_id: str):
        super().__init__(
            "You already have an active subscription to this creator",
            code="already_subscribed",
            details={"subscriber_id": subscriber_id, "creator_id": creator_id},
        )


class UnauthorizedError(APIError):
    """No authenticated principal on the request."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            code="unauthorized",
            message=message,
            status_code=401,
        )


class ForbiddenError(APIError):
    """Caller is authenticated but does not own the resource."""

    def __init__(self, message: str = "Not authorized"):
        super().__init__(
            code="forbidden",
            message=message,
            status_code=403,
        )


class ExternalServiceError(APIError):
    """Payment provider unreachable or rejected the call. Caller may retry with backoff."""

    def __init__(self, message: str = "Payment provider unavailable", service: str = "stripe"):
        super().__init__(
            code="external_service_error",
            message=message,
            status_code=502,
            details={"service": service},
        )


class InternalError(APIError):
    """Raised for internal server errors."""

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(
            code="internal_error",
            message=message,
            status_code=500,
        )
