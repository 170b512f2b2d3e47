"""
Create Donation Endpoint - POST /donations

Records a donation against an active campaign, optionally claiming a
limited-quantity reward. Requires an authenticated principal.
"""

import logging

from shared.donations import create_donation
from shared.errors import APIError, ValidationError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.metrics import emit_error_metric
from shared.request_utils import get_origin, get_principal_id, parse_json_body
from shared.response_utils import api_error_response, error_response, success_response

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _optional_str(body: dict, field: str) -> str | None:
    value = body.get(field)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value


def handler(event, context):
    """
    Lambda handler for POST /donations.

    Request body:
    {
        "campaignId": "<campaign id>",
        "amount": "10.00",
        "rewardId": "<reward id>",      (optional)
        "message": "Good luck!",        (optional)
        "anonymous": false,             (optional)
        "paymentMethod": "card",        (optional)
        "currency": "USD"               (optional)
    }

    Returns 201 with the recorded donation.
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    try:
        donor_id = get_principal_id(event)
        body = parse_json_body(event)

        campaign_id = _optional_str(body, "campaignId")
        if not campaign_id:
            raise ValidationError("campaignId is required")

        anonymous = body.get("anonymous", False)
        if not isinstance(anonymous, bool):
            raise ValidationError("anonymous must be a boolean")

        donation = create_donation(
            campaign_id,
            donor_id,
            body.get("amount"),
            _optional_str(body, "rewardId"),
            message=_optional_str(body, "message"),
            anonymous=anonymous,
            payment_method=_optional_str(body, "paymentMethod"),
            currency=_optional_str(body, "currency"),
        )

    except APIError as e:
        logger.info(f"Donation rejected: {e.code}", extra={"error_code": e.code})
        return api_error_response(e, origin=origin)
    except Exception as e:
        logger.error(f"Error creating donation: {e}", exc_info=True)
        emit_error_metric(type(e).__name__, handler="create_donation")
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    response = {
        "donation_id": donation["donation_id"],
        "campaign_id": donation["campaign_id"],
        "amount": donation["amount"],
        "currency": donation["currency"],
        "reward_id": donation.get("reward_id"),
        "anonymous": donation["anonymous"],
        "status": donation["status"],
        "created_at": donation["created_at"],
    }
    return success_response(response, status_code=201, origin=origin)
