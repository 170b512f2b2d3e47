"""
Tests for response utilities module.

Tests cover CORS headers, JSON serialization of money, and response formatting helpers.
"""

import json
from decimal import Decimal
from unittest.mock import patch

import pytest


class TestGetCorsHeaders:
    """Tests for get_cors_headers function."""

    def test_returns_cors_headers_for_allowed_prod_origin(self):
        """Should return CORS headers for allowed production origin."""
        from shared.response_utils import get_cors_headers

        result = get_cors_headers("https://fundify.app")

        assert result["Access-Control-Allow-Origin"] == "https://fundify.app"
        assert result["Access-Control-Allow-Methods"] == "POST, OPTIONS"
        assert "Access-Control-Allow-Headers" in result
        assert result["Access-Control-Allow-Credentials"] == "true"

    def test_returns_empty_dict_for_disallowed_origin(self):
        from shared.response_utils import get_cors_headers

        assert get_cors_headers("https://malicious-site.com") == {}

    def test_returns_empty_dict_for_none_origin(self):
        from shared.response_utils import get_cors_headers

        assert get_cors_headers(None) == {}

    def test_dev_origin_only_when_enabled(self):
        """Localhost origins are allowed only when dev CORS is switched on."""
        import shared.response_utils as response_utils

        assert response_utils.get_cors_headers("http://localhost:5173") == {}

        dev_origins = response_utils._PROD_ORIGINS + response_utils._DEV_ORIGINS
        with patch.object(response_utils, "ALLOWED_ORIGINS", dev_origins):
            result = response_utils.get_cors_headers("http://localhost:5173")

        assert result["Access-Control-Allow-Origin"] == "http://localhost:5173"


class TestDecimalDefault:
    """Tests for decimal_default JSON serializer."""

    def test_converts_integer_decimal_to_int(self):
        from shared.response_utils import decimal_default

        result = decimal_default(Decimal("42"))

        assert result == 42
        assert isinstance(result, int)

    def test_keeps_money_as_string(self):
        """Money amounts keep both decimal places."""
        from shared.response_utils import decimal_default

        assert decimal_default(Decimal("10.00")) == "10.00"
        assert decimal_default(Decimal("2.5")) == "2.5"

    def test_raises_for_unknown_types(self):
        from shared.response_utils import decimal_default

        with pytest.raises(TypeError):
            decimal_default(object())


class TestErrorResponse:
    """Tests for error_response and api_error_response."""

    def test_error_body_shape(self):
        from shared.response_utils import error_response

        result = error_response(404, "campaign_not_found", "Campaign not found", details={"campaign_id": "c1"})

        assert result["statusCode"] == 404
        assert result["headers"]["Content-Type"] == "application/json"
        assert json.loads(result["body"]) == {
            "error": {
                "code": "campaign_not_found",
                "message": "Campaign not found",
                "details": {"campaign_id": "c1"},
            }
        }

    def test_omits_empty_details(self):
        from shared.response_utils import error_response

        result = error_response(400, "validation_error", "Bad")

        assert "details" not in json.loads(result["body"])["error"]

    def test_api_error_response_uses_error_fields(self):
        from shared.errors import ResourceExhaustedError
        from shared.response_utils import api_error_response

        error = ResourceExhaustedError("Reward is sold out", details={"remaining": Decimal("0")})

        result = api_error_response(error, origin="https://fundify.app")

        assert result["statusCode"] == 409
        assert result["headers"]["Access-Control-Allow-Origin"] == "https://fundify.app"
        body = json.loads(result["body"])
        assert body["error"]["code"] == "resource_exhausted"
        assert body["error"]["details"] == {"remaining": 0}


class TestSuccessResponse:
    """Tests for success_response."""

    def test_serializes_decimals(self):
        from shared.response_utils import success_response

        result = success_response({"amount": Decimal("10.00"), "count": Decimal("3")}, status_code=201)

        assert result["statusCode"] == 201
        assert json.loads(result["body"]) == {"amount": "10.00", "count": 3}

    def test_merges_extra_headers(self):
        from shared.response_utils import success_response

        result = success_response({}, headers={"Cache-Control": "no-store"})

        assert result["headers"]["Cache-Control"] == "no-store"
        assert result["headers"]["Content-Type"] == "application/json"
