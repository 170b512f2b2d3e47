"""
Response utilities for Lambda handlers.

Every API Gateway response body is JSON; money stays a two-decimal string.
"""

import json
import os
from decimal import Decimal
from typing import Optional, Any, Dict, List

from .errors import APIError

# CORS configuration
_PROD_ORIGINS = [
    "https://fundify.app",
    "https://www.fundify.app",
]
_DEV_ORIGINS = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
]
ALLOWED_ORIGINS: List[str] = (
    _PROD_ORIGINS + _DEV_ORIGINS
    if os.environ.get("ALLOW_DEV_CORS") == "true"
    else _PROD_ORIGINS
)


def get_cors_headers(origin: Optional[str]) -> Dict[str, str]:
    """CORS headers for an allowed Origin, or an empty dict."""
    if not origin or origin not in ALLOWED_ORIGINS:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Allow-Credentials": "true",
    }


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB.

    Counters come back as whole numbers; money keeps its two decimal places
    as a string so "10.00" never turns into 10.0.
    """
    if isinstance(obj, Decimal):
        if obj.as_tuple().exponent < 0:
            return str(obj)
        return int(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def _build(status_code: int, body: Any, headers: Optional[Dict[str, str]], origin: Optional[str]) -> dict:
    response_headers = {"Content-Type": "application/json", **get_cors_headers(origin)}
    response_headers.update(headers or {})
    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Dict[str, str]] = None,
    details: Optional[Dict[str, Any]] = None,
    origin: Optional[str] = None,
) -> dict:
    """
    Create an error response.

    Body shape: {"error": {"code": ..., "message": ..., "details": {...}}}
    with ``details`` omitted when empty.
    """
    error = {"code": code, "message": message}
    if details:
        error["details"] = details
    return _build(status_code, {"error": error}, headers, origin)


def api_error_response(error: APIError, origin: Optional[str] = None) -> dict:
    """Render a domain error with CORS headers for the caller's origin."""
    return error_response(
        error.status_code,
        error.code,
        error.message,
        details=error.details,
        origin=origin,
    )


def success_response(
    data: Any,
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
    origin: Optional[str] = None,
) -> dict:
    """Create a success response with ``data`` as the JSON body."""
    return _build(status_code, data, headers, origin)
