"""Shared request utilities for API handlers."""

import base64
import binascii
import json
import logging

from .errors import UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


def get_header(event: dict, name: str) -> str | None:
    """Case-insensitive header lookup."""
    headers = event.get("headers") or {}
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def get_origin(event: dict) -> str | None:
    """Extract Origin header from request."""
    return get_header(event, "origin")


def get_raw_body(event: dict) -> str:
    """Return the request body exactly as received (base64-decoded if API Gateway encoded it)."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body).decode("utf-8")
    return body


def parse_json_body(event: dict) -> dict:
    """Parse the JSON request body into a dict."""
    try:
        body = json.loads(get_raw_body(event) or "{}")
    except (binascii.Error, json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Request body must be valid JSON")

    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def get_principal_id(event: dict) -> str:
    """Resolve the authenticated caller from the API Gateway authorizer context.

    Authentication happens upstream (Lambda/JWT authorizer); handlers only
    read the resolved principal. Supports both a custom authorizer context
    (``user_id``/``principalId``) and JWT authorizer claims (``sub``).
    """
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}

    principal = authorizer.get("user_id") or authorizer.get("principalId")
    if not principal:
        claims = authorizer.get("claims") or (authorizer.get("jwt") or {}).get("claims") or {}
        principal = claims.get("sub")

    if not principal:
        logger.warning("Request reached handler without an authorizer principal")
        raise UnauthorizedError()
    return str(principal)
