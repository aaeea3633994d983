"""
Standardized Agenda API Response Module

Every response of the agenda API is a flat JSON envelope.

RESPONSE FORMAT:

    Success:
        {
            "success": true,
            "message": "...",        # optional
            ...payload fields
        }

    Error:
        {
            "success": false,
            "error": "Human-readable message",
            "code": "ERROR_CODE",
            ...optional extra context (e.g. existing_client)
        }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: Missing or invalid X-API-Key
    - VALIDATION_ERROR / MISSING_FIELD / UNKNOWN_ACTION / INVALID_TIMESTAMP
    - NOT_FOUND and its specific variants (STAFF_NOT_FOUND, ...)
    - CONFLICT / SLOT_UNAVAILABLE / ALREADY_EXISTS
    - DATABASE_ERROR / INTERNAL_ERROR
"""

from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


class ErrorCodes:
    """Codes for failures raised outside the AgendaError hierarchy."""

    DATABASE_ERROR = "DATABASE_ERROR"


def success_response(**payload: Any) -> dict:
    """Create a success envelope dict."""
    return {"success": True, **payload}


def error_response(
    message: str,
    code: Optional[str] = None,
    details: Optional[dict] = None,
) -> dict:
    """
    Create an error envelope dict.

    `details` are merged into the top level so that callers see e.g.
    `existing_client` next to `error`.
    """
    response: dict[str, Any] = {"success": False, "error": message}
    if code:
        response["code"] = code
    if details:
        response.update(details)
    return response


def envelope(body: dict, status_code: int = 200) -> JSONResponse:
    """Render an envelope dict, encoding datetimes, decimals and UUIDs."""
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))
