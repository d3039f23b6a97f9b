"""
Key validation endpoint.

Mounted at /api/protected, outside the versioned router, so existing clients
keep posting to the same path.
"""
import json
import logging
from typing import Dict, Tuple

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.schemas.protected import (
    ValidatedKeyData,
    ValidationErrorResponse,
    ValidationSuccessResponse,
)
from app.services.key_store import ApiKeyStore, get_key_store
from app.services.validation_service import Verdict, VerdictKind, validate_api_key

logger = logging.getLogger(__name__)

router = APIRouter()

# Status code and caller-facing message for every failing verdict
VERDICT_RESPONSES: Dict[VerdictKind, Tuple[int, str]] = {
    VerdictKind.MISSING_KEY: (status.HTTP_400_BAD_REQUEST, "API key is required"),
    VerdictKind.INVALID_FORMAT: (status.HTTP_401_UNAUTHORIZED, "Invalid API key format"),
    VerdictKind.KEY_NOT_FOUND: (status.HTTP_401_UNAUTHORIZED, "Invalid API key"),
    VerdictKind.KEY_DISABLED: (status.HTTP_401_UNAUTHORIZED, "API key is disabled"),
    VerdictKind.QUOTA_EXCEEDED: (status.HTTP_429_TOO_MANY_REQUESTS, "API key usage limit exceeded"),
    VerdictKind.STORE_UNAVAILABLE: (status.HTTP_500_INTERNAL_SERVER_ERROR, "Database error occurred"),
}


def verdict_to_response(verdict: Verdict) -> JSONResponse:
    """Render a verdict as the endpoint's JSON response."""
    if verdict.is_valid:
        body = ValidationSuccessResponse(
            message="API key is valid",
            data=ValidatedKeyData(
                keyId=verdict.key_id,
                keyName=verdict.name,
                usage=verdict.usage,
                monthlyLimit=verdict.monthly_limit,
                remainingRequests=verdict.remaining,
            ),
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump())

    status_code, message = VERDICT_RESPONSES[verdict.kind]
    return JSONResponse(
        status_code=status_code,
        content=ValidationErrorResponse(error=message).model_dump(),
    )


@router.post(
    "/protected",
    responses={
        200: {"model": ValidationSuccessResponse},
        400: {"model": ValidationErrorResponse},
        401: {"model": ValidationErrorResponse},
        429: {"model": ValidationErrorResponse},
        500: {"model": ValidationErrorResponse},
    },
)
async def validate_key(request: Request, store: ApiKeyStore = Depends(get_key_store)):
    """
    Validate the API key posted as {"apiKey": "..."}.

    Returns the key's quota counters when it is usable, otherwise an error
    message with 400/401/429/500.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = None

    candidate = body.get("apiKey") if isinstance(body, dict) else None

    try:
        verdict = validate_api_key(candidate, store)
    except Exception as e:
        logger.error(f"API route error: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    if not verdict.is_valid:
        logger.info(f"Key validation rejected: {verdict.kind.value}")
    return verdict_to_response(verdict)


@router.get("/protected")
async def protected_info():
    """Informational only; validation happens on POST."""
    return {"message": "Protected endpoint - POST an API key to validate access"}
