"""
API key management endpoints.

Every route is scoped to the calling owner (X-User-ID). A key that exists but
belongs to someone else is reported exactly like a missing key.
"""
import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.auth import Owner, get_current_owner
from app.core.exceptions import (
    ConflictingReferenceError,
    DuplicateNameError,
    InvalidKeyInputError,
    KeyNotFoundOrForbiddenError,
    KeyServiceError,
    PermissionDeniedError,
)
from app.models.api_key import ApiKey
from app.schemas.api_key import (
    APIKeyCreateRequest,
    APIKeyListResponse,
    APIKeyResponse,
    APIKeyUpdateRequest,
    APIKeyUsageResponse,
)
from app.services import key_service
from app.services.key_store import ApiKeyStore, StoreError, get_key_store

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    InvalidKeyInputError: status.HTTP_400_BAD_REQUEST,
    DuplicateNameError: status.HTTP_409_CONFLICT,
    ConflictingReferenceError: status.HTTP_409_CONFLICT,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    KeyNotFoundOrForbiddenError: status.HTTP_404_NOT_FOUND,
}


def raise_http_error(exc: KeyServiceError) -> NoReturn:
    """Translate a key service error into an HTTPException with its user-facing message."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=exc.message) from exc


def to_response(key: ApiKey) -> APIKeyResponse:
    return APIKeyResponse(
        id=key.id,
        name=key.name,
        key=key.key,
        key_masked=key_service.mask_key(key.key),
        is_active=key.is_active,
        usage=key.usage,
        monthly_limit=key.monthly_limit,
        remaining=max(key.monthly_limit - key.usage, 0),
        created_at=key.created_at,
        last_used=key.last_used,
    )


@router.get("/", response_model=APIKeyListResponse)
async def list_api_keys(
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """List the caller's API keys, newest first."""
    try:
        keys = key_service.list_api_keys(store, owner.id)
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load API keys",
        )

    items = [to_response(k) for k in keys]
    logger.info(f"Listed {len(items)} API keys for owner {owner.id}")
    return APIKeyListResponse(items=items, total=len(items))


@router.get("/usage", response_model=APIKeyUsageResponse)
async def get_usage_summary(
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """Combined usage of the caller's keys against the plan allowance."""
    try:
        return APIKeyUsageResponse(**key_service.usage_summary(store, owner.id))
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load API key usage",
        )


@router.post("/", response_model=APIKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: APIKeyCreateRequest,
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """
    Create a new API key for the caller.

    The key is generated server-side. Names must be unique per owner, ignoring case.
    """
    try:
        key = key_service.create_api_key(store, owner.id, request.name, request.monthly_limit)
    except KeyServiceError as e:
        raise_http_error(e)
    return to_response(key)


@router.patch("/{key_id}", response_model=APIKeyResponse)
async def update_api_key(
    key_id: str,
    request: APIKeyUpdateRequest,
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """Update name, is_active, usage or monthly_limit of one of the caller's keys."""
    try:
        key = key_service.update_api_key(store, owner.id, key_id, request.model_dump(exclude_none=True))
    except KeyServiceError as e:
        raise_http_error(e)
    return to_response(key)


@router.post("/{key_id}/toggle", response_model=APIKeyResponse)
async def toggle_api_key(
    key_id: str,
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """Enable a disabled key or disable an enabled one."""
    try:
        key = key_service.toggle_api_key_status(store, owner.id, key_id)
    except KeyServiceError as e:
        raise_http_error(e)
    return to_response(key)


@router.post("/{key_id}/reset-usage", response_model=APIKeyResponse)
async def reset_api_key_usage(
    key_id: str,
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """Reset the usage counter of one of the caller's keys to zero."""
    try:
        key = key_service.reset_api_key_usage(store, owner.id, key_id)
    except KeyServiceError as e:
        raise_http_error(e)
    return to_response(key)


@router.delete("/{key_id}", status_code=status.HTTP_200_OK)
async def delete_api_key(
    key_id: str,
    owner: Owner = Depends(get_current_owner),
    store: ApiKeyStore = Depends(get_key_store),
):
    """Permanently delete one of the caller's keys."""
    try:
        key_service.delete_api_key(store, owner.id, key_id)
    except KeyServiceError as e:
        raise_http_error(e)
    return {"message": "API key deleted successfully", "id": key_id}
