"""
API key issuance and owner-scoped management.
"""
import logging
import secrets
from typing import Any, Dict, Iterable, List, Optional

from app.core.config import settings
from app.core.exceptions import (
    ConflictingReferenceError,
    CreateFailedError,
    DeleteFailedError,
    DuplicateNameError,
    InvalidKeyInputError,
    KeyNotFoundOrForbiddenError,
    PermissionDeniedError,
    UpdateFailedError,
)
from app.models.api_key import ApiKey
from app.services.key_store import ApiKeyStore, StoreError, StoreErrorCode

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "is_active", "usage", "monthly_limit")

MASK_VISIBLE_CHARS = 5


def generate_api_key(prefix: Optional[str] = None, token_bytes: Optional[int] = None) -> str:
    """Generate a new key: the prefix followed by a url-safe token from a CSPRNG."""
    prefix = settings.KEY_PREFIX if prefix is None else prefix
    token_bytes = settings.KEY_TOKEN_BYTES if token_bytes is None else token_bytes
    return f"{prefix}{secrets.token_urlsafe(token_bytes)}"


def mask_key(key: str) -> str:
    """Show the first five characters and hide the rest."""
    if len(key) <= MASK_VISIBLE_CHARS:
        return key
    return key[:MASK_VISIBLE_CHARS] + "*" * (len(key) - MASK_VISIBLE_CHARS)


def normalize_monthly_limit(value: Any) -> int:
    """Coerce a requested limit to a positive int, falling back to the default."""
    if isinstance(value, bool):
        return settings.DEFAULT_MONTHLY_LIMIT
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return settings.DEFAULT_MONTHLY_LIMIT
    if limit <= 0:
        return settings.DEFAULT_MONTHLY_LIMIT
    return limit


def validate_key_name(name: Optional[str], existing_names: Iterable[str]) -> str:
    """
    Check a proposed key name against an owner's existing names.

    Returns an error message, or an empty string when the name is acceptable.
    """
    if not name or not name.strip():
        return "Key name is required"

    wanted = name.strip().lower()
    if any(existing.lower() == wanted for existing in existing_names):
        return "A key with this name already exists"

    return ""


def list_api_keys(store: ApiKeyStore, owner_id: str) -> List[ApiKey]:
    return store.list_for_owner(owner_id)


def create_api_key(
    store: ApiKeyStore,
    owner_id: str,
    name: Optional[str],
    monthly_limit: Any = None,
) -> ApiKey:
    """
    Issue a new key for ``owner_id``.

    Raises:
        InvalidKeyInputError: Name is blank
        DuplicateNameError: Owner already has a key with this name (any case)
        PermissionDeniedError: Store refused the write
        CreateFailedError: Any other store failure, including a key collision
    """
    if not name or not name.strip():
        raise InvalidKeyInputError("Key name is required")
    clean_name = name.strip()

    try:
        if store.find_by_name(owner_id, clean_name) is not None:
            raise DuplicateNameError()

        record = store.insert(
            {
                "name": clean_name,
                "key": generate_api_key(),
                "user_id": owner_id,
                "is_active": True,
                "usage": 0,
                "monthly_limit": normalize_monthly_limit(monthly_limit),
            }
        )
    except StoreError as e:
        logger.error(f"Error creating API key for owner {owner_id}: {e.message}")
        if e.code == StoreErrorCode.UNIQUE_VIOLATION:
            if e.mentions("name"):
                raise DuplicateNameError() from e
            raise CreateFailedError("This API key configuration already exists") from e
        if e.code == StoreErrorCode.PERMISSION_DENIED:
            raise PermissionDeniedError("You do not have permission to create API keys") from e
        raise CreateFailedError() from e

    logger.info(f"Created API key: id={record.id}, name={record.name}, owner={owner_id}")
    return record


def _clean_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for field_name in UPDATABLE_FIELDS:
        value = updates.get(field_name)
        if value is None:
            continue
        values[field_name] = value

    if not values:
        raise InvalidKeyInputError("No updatable fields supplied")

    if "name" in values:
        if not isinstance(values["name"], str) or not values["name"].strip():
            raise InvalidKeyInputError("Key name is required")
        values["name"] = values["name"].strip()
    if "is_active" in values and not isinstance(values["is_active"], bool):
        raise InvalidKeyInputError("is_active must be true or false")
    if "usage" in values:
        if isinstance(values["usage"], bool) or not isinstance(values["usage"], int) or values["usage"] < 0:
            raise InvalidKeyInputError("Usage must be a non-negative integer")
    if "monthly_limit" in values:
        limit = values["monthly_limit"]
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidKeyInputError("Monthly limit must be a positive integer")

    return values


def update_api_key(
    store: ApiKeyStore,
    owner_id: str,
    key_id: str,
    updates: Dict[str, Any],
) -> ApiKey:
    """
    Apply ``updates`` (name, is_active, usage, monthly_limit) to one of the owner's keys.

    Unknown fields and None values are ignored.

    Raises:
        InvalidKeyInputError: Nothing to update, or a value is out of range
        KeyNotFoundOrForbiddenError: No key with this id belongs to the owner
        DuplicateNameError: Another key of the owner already uses the new name
        PermissionDeniedError: Store refused the write
        UpdateFailedError: Any other store failure
    """
    values = _clean_updates(updates)

    try:
        if "name" in values:
            clash = store.find_by_name(owner_id, values["name"])
            if clash is not None and clash.id != key_id:
                raise DuplicateNameError("Another API key with this name already exists")

        record = store.update(key_id, owner_id, values)
    except StoreError as e:
        logger.error(f"Error updating API key {key_id}: {e.message}")
        if e.code == StoreErrorCode.UNIQUE_VIOLATION and e.mentions("name"):
            raise DuplicateNameError("Another API key with this name already exists") from e
        if e.code == StoreErrorCode.PERMISSION_DENIED:
            raise PermissionDeniedError("You do not have permission to update this API key") from e
        raise UpdateFailedError() from e

    if record is None:
        logger.info(f"Update matched no key: id={key_id}, owner={owner_id}")
        raise KeyNotFoundOrForbiddenError()

    logger.info(f"Updated API key: id={key_id}, fields={sorted(values)}")
    return record


def toggle_api_key_status(store: ApiKeyStore, owner_id: str, key_id: str) -> ApiKey:
    """Flip the active flag of one of the owner's keys."""
    try:
        current = store.get_for_owner(key_id, owner_id)
    except StoreError as e:
        raise UpdateFailedError() from e
    if current is None:
        raise KeyNotFoundOrForbiddenError()
    return update_api_key(store, owner_id, key_id, {"is_active": not current.is_active})


def reset_api_key_usage(store: ApiKeyStore, owner_id: str, key_id: str) -> ApiKey:
    """Set usage back to zero, the only sanctioned decrease of the counter."""
    return update_api_key(store, owner_id, key_id, {"usage": 0})


def delete_api_key(store: ApiKeyStore, owner_id: str, key_id: str) -> None:
    """
    Delete one of the owner's keys.

    Raises:
        KeyNotFoundOrForbiddenError: No key with this id belongs to the owner
        PermissionDeniedError: Store refused the delete
        ConflictingReferenceError: Other rows still reference the key
        DeleteFailedError: Any other store failure
    """
    try:
        affected = store.delete(key_id, owner_id)
    except StoreError as e:
        logger.error(f"Error deleting API key {key_id}: {e.message}")
        if e.code == StoreErrorCode.PERMISSION_DENIED:
            raise PermissionDeniedError("You do not have permission to delete this API key") from e
        if e.code == StoreErrorCode.FOREIGN_KEY_VIOLATION:
            raise ConflictingReferenceError() from e
        raise DeleteFailedError() from e

    if affected == 0:
        logger.info(f"Delete matched no key: id={key_id}, owner={owner_id}")
        raise KeyNotFoundOrForbiddenError()

    logger.info(f"Deleted API key: id={key_id}, owner={owner_id}")


def usage_summary(store: ApiKeyStore, owner_id: str) -> Dict[str, Any]:
    """Combined usage of an owner's keys measured against the plan allowance."""
    keys = store.list_for_owner(owner_id)
    total_usage = sum(k.usage for k in keys)
    plan_limit = settings.PLAN_MONTHLY_LIMIT
    return {
        "total_usage": total_usage,
        "plan_limit": plan_limit,
        "percent_used": round(total_usage / plan_limit * 100, 2),
        "key_count": len(keys),
        "active_key_count": sum(1 for k in keys if k.is_active),
    }
