"""
API key validation.

Checks run in a fixed order and the first failing check decides the verdict:
presence, format, existence, active flag, quota. Nothing is retried; a store
fault is reported as ``STORE_UNAVAILABLE`` straight away.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from app.core.config import settings
from app.core.logging_config import key_hint
from app.services.key_store import ApiKeyStore, StoreError, StoreErrorCode

logger = logging.getLogger(__name__)


class VerdictKind(str, Enum):
    """Possible validation outcomes."""
    VALID = "valid"
    MISSING_KEY = "missing_key"
    INVALID_FORMAT = "invalid_format"
    KEY_NOT_FOUND = "key_not_found"
    KEY_DISABLED = "key_disabled"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Verdict:
    """Tagged validation result. Quota fields are only set for ``VALID``."""
    kind: VerdictKind
    key_id: Optional[str] = None
    name: Optional[str] = None
    usage: Optional[int] = None
    monthly_limit: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        return self.kind == VerdictKind.VALID

    @property
    def remaining(self) -> Optional[int]:
        if self.usage is None or self.monthly_limit is None:
            return None
        return self.monthly_limit - self.usage


def validate_api_key(
    candidate: Any,
    store: ApiKeyStore,
    record_usage: Optional[bool] = None,
) -> Verdict:
    """
    Decide whether ``candidate`` is a usable API key.

    Args:
        candidate: Raw value presented by the caller (may be any type)
        store: Key store used for the exact-match lookup
        record_usage: Count a successful validation against the key's quota.
            Defaults to the RECORD_USAGE_ON_VALIDATE setting.

    Returns:
        Verdict for the first failing check, or a VALID verdict carrying the
        key's counters as they were before this call was counted.
    """
    if not isinstance(candidate, str) or not candidate.strip():
        return Verdict(VerdictKind.MISSING_KEY)

    key = candidate.strip()
    if not key.startswith(settings.KEY_PREFIX):
        logger.debug(f"Rejected key with bad format: {key_hint(key)}")
        return Verdict(VerdictKind.INVALID_FORMAT)

    try:
        record = store.get_by_key(key)
    except StoreError as e:
        if e.code == StoreErrorCode.NO_ROWS:
            logger.info(f"Unknown API key presented: {key_hint(key)}")
            return Verdict(VerdictKind.KEY_NOT_FOUND)
        logger.error(f"Key lookup failed ({e.code.value}): {e.message}")
        return Verdict(VerdictKind.STORE_UNAVAILABLE)

    if not record.is_active:
        return Verdict(VerdictKind.KEY_DISABLED)

    if record.usage >= record.monthly_limit:
        logger.info(f"Quota exhausted for key {record.id}: {record.usage}/{record.monthly_limit}")
        return Verdict(VerdictKind.QUOTA_EXCEEDED)

    if record_usage is None:
        record_usage = settings.RECORD_USAGE_ON_VALIDATE
    if not record_usage:
        return Verdict(
            kind=VerdictKind.VALID,
            key_id=record.id,
            name=record.name,
            usage=record.usage,
            monthly_limit=record.monthly_limit,
        )

    try:
        counted = store.record_usage(record.id)
        if counted is None:
            # Another caller changed the row after it was read
            return _reject_after_lost_race(store, key)
    except StoreError as e:
        logger.error(f"Usage accounting failed for key {record.id} ({e.code.value}): {e.message}")
        return Verdict(VerdictKind.STORE_UNAVAILABLE)

    return Verdict(
        kind=VerdictKind.VALID,
        key_id=counted.id,
        name=counted.name,
        usage=counted.usage - 1,
        monthly_limit=counted.monthly_limit,
    )


def _reject_after_lost_race(store: ApiKeyStore, key: str) -> Verdict:
    """Classify a key whose guarded usage increment matched no row."""
    try:
        record = store.get_by_key(key)
    except StoreError as e:
        if e.code == StoreErrorCode.NO_ROWS:
            return Verdict(VerdictKind.KEY_NOT_FOUND)
        raise

    if not record.is_active:
        return Verdict(VerdictKind.KEY_DISABLED)
    logger.info(f"Quota exhausted for key {record.id} while counting usage")
    return Verdict(VerdictKind.QUOTA_EXCEEDED)
