"""
SQLAlchemy-backed store for API key records.

All reads and writes for the api_keys table go through ``ApiKeyStore``. Database
failures are rolled back and re-raised as ``StoreError`` with a classified code so
that callers can tell a missing row apart from a constraint violation or an
unreachable database. Every committed mutation is published to the change feed.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy import func
from sqlalchemy.exc import (
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.api_key import ApiKey
from app.services.change_feed import ChangeEvent, ChangeFeed, ChangeType, change_feed

logger = logging.getLogger(__name__)


class StoreErrorCode(str, Enum):
    """Classified store failure."""
    NO_ROWS = "no_rows"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    CHECK_VIOLATION = "check_violation"
    PERMISSION_DENIED = "permission_denied"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


# PostgreSQL SQLSTATE codes
PG_ERROR_CODES: Dict[str, StoreErrorCode] = {
    "23505": StoreErrorCode.UNIQUE_VIOLATION,
    "23503": StoreErrorCode.FOREIGN_KEY_VIOLATION,
    "23514": StoreErrorCode.CHECK_VIOLATION,
    "42501": StoreErrorCode.PERMISSION_DENIED,
}


class StoreError(Exception):
    """Failure reported by the key store."""

    def __init__(self, code: StoreErrorCode, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.constraint = constraint

    def mentions(self, word: str) -> bool:
        """True when the violated constraint (or the message, if unknown) names ``word``."""
        haystack = self.constraint if self.constraint else self.message
        return word.lower() in (haystack or "").lower()


def classify_db_error(exc: SQLAlchemyError) -> StoreError:
    """Translate a SQLAlchemy exception into a ``StoreError``."""
    orig = getattr(exc, "orig", None)
    message = str(orig) if orig is not None else str(exc)
    lowered = message.lower()

    constraint = None
    diag = getattr(orig, "diag", None)
    if diag is not None:
        constraint = getattr(diag, "constraint_name", None)

    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in PG_ERROR_CODES:
        return StoreError(PG_ERROR_CODES[pgcode], message, constraint)

    if isinstance(exc, IntegrityError):
        if "unique" in lowered or "duplicate" in lowered:
            if constraint is None and "failed:" in lowered:
                # SQLite: "UNIQUE constraint failed: api_keys.key" / "... index 'uq_...'"
                constraint = message.split("failed:", 1)[1].strip()
            return StoreError(StoreErrorCode.UNIQUE_VIOLATION, message, constraint)
        if "foreign key" in lowered:
            return StoreError(StoreErrorCode.FOREIGN_KEY_VIOLATION, message, constraint)
        if "check constraint" in lowered:
            return StoreError(StoreErrorCode.CHECK_VIOLATION, message, constraint)
        return StoreError(StoreErrorCode.UNKNOWN, message, constraint)

    if "permission denied" in lowered or "readonly database" in lowered or "not authorized" in lowered:
        return StoreError(StoreErrorCode.PERMISSION_DENIED, message, constraint)

    if isinstance(exc, (OperationalError, InterfaceError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return StoreError(StoreErrorCode.UNAVAILABLE, message, constraint)

    return StoreError(StoreErrorCode.UNKNOWN, message, constraint)


class ApiKeyStore:
    """Queries and mutations for the api_keys table, bound to one session."""

    def __init__(self, db: Session, feed: Optional[ChangeFeed] = None):
        self.db = db
        self.feed = feed if feed is not None else change_feed

    def _fail(self, exc: SQLAlchemyError, operation: str) -> StoreError:
        self.db.rollback()
        error = classify_db_error(exc)
        logger.error(f"Key store {operation} failed ({error.code.value}): {error.message}")
        return error

    def _publish(self, event: ChangeEvent) -> None:
        if self.feed is not None:
            self.feed.publish(event)

    def get_by_key(self, key: str) -> ApiKey:
        """Exact-match lookup on the key string. Raises ``StoreError(NO_ROWS)`` when absent."""
        try:
            record = self.db.query(ApiKey).filter(ApiKey.key == key).first()
        except SQLAlchemyError as e:
            raise self._fail(e, "lookup") from e
        if record is None:
            raise StoreError(StoreErrorCode.NO_ROWS, "No API key matches the given value")
        return record

    def get_for_owner(self, key_id: str, owner_id: str) -> Optional[ApiKey]:
        try:
            return (
                self.db.query(ApiKey)
                .filter(ApiKey.id == key_id, ApiKey.user_id == owner_id)
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail(e, "get") from e

    def list_for_owner(self, owner_id: str) -> List[ApiKey]:
        """All keys of one owner, newest first."""
        try:
            return (
                self.db.query(ApiKey)
                .filter(ApiKey.user_id == owner_id)
                .order_by(ApiKey.created_at.desc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail(e, "list") from e

    def find_by_name(self, owner_id: str, name: str) -> Optional[ApiKey]:
        """Case-insensitive name lookup within one owner's keys."""
        try:
            return (
                self.db.query(ApiKey)
                .filter(ApiKey.user_id == owner_id, func.lower(ApiKey.name) == name.strip().lower())
                .first()
            )
        except SQLAlchemyError as e:
            raise self._fail(e, "name lookup") from e

    def insert(self, values: Dict[str, Any]) -> ApiKey:
        record = ApiKey(**values)
        try:
            self.db.add(record)
            self.db.commit()
            self.db.refresh(record)
        except SQLAlchemyError as e:
            raise self._fail(e, "insert") from e

        self._publish(ChangeEvent(type=ChangeType.INSERT, new=record.to_dict()))
        return record

    def update(self, key_id: str, owner_id: str, values: Dict[str, Any]) -> Optional[ApiKey]:
        """
        Update one owner-scoped record.

        Returns the updated record, or None when no row matched (id/owner mismatch).
        """
        try:
            before = self.get_for_owner(key_id, owner_id)
            old = before.to_dict() if before is not None else None
            affected = (
                self.db.query(ApiKey)
                .filter(ApiKey.id == key_id, ApiKey.user_id == owner_id)
                .update(values, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail(e, "update") from e

        if affected == 0:
            return None

        record = self.get_for_owner(key_id, owner_id)
        self.db.refresh(record)
        self._publish(ChangeEvent(type=ChangeType.UPDATE, new=record.to_dict(), old=old))
        return record

    def delete(self, key_id: str, owner_id: str) -> int:
        """Delete one owner-scoped record. Returns the number of rows removed."""
        try:
            before = self.get_for_owner(key_id, owner_id)
            old = before.to_dict() if before is not None else None
            affected = (
                self.db.query(ApiKey)
                .filter(ApiKey.id == key_id, ApiKey.user_id == owner_id)
                .delete(synchronize_session=False)
            )
            if affected and before is not None:
                # Detach while still loaded so callers holding it can read it after commit
                self.db.expunge(before)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail(e, "delete") from e

        if affected and before is not None:
            self._publish(ChangeEvent(type=ChangeType.DELETE, old=old))
        return affected

    def record_usage(self, key_id: str) -> Optional[ApiKey]:
        """
        Count one request against a key's quota and stamp last_used.

        The quota and active checks live in the UPDATE itself, so concurrent
        callers can never push usage past monthly_limit. Returns None when no
        row qualified (deleted, disabled or exhausted since it was read).
        """
        try:
            affected = (
                self.db.query(ApiKey)
                .filter(
                    ApiKey.id == key_id,
                    ApiKey.is_active.is_(True),
                    ApiKey.usage < ApiKey.monthly_limit,
                )
                .update(
                    {
                        ApiKey.usage: ApiKey.usage + 1,
                        ApiKey.last_used: datetime.now(timezone.utc),
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail(e, "usage increment") from e

        if affected == 0:
            return None
        record = self.db.query(ApiKey).filter(ApiKey.id == key_id).first()
        self.db.refresh(record)
        self._publish(ChangeEvent(type=ChangeType.UPDATE, new=record.to_dict()))
        return record


def get_key_store(db: Session = Depends(get_db)) -> ApiKeyStore:
    """Dependency returning a store bound to the request's session."""
    return ApiKeyStore(db, change_feed)
