"""
Owner-scoped in-memory mirror of API key records.

``KeyMirror`` keeps one owner's records (newest first) for display. Local
mutations are applied optimistically; changes made elsewhere arrive through the
change feed and are merged by ``apply_change``, a pure function over the record
list. ``KeyManager`` ties a mirror to the key service and the feed.
"""
import logging
import threading
from typing import Any, Callable, ContextManager, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import KeyNotFoundOrForbiddenError, KeyServiceError
from app.services import key_service
from app.services.change_feed import ChangeEvent, ChangeFeed, ChangeType, Subscription, change_feed
from app.services.key_store import ApiKeyStore, StoreError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


def apply_change(records: List[Record], event: ChangeEvent, owner_id: str) -> List[Record]:
    """
    Merge one change event into ``records``.

    Returns a new list when the event changes something, otherwise ``records``
    itself. Events for other owners, duplicate inserts and unknown event types
    are dropped.
    """
    if event.type == ChangeType.INSERT:
        new = event.new
        if not new or new.get("user_id") != owner_id:
            return records
        if any(r["id"] == new["id"] for r in records):
            logger.debug(f"Skipping duplicate insert for key {new['id']}")
            return records
        return [dict(new)] + records

    if event.type == ChangeType.UPDATE:
        new = event.new
        if not new or new.get("user_id") != owner_id:
            return records
        if not any(r["id"] == new["id"] for r in records):
            return records
        return [dict(new) if r["id"] == new["id"] else r for r in records]

    if event.type == ChangeType.DELETE:
        old = event.old
        if not old or old.get("user_id") != owner_id:
            logger.debug("Delete event not for this owner, ignoring")
            return records
        filtered = [r for r in records if r["id"] != old.get("id")]
        return filtered if len(filtered) != len(records) else records

    return records


class KeyMirror:
    """Thread-safe holder of one owner's records."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self._records: List[Record] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> List[Record]:
        with self._lock:
            return [dict(r) for r in self._records]

    def get(self, key_id: str) -> Optional[Record]:
        with self._lock:
            for r in self._records:
                if r["id"] == key_id:
                    return dict(r)
        return None

    def replace_all(self, records: List[Record]) -> None:
        with self._lock:
            self._records = [dict(r) for r in records]

    def apply(self, event: ChangeEvent) -> None:
        with self._lock:
            self._records = apply_change(self._records, event, self.owner_id)

    def add_local(self, record: Record) -> None:
        """Optimistically show a record this viewer just created."""
        self.apply(ChangeEvent(type=ChangeType.INSERT, new=record))

    def merge_local(self, key_id: str, updates: Dict[str, Any]) -> None:
        """Optimistically overlay ``updates`` on a record this viewer just edited."""
        with self._lock:
            self._records = [
                {**r, **updates} if r["id"] == key_id else r for r in self._records
            ]

    def remove_local(self, key_id: str) -> None:
        with self._lock:
            self._records = [r for r in self._records if r["id"] != key_id]

    @property
    def total_usage(self) -> int:
        with self._lock:
            return sum(r["usage"] for r in self._records)


class KeyManager:
    """
    Key management for a single owner, with a live local mirror.

    Each operation opens a short-lived session from ``session_factory``, calls
    the key service, and then updates the mirror without waiting for the feed.
    Changes from other managers or requests reach the mirror via the feed.
    """

    def __init__(
        self,
        session_factory: Callable[[], ContextManager[Session]],
        owner_id: str,
        feed: Optional[ChangeFeed] = None,
    ):
        self.session_factory = session_factory
        self.owner_id = owner_id
        self.feed = feed if feed is not None else change_feed
        self.mirror = KeyMirror(owner_id)
        self.error = ""
        self._subscriptions: List[Subscription] = [
            self.feed.subscribe(
                self.mirror.apply,
                events=[ChangeType.INSERT, ChangeType.UPDATE],
                owner_id=owner_id,
            ),
            # Deletes cannot be filtered by owner at the feed; the reducer checks
            self.feed.subscribe(self.mirror.apply, events=[ChangeType.DELETE]),
        ]

    def _store(self, db: Session) -> ApiKeyStore:
        return ApiKeyStore(db, self.feed)

    @property
    def api_keys(self) -> List[Record]:
        return self.mirror.records

    @property
    def total_usage(self) -> int:
        return self.mirror.total_usage

    def load(self) -> List[Record]:
        """Replace the mirror with the owner's keys from the store."""
        self.error = ""
        try:
            with self.session_factory() as db:
                records = [r.to_dict() for r in key_service.list_api_keys(self._store(db), self.owner_id)]
        except StoreError as e:
            logger.error(f"Error loading API keys: {e.message}")
            self.error = "Failed to load API keys"
            return self.mirror.records
        self.mirror.replace_all(records)
        return self.mirror.records

    def validate_key_name(self, name: Optional[str]) -> str:
        return key_service.validate_key_name(name, [r["name"] for r in self.mirror.records])

    def create(self, name: str, monthly_limit: Any = None) -> Record:
        self.error = ""
        try:
            with self.session_factory() as db:
                record = key_service.create_api_key(self._store(db), self.owner_id, name, monthly_limit).to_dict()
        except KeyServiceError as e:
            self.error = e.message
            raise
        self.mirror.add_local(record)
        return record

    def update(self, key_id: str, updates: Dict[str, Any]) -> Record:
        self.error = ""
        try:
            with self.session_factory() as db:
                record = key_service.update_api_key(self._store(db), self.owner_id, key_id, updates).to_dict()
        except KeyServiceError as e:
            self.error = e.message
            raise
        self.mirror.merge_local(key_id, record)
        return record

    def toggle_status(self, key_id: str) -> Record:
        current = self.mirror.get(key_id)
        if current is None:
            error = KeyNotFoundOrForbiddenError()
            self.error = error.message
            raise error
        return self.update(key_id, {"is_active": not current["is_active"]})

    def delete(self, key_id: str) -> None:
        self.error = ""
        try:
            with self.session_factory() as db:
                key_service.delete_api_key(self._store(db), self.owner_id, key_id)
        except KeyServiceError as e:
            self.error = e.message
            raise
        self.mirror.remove_local(key_id)

    def close(self) -> None:
        """Stop receiving change events."""
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    def __enter__(self) -> "KeyManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
