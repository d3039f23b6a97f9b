"""
In-process change feed for the api_keys table.

The key store publishes one event per committed insert/update/delete. Subscribers
may restrict INSERT and UPDATE events to a single owner; DELETE events are never
owner-filtered at the feed level and carry the removed row in ``old`` so that
consumers can check ownership themselves.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, List, Mapping, Optional, Set

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Row-level change kinds."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change. ``new`` is set for INSERT/UPDATE, ``old`` for UPDATE/DELETE."""
    type: ChangeType
    new: Optional[Mapping[str, Any]] = None
    old: Optional[Mapping[str, Any]] = None
    table: str = "api_keys"

    def __post_init__(self) -> None:
        if self.new is not None:
            object.__setattr__(self, "new", MappingProxyType(dict(self.new)))
        if self.old is not None:
            object.__setattr__(self, "old", MappingProxyType(dict(self.old)))


ChangeHandler = Callable[[ChangeEvent], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by ``ChangeFeed.subscribe``."""
    feed: "ChangeFeed"
    handler: ChangeHandler
    events: Set[ChangeType] = field(default_factory=lambda: set(ChangeType))
    owner_id: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.type not in self.events:
            return False
        if self.owner_id is None or event.type == ChangeType.DELETE:
            return True
        return bool(event.new) and event.new.get("user_id") == self.owner_id

    def unsubscribe(self) -> None:
        self.feed.unsubscribe(self)


class ChangeFeed:
    """Fans out change events to registered subscriptions."""

    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        handler: ChangeHandler,
        events: Optional[Iterable[ChangeType]] = None,
        owner_id: Optional[str] = None,
    ) -> Subscription:
        """
        Register ``handler``.

        Args:
            handler: Called with each matching event
            events: Event types to receive (all when omitted)
            owner_id: Only receive INSERT/UPDATE events for rows owned by this id.
                DELETE events are delivered regardless.
        """
        subscription = Subscription(
            feed=self,
            handler=handler,
            events=set(events) if events is not None else set(ChangeType),
            owner_id=owner_id,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            try:
                self._subscriptions.remove(subscription)
            except ValueError:
                return

    def clear(self) -> None:
        """Remove all subscriptions."""
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to every matching subscription, in registration order."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]

        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception as e:
                # One broken consumer must not stop delivery to the rest
                logger.error(f"Change feed handler failed for {event.type.value} event: {e}", exc_info=True)


# Process-wide feed used by the application's key store
change_feed = ChangeFeed()
