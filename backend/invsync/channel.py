# Overview: In-process publish/subscribe channel for row change and domain events.

"""
Change Channel

Delivery contract mirrored from the hosted store's realtime feed:
- at-least-once: subscribers must tolerate the same event twice
- successive events for the same row arrive in publish order
- no ordering guarantee across rows

Subscriptions filter by table, event type and (optionally) a set of ids. A
failing subscriber is logged and does not prevent delivery to the others.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

EVENT_INSERT = "INSERT"
EVENT_UPDATE = "UPDATE"
EVENT_DELETE = "DELETE"

# Domain events published by the synchronizer
DOMAIN_STOCK_CHANGED = "inventory.stock_changed"
DOMAIN_UNIT_STATUS_CHANGED = "inventory.unit_status_changed"
DOMAIN_EVENT = "EVENT"

# app.extensions keys
CHANNEL_EXTENSION = "invsync.channel"
CHANGE_FEED_EXTENSION = "invsync.change_feed"
SYNCHRONIZER_EXTENSION = "invsync.synchronizer"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    type: str
    new: Optional[dict] = None
    old: Optional[dict] = None

    @property
    def row(self) -> dict:
        """Current values for inserts/updates, previous values for deletes."""
        return self.new if self.new is not None else (self.old or {})

    @property
    def row_id(self) -> Any:
        return self.row.get("id")


Handler = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    channel: "InMemoryChannel"
    key: int
    table: str
    handler: Handler
    event_types: Optional[frozenset] = None
    ids: Optional[frozenset] = None
    id_field: str = "id"
    active: bool = True

    def matches(self, event: ChangeEvent) -> bool:
        if not self.active or event.table != self.table:
            return False
        if self.event_types is not None and event.type not in self.event_types:
            return False
        if self.ids is not None and event.row.get(self.id_field) not in self.ids:
            return False
        return True

    def stop(self) -> None:
        self.channel.unsubscribe(self)


class InMemoryChannel:
    """Synchronous fan-out channel; publish() returns after every handler ran."""

    def __init__(self):
        self._subscriptions: dict[int, Subscription] = {}
        self._keys = itertools.count(1)
        self._lock = threading.RLock()

    def subscribe(
        self,
        table: str,
        handler: Handler,
        *,
        event_types: Optional[Iterable[str]] = None,
        ids: Optional[Iterable[Any]] = None,
        id_field: str = "id",
    ) -> Subscription:
        with self._lock:
            sub = Subscription(
                channel=self,
                key=next(self._keys),
                table=table,
                handler=handler,
                event_types=frozenset(event_types) if event_types is not None else None,
                ids=frozenset(ids) if ids is not None else None,
                id_field=id_field,
            )
            self._subscriptions[sub.key] = sub
            return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.active = False
            self._subscriptions.pop(subscription.key, None)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver event to matching subscribers; returns how many were called."""
        with self._lock:
            targets = [s for s in self._subscriptions.values() if s.matches(event)]

        delivered = 0
        for sub in targets:
            try:
                sub.handler(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber for %s %s failed", event.table, event.type)
        return delivered

    def emit(self, name: str, payload: dict) -> int:
        """Publish a domain event; the table is the event name."""
        return self.publish(ChangeEvent(table=name, type=DOMAIN_EVENT, new=dict(payload)))


@dataclass
class RecordedEvents:
    """Collects every event published on a set of tables (for observers and tests)."""
    events: list = field(default_factory=list)

    def __call__(self, event: ChangeEvent) -> None:
        self.events.append(event)

    def of(self, table: str) -> list:
        return [e for e in self.events if e.table == table]


def current_channel():
    """The application's channel, or None outside an app context."""
    if not has_app_context():
        return None
    return current_app.extensions.get(CHANNEL_EXTENSION)
