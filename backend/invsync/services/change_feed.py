# Overview: Publishes row-level change events for watched models after each successful commit.

"""
ORM Change Feed

- after_flush collects INSERT/UPDATE/DELETE snapshots of watched rows into
  session.info; after_commit moves them to an outbox; rollback discards them.
- Counter writes done by increment_stock() are bulk UPDATEs the unit of work
  never sees; they are published as products UPDATE events carrying
  {"id", "stock_delta"}.
- Events are delivered by deliver_pending(), never from inside a session
  event, so subscribers may use the session and commit.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import event, inspect

from ..channel import EVENT_DELETE, EVENT_INSERT, EVENT_UPDATE, ChangeEvent
from ..models import (
    Product,
    ProductUnit,
    SaleItem,
    SupplierTransaction,
    SupplierTransactionItem,
)
from .inventory_service import PENDING_STOCK_CHANGES

logger = logging.getLogger(__name__)

PENDING_ROW_EVENTS = "invsync_row_events"

DEFAULT_WATCHED = (
    Product,
    ProductUnit,
    SaleItem,
    SupplierTransaction,
    SupplierTransactionItem,
)


def _row_snapshot(obj) -> dict:
    """Loaded column values only; never triggers a lazy load."""
    state = inspect(obj)
    return {attr.key: state.dict.get(attr.key) for attr in state.mapper.column_attrs}


def _previous_snapshot(obj, current: dict) -> dict:
    state = inspect(obj)
    old = dict(current)
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            old[attr.key] = history.deleted[0]
    return old


class ChangeFeed:
    def __init__(self, channel, watched: Optional[Iterable[type]] = None, max_rounds: int = 10):
        self.channel = channel
        self.tables = {model: model.__tablename__ for model in (watched or DEFAULT_WATCHED)}
        self.max_rounds = max_rounds
        self._outbox: list[ChangeEvent] = []
        self._target = None
        self._listeners = (
            ("after_flush", self._after_flush),
            ("after_commit", self._after_commit),
            ("after_rollback", self._after_rollback),
        )

    @property
    def attached(self) -> bool:
        return self._target is not None

    @property
    def pending(self) -> int:
        return len(self._outbox)

    def attach(self, session) -> "ChangeFeed":
        if self._target is not None:
            return self
        for name, fn in self._listeners:
            event.listen(session, name, fn)
        self._target = session
        return self

    def detach(self) -> None:
        if self._target is None:
            return
        for name, fn in self._listeners:
            if event.contains(self._target, name, fn):
                event.remove(self._target, name, fn)
        self._target = None
        self._outbox.clear()

    # -- session hooks --------------------------------------------------------

    def _table_for(self, obj) -> Optional[str]:
        return self.tables.get(type(obj))

    def _after_flush(self, session, flush_context) -> None:
        collected = session.info.setdefault(PENDING_ROW_EVENTS, [])

        for obj in session.new:
            table = self._table_for(obj)
            if table:
                collected.append(ChangeEvent(table=table, type=EVENT_INSERT, new=_row_snapshot(obj)))

        for obj in session.dirty:
            table = self._table_for(obj)
            if table and session.is_modified(obj, include_collections=False):
                current = _row_snapshot(obj)
                collected.append(ChangeEvent(
                    table=table,
                    type=EVENT_UPDATE,
                    new=current,
                    old=_previous_snapshot(obj, current),
                ))

        for obj in session.deleted:
            table = self._table_for(obj)
            if table:
                collected.append(ChangeEvent(table=table, type=EVENT_DELETE, old=_row_snapshot(obj)))

    def _after_commit(self, session) -> None:
        self._outbox.extend(session.info.pop(PENDING_ROW_EVENTS, []))
        for product_id, delta in session.info.pop(PENDING_STOCK_CHANGES, []):
            self._outbox.append(ChangeEvent(
                table="products",
                type=EVENT_UPDATE,
                new={"id": product_id, "stock_delta": delta},
            ))

    def _after_rollback(self, session) -> None:
        session.info.pop(PENDING_ROW_EVENTS, None)
        session.info.pop(PENDING_STOCK_CHANGES, None)

    # -- delivery -------------------------------------------------------------

    def deliver_pending(self) -> int:
        """
        Publish queued events in commit order.

        Subscribers that commit produce further events; those are delivered in
        the following round, up to max_rounds.
        """
        delivered = 0
        for _ in range(self.max_rounds):
            if not self._outbox:
                return delivered
            batch, self._outbox = self._outbox, []
            for change in batch:
                self.channel.publish(change)
                delivered += 1
        if self._outbox:
            logger.warning("Change feed still has %d events after %d rounds", len(self._outbox), self.max_rounds)
        return delivered
