# Overview: Propagates completed supplier purchases into product stock and serialized units.

"""
Supplier-to-Inventory Synchronizer

Triggers (at-least-once):
- supplier_transactions UPDATE to completed purchase -> sync every item
- supplier_transaction_items INSERT/UPDATE           -> sync that item
- supplier_transaction_items DELETE                  -> compensate

Idempotence:
- non-serialized stock: the ledger holds what item N has applied so far;
  only item.quantity - applied is added, with an atomic increment.
- serialized stock follows units: +1 for every unit this item makes
  available, -1 for every unit it parks on deletion. A unit that is already
  available, sold or orphaned moves nothing.
- units: matched by serial within the product; an existing serial is claimed,
  never duplicated. Claimed/created ids are written back to product_unit_ids.
- sold units keep their status; only pricing/attributes are refreshed.

Pricing precedence per unit: the entry's own price/min/max, then the line's
flat unit_cost for price. purchase_price is always the line's unit_cost.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app, has_app_context

from ..channel import (
    DOMAIN_STOCK_CHANGED,
    DOMAIN_UNIT_STATUS_CHANGED,
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    ChangeEvent,
    current_channel,
)
from ..extensions import db
from ..models import Product, ProductUnit, SupplierTransaction, SupplierTransactionItem
from ..models.inventory import (
    MOVEMENT_SUPPLIER_ITEM,
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_ORPHANED,
    UNIT_STATUS_PENDING,
    UNIT_STATUS_SOLD,
)
from ..models.suppliers import (
    TRANSACTION_STATUS_COMPLETED,
    TRANSACTION_TYPE_PURCHASE,
)
from invsync.time_utils import utcnow
from .concurrency import run_with_retry
from .inventory_service import applied_quantity, increment_stock
from .pricing import round_money

logger = logging.getLogger(__name__)


class SynchronizationError(Exception):
    """Raised inside a sync when an item cannot be propagated (missing rows)."""


@dataclass
class SyncResult:
    item_id: Optional[int] = None
    product_id: Optional[int] = None
    success: bool = True
    skipped: bool = False
    errors: list = field(default_factory=list)
    stock_delta: int = 0
    units_created: list = field(default_factory=list)
    units_updated: list = field(default_factory=list)
    status_changes: list = field(default_factory=list)

    def fail(self, message: str) -> "SyncResult":
        self.success = False
        self.errors.append(message)
        return self

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "success": self.success,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "stock_delta": self.stock_delta,
            "units_created": list(self.units_created),
            "units_updated": list(self.units_updated),
        }


@dataclass
class BatchSyncResult:
    transaction_id: Optional[int] = None
    results: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    skipped: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and all(r.success for r in self.results)

    @property
    def all_errors(self) -> list:
        collected = list(self.errors)
        for r in self.results:
            collected.extend(r.errors)
        return collected

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "success": self.success,
            "skipped": self.skipped,
            "errors": self.all_errors,
            "stock_delta": sum(r.stock_delta for r in self.results),
            "items": [r.to_dict() for r in self.results],
        }


class SubscriptionHandle:
    """Keeps the channel subscriptions of one started synchronizer."""

    def __init__(self, subscriptions):
        self._subscriptions = list(subscriptions)

    @property
    def active(self) -> bool:
        return any(s.active for s in self._subscriptions)

    def stop(self) -> None:
        for sub in self._subscriptions:
            sub.stop()
        self._subscriptions = []


def _price_fields(entry, unit_cost) -> dict:
    values = {"price": entry.price if entry is not None and entry.price is not None else unit_cost}
    if entry is not None:
        if entry.min_price is not None:
            values["min_price"] = entry.min_price
        if entry.max_price is not None:
            values["max_price"] = entry.max_price
        values.update(entry.attribute_overrides())
    return values


def _entered_available(status_changes) -> int:
    return sum(1 for _, old, new in status_changes if new == UNIT_STATUS_AVAILABLE and old != UNIT_STATUS_AVAILABLE)


def _left_available(status_changes) -> int:
    return sum(1 for _, old, new in status_changes if old == UNIT_STATUS_AVAILABLE and new != UNIT_STATUS_AVAILABLE)


class SupplierInventorySynchronizer:
    def __init__(self, session=None, channel=None, *, attempts: int = 3, backoff_base: float = 0.1):
        self.session = session or db.session
        self.channel = channel
        self.attempts = attempts
        self.backoff_base = backoff_base
        self._handle: Optional[SubscriptionHandle] = None

    # -- lifecycle ------------------------------------------------------------

    def start(self, channel=None) -> SubscriptionHandle:
        if self._handle is not None and self._handle.active:
            return self._handle
        if channel is not None:
            self.channel = channel
        if self.channel is None:
            raise ValueError("A channel is required to start the synchronizer")

        self._handle = SubscriptionHandle([
            self.channel.subscribe("supplier_transactions", self._on_transaction_update, event_types=[EVENT_UPDATE]),
            self.channel.subscribe(
                "supplier_transaction_items", self._on_item_upsert, event_types=[EVENT_INSERT, EVENT_UPDATE]
            ),
            self.channel.subscribe("supplier_transaction_items", self._on_item_delete, event_types=[EVENT_DELETE]),
        ])
        logger.info("Supplier inventory synchronizer started")
        return self._handle

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.stop()
            self._handle = None
            logger.info("Supplier inventory synchronizer stopped")

    # -- event handlers -------------------------------------------------------

    def _on_transaction_update(self, change: ChangeEvent) -> None:
        new = change.new or {}
        if new.get("status") == TRANSACTION_STATUS_COMPLETED and new.get("type") == TRANSACTION_TYPE_PURCHASE:
            self.synchronize_transaction(new["id"])

    def _on_item_upsert(self, change: ChangeEvent) -> None:
        self.synchronize_item(change.row_id)

    def _on_item_delete(self, change: ChangeEvent) -> None:
        self.compensate_deleted_item(change.old or {})

    # -- events out -----------------------------------------------------------

    def _publish(self, result: SyncResult) -> None:
        if self.channel is None:
            return
        if result.stock_delta:
            self.channel.emit(DOMAIN_STOCK_CHANGED, {
                "product_id": result.product_id,
                "delta": result.stock_delta,
                "source_type": MOVEMENT_SUPPLIER_ITEM,
                "source_id": result.item_id,
            })
        for unit_id, old_status, new_status in result.status_changes:
            self.channel.emit(DOMAIN_UNIT_STATUS_CHANGED, {
                "unit_id": unit_id,
                "product_id": result.product_id,
                "old_status": old_status,
                "new_status": new_status,
            })

    def _run(self, label: str, result_factory, op) -> SyncResult:
        try:
            result = run_with_retry(op, session=self.session, attempts=self.attempts, backoff_base=self.backoff_base)
        except SynchronizationError as exc:
            self.session.rollback()
            logger.error("Failed to sync %s: %s", label, exc)
            return result_factory().fail(str(exc))
        except Exception as exc:
            self.session.rollback()
            logger.exception("Failed to sync %s", label)
            return result_factory().fail(f"Failed to sync {label}: {exc}")

        self._publish(result)
        return result

    # -- synchronize ----------------------------------------------------------

    def _journal(self, item_id: int, product_id: int, delta: int, note: str, result: SyncResult) -> None:
        if not delta:
            return
        increment_stock(
            self.session,
            product_id=product_id,
            delta=delta,
            source_type=MOVEMENT_SUPPLIER_ITEM,
            source_id=item_id,
            note=note,
        )
        result.stock_delta += delta

    def _apply_to_unit(self, unit: ProductUnit, entry, item: SupplierTransactionItem, result: SyncResult) -> None:
        values = {"purchase_price": item.unit_cost}
        values.update(_price_fields(entry, item.unit_cost))

        changed = False
        for name, value in values.items():
            if getattr(unit, name) != value:
                setattr(unit, name, value)
                changed = True
        if unit.purchase_date is None:
            unit.purchase_date = utcnow()
            changed = True

        if unit.status not in (UNIT_STATUS_SOLD, UNIT_STATUS_AVAILABLE, UNIT_STATUS_ORPHANED):
            result.status_changes.append((unit.id, unit.status, UNIT_STATUS_AVAILABLE))
            unit.status = UNIT_STATUS_AVAILABLE
            changed = True

        if changed:
            result.units_updated.append(unit.id)

    def _synchronize_item(self, item_id: int) -> SyncResult:
        result = SyncResult(item_id=item_id)

        item = self.session.get(SupplierTransactionItem, item_id)
        if item is None:
            raise SynchronizationError(f"Supplier item {item_id} not found")
        result.product_id = item.product_id

        tx = item.transaction
        if tx is None or not tx.is_completed_purchase:
            result.skipped = True
            return result

        product = self.session.get(Product, item.product_id)
        if product is None:
            raise SynchronizationError(f"Product {item.product_id} not found for sync")

        note = f"Supplier transaction {tx.transaction_number}"
        if not product.has_serial:
            applied = applied_quantity(self.session, source_type=MOVEMENT_SUPPLIER_ITEM, source_id=item.id)
            self._journal(item.id, product.id, item.quantity - applied, note, result)

        entries = item.entries
        by_serial = {e.serial: e for e in entries}
        unit_ids = item.unit_ids

        units = []
        if unit_ids:
            units = self.session.query(ProductUnit).filter(ProductUnit.id.in_(unit_ids)).order_by(ProductUnit.id).all()
            missing = set(unit_ids) - {u.id for u in units}
            if missing:
                logger.warning("Supplier item %s references missing units %s", item.id, sorted(missing))
        known_serials = {u.serial_number for u in units}

        for entry in entries:
            if entry.serial in known_serials:
                continue
            existing = self.session.query(ProductUnit).filter_by(
                product_id=product.id, serial_number=entry.serial
            ).first()
            if existing is not None:
                units.append(existing)
            elif product.has_serial:
                unit = ProductUnit(
                    product_id=product.id,
                    serial_number=entry.serial,
                    status=UNIT_STATUS_AVAILABLE,
                    purchase_price=item.unit_cost,
                    purchase_date=utcnow(),
                    **_price_fields(entry, item.unit_cost),
                )
                self.session.add(unit)
                self.session.flush()
                units.append(unit)
                result.units_created.append(unit.id)
                result.status_changes.append((unit.id, None, UNIT_STATUS_AVAILABLE))
            else:
                logger.info("Ignoring unit entry %s: product %s is not serialized", entry.serial, product.id)
            known_serials.add(entry.serial)

        created = set(result.units_created)
        for unit in units:
            if unit.id not in created:
                self._apply_to_unit(unit, by_serial.get(unit.serial_number), item, result)

        if product.has_serial:
            self._journal(item.id, product.id, _entered_available(result.status_changes), note, result)

        new_ids = [u.id for u in units]
        missing_ids = [i for i in unit_ids if i not in new_ids]
        if new_ids + missing_ids != unit_ids:
            item.product_unit_ids = new_ids + missing_ids

        self.session.commit()
        logger.info(
            "Synced supplier item %s: stock %+d, %d units created, %d updated",
            item.id, result.stock_delta, len(result.units_created), len(result.units_updated),
        )
        return result

    def synchronize_item(self, item_id: int) -> SyncResult:
        return self._run(
            f"supplier item {item_id}",
            lambda: SyncResult(item_id=item_id),
            lambda: self._synchronize_item(item_id),
        )

    def synchronize_transaction(self, transaction_id: int) -> BatchSyncResult:
        batch = BatchSyncResult(transaction_id=transaction_id)
        tx = self.session.get(SupplierTransaction, transaction_id)
        if tx is None:
            batch.errors.append(f"Supplier transaction {transaction_id} not found")
            return batch
        if not tx.is_completed_purchase:
            batch.skipped = True
            return batch

        item_ids = [
            row.id for row in self.session.query(SupplierTransactionItem.id)
            .filter_by(transaction_id=transaction_id)
            .order_by(SupplierTransactionItem.id)
        ]
        for item_id in item_ids:
            batch.results.append(self.synchronize_item(item_id))
        return batch

    def sync_all_completed(self) -> list[BatchSyncResult]:
        """Full resync of every completed purchase; no-op for already applied items."""
        tx_ids = [
            row.id for row in self.session.query(SupplierTransaction.id).filter_by(
                type=TRANSACTION_TYPE_PURCHASE, status=TRANSACTION_STATUS_COMPLETED
            ).order_by(SupplierTransaction.id)
        ]
        return [self.synchronize_transaction(tx_id) for tx_id in tx_ids]

    # -- compensation ---------------------------------------------------------

    def _compensate(self, snapshot: dict) -> SyncResult:
        item_id = snapshot.get("id")
        product_id = snapshot.get("product_id")
        result = SyncResult(item_id=item_id, product_id=product_id)

        for unit_id in snapshot.get("product_unit_ids") or []:
            unit = self.session.get(ProductUnit, int(unit_id))
            if unit is None or unit.status in (UNIT_STATUS_SOLD, UNIT_STATUS_PENDING, UNIT_STATUS_ORPHANED):
                continue
            if product_id is not None and unit.product_id != product_id:
                continue
            result.status_changes.append((unit.id, unit.status, UNIT_STATUS_PENDING))
            unit.status = UNIT_STATUS_PENDING
            result.units_updated.append(unit.id)

        product = self.session.get(Product, product_id) if product_id is not None else None
        if product is not None:
            if product.has_serial:
                delta = -_left_available(result.status_changes)
            else:
                delta = -applied_quantity(self.session, source_type=MOVEMENT_SUPPLIER_ITEM, source_id=item_id)
            self._journal(item_id, product_id, delta, "Supplier item removed", result)

        self.session.commit()
        return result

    def compensate_deleted_item(self, snapshot: dict) -> SyncResult:
        """
        Undo what a deleted item applied: stock comes back out by the ledger
        amount and its units return to pending. Running it again changes
        nothing.
        """
        item_id = snapshot.get("id")
        return self._run(
            f"deletion of supplier item {item_id}",
            lambda: SyncResult(item_id=item_id, product_id=snapshot.get("product_id")),
            lambda: self._compensate(snapshot),
        )

    def delete_item(self, item_id: int) -> SyncResult:
        """Delete an acquisition line and compensate in the same call."""
        item = self.session.get(SupplierTransactionItem, item_id)
        if item is None:
            return SyncResult(item_id=item_id).fail(f"Supplier item {item_id} not found")
        snapshot = {
            "id": item.id,
            "product_id": item.product_id,
            "product_unit_ids": item.unit_ids,
        }
        tx = item.transaction
        if tx is not None:
            # the header total follows its lines
            tx.total_amount = round_money(max((tx.total_amount or 0) - item.total_cost, 0))
        self.session.delete(item)
        self.session.commit()
        return self.compensate_deleted_item(snapshot)


def synchronizer_from_config(session=None, channel=None) -> SupplierInventorySynchronizer:
    if has_app_context():
        return SupplierInventorySynchronizer(
            session,
            channel or current_channel(),
            attempts=current_app.config.get("RETRY_ATTEMPTS", 3),
            backoff_base=current_app.config.get("RETRY_BACKOFF", 0.1),
        )
    return SupplierInventorySynchronizer(session, channel)


def synchronize_acquisition_item(item_id: int, *, session=None, channel=None) -> SyncResult:
    return synchronizer_from_config(session, channel).synchronize_item(item_id)
