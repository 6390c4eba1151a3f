# Overview: Atomic sale commit, compensating item edits/deletes, and the SoldProductUnit projection.

"""
Sale Commit Invariants (authoritative)

- commit_sale() validates every line against the store before writing
  anything; on any problem nothing is written.
- A serialized line claims exactly one available unit that no other open sale
  item references. The unit becomes sold and the product's stock cache drops
  by one in the same transaction.
- Non-serialized lines decrement Product.stock through increment_stock(),
  journaled as sale_item movements.
- Releasing a claim (item deleted, serial changed or cleared, sale deleted)
  puts the unit back to available and restores stock. Releasing twice is a
  no-op.
- SoldProductUnit rows are written only by sync_sold_unit_projection(), from
  the current SaleItem row.
"""

from __future__ import annotations

import logging
import uuid

from ..extensions import db
from ..models import Product, ProductUnit, Sale, SaleItem, SoldProductUnit
from ..models.inventory import (
    MOVEMENT_SALE_ITEM,
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_SOLD,
)
from ..models.sales import OPEN_SALE_STATUSES, SALE_STATUS_COMPLETED, SALE_STATUS_PENDING
from invsync.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import InsufficientStockError, applied_quantity, increment_stock
from .pricing import round_money

logger = logging.getLogger(__name__)

_UNSET = object()


class SaleCommitError(Exception):
    """Raised for sale commit and sale edit errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SaleNotFoundError(SaleCommitError):
    """Raised when the sale or sale item does not exist."""


def generate_sale_number() -> str:
    return f"S-{utcnow():%Y%m%d}-{uuid.uuid4().hex[:8].upper()}"


def has_open_claim(session, *, product_id: int, serial_number: str, exclude_item_id: int | None = None) -> bool:
    """True when an item of an open sale already references this serial."""
    q = session.query(SaleItem.id).join(Sale, Sale.id == SaleItem.sale_id).filter(
        SaleItem.product_id == product_id,
        SaleItem.serial_number == serial_number,
        Sale.status.in_(OPEN_SALE_STATUSES),
    )
    if exclude_item_id is not None:
        q = q.filter(SaleItem.id != exclude_item_id)
    return session.query(q.exists()).scalar()


def _claimable_unit(session, product_id: int, serial_number: str, *, exclude_item_id=None):
    """Return (unit, error) for a serial about to be claimed."""
    unit = lock_for_update(
        session.query(ProductUnit).filter_by(product_id=product_id, serial_number=serial_number)
    ).first()
    if unit is None:
        return None, "Unit not found"
    if unit.status != UNIT_STATUS_AVAILABLE:
        return None, f"Unit is not available (status {unit.status})"
    if has_open_claim(session, product_id=product_id, serial_number=serial_number, exclude_item_id=exclude_item_id):
        return None, "Unit already belongs to another sale"
    return unit, None


def _claim(session, item: SaleItem, unit: ProductUnit | None) -> None:
    if unit is not None:
        unit.status = UNIT_STATUS_SOLD
        item.product_unit_id = unit.id
        increment_stock(
            session,
            product_id=item.product_id,
            delta=-1,
            source_type=MOVEMENT_SALE_ITEM,
            source_id=item.id,
            note=f"Sold unit {unit.serial_number}",
        )
    else:
        increment_stock(
            session,
            product_id=item.product_id,
            delta=-item.quantity,
            source_type=MOVEMENT_SALE_ITEM,
            source_id=item.id,
            floor=0,
        )


def _release(session, item: SaleItem) -> None:
    """Undo the stock/unit effects of an item. Safe to call repeatedly."""
    if item.serial_number:
        unit = None
        if item.product_unit_id is not None:
            unit = session.get(ProductUnit, item.product_unit_id)
        if unit is None:
            unit = session.query(ProductUnit).filter_by(
                product_id=item.product_id, serial_number=item.serial_number
            ).first()
        if unit is not None and unit.status == UNIT_STATUS_SOLD and unit.product_id == item.product_id:
            unit.status = UNIT_STATUS_AVAILABLE
            increment_stock(
                session,
                product_id=item.product_id,
                delta=1,
                source_type=MOVEMENT_SALE_ITEM,
                source_id=item.id,
                note=f"Released unit {unit.serial_number}",
            )
        return

    applied = applied_quantity(session, source_type=MOVEMENT_SALE_ITEM, source_id=item.id)
    if applied and session.get(Product, item.product_id) is not None:
        increment_stock(
            session,
            product_id=item.product_id,
            delta=-applied,
            source_type=MOVEMENT_SALE_ITEM,
            source_id=item.id,
            note="Sale item released",
        )


def _delete_projection(session, sale_item_id: int) -> None:
    session.query(SoldProductUnit).filter_by(sale_item_id=sale_item_id).delete(synchronize_session="fetch")


def sync_sold_unit_projection(sale_item_id: int, *, session=None) -> SoldProductUnit | None:
    """
    Bring the SoldProductUnit row of a sale item in line with the item as it
    is stored now. Deletes the projection when the item is gone, has no
    serial, or its sale is no longer open. Does not commit.
    """
    session = session or db.session

    item = session.query(SaleItem).populate_existing().filter_by(id=sale_item_id).first()
    projection = session.query(SoldProductUnit).filter_by(sale_item_id=sale_item_id).first()

    if item is None or not item.serial_number or item.sale is None or item.sale.status not in OPEN_SALE_STATUSES:
        if projection is not None:
            session.delete(projection)
            session.flush()
        return None

    if projection is None:
        projection = SoldProductUnit(
            sale_id=item.sale_id,
            sale_item_id=item.id,
            product_id=item.product_id,
            product_unit_id=item.product_unit_id,
            serial_number=item.serial_number,
            sold_price=item.unit_price,
            sold_at=utcnow(),
        )
        session.add(projection)
    elif (
        projection.serial_number != item.serial_number
        or projection.sold_price != item.unit_price
        or projection.product_unit_id != item.product_unit_id
        or projection.product_id != item.product_id
    ):
        projection.serial_number = item.serial_number
        projection.sold_price = item.unit_price
        projection.product_unit_id = item.product_unit_id
        projection.product_id = item.product_id
        projection.updated_at = utcnow()

    session.flush()
    return projection


def commit_sale(
    state,
    *,
    sale_number: str | None = None,
    status: str = SALE_STATUS_COMPLETED,
    session=None,
    attempts: int = 3,
    backoff_base: float = 0.1,
) -> Sale:
    """
    Persist a composed SaleState atomically.

    Raises SaleCommitError with per-line details when the state is invalid
    or any line no longer holds against the store.
    """
    session = session or db.session

    if status not in (SALE_STATUS_PENDING, SALE_STATUS_COMPLETED):
        raise SaleCommitError("Invalid sale status", details={"status": status})
    if not state.is_valid:
        raise SaleCommitError("Sale is not valid", details={"errors": state.errors})

    def _op():
        problems = []
        resolved = []
        for line in state.items:
            product = session.get(Product, line.product_id)
            if product is None:
                problems.append({"product_id": line.product_id, "error": "Product not found"})
                continue

            if product.has_serial:
                if not line.serial_number:
                    problems.append({"product_id": product.id, "error": "Serial number required"})
                    continue
                if line.quantity != 1:
                    problems.append({"product_id": product.id, "serial_number": line.serial_number,
                                     "error": "Serialized items must have quantity 1"})
                    continue
                unit, error = _claimable_unit(session, product.id, line.serial_number)
                if error:
                    problems.append({"product_id": product.id, "serial_number": line.serial_number, "error": error})
                    continue
                resolved.append((line, unit))
            else:
                if product.stock < line.quantity:
                    problems.append({
                        "product_id": product.id,
                        "requested_quantity": line.quantity,
                        "stock": product.stock,
                        "error": "Insufficient stock",
                    })
                    continue
                resolved.append((line, None))

        if problems:
            raise SaleCommitError("Sale could not be committed", details={"items": problems})

        form = state.form
        summary = state.summary
        sale = Sale(
            sale_number=sale_number or generate_sale_number(),
            status=status,
            client_id=form.client_id,
            payment_method=form.payment_method,
            payment_type=form.payment_type,
            cash_amount=form.cash_amount or 0,
            card_amount=form.card_amount or 0,
            bank_transfer_amount=form.bank_transfer_amount or 0,
            discount_type=form.discount_type,
            discount_value=form.discount_value or 0,
            vat_included=form.vat_included,
            subtotal=summary.subtotal,
            discount_amount=summary.discount_amount,
            tax_amount=summary.tax_amount,
            total_amount=summary.total_amount,
            notes=form.notes or None,
        )
        session.add(sale)
        session.flush()

        for line, unit in resolved:
            item = SaleItem(
                sale_id=sale.id,
                product_id=line.product_id,
                serial_number=line.serial_number if unit is not None else None,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=round_money(line.quantity * line.unit_price),
            )
            session.add(item)
            session.flush()
            try:
                _claim(session, item, unit)
            except InsufficientStockError as e:
                # another sale took the stock after the check above
                session.rollback()
                raise SaleCommitError("Sale could not be committed", details={"items": [{
                    "product_id": e.product_id,
                    "requested_quantity": line.quantity,
                    "stock": e.stock,
                    "error": "Insufficient stock",
                }]})
            session.flush()
            sync_sold_unit_projection(item.id, session=session)

        session.commit()
        logger.info("Committed sale %s with %d items", sale.sale_number, len(resolved))
        return sale

    return run_with_retry(_op, session=session, attempts=attempts, backoff_base=backoff_base)


def _load_item(session, item_id: int) -> SaleItem:
    item = lock_for_update(session.query(SaleItem).filter_by(id=item_id)).first()
    if item is None:
        raise SaleNotFoundError("Sale item not found", details={"sale_item_id": item_id})
    return item


def update_sale_item(
    item_id: int,
    *,
    serial_number=_UNSET,
    unit_price: float | None = None,
    session=None,
    attempts: int = 3,
    backoff_base: float = 0.1,
) -> SaleItem:
    """
    Change the serial and/or price of a committed item.

    A new serial claims its unit and releases the previous one; None clears
    the serial and releases the unit. The projection follows the result.
    """
    session = session or db.session

    def _op():
        item = _load_item(session, item_id)
        if item.sale.status not in OPEN_SALE_STATUSES:
            raise SaleCommitError("Sale is cancelled", details={"sale_id": item.sale_id})

        if unit_price is not None:
            if unit_price < 0:
                raise SaleCommitError("Invalid price", details={"unit_price": unit_price})
            item.unit_price = unit_price
            item.total_price = round_money(item.quantity * unit_price)

        if serial_number is not _UNSET:
            new_serial = (serial_number or "").strip() or None
            if new_serial != item.serial_number:
                product = session.get(Product, item.product_id)
                if new_serial is not None and (product is None or not product.has_serial):
                    raise SaleCommitError("Product is not serialized", details={"product_id": item.product_id})

                unit = None
                if new_serial is not None:
                    unit, error = _claimable_unit(session, item.product_id, new_serial, exclude_item_id=item.id)
                    if error:
                        raise SaleCommitError(error, details={"serial_number": new_serial})

                _release(session, item)
                item.serial_number = new_serial
                item.product_unit_id = None
                if unit is not None:
                    _claim(session, item, unit)

        session.flush()
        sync_sold_unit_projection(item.id, session=session)
        session.commit()
        return item

    return run_with_retry(_op, session=session, attempts=attempts, backoff_base=backoff_base)


def delete_sale_item(item_id: int, *, session=None, attempts: int = 3, backoff_base: float = 0.1) -> None:
    """Delete an item, restoring its stock/unit and dropping its projection."""
    session = session or db.session

    def _op():
        item = _load_item(session, item_id)
        if item.sale.status in OPEN_SALE_STATUSES:
            _release(session, item)
        _delete_projection(session, item.id)
        session.delete(item)
        session.commit()

    run_with_retry(_op, session=session, attempts=attempts, backoff_base=backoff_base)


def delete_sale(sale_id: int, *, session=None, attempts: int = 3, backoff_base: float = 0.1) -> None:
    """Delete a sale and compensate every item."""
    session = session or db.session

    def _op():
        sale = lock_for_update(session.query(Sale).filter_by(id=sale_id)).first()
        if sale is None:
            raise SaleNotFoundError("Sale not found", details={"sale_id": sale_id})

        item_ids = []
        for item in session.query(SaleItem).filter_by(sale_id=sale.id).all():
            if sale.status in OPEN_SALE_STATUSES:
                _release(session, item)
            item_ids.append(item.id)
            _delete_projection(session, item.id)
            session.delete(item)
        session.flush()

        session.delete(sale)
        session.commit()
        logger.info("Deleted sale %s (%d items released)", sale_id, len(item_ids))

    run_with_retry(_op, session=session, attempts=attempts, backoff_base=backoff_base)
