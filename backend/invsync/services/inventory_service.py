# Overview: Stock counter writes and the stock ledger; every Product.stock change goes through here.

"""
Stock Ledger Invariants (authoritative)

- Product.stock is only changed by increment_stock(), as a single
  UPDATE products SET stock = stock + :delta statement, or by the repair
  path overwrite_stock(), a compare-and-set guarded by the value it read.
  Never read-compute-write across round trips.
- Decrements that must not oversell pass floor=0; the guard is part of the
  same UPDATE statement, so concurrent writers cannot both pass it.
- Each increment appends a StockMovement in the same DB transaction.
- For non-serialized products SUM(quantity_delta) is the expected counter.
- applied_quantity(source) is what a source (supplier item, sale item,
  adjustment, repair) has contributed so far; callers diff against it to make
  redelivery idempotent.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, update
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Product, StockMovement
from ..models.inventory import MOVEMENT_ADJUSTMENT, MOVEMENT_REPAIR
from invsync.time_utils import utcnow
from .concurrency import run_with_retry

logger = logging.getLogger(__name__)

# session.info key listing (product_id, delta) pairs written in the current transaction
PENDING_STOCK_CHANGES = "invsync_stock_changes"


class StockAdjustmentError(Exception):
    """Raised when a manual stock adjustment is rejected."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class InsufficientStockError(Exception):
    """A guarded decrement found less stock than it needed."""
    def __init__(self, product_id: int, stock: int, delta: int):
        super().__init__(f"Insufficient stock for product {product_id}: {stock} on hand, change {delta:+d}")
        self.product_id = product_id
        self.stock = stock
        self.delta = delta


def increment_stock(
    session,
    *,
    product_id: int,
    delta: int,
    source_type: str,
    source_id: int | None = None,
    note: str | None = None,
    floor: int | None = None,
) -> StockMovement | None:
    """
    Atomically add delta to Product.stock and journal it.

    floor: when set, the statement only applies if the resulting stock stays
    >= floor; otherwise InsufficientStockError is raised and nothing changes.
    Returns the StockMovement, or None when delta is 0. Does not commit.
    """
    if delta == 0:
        return None

    conditions = [Product.id == product_id]
    if floor is not None:
        conditions.append(Product.stock + delta >= floor)

    result = session.execute(
        update(Product)
        .where(*conditions)
        .values(stock=Product.stock + delta, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        current = session.query(Product.stock).filter(Product.id == product_id).scalar()
        if current is None:
            raise ValueError(f"Product {product_id} not found")
        raise InsufficientStockError(product_id, int(current), delta)

    movement = StockMovement(
        product_id=product_id,
        source_type=source_type,
        source_id=source_id,
        quantity_delta=delta,
        note=note,
    )
    session.add(movement)
    session.flush()

    session.info.setdefault(PENDING_STOCK_CHANGES, []).append((product_id, delta))
    logger.debug("Stock of product %s changed by %+d (%s %s)", product_id, delta, source_type, source_id)
    return movement


def overwrite_stock(
    session,
    *,
    product_id: int,
    expected: int,
    actual: int,
    journal: bool,
    note: str | None = None,
) -> int:
    """
    Set Product.stock to actual if it still equals expected.

    Raises StaleDataError when the counter moved in between, so callers under
    run_with_retry re-read and try again. journal=True records the difference
    as a repair movement (serialized products, whose ledger is informational).
    Returns the applied difference. Does not commit.
    """
    delta = actual - expected
    if delta == 0:
        return 0

    result = session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock == expected)
        .values(stock=actual, updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        raise StaleDataError(f"Stock of product {product_id} changed concurrently")

    if journal:
        session.add(StockMovement(
            product_id=product_id,
            source_type=MOVEMENT_REPAIR,
            quantity_delta=delta,
            note=note,
        ))
        session.flush()

    session.info.setdefault(PENDING_STOCK_CHANGES, []).append((product_id, delta))
    logger.info("Stock of product %s overwritten %s -> %s", product_id, expected, actual)
    return delta


def applied_quantity(session, *, source_type: str, source_id: int) -> int:
    """Net quantity a single source has contributed to stock so far."""
    value = session.query(
        func.coalesce(func.sum(StockMovement.quantity_delta), 0)
    ).filter(
        StockMovement.source_type == source_type,
        StockMovement.source_id == source_id,
    ).scalar()
    return int(value or 0)


def ledger_balances(session, product_ids=None) -> dict[int, int]:
    """SUM(quantity_delta) per product, in one grouped query."""
    q = session.query(
        StockMovement.product_id,
        func.coalesce(func.sum(StockMovement.quantity_delta), 0),
    ).group_by(StockMovement.product_id)
    if product_ids is not None:
        q = q.filter(StockMovement.product_id.in_(list(product_ids)))
    return {int(pid): int(total) for pid, total in q.all()}


def create_product(
    *,
    brand: str,
    model: str,
    has_serial: bool = False,
    opening_stock: int = 0,
    price: float | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    session=None,
) -> Product:
    """
    Create a catalog entry.

    Non-serialized opening stock is journaled as an adjustment so the ledger
    explains the counter from day one. Serialized products always start at 0;
    their stock follows units.
    """
    session = session or db.session
    if opening_stock < 0:
        raise StockAdjustmentError("Opening stock cannot be negative")
    if has_serial and opening_stock:
        raise StockAdjustmentError("Serialized products take their stock from units")

    product = Product(
        brand=brand,
        model=model,
        has_serial=has_serial,
        stock=0,
        price=price,
        min_price=min_price,
        max_price=max_price,
    )
    session.add(product)
    session.flush()

    if opening_stock:
        increment_stock(
            session,
            product_id=product.id,
            delta=opening_stock,
            source_type=MOVEMENT_ADJUSTMENT,
            note="Opening stock",
        )

    session.commit()
    return product


def adjust_stock(
    *,
    product_id: int,
    quantity_delta: int,
    note: str | None = None,
    session=None,
    attempts: int = 3,
    backoff_base: float = 0.1,
) -> Product:
    """
    Manual stock correction for a non-serialized product.

    Serialized stock cannot be adjusted by hand: change unit statuses instead.
    """
    session = session or db.session

    if quantity_delta == 0:
        raise StockAdjustmentError("quantity_delta must be non-zero")

    def _op():
        product = session.get(Product, product_id)
        if product is None:
            raise StockAdjustmentError("Product not found", details={"product_id": product_id})
        if product.has_serial:
            raise StockAdjustmentError(
                "Serialized product stock follows its units",
                details={"product_id": product_id},
            )
        try:
            increment_stock(
                session,
                product_id=product_id,
                delta=quantity_delta,
                source_type=MOVEMENT_ADJUSTMENT,
                note=note or "Manual adjustment",
                floor=0,
            )
        except InsufficientStockError as e:
            session.rollback()
            raise StockAdjustmentError(
                "Adjustment would make stock negative",
                details={"product_id": product_id, "stock": e.stock, "quantity_delta": quantity_delta},
            )
        session.commit()
        session.refresh(product)
        return product

    return run_with_retry(_op, session=session, attempts=attempts, backoff_base=backoff_base)
