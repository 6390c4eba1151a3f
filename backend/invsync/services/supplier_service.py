# Overview: Supplier acquisition documents (create, complete); stock effects are left to the synchronizer.

from __future__ import annotations

import logging

from ..extensions import db
from ..models import Product, SupplierTransaction, SupplierTransactionItem, UnitEntry
from ..models.suppliers import (
    TRANSACTION_STATUS_CANCELLED,
    TRANSACTION_STATUS_COMPLETED,
    TRANSACTION_STATUS_PENDING,
    TRANSACTION_TYPES,
)
from .pricing import round_money

logger = logging.getLogger(__name__)


class SupplierTransactionError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _build_item(data: dict) -> SupplierTransactionItem:
    try:
        product_id = int(data["product_id"])
        quantity = int(data["quantity"])
        unit_cost = float(data["unit_cost"])
    except (KeyError, TypeError, ValueError):
        raise SupplierTransactionError("Each item needs product_id, quantity and unit_cost", details={"item": data})

    if quantity <= 0:
        raise SupplierTransactionError("quantity must be > 0", details={"product_id": product_id})
    if unit_cost < 0:
        raise SupplierTransactionError("unit_cost must be >= 0", details={"product_id": product_id})

    try:
        entries = [UnitEntry.from_dict(e) for e in (data.get("unit_entries") or [])]
    except ValueError as e:
        raise SupplierTransactionError(str(e), details={"product_id": product_id})

    serials = [e.serial for e in entries]
    if len(serials) != len(set(serials)):
        raise SupplierTransactionError("Duplicate serial numbers in unit entries", details={"product_id": product_id})

    return SupplierTransactionItem(
        product_id=product_id,
        quantity=quantity,
        unit_cost=unit_cost,
        unit_entries=[e.to_dict() for e in entries] or None,
        product_unit_ids=[int(i) for i in (data.get("product_unit_ids") or [])] or None,
    )


def create_transaction(
    *,
    transaction_number: str,
    items: list[dict],
    supplier_name: str | None = None,
    type: str = "purchase",
    notes: str | None = None,
    session=None,
) -> SupplierTransaction:
    """Create a pending acquisition with its lines."""
    session = session or db.session

    if not transaction_number:
        raise SupplierTransactionError("transaction_number is required")
    if type not in TRANSACTION_TYPES:
        raise SupplierTransactionError("Invalid transaction type", details={"type": type})
    if not items:
        raise SupplierTransactionError("At least one item is required")

    built = [_build_item(data) for data in items]
    missing = sorted({i.product_id for i in built} - {
        pid for (pid,) in session.query(Product.id).filter(Product.id.in_({i.product_id for i in built}))
    })
    if missing:
        raise SupplierTransactionError("Product not found", details={"product_ids": missing})

    tx = SupplierTransaction(
        transaction_number=transaction_number,
        supplier_name=supplier_name,
        type=type,
        status=TRANSACTION_STATUS_PENDING,
        total_amount=round_money(sum(item.total_cost for item in built)),
        notes=notes,
    )
    session.add(tx)
    session.flush()
    for item in built:
        item.transaction_id = tx.id
        session.add(item)

    session.commit()
    return tx


def complete_transaction(transaction_id: int, *, session=None) -> SupplierTransaction:
    """Mark an acquisition completed. Completing twice is a no-op."""
    session = session or db.session

    tx = session.get(SupplierTransaction, transaction_id)
    if tx is None:
        raise SupplierTransactionError("Supplier transaction not found", details={"transaction_id": transaction_id})
    if tx.status == TRANSACTION_STATUS_CANCELLED:
        raise SupplierTransactionError("Cancelled transactions cannot be completed")
    if tx.status != TRANSACTION_STATUS_COMPLETED:
        tx.status = TRANSACTION_STATUS_COMPLETED
        session.commit()
        logger.info("Supplier transaction %s completed", tx.transaction_number)
    return tx
