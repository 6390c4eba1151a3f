# Overview: Batched effective-stock reads used by sale composition and the integrity checker.

from __future__ import annotations

from sqlalchemy import case, func

from ..models import Product, ProductUnit
from ..models.inventory import UNIT_STATUS_AVAILABLE


def _effective_stock_query(session):
    available_units = func.count(
        case((ProductUnit.status == UNIT_STATUS_AVAILABLE, ProductUnit.id))
    )
    return session.query(
        Product.id,
        Product.has_serial,
        Product.stock,
        available_units.label("available_units"),
    ).outerjoin(
        ProductUnit, ProductUnit.product_id == Product.id
    ).group_by(Product.id, Product.has_serial, Product.stock)


def get_effective_stock(session, product_ids) -> dict[int, int]:
    """
    Effective stock per product in a single round trip.

    Serialized products: COUNT(units WHERE status='available').
    Others: the stored counter. Unknown ids are left out of the result.
    """
    ids = {int(pid) for pid in product_ids}
    if not ids:
        return {}

    rows = _effective_stock_query(session).filter(Product.id.in_(ids)).all()
    return {
        row.id: int(row.available_units) if row.has_serial else int(row.stock or 0)
        for row in rows
    }


def stock_snapshot(session, product_ids=None) -> list[dict]:
    """Recorded counter and available-unit count side by side (one query)."""
    q = _effective_stock_query(session)
    if product_ids is not None:
        q = q.filter(Product.id.in_([int(p) for p in product_ids]))
    return [
        {
            "product_id": row.id,
            "has_serial": bool(row.has_serial),
            "recorded": int(row.stock or 0),
            "available_units": int(row.available_units),
        }
        for row in q.order_by(Product.id).all()
    ]
