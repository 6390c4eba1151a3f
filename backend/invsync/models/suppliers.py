from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from typing import Any, Optional

from ..extensions import db
from invsync.time_utils import to_utc_z
from .inventory import money_column


TRANSACTION_TYPE_PURCHASE = "purchase"
TRANSACTION_TYPE_RETURN = "return"
TRANSACTION_TYPES = {TRANSACTION_TYPE_PURCHASE, TRANSACTION_TYPE_RETURN}

TRANSACTION_STATUS_PENDING = "pending"
TRANSACTION_STATUS_COMPLETED = "completed"
TRANSACTION_STATUS_CANCELLED = "cancelled"


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class UnitEntry:
    """
    Per-unit data carried by an acquisition line.

    Matched to ProductUnit rows by serial number. Any pricing field set here
    takes precedence over the line's flat unit_cost.
    """
    serial: str
    price: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    color: Optional[str] = None
    storage: Optional[int] = None
    ram: Optional[int] = None
    battery_level: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "UnitEntry":
        serial = data.get("serial") or data.get("serial_number")
        if not serial or not str(serial).strip():
            raise ValueError("unit entry requires a serial number")
        return cls(
            serial=str(serial).strip(),
            price=_as_float(data.get("price")),
            min_price=_as_float(data.get("min_price")),
            max_price=_as_float(data.get("max_price")),
            color=data.get("color") or None,
            storage=_as_int(data.get("storage")),
            ram=_as_int(data.get("ram")),
            battery_level=_as_int(data.get("battery_level")),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def attribute_overrides(self) -> dict:
        """Non-pricing attributes that are set on this entry."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name in ("color", "storage", "ram", "battery_level") and getattr(self, f.name) is not None
        }


class SupplierTransaction(db.Model):
    """
    Supplier acquisition header.

    Only type=purchase transactions in status=completed are propagated into
    stock and unit records by the synchronizer.
    """
    __tablename__ = "supplier_transactions"
    __table_args__ = (
        db.UniqueConstraint("transaction_number", name="uq_supplier_tx_number"),
        db.Index("ix_supplier_tx_type_status", "type", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_number = db.Column(db.String(64), nullable=False)
    supplier_name = db.Column(db.String(255), nullable=True)

    type = db.Column(db.String(16), nullable=False, default=TRANSACTION_TYPE_PURCHASE)
    status = db.Column(db.String(16), nullable=False, default=TRANSACTION_STATUS_PENDING, index=True)

    # sum of quantity * unit_cost over the lines, set when the document is created
    total_amount = money_column(nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_completed_purchase(self) -> bool:
        return self.type == TRANSACTION_TYPE_PURCHASE and self.status == TRANSACTION_STATUS_COMPLETED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_number": self.transaction_number,
            "supplier_name": self.supplier_name,
            "type": self.type,
            "status": self.status,
            "total_amount": self.total_amount,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SupplierTransactionItem(db.Model):
    """
    One line of a supplier acquisition.

    unit_entries: list of UnitEntry dicts (serial + per-unit pricing/attributes)
    product_unit_ids: ids of units created or claimed by this line, written
    back by the synchronizer so redelivered events update instead of create.
    """
    __tablename__ = "supplier_transaction_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("supplier_transactions.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_cost = money_column(nullable=False)

    unit_entries = db.Column(db.JSON, nullable=True)
    product_unit_ids = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    transaction = db.relationship("SupplierTransaction", backref=db.backref("items", lazy=True))
    product = db.relationship("Product")

    @property
    def entries(self) -> list[UnitEntry]:
        return [UnitEntry.from_dict(e) for e in (self.unit_entries or [])]

    @property
    def unit_ids(self) -> list[int]:
        return [int(i) for i in (self.product_unit_ids or [])]

    @property
    def total_cost(self) -> float:
        return round((self.quantity or 0) * (self.unit_cost or 0), 2)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost": self.unit_cost,
            "total_cost": self.total_cost,
            "unit_entries": list(self.unit_entries or []),
            "product_unit_ids": self.unit_ids,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
