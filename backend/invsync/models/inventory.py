from __future__ import annotations

from ..extensions import db
from invsync.time_utils import to_utc_z


# ProductUnit lifecycle
UNIT_STATUS_PENDING = "pending"
UNIT_STATUS_AVAILABLE = "available"
UNIT_STATUS_SOLD = "sold"
UNIT_STATUS_RETURNED = "returned"
UNIT_STATUS_ORPHANED = "orphaned"

UNIT_STATUSES = {
    UNIT_STATUS_PENDING,
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_SOLD,
    UNIT_STATUS_RETURNED,
    UNIT_STATUS_ORPHANED,
}

# Stock ledger sources
MOVEMENT_SUPPLIER_ITEM = "supplier_item"
MOVEMENT_SALE_ITEM = "sale_item"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_REPAIR = "repair"


def money_column(nullable: bool = True, **kwargs):
    """Two-decimal money column returned as float."""
    return db.Column(db.Numeric(12, 2, asdecimal=False), nullable=nullable, **kwargs)


class Product(db.Model):
    """
    Catalog entry.

    STOCK SEMANTICS:
    - has_serial=False: stock is a maintained counter. Every change goes through
      inventory_service.increment_stock(), which appends a StockMovement in the
      same DB transaction, so SUM(stock_movements.quantity_delta) is the
      expected counter.
    - has_serial=True: stock is a cache of COUNT(units WHERE status='available').
      It is never the source of truth.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_brand_model", "brand", "model"),
        db.Index("ix_products_has_serial", "has_serial"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    brand = db.Column(db.String(128), nullable=False)
    model = db.Column(db.String(255), nullable=False)

    has_serial = db.Column(db.Boolean, nullable=False, default=False)
    stock = db.Column(db.Integer, nullable=False, default=0)

    price = money_column()
    min_price = money_column()
    max_price = money_column()

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def display_name(self) -> str:
        return f"{self.brand} {self.model}".strip()

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.display_name!r} has_serial={self.has_serial} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "has_serial": self.has_serial,
            "stock": self.stock,
            "price": self.price,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductUnit(db.Model):
    """
    One physical serialized item.

    LIFECYCLE:
    - pending: created but its acquisition is not completed (or was removed)
    - available: in stock, sellable
    - sold: claimed by a sale item on an open sale
    - returned: back from a customer, not sellable until re-checked
    - orphaned: terminal marker written by the repair engine when the owning
      product no longer exists

    product_id is nullable with ON DELETE SET NULL so a deleted product leaves
    detectable orphans instead of silently destroying units that may carry
    sale history.
    """
    __tablename__ = "product_units"
    __table_args__ = (
        db.UniqueConstraint("product_id", "serial_number", name="uq_product_units_product_serial"),
        db.Index("ix_product_units_product_status", "product_id", "status"),
        db.Index("ix_product_units_serial", "serial_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey("products.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    serial_number = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=UNIT_STATUS_AVAILABLE, index=True)

    purchase_price = money_column()
    price = money_column()
    min_price = money_column()
    max_price = money_column()

    # Optional physical attributes
    color = db.Column(db.String(64), nullable=True)
    storage = db.Column(db.Integer, nullable=True)
    ram = db.Column(db.Integer, nullable=True)
    battery_level = db.Column(db.Integer, nullable=True)

    purchase_date = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("units", lazy=True, passive_deletes=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductUnit id={self.id} product_id={self.product_id} serial={self.serial_number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "serial_number": self.serial_number,
            "status": self.status,
            "purchase_price": self.purchase_price,
            "price": self.price,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "color": self.color,
            "storage": self.storage,
            "ram": self.ram,
            "battery_level": self.battery_level,
            "purchase_date": to_utc_z(self.purchase_date) if self.purchase_date else None,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only stock ledger.

    One row per applied change to Product.stock, keyed by the source that
    caused it. SUM(quantity_delta) per (source_type, source_id) is the amount
    that source has contributed so far; the synchronizer uses it to make
    redelivered events idempotent.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_source", "source_type", "source_id"),
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(
        db.Integer,
        db.ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    source_type = db.Column(db.String(32), nullable=False)
    source_id = db.Column(db.Integer, nullable=True)

    quantity_delta = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "quantity_delta": self.quantity_delta,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
