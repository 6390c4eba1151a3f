from __future__ import annotations

from ..extensions import db
from invsync.time_utils import to_utc_z
from .inventory import money_column


SALE_STATUS_PENDING = "pending"
SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_CANCELLED = "cancelled"

# Sales whose items are live claims on units and stock
OPEN_SALE_STATUSES = (SALE_STATUS_PENDING, SALE_STATUS_COMPLETED)


class Sale(db.Model):
    """
    Committed sale header.

    Totals are snapshotted from the price ledger at commit time. A sale is
    "open" unless cancelled; items of open sales hold claims on units.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("sale_number", name="uq_sales_sale_number"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)
    client_id = db.Column(db.Integer, nullable=True, index=True)

    payment_method = db.Column(db.String(32), nullable=False, default="cash")
    payment_type = db.Column(db.String(16), nullable=False, default="single")
    cash_amount = money_column(nullable=False, default=0)
    card_amount = money_column(nullable=False, default=0)
    bank_transfer_amount = money_column(nullable=False, default=0)

    discount_type = db.Column(db.String(16), nullable=True)
    discount_value = money_column(nullable=False, default=0)

    vat_included = db.Column(db.Boolean, nullable=False, default=True)
    subtotal = money_column(nullable=False, default=0)
    discount_amount = money_column(nullable=False, default=0)
    tax_amount = money_column(nullable=False, default=0)
    total_amount = money_column(nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_number": self.sale_number,
            "status": self.status,
            "client_id": self.client_id,
            "payment_method": self.payment_method,
            "payment_type": self.payment_type,
            "cash_amount": self.cash_amount,
            "card_amount": self.card_amount,
            "bank_transfer_amount": self.bank_transfer_amount,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "vat_included": self.vat_included,
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "notes": self.notes,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SaleItem(db.Model):
    """
    Individual line on a sale.

    Serialized products: quantity is always 1 and serial_number resolves to
    exactly one ProductUnit of the same product. needs_review is set by the
    repair engine; sales history is never deleted automatically.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.Index("ix_sale_items_product_serial", "product_id", "serial_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id"), nullable=True, index=True)
    serial_number = db.Column(db.String(128), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = money_column(nullable=False)
    total_price = money_column(nullable=False)

    needs_review = db.Column(db.Boolean, nullable=False, default=False, index=True)
    review_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True))
    product = db.relationship("Product")
    product_unit = db.relationship("ProductUnit")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_unit_id": self.product_unit_id,
            "serial_number": self.serial_number,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "needs_review": self.needs_review,
            "review_reason": self.review_reason,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
        }


class SoldProductUnit(db.Model):
    """
    Historical record of a sold serialized unit.

    Projection of SaleItem rows: written only by
    sale_service.sync_sold_unit_projection(), which reads the current SaleItem
    row. Nothing else may insert, update or delete these rows.
    """
    __tablename__ = "sold_product_units"
    __table_args__ = (
        db.UniqueConstraint("sale_item_id", name="uq_sold_product_units_sale_item"),
        db.Index("ix_sold_product_units_serial", "serial_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_unit_id = db.Column(db.Integer, db.ForeignKey("product_units.id"), nullable=True, index=True)
    serial_number = db.Column(db.String(128), nullable=False)

    sold_price = money_column(nullable=False)
    sold_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sale = db.relationship("Sale")
    sale_item = db.relationship("SaleItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "sale_item_id": self.sale_item_id,
            "product_id": self.product_id,
            "product_unit_id": self.product_unit_id,
            "serial_number": self.serial_number,
            "sold_price": self.sold_price,
            "sold_at": to_utc_z(self.sold_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }
