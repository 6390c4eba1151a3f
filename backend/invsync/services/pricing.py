# Overview: Price ledger for sales being composed; pure arithmetic, no I/O.

"""
Price Ledger Invariants (authoritative)

- items_total = SUM(quantity * unit_price)
- VAT included:  base_subtotal = items_total / (1 + rate), pre_discount_total = items_total
  VAT excluded:  base_subtotal = items_total,               pre_discount_total = base + tax
- Percentage discounts apply to base_subtotal BEFORE VAT; tax is recomputed on
  the discounted subtotal.
- Amount discounts apply to pre_discount_total AFTER VAT and are clamped to it;
  displayed subtotal/tax stay at their pre-discount values.
- Monetary outputs are rounded half-up to cents.
- Validation problems are returned as a list; nothing here raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional

DEFAULT_VAT_RATE = 0.22
PAYMENT_TOLERANCE = 0.01

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_AMOUNT = "amount"

PAYMENT_METHOD_HYBRID = "hybrid"


def round_money(value: float) -> float:
    """Round half-up to cents."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def gross_from_net(net_amount: float, vat_rate: float = DEFAULT_VAT_RATE) -> float:
    """Price including VAT for a net amount (inverse of the VAT-included split)."""
    return net_amount * (1 + vat_rate)


@dataclass(frozen=True)
class Discount:
    type: Optional[str] = None
    value: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.type in (DISCOUNT_PERCENTAGE, DISCOUNT_AMOUNT) and self.value > 0


@dataclass(frozen=True)
class PaymentSplit:
    cash: float = 0.0
    card: float = 0.0
    bank_transfer: float = 0.0

    @property
    def total(self) -> float:
        return self.cash + self.card + self.bank_transfer


@dataclass(frozen=True)
class LedgerSummary:
    subtotal: float
    discount_amount: float
    tax_amount: float
    total_amount: float
    pre_discount_total: float
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
        }


def _item_value(item: Any, name: str, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def _item_label(item: Any) -> str:
    return _item_value(item, "product_name") or f"product {_item_value(item, 'product_id', '?')}"


def calculate_totals(
    items: Iterable[Any],
    *,
    vat_included: bool = True,
    discount: Optional[Discount] = None,
    payment_method: str = "cash",
    payment: Optional[PaymentSplit] = None,
    vat_rate: float = DEFAULT_VAT_RATE,
) -> LedgerSummary:
    """
    Compute the financial summary of a sale.

    items: objects or dicts exposing quantity and unit_price; has_serial,
    stock and product_name are used for validation when present.
    """
    items = list(items)
    discount = discount or Discount()
    errors: list[str] = []

    for item in items:
        quantity = _item_value(item, "quantity", 0) or 0
        unit_price = _item_value(item, "unit_price", 0) or 0
        if quantity <= 0:
            errors.append(f"Invalid quantity for {_item_label(item)}")
        if unit_price < 0:
            errors.append(f"Invalid price for {_item_label(item)}")

    items_total = sum(
        (_item_value(i, "quantity", 0) or 0) * (_item_value(i, "unit_price", 0) or 0) for i in items
    )

    if vat_included:
        base_subtotal = items_total / (1 + vat_rate)
        tax_amount = base_subtotal * vat_rate
        pre_discount_total = items_total
    else:
        base_subtotal = items_total
        tax_amount = base_subtotal * vat_rate
        pre_discount_total = base_subtotal + tax_amount

    discount_amount = 0.0
    total_amount = pre_discount_total

    if discount.is_active:
        if discount.type == DISCOUNT_PERCENTAGE:
            percentage = discount.value
            if percentage > 100:
                errors.append("Percentage discount cannot exceed 100%")
                percentage = 100.0
            discount_amount = base_subtotal * percentage / 100
            discounted_subtotal = base_subtotal - discount_amount
            tax_amount = discounted_subtotal * vat_rate
            total_amount = discounted_subtotal + tax_amount
        else:
            discount_amount = min(discount.value, pre_discount_total)
            total_amount = pre_discount_total - discount_amount
            tax_amount = base_subtotal * vat_rate

    if not items:
        errors.append("Add at least one product")

    for item in items:
        stock = _item_value(item, "stock")
        if not _item_value(item, "has_serial", False) and stock is not None:
            if (_item_value(item, "quantity", 0) or 0) > stock:
                errors.append(f"Insufficient stock for {_item_label(item)}")

    total_rounded = round_money(total_amount)

    if payment_method == PAYMENT_METHOD_HYBRID:
        paid = (payment or PaymentSplit()).total
        if abs(paid - total_rounded) > PAYMENT_TOLERANCE:
            errors.append("Hybrid payment must match the total")

    if discount.type == DISCOUNT_AMOUNT and discount.value > pre_discount_total:
        errors.append("Discount cannot exceed the total")

    return LedgerSummary(
        subtotal=round_money(base_subtotal),
        discount_amount=round_money(discount_amount),
        tax_amount=round_money(tax_amount),
        total_amount=total_rounded,
        pre_discount_total=round_money(pre_discount_total),
        errors=tuple(errors),
    )
