# Overview: Read-only consistency checks across product stock, units and sale records.

"""
Integrity Checker

Findings (each carries ids, serials and a reason string):
- stock mismatch: stored Product.stock vs actual (available units for
  serialized products, ledger sum for the rest); difference = actual - recorded
- orphaned unit: unit whose product row is gone, not yet marked orphaned
- invalid serial sale: open SaleItem / SoldProductUnit whose serial does not
  resolve to a unit of the same product (or the product is not serialized),
  serials claimed twice, and projections pointing at a unit that is not sold
- inconsistent status: sold without any open sale reference, or
  available/pending while an open sale item claims it

The checker never writes. All reads are a fixed number of queries regardless
of catalog size.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Optional

from ..extensions import db
from ..models import Product, ProductUnit, Sale, SaleItem, SoldProductUnit
from ..models.inventory import (
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_ORPHANED,
    UNIT_STATUS_PENDING,
    UNIT_STATUS_SOLD,
)
from ..models.sales import OPEN_SALE_STATUSES
from invsync.time_utils import to_utc_z, utcnow
from .inventory_service import ledger_balances
from .stock_query import stock_snapshot

logger = logging.getLogger(__name__)

SOURCE_SALE_ITEM = "sale_item"
SOURCE_SOLD_UNIT = "sold_product_unit"

ISSUE_NOT_SERIALIZED = "Serial number assigned to non-serialized product"
ISSUE_UNIT_MISSING = "Serial number does not exist as product unit"
ISSUE_UNIT_OTHER_PRODUCT = "Unit belongs to a different product"
ISSUE_PRODUCT_MISSING = "Product no longer exists"
ISSUE_DUPLICATE_CLAIM = "Serial number claimed by more than one open sale"
ISSUE_PROJECTION_NOT_SOLD = "Sold unit record points to a unit that is not sold"


@dataclass(frozen=True)
class StockMismatch:
    product_id: int
    brand: str
    model: str
    has_serial: bool
    recorded: int
    actual: int
    difference: int


@dataclass(frozen=True)
class OrphanedUnit:
    unit_id: int
    product_id: Optional[int]
    serial_number: str
    status: str
    reason: str = ISSUE_PRODUCT_MISSING


@dataclass(frozen=True)
class InvalidSerialSale:
    source: str
    record_id: int
    sale_item_id: Optional[int]
    sale_id: int
    sale_number: str
    product_id: int
    serial_number: str
    issue: str
    needs_review: bool = False


@dataclass(frozen=True)
class InconsistentStatus:
    unit_id: int
    product_id: int
    serial_number: str
    unit_status: str
    expected_status: str
    issue: str


@dataclass
class IntegrityReport:
    stock_mismatches: list = field(default_factory=list)
    orphaned_units: list = field(default_factory=list)
    invalid_serial_sales: list = field(default_factory=list)
    inconsistent_statuses: list = field(default_factory=list)
    suggestions: list = field(default_factory=list)
    checked_at: Optional[object] = None

    @property
    def issue_count(self) -> int:
        return (
            len(self.stock_mismatches)
            + len(self.orphaned_units)
            + len(self.invalid_serial_sales)
            + len(self.inconsistent_statuses)
        )

    @property
    def is_consistent(self) -> bool:
        return self.issue_count == 0

    def to_dict(self) -> dict:
        return {
            "stock_mismatches": [asdict(m) for m in self.stock_mismatches],
            "orphaned_units": [asdict(o) for o in self.orphaned_units],
            "invalid_serial_sales": [asdict(i) for i in self.invalid_serial_sales],
            "inconsistent_statuses": [asdict(s) for s in self.inconsistent_statuses],
            "suggestions": list(self.suggestions),
            "issue_count": self.issue_count,
            "checked_at": to_utc_z(self.checked_at) if self.checked_at else None,
        }


def build_suggestions(report: IntegrityReport) -> list[str]:
    suggestions = []
    if report.stock_mismatches:
        suggestions.append(
            f"Found {len(report.stock_mismatches)} stock mismatches. Consider running stock reconciliation."
        )
    if report.inconsistent_statuses:
        suggestions.append(
            f"Found {len(report.inconsistent_statuses)} status inconsistencies. Check unit status synchronization."
        )
    if report.invalid_serial_sales:
        suggestions.append(
            f"Found {len(report.invalid_serial_sales)} invalid serial sales. Review serial number validation."
        )
    if report.orphaned_units:
        suggestions.append(
            f"Found {len(report.orphaned_units)} orphaned units. Consider cleanup or data migration."
        )
    if not suggestions:
        suggestions.append("All integrity checks passed. Data is consistent.")
    return suggestions


class IntegrityChecker:
    def __init__(self, session=None):
        self.session = session or db.session

    # -- loaders --------------------------------------------------------------

    def _open_sale_items(self):
        return (
            self.session.query(SaleItem, Sale.sale_number)
            .join(Sale, Sale.id == SaleItem.sale_id)
            .filter(Sale.status.in_(OPEN_SALE_STATUSES), SaleItem.serial_number.isnot(None))
            .order_by(SaleItem.id)
            .all()
        )

    def _open_sold_units(self):
        return (
            self.session.query(SoldProductUnit, Sale.sale_number)
            .join(Sale, Sale.id == SoldProductUnit.sale_id)
            .filter(Sale.status.in_(OPEN_SALE_STATUSES))
            .order_by(SoldProductUnit.id)
            .all()
        )

    # -- checks ---------------------------------------------------------------

    def check_stock(self, product_ids=None) -> list[StockMismatch]:
        products = {
            p.id: p for p in self.session.query(Product.id, Product.brand, Product.model).all()
        }
        ledger = ledger_balances(self.session, product_ids)

        mismatches = []
        for row in stock_snapshot(self.session, product_ids):
            actual = row["available_units"] if row["has_serial"] else ledger.get(row["product_id"], 0)
            recorded = row["recorded"]
            if actual != recorded:
                product = products[row["product_id"]]
                mismatches.append(StockMismatch(
                    product_id=row["product_id"],
                    brand=product.brand,
                    model=product.model,
                    has_serial=row["has_serial"],
                    recorded=recorded,
                    actual=actual,
                    difference=actual - recorded,
                ))
        return mismatches

    def check_orphans(self) -> list[OrphanedUnit]:
        rows = (
            self.session.query(ProductUnit)
            .outerjoin(Product, Product.id == ProductUnit.product_id)
            .filter(Product.id.is_(None), ProductUnit.status != UNIT_STATUS_ORPHANED)
            .order_by(ProductUnit.id)
            .all()
        )
        return [
            OrphanedUnit(
                unit_id=u.id,
                product_id=u.product_id,
                serial_number=u.serial_number,
                status=u.status,
            )
            for u in rows
        ]

    def check_serial_sales(self, products: dict, units_by_id: dict, units_by_key: dict) -> list[InvalidSerialSale]:
        findings = []
        claimed = defaultdict(list)

        for item, sale_number in self._open_sale_items():
            def finding(issue):
                return InvalidSerialSale(
                    source=SOURCE_SALE_ITEM,
                    record_id=item.id,
                    sale_item_id=item.id,
                    sale_id=item.sale_id,
                    sale_number=sale_number,
                    product_id=item.product_id,
                    serial_number=item.serial_number,
                    issue=issue,
                    needs_review=bool(item.needs_review),
                )

            product = products.get(item.product_id)
            if product is None:
                findings.append(finding(ISSUE_PRODUCT_MISSING))
                continue
            if not product.has_serial:
                findings.append(finding(ISSUE_NOT_SERIALIZED))
                continue

            if item.product_unit_id is not None:
                unit = units_by_id.get(item.product_unit_id)
                if unit is None:
                    findings.append(finding(ISSUE_UNIT_MISSING))
                    continue
                if unit.product_id != item.product_id:
                    findings.append(finding(ISSUE_UNIT_OTHER_PRODUCT))
                    continue
            elif (item.product_id, item.serial_number) not in units_by_key:
                findings.append(finding(ISSUE_UNIT_MISSING))
                continue

            key = (item.product_id, item.serial_number)
            if claimed[key]:
                findings.append(finding(ISSUE_DUPLICATE_CLAIM))
            claimed[key].append(item.id)

        for spu, sale_number in self._open_sold_units():
            unit = units_by_id.get(spu.product_unit_id) if spu.product_unit_id is not None else None
            if unit is None:
                unit = units_by_key.get((spu.product_id, spu.serial_number))

            if unit is None:
                issue = ISSUE_UNIT_MISSING
            elif unit.product_id != spu.product_id:
                issue = ISSUE_UNIT_OTHER_PRODUCT
            elif unit.status != UNIT_STATUS_SOLD:
                issue = ISSUE_PROJECTION_NOT_SOLD
            else:
                continue

            findings.append(InvalidSerialSale(
                source=SOURCE_SOLD_UNIT,
                record_id=spu.id,
                sale_item_id=spu.sale_item_id,
                sale_id=spu.sale_id,
                sale_number=sale_number,
                product_id=spu.product_id,
                serial_number=spu.serial_number,
                issue=issue,
                needs_review=bool(spu.sale_item.needs_review) if spu.sale_item else False,
            ))

        return findings

    def check_statuses(self, units) -> list[InconsistentStatus]:
        item_claims = {
            (item.product_id, item.serial_number) for item, _ in self._open_sale_items()
        }
        projection_units = set()
        projection_keys = set()
        for spu, _ in self._open_sold_units():
            if spu.product_unit_id is not None:
                projection_units.add(spu.product_unit_id)
            projection_keys.add((spu.product_id, spu.serial_number))

        findings = []
        for unit in units:
            key = (unit.product_id, unit.serial_number)
            if unit.status == UNIT_STATUS_SOLD:
                referenced = unit.id in projection_units or key in projection_keys or key in item_claims
                if not referenced:
                    findings.append(InconsistentStatus(
                        unit_id=unit.id,
                        product_id=unit.product_id,
                        serial_number=unit.serial_number,
                        unit_status=unit.status,
                        expected_status=UNIT_STATUS_AVAILABLE,
                        issue="Unit marked as sold but no active sale found",
                    ))
            elif unit.status in (UNIT_STATUS_AVAILABLE, UNIT_STATUS_PENDING) and key in item_claims:
                findings.append(InconsistentStatus(
                    unit_id=unit.id,
                    product_id=unit.product_id,
                    serial_number=unit.serial_number,
                    unit_status=unit.status,
                    expected_status=UNIT_STATUS_SOLD,
                    issue=f"Unit marked as {unit.status} but has active sale",
                ))
        return findings

    def run(self) -> IntegrityReport:
        products = {p.id: p for p in self.session.query(Product).all()}
        units = (
            self.session.query(ProductUnit)
            .filter(ProductUnit.product_id.isnot(None))
            .order_by(ProductUnit.id)
            .all()
        )
        units_by_id = {u.id: u for u in units}
        units_by_key = {(u.product_id, u.serial_number): u for u in units}
        live_units = [u for u in units if u.product_id in products]

        report = IntegrityReport(
            stock_mismatches=self.check_stock(),
            orphaned_units=self.check_orphans(),
            invalid_serial_sales=self.check_serial_sales(products, units_by_id, units_by_key),
            inconsistent_statuses=self.check_statuses(live_units),
            checked_at=utcnow(),
        )
        report.suggestions = build_suggestions(report)

        logger.info(
            "Integrity check: %d stock mismatches, %d orphaned units, %d invalid serial sales, %d status issues",
            len(report.stock_mismatches),
            len(report.orphaned_units),
            len(report.invalid_serial_sales),
            len(report.inconsistent_statuses),
        )
        return report


def run_integrity_check(session=None) -> IntegrityReport:
    return IntegrityChecker(session).run()
