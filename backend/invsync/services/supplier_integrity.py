# Overview: Read-only checks and two simple fixes for supplier acquisition documents.

"""
Supplier Transaction Integrity

Issues (severity in brackets):
- zero total      [error]   header total is 0 while a line lists product units
- no items        [warning] document without any line
- missing units   [error]   completed purchase line of a serialized product
                            that lists no unit ids
- unit count      [warning] same line, but the number of unit ids differs
                            from its quantity
- total mismatch  [error]   header total differs from the sum of line totals
                            (quantity * unit_cost) by more than 0.01

A report is valid when it holds no errors; warnings are informational.

fix_supplier_transactions() recalculates zero totals from the lines and
removes documents that have no lines, each in its own transaction, and then
checks again. Other findings are left for a person to resolve.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Optional

from flask import current_app, has_app_context

from ..extensions import db
from ..models import Product, SupplierTransaction, SupplierTransactionItem
from invsync.time_utils import to_utc_z, utcnow
from .concurrency import run_with_retry
from .pricing import round_money

logger = logging.getLogger(__name__)

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

ISSUE_ZERO_TOTAL = "zero_total"
ISSUE_NO_ITEMS = "no_items"
ISSUE_MISSING_UNITS = "missing_units"
ISSUE_UNIT_COUNT = "unit_count"
ISSUE_TOTAL_MISMATCH = "total_mismatch"

TOTAL_TOLERANCE = 0.01


@dataclass(frozen=True)
class TransactionIssue:
    kind: str
    severity: str
    transaction_id: int
    transaction_number: str
    message: str
    data: dict = field(default_factory=dict)


@dataclass
class SupplierIntegrityReport:
    total_transactions: int = 0
    issues: list = field(default_factory=list)
    checked_at: Optional[object] = None

    @property
    def errors(self) -> list:
        return [i for i in self.issues if i.severity == SEVERITY_ERROR]

    @property
    def warnings(self) -> list:
        return [i for i in self.issues if i.severity == SEVERITY_WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def of_kind(self, kind: str) -> list:
        return [i for i in self.issues if i.kind == kind]

    def to_dict(self) -> dict:
        return {
            "valid": self.is_valid,
            "total_transactions": self.total_transactions,
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "issues": [asdict(i) for i in self.issues],
            "checked_at": to_utc_z(self.checked_at) if self.checked_at else None,
        }


@dataclass
class SupplierFixResult:
    totals_recalculated: int = 0
    empty_removed: int = 0
    remaining: Optional[SupplierIntegrityReport] = None

    def to_dict(self) -> dict:
        return {
            "totals_recalculated": self.totals_recalculated,
            "empty_removed": self.empty_removed,
            "remaining": self.remaining.to_dict() if self.remaining is not None else None,
        }


def _issue(tx: SupplierTransaction, kind: str, severity: str, message: str, **data) -> TransactionIssue:
    return TransactionIssue(
        kind=kind,
        severity=severity,
        transaction_id=tx.id,
        transaction_number=tx.transaction_number,
        message=message,
        data=data,
    )


def lines_total(items) -> float:
    return round_money(sum(item.total_cost for item in items))


class SupplierTransactionChecker:
    def __init__(self, session=None, *, attempts: int = 3, backoff_base: float = 0.1):
        self.session = session or db.session
        self.attempts = attempts
        self.backoff_base = backoff_base

    # -- checks ---------------------------------------------------------------

    def check_totals(self, tx: SupplierTransaction, items: list) -> list[TransactionIssue]:
        issues = []
        recorded = tx.total_amount or 0.0
        calculated = lines_total(items)

        with_units = sum(1 for item in items if item.unit_ids)
        if recorded == 0 and with_units:
            issues.append(_issue(
                tx, ISSUE_ZERO_TOTAL, SEVERITY_ERROR,
                f"Transaction {tx.transaction_number} has zero total but contains product units",
                items_with_units=with_units,
            ))

        difference = round_money(abs(calculated - recorded))
        if difference > TOTAL_TOLERANCE:
            issues.append(_issue(
                tx, ISSUE_TOTAL_MISMATCH, SEVERITY_ERROR,
                f"Transaction {tx.transaction_number} total mismatch: recorded {recorded}, calculated {calculated}",
                recorded_total=recorded,
                calculated_total=calculated,
                difference=difference,
            ))
        return issues

    def check_units(self, tx: SupplierTransaction, items: list, products: dict) -> list[TransactionIssue]:
        # unit ids are written by the synchronizer, so only applied purchases carry them
        if not tx.is_completed_purchase:
            return []

        issues = []
        for item in items:
            product = products.get(item.product_id)
            if product is None or not product.has_serial:
                continue
            name = product.display_name
            unit_ids = item.unit_ids
            if not unit_ids:
                issues.append(_issue(
                    tx, ISSUE_MISSING_UNITS, SEVERITY_ERROR,
                    f"Serialized product {name} in transaction {tx.transaction_number} has no associated units",
                    item_id=item.id,
                    product_id=item.product_id,
                    expected_quantity=item.quantity,
                ))
            elif len(unit_ids) != item.quantity:
                issues.append(_issue(
                    tx, ISSUE_UNIT_COUNT, SEVERITY_WARNING,
                    f"Product {name} unit count ({len(unit_ids)}) doesn't match quantity ({item.quantity})",
                    item_id=item.id,
                    product_id=item.product_id,
                    expected_quantity=item.quantity,
                    actual_units=len(unit_ids),
                ))
        return issues

    def run(self) -> SupplierIntegrityReport:
        transactions = self.session.query(SupplierTransaction).order_by(SupplierTransaction.id).all()

        items_by_tx = defaultdict(list)
        for item in self.session.query(SupplierTransactionItem).order_by(SupplierTransactionItem.id):
            items_by_tx[item.transaction_id].append(item)

        product_ids = {item.product_id for items in items_by_tx.values() for item in items}
        products = {
            p.id: p for p in self.session.query(Product).filter(Product.id.in_(product_ids))
        } if product_ids else {}

        report = SupplierIntegrityReport(total_transactions=len(transactions), checked_at=utcnow())
        for tx in transactions:
            items = items_by_tx.get(tx.id, [])
            if not items:
                report.issues.append(_issue(
                    tx, ISSUE_NO_ITEMS, SEVERITY_WARNING,
                    f"Transaction {tx.transaction_number} has no items",
                    total_amount=tx.total_amount,
                ))
            report.issues.extend(self.check_totals(tx, items))
            report.issues.extend(self.check_units(tx, items, products))

        logger.info(
            "Supplier integrity check: %d transactions, %d errors, %d warnings",
            report.total_transactions, len(report.errors), len(report.warnings),
        )
        return report

    # -- fixes ----------------------------------------------------------------

    def recalculate_zero_totals(self) -> int:
        """Fill in header totals that are 0 from their lines."""
        def _op():
            fixed = 0
            for tx in self.session.query(SupplierTransaction).filter(SupplierTransaction.total_amount == 0).all():
                calculated = lines_total(tx.items)
                if calculated > 0:
                    tx.total_amount = calculated
                    fixed += 1
                    logger.info("Recalculated total of supplier transaction %s: %s", tx.transaction_number, calculated)
            self.session.commit()
            return fixed

        return run_with_retry(_op, session=self.session, attempts=self.attempts, backoff_base=self.backoff_base)

    def remove_empty_transactions(self) -> int:
        """Delete documents that have no lines left."""
        def _op():
            empty = self.session.query(SupplierTransaction).filter(~SupplierTransaction.items.any()).all()
            for tx in empty:
                self.session.delete(tx)
            self.session.commit()
            if empty:
                logger.info("Removed %d supplier transactions without items", len(empty))
            return len(empty)

        return run_with_retry(_op, session=self.session, attempts=self.attempts, backoff_base=self.backoff_base)


def checker_from_config(session=None) -> SupplierTransactionChecker:
    if has_app_context():
        return SupplierTransactionChecker(
            session,
            attempts=current_app.config.get("RETRY_ATTEMPTS", 3),
            backoff_base=current_app.config.get("RETRY_BACKOFF", 0.1),
        )
    return SupplierTransactionChecker(session)


def check_supplier_transactions(session=None) -> SupplierIntegrityReport:
    return SupplierTransactionChecker(session).run()


def fix_supplier_transactions(session=None) -> SupplierFixResult:
    checker = checker_from_config(session)
    result = SupplierFixResult(
        totals_recalculated=checker.recalculate_zero_totals(),
        empty_removed=checker.remove_empty_transactions(),
    )
    result.remaining = checker.run()
    return result
