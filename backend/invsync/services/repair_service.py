# Overview: Best-effort, idempotent corrections for the findings of the integrity checker.

"""
Auto-Repair

Order matters:
1. orphaned units  -> status orphaned (policy "mark") or deleted when nothing
                      references them (policy "delete"); sale lines, sold
                      projections and purchase lines all count as references
2. unit statuses   -> re-derived from open sale references
3. invalid sales   -> flagged needs_review; sales history is never deleted
4. stock counters  -> overwritten with the actual value, computed after step 2

Each finding is repaired in its own transaction under run_with_retry. One
failure is recorded in errors[] and the rest still run. Every step re-reads
the current row before writing, so a second run repairs nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from flask import current_app, has_app_context
from sqlalchemy import func, or_

from ..extensions import db
from ..models import Product, ProductUnit, Sale, SaleItem, SoldProductUnit, SupplierTransactionItem
from ..models.inventory import (
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_ORPHANED,
    UNIT_STATUS_PENDING,
    UNIT_STATUS_SOLD,
)
from ..models.sales import OPEN_SALE_STATUSES
from .concurrency import run_with_retry
from .integrity_service import IntegrityChecker, IntegrityReport
from .inventory_service import ledger_balances, overwrite_stock

logger = logging.getLogger(__name__)

ORPHAN_POLICY_MARK = "mark"
ORPHAN_POLICY_DELETE = "delete"
ORPHAN_POLICIES = (ORPHAN_POLICY_MARK, ORPHAN_POLICY_DELETE)


@dataclass
class RepairResult:
    repaired: int = 0
    errors: list = field(default_factory=list)
    counts: dict = field(default_factory=lambda: {
        "orphaned_units": 0,
        "inconsistent_statuses": 0,
        "invalid_serial_sales": 0,
        "stock_mismatches": 0,
    })
    remaining: Optional[IntegrityReport] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "repaired": self.repaired,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "remaining": self.remaining.to_dict() if self.remaining is not None else None,
        }


class AutoRepairEngine:
    def __init__(
        self,
        session=None,
        *,
        orphan_policy: str = ORPHAN_POLICY_MARK,
        attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        if orphan_policy not in ORPHAN_POLICIES:
            raise ValueError(f"Unknown orphan policy: {orphan_policy!r}")
        self.session = session or db.session
        self.orphan_policy = orphan_policy
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.checker = IntegrityChecker(self.session)

    # -- helpers --------------------------------------------------------------

    def _attempt(self, result: RepairResult, kind: str, label: str, fn: Callable[[], bool]) -> None:
        try:
            changed = run_with_retry(fn, session=self.session, attempts=self.attempts, backoff_base=self.backoff_base)
        except Exception as exc:
            self.session.rollback()
            logger.exception("Repair of %s failed", label)
            result.errors.append(f"Failed to repair {label}: {exc}")
            return
        if changed:
            result.repaired += 1
            result.counts[kind] += 1

    def _is_referenced(self, unit: ProductUnit) -> bool:
        by_item = self.session.query(SaleItem.id).filter(
            or_(SaleItem.product_unit_id == unit.id, SaleItem.serial_number == unit.serial_number)
        ).exists()
        by_projection = self.session.query(SoldProductUnit.id).filter(
            or_(SoldProductUnit.product_unit_id == unit.id, SoldProductUnit.serial_number == unit.serial_number)
        ).exists()
        if self.session.query(by_item).scalar() or self.session.query(by_projection).scalar():
            return True
        # purchase documents keep unit ids in a JSON list
        unit_id_lists = self.session.query(SupplierTransactionItem.product_unit_ids)
        return any(unit.id in (ids or []) for (ids,) in unit_id_lists)

    def _has_open_reference(self, unit: ProductUnit) -> bool:
        by_projection = self.session.query(SoldProductUnit.id).join(
            Sale, Sale.id == SoldProductUnit.sale_id
        ).filter(
            Sale.status.in_(OPEN_SALE_STATUSES),
            or_(
                SoldProductUnit.product_unit_id == unit.id,
                (SoldProductUnit.product_id == unit.product_id)
                & (SoldProductUnit.serial_number == unit.serial_number),
            ),
        ).exists()
        by_item = self.session.query(SaleItem.id).join(
            Sale, Sale.id == SaleItem.sale_id
        ).filter(
            Sale.status.in_(OPEN_SALE_STATUSES),
            SaleItem.product_id == unit.product_id,
            SaleItem.serial_number == unit.serial_number,
        ).exists()
        return bool(self.session.query(by_projection).scalar() or self.session.query(by_item).scalar())

    # -- single-finding repairs -----------------------------------------------

    def repair_orphan(self, unit_id: int) -> bool:
        unit = self.session.get(ProductUnit, unit_id)
        if unit is None or unit.status == UNIT_STATUS_ORPHANED:
            return False
        if unit.product_id is not None and self.session.get(Product, unit.product_id) is not None:
            return False

        if self.orphan_policy == ORPHAN_POLICY_DELETE and not self._is_referenced(unit):
            self.session.delete(unit)
            logger.info("Deleted orphaned unit %s (%s)", unit_id, unit.serial_number)
        else:
            unit.status = UNIT_STATUS_ORPHANED
            logger.info("Marked unit %s (%s) as orphaned", unit_id, unit.serial_number)
        self.session.commit()
        return True

    def repair_status(self, unit_id: int) -> bool:
        unit = self.session.get(ProductUnit, unit_id)
        if unit is None or unit.product_id is None:
            return False
        if unit.status not in (UNIT_STATUS_SOLD, UNIT_STATUS_AVAILABLE, UNIT_STATUS_PENDING):
            return False

        referenced = self._has_open_reference(unit)
        if referenced and unit.status != UNIT_STATUS_SOLD:
            unit.status = UNIT_STATUS_SOLD
        elif not referenced and unit.status == UNIT_STATUS_SOLD:
            unit.status = UNIT_STATUS_AVAILABLE
        else:
            return False

        self.session.commit()
        return True

    def flag_sale_item(self, sale_item_id: Optional[int], reason: str) -> bool:
        if sale_item_id is None:
            return False
        item = self.session.get(SaleItem, sale_item_id)
        if item is None or item.needs_review:
            return False
        item.needs_review = True
        item.review_reason = reason[:255]
        self.session.commit()
        return True

    def repair_stock(self, product_id: int) -> bool:
        product = self.session.get(Product, product_id)
        if product is None:
            return False
        self.session.refresh(product)

        if product.has_serial:
            actual = self.session.query(func.count(ProductUnit.id)).filter(
                ProductUnit.product_id == product_id,
                ProductUnit.status == UNIT_STATUS_AVAILABLE,
            ).scalar() or 0
        else:
            actual = ledger_balances(self.session, [product_id]).get(product_id, 0)

        delta = overwrite_stock(
            self.session,
            product_id=product_id,
            expected=product.stock,
            actual=int(actual),
            journal=bool(product.has_serial),
            note="Integrity repair",
        )
        if delta == 0:
            return False
        self.session.commit()
        return True

    # -- entry point ----------------------------------------------------------

    def repair(self, report: Optional[IntegrityReport] = None) -> RepairResult:
        result = RepairResult()
        try:
            report = report or self.checker.run()

            for orphan in report.orphaned_units:
                self._attempt(
                    result, "orphaned_units", f"orphaned unit {orphan.unit_id}",
                    lambda o=orphan: self.repair_orphan(o.unit_id),
                )

            for finding in report.inconsistent_statuses:
                self._attempt(
                    result, "inconsistent_statuses", f"status of unit {finding.unit_id}",
                    lambda f=finding: self.repair_status(f.unit_id),
                )

            # status fixes change which units count as available and which
            # projections are still wrong, so the rest works from fresh data
            fresh = self.checker.run()

            for finding in fresh.invalid_serial_sales:
                self._attempt(
                    result, "invalid_serial_sales", f"sale item {finding.sale_item_id}",
                    lambda f=finding: self.flag_sale_item(f.sale_item_id, f.issue),
                )

            for mismatch in fresh.stock_mismatches:
                self._attempt(
                    result, "stock_mismatches", f"stock of product {mismatch.product_id}",
                    lambda m=mismatch: self.repair_stock(m.product_id),
                )

            result.remaining = self.checker.run()
        except Exception as exc:
            self.session.rollback()
            logger.exception("Auto-repair failed")
            result.errors.append(f"Auto-repair failed: {exc}")

        logger.info("Auto-repair: %d repaired, %d errors", result.repaired, len(result.errors))
        return result


def engine_from_config(session=None, *, orphan_policy: Optional[str] = None) -> AutoRepairEngine:
    """Build an engine with retry and orphan settings from the app config when available."""
    if has_app_context():
        config = current_app.config
        return AutoRepairEngine(
            session,
            orphan_policy=orphan_policy or config.get("ORPHAN_POLICY", ORPHAN_POLICY_MARK),
            attempts=config.get("RETRY_ATTEMPTS", 3),
            backoff_base=config.get("RETRY_BACKOFF", 0.1),
        )
    return AutoRepairEngine(session, orphan_policy=orphan_policy or ORPHAN_POLICY_MARK)


def auto_repair(report: Optional[IntegrityReport] = None, *, session=None, orphan_policy: Optional[str] = None) -> RepairResult:
    return engine_from_config(session, orphan_policy=orphan_policy).repair(report)
