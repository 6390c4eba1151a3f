"""
Integrity checker and auto-repair tests.

Divergences are planted directly in the tables, the way a failed write or a
manual edit would leave them.
"""

import pytest

from invsync.models import Product, ProductUnit, Sale, SaleItem, StockMovement, SupplierTransactionItem
from invsync.models.inventory import (
    MOVEMENT_REPAIR,
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_ORPHANED,
    UNIT_STATUS_SOLD,
)
from invsync.services.integrity_service import (
    ISSUE_DUPLICATE_CLAIM,
    ISSUE_NOT_SERIALIZED,
    IntegrityChecker,
    run_integrity_check,
)
from invsync.services.repair_service import (
    ORPHAN_POLICY_DELETE,
    AutoRepairEngine,
    auto_repair,
)


def plant_sale_item(db_session, product_id, serial, *, unit_id=None, number="S-PLANTED"):
    sale = Sale(sale_number=number, status="completed")
    db_session.add(sale)
    db_session.flush()
    item = SaleItem(
        sale_id=sale.id,
        product_id=product_id,
        product_unit_id=unit_id,
        serial_number=serial,
        quantity=1,
        unit_price=10.0,
        total_price=10.0,
    )
    db_session.add(item)
    db_session.commit()
    return item


# =============================================================================
# CHECKER
# =============================================================================


class TestChecker:
    def test_clean_store(self, db_session, make_product, sell):
        phone = make_product(has_serial=True, serials=["A", "B"])
        cable = make_product(stock=4)
        sell(phone, serial="A")
        sell(cable, quantity=2)

        report = run_integrity_check(db_session)
        assert report.is_consistent
        assert report.suggestions == ["All integrity checks passed. Data is consistent."]

    def test_stock_mismatch_for_serialized(self, db_session, make_product):
        product = make_product(has_serial=True, serials=["A", "B", "C"])
        product.stock = 5
        db_session.commit()

        [mismatch] = run_integrity_check(db_session).stock_mismatches
        assert mismatch.product_id == product.id
        assert mismatch.recorded == 5
        assert mismatch.actual == 3
        assert mismatch.difference == -2

    def test_stock_mismatch_for_non_serialized_uses_ledger(self, db_session, make_product):
        product = make_product(stock=5)
        product.stock = 9
        db_session.commit()

        [mismatch] = run_integrity_check(db_session).stock_mismatches
        assert (mismatch.recorded, mismatch.actual, mismatch.difference) == (9, 5, -4)
        assert mismatch.has_serial is False

    def test_checker_does_not_write(self, db_session, make_product):
        product = make_product(has_serial=True, serials=["A"])
        product.stock = 4
        db_session.commit()

        run_integrity_check(db_session)
        run_integrity_check(db_session)

        assert db_session.get(Product, product.id).stock == 4
        assert db_session.query(StockMovement).filter_by(source_type=MOVEMENT_REPAIR).count() == 0

    def test_orphaned_unit(self, db_session, add_unit):
        unit = add_unit(999_999, "GHOST")

        report = run_integrity_check(db_session)
        [orphan] = report.orphaned_units
        assert orphan.unit_id == unit.id
        assert orphan.serial_number == "GHOST"
        assert "Found 1 orphaned units. Consider cleanup or data migration." in report.suggestions

    def test_sold_unit_without_sale(self, db_session, make_product, add_unit):
        product = make_product(has_serial=True, serials=["A"])
        add_unit(product.id, "B", status=UNIT_STATUS_SOLD)

        [finding] = run_integrity_check(db_session).inconsistent_statuses
        assert finding.serial_number == "B"
        assert finding.expected_status == UNIT_STATUS_AVAILABLE
        assert finding.issue == "Unit marked as sold but no active sale found"

    def test_available_unit_with_open_sale(self, db_session, make_product, sell):
        product = make_product(has_serial=True, serials=["A"])
        sell(product, serial="A")
        unit = db_session.query(ProductUnit).filter_by(serial_number="A").one()
        unit.status = UNIT_STATUS_AVAILABLE
        db_session.commit()

        [finding] = run_integrity_check(db_session).inconsistent_statuses
        assert finding.expected_status == UNIT_STATUS_SOLD
        assert finding.issue == "Unit marked as available but has active sale"

    def test_serial_on_non_serialized_product(self, db_session, make_product):
        product = make_product(stock=5)
        item = plant_sale_item(db_session, product.id, "X9")

        [finding] = run_integrity_check(db_session).invalid_serial_sales
        assert finding.sale_item_id == item.id
        assert finding.issue == ISSUE_NOT_SERIALIZED

    def test_duplicate_claim(self, db_session, make_product, sell):
        product = make_product(has_serial=True, serials=["A"])
        sell(product, serial="A")
        unit = db_session.query(ProductUnit).filter_by(serial_number="A").one()
        duplicate = plant_sale_item(db_session, product.id, "A", unit_id=unit.id)

        findings = run_integrity_check(db_session).invalid_serial_sales
        assert [(f.sale_item_id, f.issue) for f in findings] == [(duplicate.id, ISSUE_DUPLICATE_CLAIM)]

    def test_report_to_dict(self, db_session, add_unit):
        add_unit(999_999, "GHOST")
        data = run_integrity_check(db_session).to_dict()

        assert data["issue_count"] == 1
        assert data["orphaned_units"][0]["serial_number"] == "GHOST"
        assert data["checked_at"].endswith("Z")


# =============================================================================
# REPAIR
# =============================================================================


class TestRepair:
    def test_stock_repair_and_recheck(self, db_session, make_product):
        product = make_product(has_serial=True, serials=["A", "B", "C"])
        product.stock = 5
        db_session.commit()

        result = auto_repair(session=db_session)

        assert result.success
        assert result.counts["stock_mismatches"] == 1
        assert db_session.get(Product, product.id).stock == 3
        assert result.remaining.stock_mismatches == []
        assert run_integrity_check(db_session).is_consistent

    def test_repair_is_idempotent(self, db_session, make_product, add_unit):
        product = make_product(has_serial=True, serials=["A", "B"])
        product.stock = 7
        db_session.commit()
        add_unit(999_999, "GHOST")

        first = auto_repair(session=db_session)
        second = auto_repair(session=db_session)

        assert first.repaired == 2
        assert second.repaired == 0
        assert second.success
        assert db_session.get(Product, product.id).stock == 2

    def test_non_serialized_counter_reset_to_ledger(self, db_session, make_product):
        product = make_product(stock=5)
        product.stock = 9
        db_session.commit()
        movements = db_session.query(StockMovement).filter_by(product_id=product.id).count()

        auto_repair(session=db_session)

        assert db_session.get(Product, product.id).stock == 5
        # the ledger already explains 5; nothing is journaled
        assert db_session.query(StockMovement).filter_by(product_id=product.id).count() == movements

    def test_orphan_marked_by_default(self, db_session, add_unit):
        unit = add_unit(999_999, "GHOST")

        result = auto_repair(session=db_session)

        assert result.counts["orphaned_units"] == 1
        assert db_session.get(ProductUnit, unit.id).status == UNIT_STATUS_ORPHANED
        assert result.remaining.orphaned_units == []

    def test_orphan_deleted_when_unreferenced(self, db_session, add_unit):
        unit = add_unit(999_999, "GHOST")
        unit_id = unit.id

        auto_repair(session=db_session, orphan_policy=ORPHAN_POLICY_DELETE)

        assert db_session.get(ProductUnit, unit_id) is None

    def test_referenced_orphan_is_marked_not_deleted(self, db_session, make_product, add_unit):
        phone = make_product(has_serial=True, serials=["A"])
        unit = add_unit(999_999, "GHOST")
        plant_sale_item(db_session, phone.id, "GHOST")

        auto_repair(session=db_session, orphan_policy=ORPHAN_POLICY_DELETE)

        assert db_session.get(ProductUnit, unit.id).status == UNIT_STATUS_ORPHANED

    def test_orphan_listed_on_a_purchase_is_marked_not_deleted(self, db_session, make_product, add_unit,
                                                              make_acquisition):
        phone = make_product(has_serial=True)
        unit = add_unit(999_999, "GHOST")
        unit_id = unit.id
        tx = make_acquisition(phone, quantity=1, complete=False)
        item = db_session.query(SupplierTransactionItem).filter_by(transaction_id=tx.id).one()
        item.product_unit_ids = [unit_id]
        db_session.commit()

        auto_repair(session=db_session, orphan_policy=ORPHAN_POLICY_DELETE)

        assert db_session.get(ProductUnit, unit_id).status == UNIT_STATUS_ORPHANED

    def test_status_repair_runs_before_stock(self, db_session, make_product):
        product = make_product(has_serial=True, serials=["A", "B"])
        unit = db_session.query(ProductUnit).filter_by(serial_number="B").one()
        unit.status = UNIT_STATUS_SOLD
        db_session.get(Product, product.id).stock = 1
        db_session.commit()

        result = auto_repair(session=db_session)

        assert result.counts["inconsistent_statuses"] == 1
        assert result.counts["stock_mismatches"] == 1
        assert db_session.get(ProductUnit, unit.id).status == UNIT_STATUS_AVAILABLE
        assert db_session.get(Product, product.id).stock == 2
        assert result.remaining.is_consistent

    def test_claimed_unit_set_back_to_sold(self, db_session, make_product, sell):
        product = make_product(has_serial=True, serials=["A"])
        sell(product, serial="A")
        unit = db_session.query(ProductUnit).filter_by(serial_number="A").one()
        unit.status = UNIT_STATUS_AVAILABLE
        db_session.commit()

        result = auto_repair(session=db_session)

        assert db_session.get(ProductUnit, unit.id).status == UNIT_STATUS_SOLD
        assert result.counts["stock_mismatches"] == 0
        assert result.remaining.is_consistent

    def test_invalid_sale_flagged_not_deleted(self, db_session, make_product):
        product = make_product(stock=5)
        item = plant_sale_item(db_session, product.id, "X9")

        first = auto_repair(session=db_session)
        second = auto_repair(session=db_session)

        flagged = db_session.get(SaleItem, item.id)
        assert flagged.needs_review is True
        assert flagged.review_reason == ISSUE_NOT_SERIALIZED
        assert first.counts["invalid_serial_sales"] == 1
        assert second.counts["invalid_serial_sales"] == 0

        [remaining] = second.remaining.invalid_serial_sales
        assert remaining.needs_review is True

    def test_one_failure_does_not_stop_the_rest(self, db_session, make_product, add_unit, monkeypatch):
        product = make_product(has_serial=True, serials=["A"])
        product.stock = 3
        db_session.commit()
        ghost = add_unit(999_999, "GHOST")

        engine = AutoRepairEngine(db_session, backoff_base=0)

        def boom(unit_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(engine, "repair_orphan", boom)
        result = engine.repair()

        assert not result.success
        assert result.errors == [f"Failed to repair orphaned unit {ghost.id}: disk on fire"]
        assert result.counts["stock_mismatches"] == 1
        assert db_session.get(Product, product.id).stock == 1

    def test_top_level_failure_is_reported(self, db_session, monkeypatch):
        engine = AutoRepairEngine(db_session, backoff_base=0)

        def unreachable():
            raise RuntimeError("store unreachable")

        monkeypatch.setattr(engine.checker, "run", unreachable)
        result = engine.repair()

        assert result.errors == ["Auto-repair failed: store unreachable"]
        assert result.remaining is None
        assert result.to_dict()["success"] is False

    def test_unknown_policy(self, db_session):
        with pytest.raises(ValueError):
            AutoRepairEngine(db_session, orphan_policy="shred")


def test_checker_accepts_explicit_session(db_session, make_product):
    make_product(stock=1)
    assert IntegrityChecker(db_session).run().is_consistent
