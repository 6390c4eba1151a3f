"""
CLI command tests (flask integrity / suppliers / stock groups).
"""

import json

import pytest

from invsync.models import Product, SupplierTransaction


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def corrupt_stock(db_session, product, value):
    db_session.get(Product, product.id).stock = value
    db_session.commit()


def test_integrity_check_clean(runner, db_session, make_product):
    make_product(stock=2)

    result = runner.invoke(args=["integrity", "check"])

    assert result.exit_code == 0
    assert "All integrity checks passed. Data is consistent." in result.output


def test_integrity_check_reports_mismatch(runner, db_session, make_product):
    product = make_product(has_serial=True, serials=["A", "B", "C"])
    corrupt_stock(db_session, product, 5)

    result = runner.invoke(args=["integrity", "check"])

    assert result.exit_code == 1
    assert "recorded 5, actual 3 (-2)" in result.output
    assert "Found 1 stock mismatches. Consider running stock reconciliation." in result.output


def test_integrity_check_json(runner, db_session, make_product):
    product = make_product(has_serial=True, serials=["A"])
    corrupt_stock(db_session, product, 2)

    result = runner.invoke(args=["integrity", "check", "--json"])

    report = json.loads(result.output)
    assert report["issue_count"] == 1
    assert report["stock_mismatches"][0]["product_id"] == product.id


def test_integrity_repair(runner, db_session, make_product):
    product = make_product(has_serial=True, serials=["A", "B", "C"])
    corrupt_stock(db_session, product, 5)

    result = runner.invoke(args=["integrity", "repair"])

    assert result.exit_code == 0
    assert "Remaining issues: 0" in result.output
    assert "PASS Repaired 1 findings" in result.output
    assert db_session.get(Product, product.id).stock == 3


def test_integrity_repair_rejects_unknown_policy(runner, db_session):
    result = runner.invoke(args=["integrity", "repair", "--orphan-policy", "shred"])
    assert result.exit_code == 2


def test_suppliers_sync_all(runner, db_session, make_product, make_acquisition):
    product = make_product(stock=0)
    make_acquisition(product, quantity=4)

    result = runner.invoke(args=["suppliers", "sync-all"])

    assert result.exit_code == 0
    assert "stock +4" in result.output
    assert "Synchronized 1 transactions (0 with errors)" in result.output
    assert db_session.get(Product, product.id).stock == 4

    again = runner.invoke(args=["suppliers", "sync-all"])
    assert "stock +0" in again.output
    assert db_session.get(Product, product.id).stock == 4


def test_stock_show(runner, db_session, make_product):
    product = make_product(has_serial=True, serials=["A", "B"])

    result = runner.invoke(args=["stock", "show", "--product-id", str(product.id)])

    assert result.exit_code == 0
    assert "Available units" in result.output
    assert str(product.id) in result.output


def test_stock_show_empty(runner, db_session):
    result = runner.invoke(args=["stock", "show"])
    assert "No products found." in result.output


def test_integrity_suppliers_check_and_fix(runner, db_session, make_product, make_acquisition):
    tx = make_acquisition(make_product(), quantity=2, unit_cost=10.0)
    db_session.get(SupplierTransaction, tx.id).total_amount = 0
    db_session.commit()

    result = runner.invoke(args=["integrity", "suppliers"])

    assert result.exit_code == 1
    assert "recorded 0.0, calculated 20.0" in result.output
    assert "1 errors, 0 warnings" in result.output

    result = runner.invoke(args=["integrity", "suppliers", "--fix"])

    assert result.exit_code == 0
    assert "Totals recalculated" in result.output
    assert "0 errors, 0 warnings" in result.output
    assert db_session.get(SupplierTransaction, tx.id).total_amount == 20.0
