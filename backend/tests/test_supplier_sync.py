"""
Supplier acquisition and supplier-to-inventory synchronization tests.
"""

import pytest

from invsync.channel import DOMAIN_STOCK_CHANGED, DOMAIN_UNIT_STATUS_CHANGED
from invsync.models import Product, ProductUnit, SupplierTransaction, SupplierTransactionItem
from invsync.models.inventory import (
    UNIT_STATUS_AVAILABLE,
    UNIT_STATUS_PENDING,
    UNIT_STATUS_SOLD,
)
from invsync.services.integrity_service import run_integrity_check
from invsync.services.supplier_service import (
    SupplierTransactionError,
    complete_transaction,
    create_transaction,
)
from invsync.services.supplier_sync import (
    SupplierInventorySynchronizer,
    synchronize_acquisition_item,
)


ENTRIES_ABC = [{"serial": "A", "price": 150}, {"serial": "B"}, {"serial": "C"}]

# placeholder replaced by a real product id inside the test
PRODUCT = object()


@pytest.fixture
def synchronizer(db_session, channel):
    return SupplierInventorySynchronizer(db_session, channel, backoff_base=0)


def only_item(db_session, tx):
    return db_session.query(SupplierTransactionItem).filter_by(transaction_id=tx.id).one()


def units_by_serial(db_session, product_id):
    return {u.serial_number: u for u in db_session.query(ProductUnit).filter_by(product_id=product_id)}


# =============================================================================
# SYNCHRONIZE
# =============================================================================


class TestSynchronize:
    def test_serialized_purchase_creates_priced_units(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=3, unit_cost=100.0, entries=ENTRIES_ABC)

        batch = synchronizer.synchronize_transaction(tx.id)

        assert batch.success
        [result] = batch.results
        assert result.stock_delta == 3
        assert len(result.units_created) == 3

        units = units_by_serial(db_session, product.id)
        assert {s: u.price for s, u in units.items()} == {"A": 150.0, "B": 100.0, "C": 100.0}
        assert all(u.purchase_price == 100.0 for u in units.values())
        assert all(u.status == UNIT_STATUS_AVAILABLE for u in units.values())
        assert db_session.get(Product, product.id).stock == 3
        assert sorted(only_item(db_session, tx).unit_ids) == sorted(u.id for u in units.values())
        assert run_integrity_check(db_session).is_consistent

    def test_redelivery_is_a_noop(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=3, entries=ENTRIES_ABC)
        item = only_item(db_session, tx)

        synchronizer.synchronize_item(item.id)
        again = synchronizer.synchronize_item(item.id)
        synchronizer.synchronize_transaction(tx.id)

        assert again.success
        assert again.stock_delta == 0
        assert again.units_created == []
        assert again.units_updated == []
        assert db_session.get(Product, product.id).stock == 3
        assert db_session.query(ProductUnit).filter_by(product_id=product.id).count() == 3

    def test_quantity_change_applies_only_the_difference(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(stock=4)
        tx = make_acquisition(product, quantity=10, unit_cost=2.5)
        item = only_item(db_session, tx)
        synchronizer.synchronize_item(item.id)
        assert db_session.get(Product, product.id).stock == 14

        item.quantity = 12
        db_session.commit()
        result = synchronizer.synchronize_item(item.id)

        assert result.stock_delta == 2
        assert db_session.get(Product, product.id).stock == 16
        assert run_integrity_check(db_session).is_consistent

    def test_pending_transaction_is_skipped(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(stock=0)
        tx = make_acquisition(product, quantity=5, complete=False)

        assert synchronizer.synchronize_transaction(tx.id).skipped
        result = synchronizer.synchronize_item(only_item(db_session, tx).id)
        assert result.skipped
        assert result.success
        assert db_session.get(Product, product.id).stock == 0

    def test_existing_serial_is_claimed_not_duplicated(self, db_session, make_product, make_acquisition,
                                                       add_unit, synchronizer):
        product = make_product(has_serial=True)
        pending = add_unit(product.id, "A", status=UNIT_STATUS_PENDING)
        tx = make_acquisition(product, quantity=2, entries=[{"serial": "A"}, {"serial": "B"}])

        [result] = synchronizer.synchronize_transaction(tx.id).results

        assert result.units_updated == [pending.id]
        assert len(result.units_created) == 1
        units = units_by_serial(db_session, product.id)
        assert set(units) == {"A", "B"}
        assert units["A"].status == UNIT_STATUS_AVAILABLE
        assert run_integrity_check(db_session).is_consistent

    def test_sold_unit_keeps_status(self, db_session, make_product, make_acquisition, synchronizer, sell):
        product = make_product(has_serial=True, serials=["A"], price=90.0)
        sell(product, serial="A", price=90.0)
        sold = units_by_serial(db_session, product.id)["A"]
        tx = make_acquisition(product, quantity=1, entries=[{"serial": "A", "price": 175, "color": "Blue"}])

        [result] = synchronizer.synchronize_transaction(tx.id).results

        unit = db_session.get(ProductUnit, sold.id)
        assert unit.status == UNIT_STATUS_SOLD
        assert unit.price == 175.0
        assert unit.color == "Blue"
        assert result.stock_delta == 0
        assert db_session.get(Product, product.id).stock == 0
        assert run_integrity_check(db_session).is_consistent

    def test_serialized_stock_follows_units_not_quantity(self, db_session, make_product, make_acquisition,
                                                         synchronizer):
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=3, entries=[{"serial": "A"}, {"serial": "B"}])

        [result] = synchronizer.synchronize_transaction(tx.id).results

        assert result.stock_delta == 2
        assert db_session.get(Product, product.id).stock == 2
        assert run_integrity_check(db_session).is_consistent

    def test_missing_item(self, db_session, synchronizer):
        result = synchronizer.synchronize_item(999_999)
        assert not result.success
        assert result.errors == ["Supplier item 999999 not found"]

    def test_missing_product(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(stock=0)
        product_id = product.id
        tx = make_acquisition(product, quantity=2)
        db_session.delete(db_session.get(Product, product_id))
        db_session.commit()

        result = synchronizer.synchronize_item(only_item(db_session, tx).id)
        assert not result.success
        assert result.errors == [f"Product {product_id} not found for sync"]

    def test_sync_all_completed(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(stock=0)
        make_acquisition(product, quantity=1)
        make_acquisition(product, quantity=2)
        make_acquisition(product, quantity=4, complete=False)

        batches = synchronizer.sync_all_completed()

        assert len(batches) == 2
        assert db_session.get(Product, product.id).stock == 3

    def test_entry_point_uses_app_channel(self, db_session, make_product, make_acquisition):
        product = make_product(stock=0)
        tx = make_acquisition(product, quantity=6)

        result = synchronize_acquisition_item(only_item(db_session, tx).id)

        assert result.success
        assert db_session.get(Product, product.id).stock == 6


class TestEvents:
    def test_publishes_stock_and_unit_events(self, db_session, make_product, make_acquisition,
                                             synchronizer, channel, recorder):
        channel.subscribe(DOMAIN_STOCK_CHANGED, recorder)
        channel.subscribe(DOMAIN_UNIT_STATUS_CHANGED, recorder)
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=3, entries=ENTRIES_ABC)

        synchronizer.synchronize_transaction(tx.id)

        [stock_event] = recorder.of(DOMAIN_STOCK_CHANGED)
        assert stock_event.new["product_id"] == product.id
        assert stock_event.new["delta"] == 3
        statuses = recorder.of(DOMAIN_UNIT_STATUS_CHANGED)
        assert [e.new["new_status"] for e in statuses] == [UNIT_STATUS_AVAILABLE] * 3

        # nothing changed, nothing published
        recorder.events.clear()
        synchronizer.synchronize_transaction(tx.id)
        assert recorder.events == []

    def test_start_and_stop(self, synchronizer, channel):
        handle = synchronizer.start(channel)
        assert handle.active
        assert channel.subscription_count == 3
        assert synchronizer.start(channel) is handle

        synchronizer.stop()
        assert not handle.active
        assert channel.subscription_count == 0


# =============================================================================
# DELETION COMPENSATION
# =============================================================================


class TestCompensation:
    def test_delete_item_reverses_stock_and_parks_units(self, db_session, make_product, make_acquisition, synchronizer):
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=3, entries=ENTRIES_ABC)
        item = only_item(db_session, tx)
        synchronizer.synchronize_item(item.id)
        item_id = item.id
        unit_ids = item.unit_ids

        result = synchronizer.delete_item(item_id)

        assert result.success
        assert result.stock_delta == -3
        assert db_session.get(Product, product.id).stock == 0
        assert all(db_session.get(ProductUnit, uid).status == UNIT_STATUS_PENDING for uid in unit_ids)
        assert db_session.get(SupplierTransactionItem, item_id) is None
        assert run_integrity_check(db_session).is_consistent

        again = synchronizer.compensate_deleted_item({"id": item_id, "product_id": product.id, "product_unit_ids": unit_ids})
        assert again.stock_delta == 0
        assert again.units_updated == []
        assert db_session.get(Product, product.id).stock == 0

    def test_sold_unit_not_parked(self, db_session, make_product, make_acquisition, synchronizer, sell):
        product = make_product(has_serial=True)
        tx = make_acquisition(product, quantity=2, entries=[{"serial": "A"}, {"serial": "B"}])
        item = only_item(db_session, tx)
        synchronizer.synchronize_item(item.id)
        sell(db_session.get(Product, product.id), serial="A")
        assert db_session.get(Product, product.id).stock == 1

        synchronizer.delete_item(item.id)

        units = units_by_serial(db_session, product.id)
        assert units["A"].status == UNIT_STATUS_SOLD
        assert units["B"].status == UNIT_STATUS_PENDING
        assert db_session.get(Product, product.id).stock == 0
        assert run_integrity_check(db_session).is_consistent

    def test_delete_missing_item(self, synchronizer):
        result = synchronizer.delete_item(999_999)
        assert not result.success


# =============================================================================
# ACQUISITION DOCUMENTS
# =============================================================================


class TestSupplierTransactions:
    def test_create_is_pending_and_keeps_entries(self, db_session, make_product):
        product = make_product(has_serial=True)
        tx = create_transaction(
            transaction_number="PO-A1",
            items=[{"product_id": product.id, "quantity": 1, "unit_cost": "99.90",
                    "unit_entries": [{"serial_number": " SN-1 ", "storage": "128"}]}],
            session=db_session,
        )

        assert tx.status == "pending"
        item = only_item(db_session, tx)
        assert item.unit_cost == 99.9
        [entry] = item.entries
        assert entry.serial == "SN-1"
        assert entry.storage == 128

    @pytest.mark.parametrize("item,message", [
        ({"quantity": 1, "unit_cost": 1}, "needs product_id"),
        ({"product_id": PRODUCT, "quantity": 0, "unit_cost": 1}, "quantity must be > 0"),
        ({"product_id": PRODUCT, "quantity": 1, "unit_cost": -1}, "unit_cost must be >= 0"),
        ({"product_id": PRODUCT, "quantity": 2, "unit_cost": 1,
          "unit_entries": [{"serial": "X"}, {"serial": "X"}]}, "Duplicate serial"),
        ({"product_id": PRODUCT, "quantity": 1, "unit_cost": 1,
          "unit_entries": [{"color": "Red"}]}, "requires a serial"),
    ])
    def test_invalid_items(self, db_session, make_product, item, message):
        product = make_product()
        if item.get("product_id") is PRODUCT:
            item = dict(item, product_id=product.id)
        with pytest.raises(SupplierTransactionError, match=message):
            create_transaction(transaction_number="PO-BAD", items=[item], session=db_session)
        assert db_session.query(SupplierTransaction).count() == 0

    def test_unknown_product(self, db_session):
        with pytest.raises(SupplierTransactionError) as exc:
            create_transaction(
                transaction_number="PO-X",
                items=[{"product_id": 424242, "quantity": 1, "unit_cost": 1}],
                session=db_session,
            )
        assert exc.value.details == {"product_ids": [424242]}

    def test_complete_is_idempotent(self, db_session, make_product, make_acquisition):
        tx = make_acquisition(make_product(), quantity=1)
        assert complete_transaction(tx.id, session=db_session).status == "completed"
        assert complete_transaction(tx.id, session=db_session).status == "completed"

    def test_cancelled_cannot_complete(self, db_session, make_product, make_acquisition):
        tx = make_acquisition(make_product(), quantity=1, complete=False)
        db_session.get(SupplierTransaction, tx.id).status = "cancelled"
        db_session.commit()

        with pytest.raises(SupplierTransactionError):
            complete_transaction(tx.id, session=db_session)

    def test_complete_missing(self, db_session):
        with pytest.raises(SupplierTransactionError, match="not found"):
            complete_transaction(999_999, session=db_session)
