"""
Change channel and ORM change feed tests, including the live pipeline:
supplier completion -> change feed -> synchronizer -> sale composition.
"""

import pytest

from invsync.channel import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    ChangeEvent,
    InMemoryChannel,
    RecordedEvents,
)
from invsync.models import Product, ProductUnit
from invsync.services.change_feed import ChangeFeed
from invsync.services.inventory_service import create_product, increment_stock
from invsync.services.sale_composition import AddItem, SaleCompositionStore, SaleLineItem
from invsync.services.stock_query import get_effective_stock
from invsync.services.supplier_service import complete_transaction
from invsync.services.supplier_sync import SupplierInventorySynchronizer


@pytest.fixture
def feed(db_session, channel):
    feed = ChangeFeed(channel).attach(db_session)
    yield feed
    feed.detach()


# =============================================================================
# CHANNEL
# =============================================================================


class TestChannel:
    def test_filters_by_table_type_and_id(self):
        channel = InMemoryChannel()
        everything, updates, one_row = RecordedEvents(), RecordedEvents(), RecordedEvents()
        channel.subscribe("products", everything)
        channel.subscribe("products", updates, event_types=[EVENT_UPDATE])
        channel.subscribe("products", one_row, ids=[2])

        channel.publish(ChangeEvent("products", EVENT_INSERT, new={"id": 1}))
        channel.publish(ChangeEvent("products", EVENT_UPDATE, new={"id": 2}))
        channel.publish(ChangeEvent("product_units", EVENT_UPDATE, new={"id": 2}))

        assert len(everything.events) == 2
        assert [e.row_id for e in updates.events] == [2]
        assert [e.type for e in one_row.events] == [EVENT_UPDATE]

    def test_delete_events_expose_old_row(self):
        event = ChangeEvent("product_units", EVENT_DELETE, old={"id": 7, "serial_number": "A"})
        assert event.row_id == 7
        assert event.row["serial_number"] == "A"

    def test_failing_subscriber_does_not_block_others(self):
        channel = InMemoryChannel()
        recorder = RecordedEvents()

        def broken(event):
            raise RuntimeError("nope")

        channel.subscribe("products", broken)
        channel.subscribe("products", recorder)

        delivered = channel.publish(ChangeEvent("products", EVENT_UPDATE, new={"id": 1}))
        assert delivered == 1
        assert len(recorder.events) == 1

    def test_stop_unsubscribes(self):
        channel = InMemoryChannel()
        recorder = RecordedEvents()
        sub = channel.subscribe("products", recorder)
        sub.stop()

        assert channel.publish(ChangeEvent("products", EVENT_UPDATE, new={"id": 1})) == 0
        assert channel.subscription_count == 0
        assert not sub.active


# =============================================================================
# CHANGE FEED
# =============================================================================


class TestChangeFeed:
    def test_insert_and_stock_change_published_after_commit(self, db_session, channel, recorder, feed):
        channel.subscribe("products", recorder)

        product = create_product(brand="Anker", model="Charger", opening_stock=3, session=db_session)
        assert recorder.events == []
        assert feed.pending == 2

        feed.deliver_pending()

        inserted, stock = recorder.events
        assert (inserted.type, inserted.new["brand"], inserted.new["id"]) == (EVENT_INSERT, "Anker", product.id)
        assert (stock.type, stock.new) == (EVENT_UPDATE, {"id": product.id, "stock_delta": 3})
        assert feed.pending == 0

    def test_update_carries_previous_values(self, db_session, channel, recorder, feed, make_product):
        product = make_product(price=10.0)
        feed.deliver_pending()
        channel.subscribe("products", recorder, event_types=[EVENT_UPDATE])

        product = db_session.get(Product, product.id)
        assert product.price == 10.0
        product.price = 12.0
        db_session.commit()
        feed.deliver_pending()

        [event] = recorder.events
        assert event.new["price"] == 12.0
        assert event.old["price"] == 10.0

    def test_delete_published_with_old_row(self, db_session, channel, recorder, feed, make_product, add_unit):
        product = make_product(has_serial=True)
        unit = add_unit(product.id, "A")
        feed.deliver_pending()
        channel.subscribe("product_units", recorder, event_types=[EVENT_DELETE])

        db_session.delete(db_session.get(ProductUnit, unit.id))
        db_session.commit()
        feed.deliver_pending()

        [event] = recorder.events
        assert event.old["serial_number"] == "A"

    def test_rollback_discards(self, db_session, feed, make_product):
        product = make_product(stock=1)
        feed.deliver_pending()

        db_session.add(Product(brand="Ghost", model="Row"))
        increment_stock(db_session, product_id=product.id, delta=5, source_type="adjustment")
        db_session.rollback()

        assert feed.pending == 0
        db_session.commit()
        assert feed.pending == 0

    def test_detach_stops_collection(self, db_session, channel):
        feed = ChangeFeed(channel).attach(db_session)
        assert feed.attached
        feed.detach()
        assert not feed.attached

        create_product(brand="Late", model="Row", session=db_session)
        assert feed.pending == 0


# =============================================================================
# LIVE PIPELINE
# =============================================================================


class TestLivePipeline:
    def test_completion_flows_into_stock_and_open_sale(self, db_session, channel, feed,
                                                      make_product, make_acquisition):
        product = make_product(brand="Anker", model="Cable", stock=0)
        synchronizer = SupplierInventorySynchronizer(db_session, backoff_base=0)
        synchronizer.start(channel)

        store = SaleCompositionStore(stock_lookup=lambda ids: get_effective_stock(db_session, ids)).start(channel)
        store.dispatch(AddItem(SaleLineItem(product_id=product.id, unit_price=5.0, quantity=4, product_name="Cable")))
        store.refresh_stock([product.id])
        assert store.state.errors == ["Insufficient stock for Cable"]

        tx = make_acquisition(product, quantity=10, complete=False)
        feed.deliver_pending()
        assert db_session.get(Product, product.id).stock == 0

        complete_transaction(tx.id, session=db_session)
        feed.deliver_pending()

        assert db_session.get(Product, product.id).stock == 10
        assert store.state.items[0].stock == 10
        assert store.state.is_valid
        assert feed.pending == 0

        store.stop()
        synchronizer.stop()

    def test_serialized_completion_creates_units_once(self, db_session, channel, feed,
                                                      make_product, make_acquisition):
        product = make_product(has_serial=True)
        synchronizer = SupplierInventorySynchronizer(db_session, backoff_base=0)
        synchronizer.start(channel)

        tx = make_acquisition(product, quantity=2, entries=[{"serial": "A"}, {"serial": "B"}], complete=False)
        complete_transaction(tx.id, session=db_session)
        # item INSERT and transaction UPDATE both trigger a sync
        feed.deliver_pending()

        assert db_session.query(ProductUnit).filter_by(product_id=product.id).count() == 2
        assert db_session.get(Product, product.id).stock == 2
        synchronizer.stop()
