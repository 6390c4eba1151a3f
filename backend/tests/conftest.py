"""
Pytest fixtures for invsync backend tests.

Provides the in-memory database, per-test cleanup, a test client, and
factories for products, units, sales and supplier acquisitions.
"""

import itertools

import pytest

from invsync import create_app
from invsync.channel import InMemoryChannel, RecordedEvents
from invsync.extensions import db
from invsync.models import ProductUnit
from invsync.models.inventory import UNIT_STATUS_AVAILABLE
from invsync.services.inventory_service import create_product
from invsync.services.sale_composition import AddItem, SaleLineItem, compose_sale
from invsync.services.sale_service import commit_sale
from invsync.services.stock_query import get_effective_stock
from invsync.services.supplier_service import complete_transaction, create_transaction


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        # tests attach their own change feed where they need one
        'CHANGE_FEED_ENABLED': False,
        'RETRY_BACKOFF': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def channel():
    return InMemoryChannel()


@pytest.fixture(scope='function')
def recorder():
    return RecordedEvents()


@pytest.fixture(scope='function')
def make_product(db_session):
    """
    Product factory.

    Non-serialized stock is journaled as opening stock. Serialized products
    get one unit per serial and a stock cache matching the available units.
    """
    def _make(*, brand="Acme", model="Widget", has_serial=False, stock=0, price=100.0,
              serials=(), unit_status=UNIT_STATUS_AVAILABLE):
        product = create_product(
            brand=brand,
            model=model,
            has_serial=has_serial,
            opening_stock=0 if has_serial else stock,
            price=price,
            session=db_session,
        )
        for serial in serials:
            db_session.add(ProductUnit(
                product_id=product.id,
                serial_number=serial,
                status=unit_status,
                price=price,
            ))
        if has_serial and unit_status == UNIT_STATUS_AVAILABLE:
            product.stock = len(serials)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def add_unit(db_session):
    def _add(product_id, serial, status=UNIT_STATUS_AVAILABLE, price=100.0):
        unit = ProductUnit(product_id=product_id, serial_number=serial, status=status, price=price)
        db_session.add(unit)
        db_session.commit()
        return unit

    return _add


@pytest.fixture(scope='function')
def sell(db_session):
    """Compose and commit a one-line sale."""
    def _sell(product, *, serial=None, quantity=1, price=100.0, status="completed"):
        state = compose_sale(
            [AddItem(SaleLineItem(
                product_id=product.id,
                unit_price=price,
                quantity=quantity,
                has_serial=product.has_serial,
                serial_number=serial,
                product_name=product.display_name,
            ))],
            stock_lookup=lambda ids: get_effective_stock(db_session, ids),
        )
        return commit_sale(state, status=status, session=db_session, backoff_base=0)

    return _sell


_tx_numbers = itertools.count(1)


@pytest.fixture(scope='function')
def make_acquisition(db_session):
    """Create (and by default complete) a one-line supplier purchase."""
    def _make(product, *, quantity, unit_cost=100.0, entries=(), complete=True):
        tx = create_transaction(
            transaction_number=f"PO-{next(_tx_numbers):05d}",
            supplier_name="Wholesale Ltd",
            items=[{
                "product_id": product.id,
                "quantity": quantity,
                "unit_cost": unit_cost,
                "unit_entries": list(entries),
            }],
            session=db_session,
        )
        if complete:
            complete_transaction(tx.id, session=db_session)
        return tx

    return _make
