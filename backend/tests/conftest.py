"""
Pytest fixtures for the storeledger backend tests.

Provides the application on in-memory SQLite binds, a fresh schema per test,
a seeded catalog with opening stock, the wired core components and a test
client with identity headers.
"""

from contextlib import contextmanager
from types import SimpleNamespace

import pytest

from storeledger import create_app
from storeledger.config import TestConfig
from storeledger.core import get_core
from storeledger.extensions import db
from storeledger.models import Product, Store


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh schema on every bind (and an empty cache) for each test."""
    db.session.remove()
    db.drop_all()
    db.create_all()
    get_core().cache.clear()

    yield db.session

    db.session.rollback()
    db.session.remove()


@pytest.fixture(scope='function')
def core(db_session):
    """The components wired by create_app."""
    return get_core()


@pytest.fixture(scope='function')
def seeded(db_session, core):
    """
    Two active stores, one inactive store, three active products, one
    retired product, and opening stock:

        store_a: coffee 10, mug 5, kettle 1
        store_b: coffee 3
    """
    store_a = Store(name="Store A", code="A")
    store_b = Store(name="Store B", code="B")
    closed = Store(name="Closed Store", code="CLOSED", is_active=False)
    coffee = Product(sku="COF-1", name="Coffee Beans", price_cents=2500)
    mug = Product(sku="MUG-1", name="Mug", price_cents=1500)
    kettle = Product(sku="KET-1", name="Kettle", price_cents=6000)
    retired = Product(sku="OLD-1", name="Retired", price_cents=100, is_active=False)
    db_session.add_all([store_a, store_b, closed, coffee, mug, kettle, retired])
    db_session.commit()

    ids = SimpleNamespace(
        store_a=store_a.id,
        store_b=store_b.id,
        closed_store=closed.id,
        coffee=coffee.id,
        mug=mug.id,
        kettle=kettle.id,
        retired=retired.id,
    )

    core.ledger.adjust(ids.store_a, ids.coffee, 10, "set", reason="Opening stock")
    core.ledger.adjust(ids.store_a, ids.mug, 5, "set", reason="Opening stock")
    core.ledger.adjust(ids.store_a, ids.kettle, 1, "set", reason="Opening stock")
    core.ledger.adjust(ids.store_b, ids.coffee, 3, "set", reason="Opening stock")
    return ids


def _headers(user_id: int, role: str) -> dict:
    return {"X-User-Id": str(user_id), "X-User-Role": role}


@pytest.fixture(scope='function')
def client_headers():
    """Customer 7."""
    return _headers(7, "client")


@pytest.fixture(scope='function')
def other_client_headers():
    """Customer 8."""
    return _headers(8, "client")


@pytest.fixture(scope='function')
def service_headers():
    """Internal service caller."""
    return _headers(900, "service")


@pytest.fixture(scope='function')
def manager_headers():
    return _headers(901, "manager")


@pytest.fixture(scope='function')
def stock_store_offline(db_session):
    """
    Context manager that makes every statement against the stock store fail
    (its table is renamed away) until the block exits.
    """
    @contextmanager
    def offline():
        db_session.commit()
        engine = db.engines["stock"]
        with engine.begin() as conn:
            conn.exec_driver_sql("ALTER TABLE stock RENAME TO stock_offline")
        try:
            yield
        finally:
            db_session.rollback()
            with engine.begin() as conn:
                conn.exec_driver_sql("ALTER TABLE stock_offline RENAME TO stock")

    return offline
