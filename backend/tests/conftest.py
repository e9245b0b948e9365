"""
Pytest fixtures for freshcut ledger tests.

Provides the test application (in-memory store), a clean database per test,
and small factories for products, suppliers and orders.

Stock is always seeded through stock_service so every balance has its
movement trail and replays from zero.
"""

import pytest

from freshcut import create_app
from freshcut.config import TestingConfig
from freshcut.extensions import db
from freshcut.services import order_service, product_service, purchase_service, stock_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema; core deletes bypass the append-only guards
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: catalog product with an opening stock balance."""
    counter = {"n": 0}

    def _make(quantity="0", *, price="10.00", sku=None, cost_price=None,
              discount_percent=None, with_stock=True, is_active=True):
        counter["n"] += 1
        product = product_service.create_product(
            sku=sku or f"SKU-{counter['n']:03d}",
            name=f"Test Cut {counter['n']}",
            price=price,
            cost_price=cost_price,
            discount_percent=discount_percent,
            with_stock=with_stock,
            is_active=is_active,
        )
        if with_stock and quantity not in ("0", 0):
            stock_service.manual_adjust(product.id, quantity, "add", "Opening stock", performed_by="tests")
        return product

    return _make


@pytest.fixture(scope='function')
def place_order(db_session):
    """Factory: order placed through checkout (reserves stock)."""

    def _place(items, *, payment_method="card", **kwargs):
        return order_service.create_order(items=items, payment_method=payment_method, **kwargs)

    return _place


@pytest.fixture(scope='function')
def supplier(db_session):
    return purchase_service.create_supplier(code="gulf", name="Gulf Meats Trading")
