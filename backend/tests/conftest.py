"""
Pytest fixtures for RetailOps backend tests.

Provides the application, a clean database per test, and small factories
for variants, orders and purchases.
"""

import pytest

from retailops import create_app
from retailops.config import TestConfig
from retailops.extensions import db
from retailops.models import ProductVariant
from retailops.services import order_service, transaction_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


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
def make_variant(db_session):
    """Factory: create a variant with a starting physical stock."""
    counter = {"n": 0}

    def _make(sku=None, *, stock=0, reserved=0, price_cents=1000):
        counter["n"] += 1
        variant = ProductVariant(
            sku=sku or f"SKU-{counter['n']:03d}",
            name=f"Variant {counter['n']}",
            price_cents=price_cents,
            current_stock=stock,
            reserved_stock=reserved,
        )
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def variant_a(make_variant):
    return make_variant("TSHIRT-RED-M", stock=10)


@pytest.fixture(scope='function')
def variant_b(make_variant):
    return make_variant("TSHIRT-BLUE-L", stock=10)


@pytest.fixture(scope='function')
def make_order(db_session):
    """Factory: create an order through order_service."""

    def _make(items, *, fulfillment_type="inside_channel", source="web", customer_phone="9800000000"):
        return order_service.create_order(
            items,
            source=source,
            fulfillment_type=fulfillment_type,
            customer_name="Test Customer",
            customer_phone=customer_phone,
        )

    return _make


# Update data that satisfies the prerequisite of each target status.
STEP_DATA = {
    "follow_up": {"followup_date": "2026-10-20", "followup_reason": "Customer asked to call back"},
    "assigned": {"assigned_rider_id": 1},
    "handover_to_courier": {"courier_partner": "NCM", "courier_tracking_id": "TRK-1"},
    "cancelled": {"cancellation_reason": "Customer changed mind"},
    "rejected": {"rejection_reason": "Fake order"},
    "return_initiated": {"return_reason": "Wrong size"},
}


@pytest.fixture(scope='function')
def advance(db_session):
    """Walk an order through a list of statuses, returning the last TransitionResult."""

    def _advance(order_id, *statuses):
        result = None
        for status in statuses:
            result = order_service.transition_order_status(order_id, status, STEP_DATA.get(status, {}))
        return result

    return _advance


@pytest.fixture(scope='function')
def make_purchase(db_session):
    """Factory: approved purchase (stock applied) from a privileged maker."""

    def _make(items, *, vendor_id=1):
        return transaction_service.create_transaction(
            "purchase",
            items,
            performed_by="admin",
            role="admin",
            vendor_id=vendor_id,
        )

    return _make


@pytest.fixture(scope='function')
def fresh_variant(db_session):
    """Fresh variant row (stock counters are written by UPDATE statements)."""

    def _fresh(variant_id):
        db_session.expire_all()
        return db_session.get(ProductVariant, variant_id)

    return _fresh
