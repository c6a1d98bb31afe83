"""
Shared pytest fixtures for all tests.

Collaborating services are replaced by the in-memory fakes in ``fakes.py``.
"""

import os

# Ensure test environment; app modules build their engine at import
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest

from fakes import FakeCart, FakeGateway, FakePayments, FakeProducts, identity
from order_ledger import OrderLedger, ShippingAddress
from service_auth import Identity
from settlement import PaymentStore
from storage import create_database_engine, create_session_factory, init_db


# ============================================================================
# IDENTITIES
# ============================================================================


@pytest.fixture
def consumer() -> Identity:
    return identity("consumer-1", "consumer")


@pytest.fixture
def admin() -> Identity:
    return identity("admin-1", "admin")


# ============================================================================
# COLLABORATORS
# ============================================================================


@pytest.fixture
def products() -> FakeProducts:
    return FakeProducts([
        {"productId": "p-a1", "price": 10.00, "vendorId": "vendor-a", "quantityInStock": 5},
        {"productId": "p-a2", "price": 2.50, "vendorId": "vendor-a", "quantityInStock": 5},
        {"productId": "p-b1", "price": 9.99, "vendorId": "vendor-b", "quantityInStock": 5},
        {"productId": "p-c1", "price": 4.00, "vendorId": "vendor-c", "quantityInStock": 1},
    ])


@pytest.fixture
def cart() -> FakeCart:
    return FakeCart([
        {"productId": "p-a1", "price": 10.00, "quantity": 2},
        {"productId": "p-b1", "price": 9.99, "quantity": 1},
        {"productId": "p-a2", "price": 2.50, "quantity": 3},
    ])


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments({"pay-ok": "succeeded", "pay-pending": "processing", "pay-failed": "failed"})


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# ============================================================================
# STORAGE
# ============================================================================


@pytest.fixture
def session_factory():
    """A fresh in-memory database per test."""
    engine = create_database_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory) -> OrderLedger:
    return OrderLedger(session_factory)


@pytest.fixture
def payment_store(session_factory) -> PaymentStore:
    return PaymentStore(session_factory)


# ============================================================================
# TEST DATA
# ============================================================================


@pytest.fixture
def address() -> ShippingAddress:
    return ShippingAddress(line1="1 Market St", city="Toronto", postal_code="M5V 2T6", country="CA")


@pytest.fixture
def address_payload() -> dict:
    return {"line1": "1 Market St", "city": "Toronto", "postalCode": "M5V 2T6", "country": "CA"}
