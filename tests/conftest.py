"""Pytest fixtures for the checkout core (file-backed SQLite per test)."""

from datetime import timedelta
from decimal import Decimal

import pytest

from checkout_core.checkout import OrderBuilder
from checkout_core.config import Settings
from checkout_core.models import DiscountType, utcnow
from checkout_core.payments import PaymentOrchestrator
from checkout_core.processor import SimulatedProcessor
from checkout_core.reconciliation import ReconciliationHandler
from checkout_core.services import CartService, CatalogService, CouponService, OrderService
from checkout_core.store import Store


@pytest.fixture
def store(tmp_path) -> Store:
    store = Store(Settings(database_url=f"sqlite:///{tmp_path / 'shop.db'}", processor_timeout=2))
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def catalog(store):
    products = {
        "A": store.add_product("ITEM-A", price=Decimal("10.00"), stock_quantity=5),
        "B": store.add_product("ITEM-B", price=Decimal("25.50"), stock_quantity=2),
        "C": store.add_product("ITEM-C", price=Decimal("5.00"), stock_quantity=0),  # Out of stock
        "D": store.add_product("ITEM-D", price=Decimal("7.00"), stock_quantity=10, is_active=False),
    }

    store.add_coupon("SAVE10", DiscountType.PERCENTAGE, Decimal("10"), min_purchase_amount=Decimal("15.00"))
    store.add_coupon("FIVEOFF", DiscountType.FIXED, Decimal("5.00"), usage_limit=1)
    store.add_coupon("BIGFIXED", DiscountType.FIXED, Decimal("100.00"))
    store.add_coupon("CAPPED", DiscountType.PERCENTAGE, Decimal("50"), max_discount_amount=Decimal("3.00"))
    store.add_coupon("EXPIRED", DiscountType.FIXED, Decimal("2.00"), valid_until=utcnow() - timedelta(days=1))

    return products


@pytest.fixture
def address() -> dict:
    return {
        "street": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "zip_code": "62701",
        "country": "US",
    }


@pytest.fixture
def builder(store) -> OrderBuilder:
    return OrderBuilder(store)


@pytest.fixture
def cart(store) -> CartService:
    return CartService(store)


@pytest.fixture
def catalog_service(store) -> CatalogService:
    return CatalogService(store)


@pytest.fixture
def coupons(store) -> CouponService:
    return CouponService(store)


@pytest.fixture
def orders(store) -> OrderService:
    return OrderService(store)


@pytest.fixture
def processor() -> SimulatedProcessor:
    return SimulatedProcessor()


@pytest.fixture
def payments(store, processor):
    orchestrator = PaymentOrchestrator(store, processor)
    yield orchestrator
    orchestrator.close()


@pytest.fixture
def reconciliation(store, processor):
    handler = ReconciliationHandler(store, processor)
    yield handler
    handler.close()


@pytest.fixture
def placed_order(catalog, cart, builder, address):
    """Order for 2 x A (total 20.00) by user-1."""
    cart.add_item("user-1", catalog["A"].id, 2)
    return builder.create_order("user-1", address)
