"""Concurrent checkouts racing for the same stock and the same coupon."""
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from checkout_core.errors import InsufficientStock, InvalidCoupon
from checkout_core.models import DiscountType


def _race(builder, address, users, coupon_code=None):
    def attempt(user_id):
        try:
            return builder.create_order(user_id, address, coupon_code=coupon_code)
        except (InsufficientStock, InvalidCoupon) as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(users)) as pool:
        return list(pool.map(attempt, users))


def test_no_oversell(store, cart, builder, orders, catalog_service, address):
    """Test concurrent checkouts never selling more units than in stock."""
    product = store.add_product("HOT", price=Decimal("1.00"), stock_quantity=3)
    users = [f"user-{i}" for i in range(8)]
    for user_id in users:
        cart.add_item(user_id, product.id, 1)

    results = _race(builder, address, users)

    placed = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    assert len(placed) == 3
    assert len(failed) == 5
    assert all(isinstance(e, InsufficientStock) and e.product_id == product.id for e in failed)
    assert catalog_service.get_product(product.id).stock_quantity == 0
    assert len(orders.list_orders()) == 3


def test_last_unit_goes_to_exactly_one_shopper(store, cart, builder, orders, catalog_service, address):
    """Test that the last unit goes to exactly one of two racing shoppers."""
    product = store.add_product("LAST", price=Decimal("10.00"), stock_quantity=1)
    cart.add_item("alice", product.id, 1)
    cart.add_item("bob", product.id, 1)

    results = _race(builder, address, ["alice", "bob"])

    assert sum(1 for r in results if isinstance(r, InsufficientStock)) == 1
    assert len(orders.list_orders()) == 1
    assert catalog_service.get_product(product.id).stock_quantity == 0

    loser = "alice" if isinstance(results[0], InsufficientStock) else "bob"
    assert len(cart.get_cart(loser)) == 1


def test_coupon_usage_never_exceeds_limit(store, cart, builder, coupons, catalog_service, address):
    """Test concurrent redemptions never exceeding the usage limit."""
    product = store.add_product("MUG", price=Decimal("20.00"), stock_quantity=10)
    store.add_coupon("ONCE", DiscountType.FIXED, Decimal("5.00"), usage_limit=2)
    users = [f"user-{i}" for i in range(6)]
    for user_id in users:
        cart.add_item(user_id, product.id, 1)

    results = _race(builder, address, users, coupon_code="ONCE")

    placed = [r for r in results if not isinstance(r, Exception)]
    assert len(placed) == 2
    assert all(o.total_amount == Decimal("15.00") for o in placed)
    assert all(isinstance(r, InvalidCoupon) for r in results if isinstance(r, Exception))

    coupon = next(c for c in coupons.list() if c.code == "ONCE")
    assert coupon.used_count == 2
    assert catalog_service.get_product(product.id).stock_quantity == 8
