"""Tests for turning a cart into an order."""
from decimal import Decimal

import pytest

from checkout_core.checkout import CheckoutAborted
from checkout_core.errors import EmptyCart, InsufficientStock, InvalidCoupon, ProductUnavailable, ValidationError
from checkout_core.models import OrderPaymentStatus, OrderStatus


def _user_logs(store, user_id: str) -> list[str]:
    return [line for line in store.logs if f"[user={user_id}]" in line]


def _coupon_used(coupons, code: str) -> int:
    return next(c.used_count for c in coupons.list() if c.code == code)


def test_order_from_cart(store, catalog, cart, builder, orders, catalog_service, address):
    """Test order creation from a cart without a coupon."""
    cart.add_item("user-1", catalog["A"].id, 2)

    order = builder.create_order("user-1", address)

    assert order.total_amount == Decimal("20.00")
    assert order.subtotal_amount == Decimal("20.00")
    assert order.discount_amount == Decimal("0.00")
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == OrderPaymentStatus.PENDING
    assert order.billing_address == order.shipping_address == address

    items = orders.get_order_items(order.id)
    assert [(i.product_id, i.quantity, i.unit_price) for i in items] == [(catalog["A"].id, 2, Decimal("10.00"))]

    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 3
    assert cart.get_cart("user-1") == []

    logs = [line for line in store.logs if f"[order={order.id}]" in line]
    assert any("STEP ReserveStock OK" in l for l in logs)
    assert any("STEP RedeemCoupon" in l for l in logs) is False
    assert any("CHECKOUT OK" in l for l in logs)


def test_order_with_percentage_coupon(catalog, cart, builder, coupons, address):
    """Test order with a percentage coupon applied."""
    cart.add_item("user-1", catalog["A"].id, 2)

    order = builder.create_order("user-1", address, coupon_code="save10")

    assert order.total_amount == Decimal("18.00")
    assert order.discount_amount == Decimal("2.00")
    assert order.coupon_code == "SAVE10"
    assert _coupon_used(coupons, "SAVE10") == 1


def test_fixed_discount_never_makes_total_negative(catalog, cart, builder, address):
    """Test that a fixed discount above the subtotal is clamped."""
    cart.add_item("user-1", catalog["A"].id, 1)

    order = builder.create_order("user-1", address, coupon_code="BIGFIXED")

    assert order.discount_amount == Decimal("10.00")
    assert order.total_amount == Decimal("0.00")


def test_totals_are_conserved_across_lines(catalog, cart, builder, orders, catalog_service, address):
    """Test that line totals add up to the order subtotal."""
    cart.add_item("user-1", catalog["A"].id, 3)
    cart.add_item("user-1", catalog["B"].id, 2)

    order = builder.create_order("user-1", address, coupon_code="CAPPED")

    items = orders.get_order_items(order.id)
    subtotal = sum(i.unit_price * i.quantity for i in items)
    assert subtotal == Decimal("81.00")
    assert order.total_amount == subtotal - order.discount_amount == Decimal("78.00")

    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 2
    assert catalog_service.get_product(catalog["B"].id).stock_quantity == 0


def test_price_is_read_at_checkout_and_frozen_afterwards(catalog, cart, builder, orders, catalog_service, address):
    """Test that later price changes do not touch a placed order."""
    cart.add_item("user-1", catalog["A"].id, 2)
    catalog_service.update_product(catalog["A"].id, {"price": Decimal("12.00")})

    order = builder.create_order("user-1", address)
    assert order.total_amount == Decimal("24.00")

    catalog_service.update_product(catalog["A"].id, {"price": Decimal("99.00")})
    stored = orders.get_order(order.id)
    assert stored.total_amount == Decimal("24.00")
    assert stored.items[0].unit_price == Decimal("12.00")


def test_empty_cart(catalog, builder, orders, address):
    """Test failure on an empty cart."""
    with pytest.raises(EmptyCart):
        builder.create_order("user-1", address)
    assert orders.list_orders() == []


def test_insufficient_stock_changes_nothing(store, catalog, cart, builder, orders, catalog_service, coupons, address):
    """Test failure and no writes when stock is insufficient."""
    cart.add_item("user-1", catalog["A"].id, 2)
    cart.add_item("user-1", catalog["B"].id, 2)
    # Someone else bought one B after it was carted.
    catalog_service.update_product(catalog["B"].id, {"stock_quantity": 1})

    with pytest.raises(InsufficientStock) as exc_info:
        builder.create_order("user-1", address, coupon_code="SAVE10")

    assert exc_info.value.product_id == catalog["B"].id
    assert exc_info.value.available == 1
    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 5
    assert catalog_service.get_product(catalog["B"].id).stock_quantity == 1
    assert len(cart.get_cart("user-1")) == 2
    assert _coupon_used(coupons, "SAVE10") == 0
    assert orders.list_orders() == []

    logs = _user_logs(store, "user-1")
    assert any("CHECKOUT FAILED" in l for l in logs)
    assert any("STEP WriteOrder" in l for l in logs) is False


def test_inactive_product_is_reported(catalog, cart, builder, catalog_service, orders, address):
    """Test that an inactive product in the cart aborts checkout."""
    cart.add_item("user-1", catalog["A"].id, 1)
    catalog_service.update_product(catalog["A"].id, {"is_active": False})

    with pytest.raises(ProductUnavailable) as exc_info:
        builder.create_order("user-1", address)

    assert exc_info.value.product_id == catalog["A"].id
    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 5
    assert orders.list_orders() == []


@pytest.mark.parametrize(
    "code, qty, reason",
    [
        ("NOPE", 2, "invalid code"),
        ("EXPIRED", 2, "expired"),
        ("SAVE10", 1, "below minimum"),
    ],
)
def test_invalid_coupon_aborts_checkout(catalog, cart, builder, orders, catalog_service, address, code, qty, reason):
    """Test that an unknown coupon code aborts checkout."""
    cart.add_item("user-1", catalog["A"].id, qty)

    with pytest.raises(InvalidCoupon) as exc_info:
        builder.create_order("user-1", address, coupon_code=code)

    assert exc_info.value.reason == reason
    assert orders.list_orders() == []
    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 5
    assert len(cart.get_cart("user-1")) == 1


def test_exhausted_coupon(catalog, cart, builder, address):
    """Test failure when the coupon has no remaining uses."""
    cart.add_item("user-1", catalog["A"].id, 1)
    builder.create_order("user-1", address, coupon_code="FIVEOFF")

    cart.add_item("user-2", catalog["A"].id, 1)
    with pytest.raises(InvalidCoupon) as exc_info:
        builder.create_order("user-2", address, coupon_code="FIVEOFF")
    assert exc_info.value.reason == "limit reached"


def test_late_failure_rolls_everything_back(store, catalog, cart, builder, orders, catalog_service, coupons, address):
    """Test artificial failure at the last step rolling back every write."""
    cart.add_item("user-1", catalog["A"].id, 2)

    with pytest.raises(CheckoutAborted):
        builder.create_order("user-1", address, coupon_code="SAVE10", fail_at_step="ClearCart")

    # Stock and coupon were already written inside the transaction.
    logs = store.logs
    assert any("STEP ReserveStock OK" in l for l in logs)
    assert any("STEP RedeemCoupon OK" in l for l in logs)

    assert catalog_service.get_product(catalog["A"].id).stock_quantity == 5
    assert _coupon_used(coupons, "SAVE10") == 0
    assert len(cart.get_cart("user-1")) == 1
    assert orders.list_orders() == []


def test_bad_address_is_a_validation_error(catalog, cart, builder, address):
    """Test that a missing address field is reported per field."""
    cart.add_item("user-1", catalog["A"].id, 1)
    del address["city"]

    with pytest.raises(ValidationError) as exc_info:
        builder.create_order("user-1", address)

    payload = exc_info.value.to_payload()
    assert payload["kind"] == "validation_error"
    assert [d["field"] for d in payload["details"]] == ["shipping_address.city"]
