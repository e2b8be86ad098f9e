from __future__ import annotations

import argparse
import logging
from decimal import Decimal
from typing import Dict

from checkout_core.checkout import OrderBuilder
from checkout_core.config import Settings
from checkout_core.errors import CheckoutError
from checkout_core.models import DiscountType
from checkout_core.payments import PaymentOrchestrator
from checkout_core.processor import STATUS_SUCCEEDED, SimulatedProcessor
from checkout_core.reconciliation import ReconciliationHandler
from checkout_core.services import CartService, OrderService
from checkout_core.store import Store

ADDRESS = {
    "street": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "country": "US",
}


def seed(store: Store) -> Dict[str, int]:
    mug = store.add_product("ITEM001", price=Decimal("10.00"), stock_quantity=5, name="Mug")
    teapot = store.add_product("ITEM002", price=Decimal("25.50"), stock_quantity=2, name="Teapot")

    store.add_coupon("SAVE10", DiscountType.PERCENTAGE, Decimal("10"), min_purchase_amount=Decimal("15.00"))
    store.add_coupon("FIVEOFF", DiscountType.FIXED, Decimal("5.00"), usage_limit=1)
    return {mug.sku: mug.id, teapot.sku: teapot.id}


def main() -> None:
    p = argparse.ArgumentParser(description="Run one checkout, payment and confirmation and print the logs.")
    p.add_argument("--database-url", type=str, default="sqlite://", help="Defaults to a throwaway in-memory database")
    p.add_argument("--user-id", type=str, default="user-1")
    p.add_argument("--sku", type=str, default="ITEM001")
    p.add_argument("--qty", type=int, default=2)
    p.add_argument("--coupon", type=str, default=None)
    p.add_argument("--settle", type=str, default=STATUS_SUCCEEDED, help="Processor status to settle the charge with")
    p.add_argument("--refund", action="store_true", help="Refund the payment after confirmation")
    p.add_argument("--fail-at", type=str, default=None, help="Checkout step to fail artificially (e.g. ClearCart)")
    args = p.parse_args()

    settings = Settings.from_env().model_copy(update={"database_url": args.database_url})
    logging.basicConfig(level=settings.log_level, format="%(message)s")

    store = Store(settings)
    store.create_all()
    products = seed(store)

    processor = SimulatedProcessor()
    payments = PaymentOrchestrator(store, processor)
    reconciliation = ReconciliationHandler(store, processor)

    try:
        CartService(store).add_item(args.user_id, products[args.sku], args.qty)
        order = OrderBuilder(store).create_order(
            args.user_id, ADDRESS, coupon_code=args.coupon, fail_at_step=args.fail_at
        )
        started = payments.begin_payment(order.id)
        processor.settle(started.payment.external_reference, args.settle)
        payment = reconciliation.confirm(started.payment.external_reference)
        if args.refund:
            reconciliation.refund(payment.id)
    except CheckoutError as exc:
        print("\n=== FAILED ===")
        print(exc.to_payload())
    else:
        print("\n=== RESULT ===")
        print("order:", OrderService(store).get_order(order.id))
        print("payments:", payments.payments_for_order(order.id))
    finally:
        payments.close()
        reconciliation.close()
        store.dispose()


if __name__ == "__main__":
    main()
