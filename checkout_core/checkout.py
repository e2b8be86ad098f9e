from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from checkout_core.coupons import REASON_UNKNOWN_CODE, evaluate_coupon
from checkout_core.errors import CheckoutError, EmptyCart, InsufficientStock, InvalidCoupon, ProductUnavailable
from checkout_core.models import (
    CartLine,
    Coupon,
    Order,
    OrderAmounts,
    OrderItem,
    OrderPaymentStatus,
    OrderStatus,
    to_money,
    utcnow,
)
from checkout_core.schemas import CreateOrderRequest, parse
from checkout_core.services import CartService, CatalogService, CouponService
from checkout_core.store import Store


class CheckoutAborted(CheckoutError):
    """Artificial failure injected through ``fail_at_step``."""


@dataclass
class CheckoutContext:
    session: Session
    request: CreateOrderRequest
    now: datetime
    lines: List[CartLine] = field(default_factory=list)
    amounts: Optional[OrderAmounts] = None
    coupon: Optional[Coupon] = None
    order: Optional[Order] = None

    @property
    def tag(self) -> str:
        if self.order is not None and self.order.id is not None:
            return f"[order={self.order.id}]"
        return f"[user={self.request.user_id}]"


class Step(ABC):
    def __init__(self, store: Store):
        self.store = store

    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    def execute(self, ctx: CheckoutContext) -> None: ...

    def run(self, ctx: CheckoutContext) -> None:
        self.store.log(f"{ctx.tag} STEP {self.name()}")
        self.execute(ctx)
        self.store.log(f"{ctx.tag} STEP {self.name()} OK")


class LoadCart(Step):
    def __init__(self, store: Store):
        super().__init__(store)
        self.service = CartService(store)

    def name(self) -> str:
        return "LoadCart"

    def execute(self, ctx: CheckoutContext) -> None:
        ctx.lines = self.service.load_lines(ctx.session, ctx.request.user_id)
        if not ctx.lines:
            raise EmptyCart(ctx.request.user_id)


class CheckAvailability(Step):
    def name(self) -> str:
        return "CheckAvailability"

    def execute(self, ctx: CheckoutContext) -> None:
        for line in ctx.lines:
            if not line.is_active:
                raise ProductUnavailable(line.product_id)
            if line.stock_quantity < line.quantity:
                raise InsufficientStock(line.product_id, line.quantity, line.stock_quantity)


class PriceOrder(Step):
    def __init__(self, store: Store):
        super().__init__(store)
        self.coupons = CouponService(store)

    def name(self) -> str:
        return "PriceOrder"

    def execute(self, ctx: CheckoutContext) -> None:
        subtotal = to_money(sum((line.unit_price * line.quantity for line in ctx.lines), Decimal("0")))
        discount = Decimal("0.00")

        code = ctx.request.coupon_code
        if code:
            coupon = self.coupons.get_by_code(ctx.session, code)
            if coupon is None:
                raise InvalidCoupon(code, REASON_UNKNOWN_CODE)
            evaluation = evaluate_coupon(coupon, subtotal, ctx.now)
            if not evaluation.valid:
                raise InvalidCoupon(code, evaluation.reason)
            ctx.coupon = coupon
            discount = evaluation.discount

        ctx.amounts = OrderAmounts(subtotal=subtotal, discount=discount, total=to_money(subtotal - discount))
        self.store.log(
            f"{ctx.tag} amounts: subtotal={subtotal} discount={discount} total={ctx.amounts.total}"
        )


class WriteOrder(Step):
    def name(self) -> str:
        return "WriteOrder"

    def execute(self, ctx: CheckoutContext) -> None:
        req = ctx.request
        order = Order(
            user_id=req.user_id,
            subtotal_amount=ctx.amounts.subtotal,
            discount_amount=ctx.amounts.discount,
            total_amount=ctx.amounts.total,
            coupon_code=ctx.coupon.code if ctx.coupon else None,
            status=OrderStatus.PENDING,
            payment_status=OrderPaymentStatus.PENDING,
            payment_method=req.payment_method,
            shipping_address=req.shipping_address.model_dump(),
            billing_address=req.billing_address.model_dump(),
            created_at=ctx.now,
            updated_at=ctx.now,
        )
        # Same prices that produced the subtotal.
        order.items = [
            OrderItem(product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
            for line in ctx.lines
        ]
        ctx.session.add(order)
        ctx.session.flush()
        ctx.order = order


class ReserveStock(Step):
    def __init__(self, store: Store):
        super().__init__(store)
        self.service = CatalogService(store)

    def name(self) -> str:
        return "ReserveStock"

    def execute(self, ctx: CheckoutContext) -> None:
        for line in ctx.lines:
            self.service.reserve_stock(ctx.session, ctx.order.id, line.product_id, line.quantity)


class RedeemCoupon(Step):
    def __init__(self, store: Store):
        super().__init__(store)
        self.service = CouponService(store)

    def name(self) -> str:
        return "RedeemCoupon"

    def execute(self, ctx: CheckoutContext) -> None:
        self.service.redeem(ctx.session, ctx.order.id, ctx.coupon)


class ClearCart(Step):
    def __init__(self, store: Store):
        super().__init__(store)
        self.service = CartService(store)

    def name(self) -> str:
        return "ClearCart"

    def execute(self, ctx: CheckoutContext) -> None:
        self.service.clear(ctx.session, ctx.request.user_id)


class OrderBuilder:
    """
    Turns a user's cart into a priced, stock-reserved order.

    All steps share one database transaction: stock, coupon usage and the cart
    change only if the order commits. Stock and coupon usage are taken with
    conditional updates, so two checkouts racing for the last unit (or the last
    coupon use) cannot both win. Each call is a single attempt; failures
    propagate to the caller after the rollback.
    """

    def __init__(self, store: Store):
        self.store = store

    def _steps(self, ctx: CheckoutContext) -> List[Step]:
        steps: List[Step] = [
            LoadCart(self.store),
            CheckAvailability(self.store),
            PriceOrder(self.store),
            WriteOrder(self.store),
            ReserveStock(self.store),
        ]
        if ctx.request.coupon_code:
            steps.append(RedeemCoupon(self.store))
        steps.append(ClearCart(self.store))
        return steps

    def create_order(
        self,
        user_id: str,
        shipping_address,
        billing_address=None,
        payment_method: str = "card",
        coupon_code: Optional[str] = None,
        fail_at_step: Optional[str] = None,
    ) -> Order:
        req = parse(
            CreateOrderRequest,
            {
                "user_id": user_id,
                "shipping_address": shipping_address,
                "billing_address": billing_address,
                "payment_method": payment_method,
                "coupon_code": coupon_code,
            },
        )
        self.store.log(f"[user={req.user_id}] CHECKOUT START coupon={req.coupon_code}")

        try:
            with self.store.transaction() as session:
                ctx = CheckoutContext(session=session, request=req, now=utcnow())
                for step in self._steps(ctx):
                    if fail_at_step == step.name():
                        raise CheckoutAborted(f"Artificial failure at step {step.name()}")
                    step.run(ctx)
        except CheckoutError as e:
            self.store.log(f"[user={req.user_id}] CHECKOUT FAILED: {e}")
            raise

        order = ctx.order
        self.store.log(f"[order={order.id}] CHECKOUT OK user={req.user_id} total={order.total_amount}")
        return order
