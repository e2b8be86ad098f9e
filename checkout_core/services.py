from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, selectinload

from checkout_core.coupons import REASON_LIMIT_REACHED, REASON_UNKNOWN_CODE, evaluate_coupon
from checkout_core.errors import (
    CartItemNotFound,
    CouponNotFound,
    DuplicateCoupon,
    InsufficientStock,
    InvalidCoupon,
    InvalidStatusTransition,
    OrderNotFound,
    ProductNotFound,
    ProductUnavailable,
    ValidationError,
)
from checkout_core.models import (
    CartItem,
    CartLine,
    Coupon,
    CouponEvaluation,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    Setting,
    to_money,
    utcnow,
)
from checkout_core.schemas import (
    AddToCartRequest,
    CouponCreate,
    CouponPatch,
    ProductPatch,
    normalize_code,
    parse,
)
from checkout_core.store import Store

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class CatalogService:
    def __init__(self, store: Store):
        self.store = store

    def get_product(self, product_id: int) -> Product:
        with self.store.transaction() as session:
            product = session.get(Product, product_id)
            if not product:
                raise ProductNotFound(product_id)
            return product

    def update_product(self, product_id: int, patch) -> Product:
        patch = parse(ProductPatch, patch)
        fields = patch.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update")
        with self.store.transaction() as session:
            product = session.get(Product, product_id)
            if not product:
                raise ProductNotFound(product_id)
            for name, value in fields.items():
                setattr(product, name, value)
        self.store.log(f"[product={product_id}] updated: {', '.join(sorted(fields))}")
        return product

    def reserve_stock(self, session: Session, order_id: int, product_id: int, qty: int) -> None:
        """Conditionally decrement stock; fails if the units are gone by now."""
        result = session.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock_quantity >= qty)
            .values(stock_quantity=Product.stock_quantity - qty, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = session.scalar(select(Product.stock_quantity).where(Product.id == product_id))
            raise InsufficientStock(product_id, qty, available)
        self.store.log(f"[order={order_id}] stock reserved: product={product_id} qty={qty}")


class CartService:
    def __init__(self, store: Store):
        self.store = store

    def add_item(self, user_id: str, product_id: int, quantity: int) -> CartItem:
        req = parse(AddToCartRequest, {"product_id": product_id, "quantity": quantity})
        with self.store.transaction() as session:
            product = session.get(Product, req.product_id)
            if not product:
                raise ProductNotFound(req.product_id)
            if not product.is_active:
                raise ProductUnavailable(product.id)

            item = session.scalar(
                select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product.id)
            )
            new_qty = req.quantity + (item.quantity if item else 0)
            if product.stock_quantity < new_qty:
                raise InsufficientStock(product.id, new_qty, product.stock_quantity)

            if item:
                item.quantity = new_qty
            else:
                item = CartItem(user_id=user_id, product_id=product.id, quantity=new_qty)
                session.add(item)
        self.store.log(f"[user={user_id}] cart: product={product_id} qty={new_qty}")
        return item

    def update_item(self, user_id: str, product_id: int, quantity: int) -> CartItem:
        req = parse(AddToCartRequest, {"product_id": product_id, "quantity": quantity})
        with self.store.transaction() as session:
            row = session.execute(
                select(CartItem, Product)
                .join(Product, Product.id == CartItem.product_id)
                .where(CartItem.user_id == user_id, CartItem.product_id == req.product_id)
            ).first()
            if not row:
                raise CartItemNotFound(user_id, req.product_id)
            item, product = row
            if not product.is_active:
                raise ProductUnavailable(product.id)
            if product.stock_quantity < req.quantity:
                raise InsufficientStock(product.id, req.quantity, product.stock_quantity)
            item.quantity = req.quantity
        self.store.log(f"[user={user_id}] cart: product={product_id} qty={req.quantity}")
        return item

    def remove_item(self, user_id: str, product_id: int) -> None:
        with self.store.transaction() as session:
            result = session.execute(
                delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
            )
            if result.rowcount == 0:
                raise CartItemNotFound(user_id, product_id)
        self.store.log(f"[user={user_id}] cart: product={product_id} removed")

    def get_cart(self, user_id: str) -> List[CartLine]:
        with self.store.transaction() as session:
            return self.load_lines(session, user_id)

    def cart_total(self, user_id: str) -> Decimal:
        return to_money(sum((line.line_total for line in self.get_cart(user_id)), Decimal("0")))

    def clear_cart(self, user_id: str) -> int:
        with self.store.transaction() as session:
            removed = self.clear(session, user_id)
        self.store.log(f"[user={user_id}] cart cleared ({removed} lines)")
        return removed

    # Session-level helpers, shared with the order builder

    def load_lines(self, session: Session, user_id: str) -> List[CartLine]:
        rows = session.execute(
            select(CartItem, Product)
            .join(Product, Product.id == CartItem.product_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.product_id)
        ).all()
        return [
            CartLine(
                product_id=product.id,
                sku=product.sku,
                name=product.name,
                quantity=item.quantity,
                unit_price=product.price,
                stock_quantity=product.stock_quantity,
                is_active=product.is_active,
            )
            for item, product in rows
        ]

    def clear(self, session: Session, user_id: str) -> int:
        return session.execute(delete(CartItem).where(CartItem.user_id == user_id)).rowcount


class CouponService:
    def __init__(self, store: Store):
        self.store = store

    def create(self, data) -> Coupon:
        req = parse(CouponCreate, data)
        with self.store.transaction() as session:
            if session.scalar(select(Coupon.id).where(Coupon.code == req.code)) is not None:
                raise DuplicateCoupon(req.code)
            fields = req.model_dump()
            fields["valid_from"] = _naive_utc(fields["valid_from"])
            fields["valid_until"] = _naive_utc(fields["valid_until"])
            coupon = Coupon(**fields)
            session.add(coupon)
        self.store.log(f"[coupon={coupon.code}] created")
        return coupon

    def list(self) -> List[Coupon]:
        with self.store.transaction() as session:
            return list(session.scalars(select(Coupon).order_by(Coupon.created_at.desc(), Coupon.id.desc())))

    def get(self, coupon_id: int) -> Coupon:
        with self.store.transaction() as session:
            coupon = session.get(Coupon, coupon_id)
            if not coupon:
                raise CouponNotFound(coupon_id)
            return coupon

    def get_by_code(self, session: Session, code: str) -> Optional[Coupon]:
        """Active coupon with ``code`` (case-insensitive), or None."""
        return session.scalar(select(Coupon).where(Coupon.code == normalize_code(code), Coupon.is_active.is_(True)))

    def validate(self, code: str, amount: Decimal) -> CouponEvaluation:
        with self.store.transaction() as session:
            coupon = self.get_by_code(session, code)
            if not coupon:
                return CouponEvaluation(valid=False, discount=Decimal("0.00"), reason=REASON_UNKNOWN_CODE)
            return evaluate_coupon(coupon, amount)

    def update(self, coupon_id: int, patch) -> Coupon:
        patch = parse(CouponPatch, patch)
        fields = patch.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("No fields to update")
        with self.store.transaction() as session:
            coupon = session.get(Coupon, coupon_id)
            if not coupon:
                raise CouponNotFound(coupon_id)
            if "code" in fields and fields["code"] != coupon.code:
                if session.scalar(select(Coupon.id).where(Coupon.code == fields["code"])) is not None:
                    raise DuplicateCoupon(fields["code"])
            for name, value in fields.items():
                if name in ("valid_from", "valid_until"):
                    value = _naive_utc(value)
                setattr(coupon, name, value)
            if coupon.valid_from and coupon.valid_until and coupon.valid_from > coupon.valid_until:
                # Raising here rolls the patch back.
                raise ValidationError(
                    "Invalid CouponPatch",
                    [{"field": "valid_until", "message": "valid_from must not be after valid_until"}],
                )
        self.store.log(f"[coupon={coupon.code}] updated: {', '.join(sorted(fields))}")
        return coupon

    def delete(self, coupon_id: int) -> None:
        with self.store.transaction() as session:
            if session.execute(delete(Coupon).where(Coupon.id == coupon_id)).rowcount == 0:
                raise CouponNotFound(coupon_id)
        self.store.log(f"[coupon={coupon_id}] deleted")

    def redeem(self, session: Session, order_id: int, coupon: Coupon) -> None:
        """Count one use of ``coupon``, re-checking the limit at write time."""
        result = session.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                (Coupon.usage_limit.is_(None)) | (Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidCoupon(coupon.code, REASON_LIMIT_REACHED)
        self.store.log(f"[order={order_id}] coupon redeemed: {coupon.code}")


class OrderService:
    def __init__(self, store: Store):
        self.store = store

    def get_order(self, order_id: int, user_id: Optional[str] = None) -> Order:
        with self.store.transaction() as session:
            stmt = select(Order).options(selectinload(Order.items)).where(Order.id == order_id)
            if user_id is not None:
                stmt = stmt.where(Order.user_id == user_id)
            order = session.scalar(stmt)
            if not order:
                raise OrderNotFound(order_id)
            return order

    def get_order_items(self, order_id: int) -> List[OrderItem]:
        return list(self.get_order(order_id).items)

    def list_user_orders(self, user_id: str) -> List[Order]:
        with self.store.transaction() as session:
            stmt = (
                select(Order)
                .options(selectinload(Order.items))
                .where(Order.user_id == user_id)
                .order_by(Order.created_at.desc(), Order.id.desc())
            )
            return list(session.scalars(stmt))

    def list_orders(self) -> List[Order]:
        with self.store.transaction() as session:
            stmt = select(Order).options(selectinload(Order.items)).order_by(Order.created_at.desc(), Order.id.desc())
            return list(session.scalars(stmt))

    def update_status(self, order_id: int, status: str) -> Order:
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(
                "Invalid order status", [{"field": "status", "message": f"unknown status {status!r}"}]
            ) from None

        with self.store.transaction() as session:
            order = session.get(Order, order_id, with_for_update=True)
            if not order:
                raise OrderNotFound(order_id)
            if target not in ORDER_TRANSITIONS[order.status]:
                raise InvalidStatusTransition(order_id, order.status.value, target.value)
            previous = order.status
            order.status = target
            order.updated_at = utcnow()
        self.store.log(f"[order={order_id}] status {previous.value} -> {target.value}")
        return order


class SettingsService:
    """Admin key/value settings; each key is independent."""

    def __init__(self, store: Store):
        self.store = store

    def get(self, key: str, default: Any = None) -> Any:
        with self.store.transaction() as session:
            setting = session.get(Setting, key)
            return setting.value if setting else default

    def set(self, key: str, value: Any) -> None:
        with self.store.transaction() as session:
            session.merge(Setting(key=key, value=value, updated_at=utcnow()))
        self.store.log(f"[setting={key}] set")

    def all(self) -> Dict[str, Any]:
        with self.store.transaction() as session:
            return {s.key: s.value for s in session.scalars(select(Setting).order_by(Setting.key))}

    def delete(self, key: str) -> bool:
        with self.store.transaction() as session:
            removed = session.execute(delete(Setting).where(Setting.key == key)).rowcount > 0
        if removed:
            self.store.log(f"[setting={key}] deleted")
        return removed
