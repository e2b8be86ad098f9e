from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from checkout_core.models import Coupon, CouponEvaluation, DiscountType, to_money, utcnow

REASON_INACTIVE = "inactive"
REASON_EXPIRED = "expired"
REASON_LIMIT_REACHED = "limit reached"
REASON_BELOW_MINIMUM = "below minimum"
REASON_UNKNOWN_CODE = "invalid code"

ZERO = Decimal("0.00")


def limit_reached(coupon: Coupon) -> bool:
    return coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit


def evaluate_coupon(coupon: Coupon, subtotal: Decimal, now: Optional[datetime] = None) -> CouponEvaluation:
    """
    Compute the discount ``coupon`` grants on ``subtotal``.

    Rules are checked in order and the first failing one decides the reason.
    The discount never exceeds the subtotal, so totals cannot go negative.
    Has no side effects: usage is counted by the order builder when the
    order is committed.
    """
    now = now or utcnow()
    subtotal = to_money(subtotal)

    if not coupon.is_active:
        return CouponEvaluation(valid=False, discount=ZERO, reason=REASON_INACTIVE)
    if (coupon.valid_from and now < coupon.valid_from) or (coupon.valid_until and now > coupon.valid_until):
        return CouponEvaluation(valid=False, discount=ZERO, reason=REASON_EXPIRED)
    if limit_reached(coupon):
        return CouponEvaluation(valid=False, discount=ZERO, reason=REASON_LIMIT_REACHED)
    if subtotal < coupon.min_purchase_amount:
        return CouponEvaluation(valid=False, discount=ZERO, reason=REASON_BELOW_MINIMUM)

    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * coupon.discount_value / Decimal(100)
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = coupon.discount_value

    return CouponEvaluation(valid=True, discount=to_money(min(discount, subtotal)))
