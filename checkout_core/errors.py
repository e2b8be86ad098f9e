from __future__ import annotations

from typing import Any, Dict, List, Optional


class CheckoutError(Exception):
    kind = "checkout_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(CheckoutError):
    kind = "validation_error"

    def __init__(self, message: str, details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.details = details or []

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["details"] = self.details
        return payload


class BusinessRuleViolation(CheckoutError):
    kind = "business_rule_violation"


class NotFoundError(CheckoutError):
    kind = "not_found"


class ExternalServiceError(CheckoutError):
    """Processor unreachable or erroring. Safe to retry with backoff."""

    kind = "external_service_error"


class IntegrityViolation(CheckoutError):
    """A stored invariant would be broken. Fatal to the current operation."""

    kind = "integrity_violation"


# Business rules


class EmptyCart(BusinessRuleViolation):
    def __init__(self, user_id: str):
        super().__init__(f"Cart of user {user_id} is empty")
        self.user_id = user_id


class InsufficientStock(BusinessRuleViolation):
    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        msg = f"Insufficient stock for product {product_id}: need={requested}"
        if available is not None:
            msg += f", have={available}"
        super().__init__(msg)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ProductUnavailable(BusinessRuleViolation):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} is not available")
        self.product_id = product_id


class InvalidCoupon(BusinessRuleViolation):
    def __init__(self, code: str, reason: str):
        super().__init__(f"Coupon {code} is invalid: {reason}")
        self.code = code
        self.reason = reason


class AlreadyPaid(BusinessRuleViolation):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} is already paid")
        self.order_id = order_id


class PaymentInProgress(BusinessRuleViolation):
    def __init__(self, order_id: int, reference: Optional[str] = None):
        msg = f"Order {order_id} already has a pending payment"
        if reference:
            msg += f" ({reference})"
        super().__init__(msg)
        self.order_id = order_id
        self.reference = reference


class AmountMismatch(BusinessRuleViolation):
    def __init__(self, order_id: int, expected, requested):
        super().__init__(f"Order {order_id} total is {expected}, refusing to charge {requested}")
        self.order_id = order_id
        self.expected = expected
        self.requested = requested


class NotRefundable(BusinessRuleViolation):
    def __init__(self, payment_id: int, status: str):
        super().__init__(f"Payment {payment_id} cannot be refunded in status {status}")
        self.payment_id = payment_id
        self.status = status


class InvalidStatusTransition(BusinessRuleViolation):
    def __init__(self, order_id: int, current: str, target: str):
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


class DuplicateCoupon(BusinessRuleViolation):
    def __init__(self, code: str):
        super().__init__(f"Coupon code {code} already exists")
        self.code = code


# Lookups


class ProductNotFound(NotFoundError):
    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class CartItemNotFound(NotFoundError):
    def __init__(self, user_id: str, product_id: int):
        super().__init__(f"Product {product_id} is not in the cart of user {user_id}")
        self.user_id = user_id
        self.product_id = product_id


class CouponNotFound(NotFoundError):
    def __init__(self, ident):
        super().__init__(f"Coupon {ident} not found")
        self.ident = ident


class OrderNotFound(NotFoundError):
    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class PaymentNotFound(NotFoundError):
    def __init__(self, ident):
        super().__init__(f"Payment {ident} not found")
        self.ident = ident


# Processor


class ProcessorUnavailable(ExternalServiceError):
    pass


class ProcessorTimeout(ExternalServiceError):
    def __init__(self, operation: str, timeout: float):
        super().__init__(f"Payment processor did not answer {operation} within {timeout}s")
        self.operation = operation
        self.timeout = timeout


# Invariants


class IllegalPaymentTransition(IntegrityViolation):
    def __init__(self, payment_id: Optional[int], current: str, target: str):
        super().__init__(f"Payment {payment_id}: illegal transition {current} -> {target}")
        self.payment_id = payment_id
        self.current = current
        self.target = target
