"""
Input schemas for the checkout core.

Callers hand in plain dicts (or model instances); ``parse`` turns pydantic's
errors into the domain ``ValidationError`` with a field-level detail list.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from checkout_core.errors import ValidationError
from checkout_core.models import DiscountType

M = TypeVar("M", bound=BaseModel)


def parse(model: Type[M], data: Any) -> M:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]) or "__root__", "message": err["msg"]}
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", details) from exc


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _not_null(v):
    # Patch fields may be omitted, but not cleared.
    if v is None:
        raise ValueError("may not be null")
    return v


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class CreateOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str = "card"
    coupon_code: Optional[str] = None

    @field_validator("coupon_code")
    @classmethod
    def _normalize_coupon(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = normalize_code(v)
        return v or None

    @model_validator(mode="after")
    def _default_billing(self) -> "CreateOrderRequest":
        if self.billing_address is None:
            self.billing_address = self.shipping_address
        return self


class AddToCartRequest(BaseModel):
    product_id: int
    quantity: int = Field(..., gt=0)


class BeginPaymentRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    currency: str = Field("usd", min_length=3, max_length=3)
    payment_method: str = "card"

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, v: str) -> str:
        return v.lower()


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0)
    min_purchase_amount: Decimal = Field(Decimal("0.00"), ge=0)
    max_discount_amount: Optional[Decimal] = Field(None, gt=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_code(v)

    @model_validator(mode="after")
    def _window(self) -> "CouponCreate":
        if self.valid_from and self.valid_until and self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        return self


class CouponPatch(BaseModel):
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = Field(None, gt=0)
    min_purchase_amount: Optional[Decimal] = Field(None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(None, gt=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def _normalize(cls, v: Optional[str]) -> Optional[str]:
        return normalize_code(v) if v is not None else None

    @field_validator("code", "discount_type", "discount_value", "min_purchase_amount", "is_active")
    @classmethod
    def _required(cls, v):
        return _not_null(v)


class ProductPatch(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    stock_quantity: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("name", "price", "stock_quantity", "is_active")
    @classmethod
    def _required(cls, v):
        return _not_null(v)
