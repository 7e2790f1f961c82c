"""
Coupon validation and discount computation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field, field_validator

from checkout_engine.errors import CheckoutError, ValidationError
from checkout_engine.schemas.domain import ProductType, utcnow
from checkout_engine.services.backend_client import IBackendApi


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Coupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float
    max_discount_amount: float = 0.0
    min_order_value: float = 0.0
    valid_until: Optional[datetime] = None
    apply_to_all: bool = True
    portfolios: list[str] = Field(default_factory=list)
    bundles: list[str] = Field(default_factory=list)

    @field_validator("valid_until")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def applies_to(self, product_type: ProductType, product_id: Optional[str]) -> bool:
        if self.apply_to_all or product_id is None:
            return True
        if product_type == ProductType.BUNDLE:
            return product_id in self.bundles
        return product_id in self.portfolios

    @classmethod
    def from_payload(cls, data: dict) -> "Coupon":
        products = data.get("applicableProducts") or {}
        return cls(
            code=data["code"],
            discount_type=data["discountType"],
            discount_value=float(data["discountValue"]),
            max_discount_amount=float(data.get("maxDiscountAmount") or 0),
            min_order_value=float(data.get("minOrderValue") or 0),
            valid_until=data.get("validUntil"),
            apply_to_all=bool(products.get("applyToAll", True)),
            portfolios=list(products.get("portfolios") or []),
            bundles=list(products.get("bundles") or []),
        )


class Discount(BaseModel):
    discount_amount: float
    final_amount: float


def calculate_discount(original_amount: float, coupon: Optional[Coupon]) -> Discount:
    """Percentage (capped when maxDiscountAmount > 0) or fixed; never below zero."""
    if coupon is None:
        return Discount(discount_amount=0.0, final_amount=original_amount)

    if coupon.discount_type == DiscountType.PERCENTAGE:
        discount = original_amount * coupon.discount_value / 100
        if coupon.max_discount_amount > 0:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = coupon.discount_value

    return Discount(discount_amount=discount, final_amount=max(0.0, original_amount - discount))


class CouponService:

    def __init__(self, api: IBackendApi):
        self._api = api
        self._logger = structlog.get_logger().bind(component="coupons")

    async def validate(
        self,
        code: str,
        *,
        amount: Optional[float] = None,
        product_type: ProductType = ProductType.PORTFOLIO,
        product_id: Optional[str] = None,
    ) -> Coupon:
        code = code.strip().upper()
        if not code:
            raise ValidationError("Enter a coupon code", field="coupon_code")

        try:
            payload = await self._api.validate_coupon(code)
        except CheckoutError as e:
            self._logger.warning("coupon_check_failed", code=code, error=e.code)
            raise ValidationError("Invalid coupon code", field="coupon_code") from e

        if not payload.get("valid") or not payload.get("coupon"):
            raise ValidationError(payload.get("message") or "Invalid coupon code", field="coupon_code")

        coupon = Coupon.from_payload(payload["coupon"])
        if coupon.valid_until is not None and coupon.valid_until < utcnow():
            raise ValidationError("This coupon has expired", field="coupon_code")
        if amount is not None and amount < coupon.min_order_value:
            raise ValidationError("Order value too low for this coupon", field="coupon_code")
        if not coupon.applies_to(product_type, product_id):
            raise ValidationError("Coupon does not apply to this product", field="coupon_code")

        self._logger.info("coupon_validated", code=code, discount_type=coupon.discount_type.value)
        return coupon
