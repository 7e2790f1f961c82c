# schemas/domain.py
# ============================================================================
# CHECKOUT ENGINE — DOMAIN SCHEMAS
# ============================================================================
# Purpose: Type-safe domain models shared by every engine component
#
# - Ref tagged union for backend fields that are either an id or an object
# - SubscriptionRecord / SubscriptionAccess for entitlement resolution
# - Cart / CartItem with the one-per-product invariant
# - EsignArtifact / PaymentAttempt / PaymentIntent for the checkout flow
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class ProductType(str, Enum):
    PORTFOLIO = "Portfolio"
    BUNDLE = "Bundle"


class PlanType(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Tier(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"


class AccessType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    PREMIUM = "premium"
    INDIVIDUAL = "individual"


class EsignStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GatewayKind(str, Enum):
    ORDER_BASED = "order-based"
    SERVER_TO_SERVER = "server-to-server"


class PaymentMethod(str, Enum):
    UPI = "upi"
    CARD = "card"
    NETBANKING_MANDATE = "netbanking-mandate"
    PHYSICAL_MANDATE = "physical-mandate"


class NextAction(str, Enum):
    REDIRECT = "REDIRECT"
    SHOW_LINK = "SHOW_LINK"
    POLL_STATUS = "POLL_STATUS"


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    REDIRECT = "redirect"
    SUCCESS = "success"
    FAILED = "failed"


# ============================================================================
# SECTION 2: REF TAGGED UNION
# ============================================================================

class IdRef(BaseModel):
    """Backend sent a bare id string."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["id"] = "id"
    id: str


class EmbeddedRef(BaseModel):
    """Backend sent the populated object."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["embedded"] = "embedded"
    value: dict[str, Any]

    @property
    def id(self) -> str:
        return str(self.value.get("_id") or self.value.get("id") or "")


Ref = Annotated[Union[IdRef, EmbeddedRef], Field(discriminator="kind")]


def to_ref(raw: Any) -> Optional[Union[IdRef, EmbeddedRef]]:
    """Normalize a raw backend field into a Ref, once, at the boundary."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, (IdRef, EmbeddedRef)):
        return raw
    if isinstance(raw, str):
        return IdRef(id=raw)
    if isinstance(raw, dict):
        return EmbeddedRef(value=raw)
    raise TypeError(f"Cannot build a Ref from {type(raw).__name__}")


def ref_attr(ref: Optional[Union[IdRef, EmbeddedRef]], name: str) -> Any:
    """Attribute of an embedded ref, None for bare ids."""
    if isinstance(ref, EmbeddedRef):
        return ref.value.get(name)
    return None


# ============================================================================
# SECTION 3: SUBSCRIPTIONS & ACCESS
# ============================================================================

class SubscriptionRecord(BaseModel):
    """Server-owned subscription row; never mutated client-side."""
    model_config = ConfigDict(frozen=True)

    id: str
    product_type: ProductType
    product: Ref
    portfolio: Optional[Ref] = None
    bundle: Optional[Ref] = None
    plan_type: Optional[PlanType] = None
    is_active: bool = False
    expiry_date: Optional[datetime] = None
    mandate_id: Optional[str] = None

    @field_validator("expiry_date")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def product_id(self) -> str:
        return self.product.id

    def is_current(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        if self.expiry_date is None:
            return True
        return self.expiry_date > (now or utcnow())

    @classmethod
    def from_payload(cls, row: dict) -> "SubscriptionRecord":
        return cls(
            id=str(row.get("_id") or row.get("id")),
            product_type=row.get("productType", ProductType.PORTFOLIO.value),
            product=to_ref(row.get("productId")),
            portfolio=to_ref(row.get("portfolio")),
            bundle=to_ref(row.get("bundle")),
            plan_type=row.get("planType"),
            is_active=bool(row.get("isActive", False)),
            expiry_date=row.get("expiryDate"),
            mandate_id=row.get("eMandateId") or row.get("mandateId"),
        )


class SubscriptionAccess(BaseModel):
    """Derived entitlement value; recomputed whenever subscriptions change."""
    model_config = ConfigDict(frozen=True)

    has_basic: bool = False
    has_premium: bool = False
    portfolio_access: frozenset[str] = frozenset()
    subscription_type: AccessType = AccessType.NONE

    @classmethod
    def none(cls) -> "SubscriptionAccess":
        return cls()

    def has_portfolio_access(self, portfolio_id: str) -> bool:
        # Membership only: premium does not unlock portfolios
        return portfolio_id in self.portfolio_access

    def has_basic_access(self) -> bool:
        return self.has_basic or self.has_premium

    def has_premium_access(self) -> bool:
        return self.has_premium

    def can_access_tips(self) -> bool:
        return self.has_premium

    def can_access_tip(self, category: Optional[str] = None, portfolio_id: Optional[str] = None) -> bool:
        """Portfolio-tagged tips gate on membership; the rest on tier."""
        if portfolio_id:
            return self.has_portfolio_access(portfolio_id)
        if (category or "").lower() == Tier.PREMIUM.value:
            return self.has_premium_access()
        return self.has_basic_access()


# ============================================================================
# SECTION 4: CART
# ============================================================================

class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_type: ProductType = ProductType.PORTFOLIO
    quantity: int = 1
    name: Optional[str] = None
    price_metadata: dict[str, float] = Field(default_factory=dict)

    @field_validator("quantity")
    @classmethod
    def quantity_in_range(cls, v: int) -> int:
        if v not in (0, 1):
            raise ValueError("Quantity must be 0 or 1")
        return v

    def price_for(self, plan_type: PlanType) -> float:
        return float(self.price_metadata.get(plan_type.value, 0.0))


class Cart(BaseModel):
    """Ordered, one entry per product id."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    items: tuple[CartItem, ...] = ()

    @field_validator("items")
    @classmethod
    def unique_products(cls, v: tuple[CartItem, ...]) -> tuple[CartItem, ...]:
        seen = set()
        for item in v:
            if item.product_id in seen:
                raise ValueError(f"Duplicate product in cart: {item.product_id}")
            seen.add(item.product_id)
        return v

    @property
    def product_ids(self) -> list[str]:
        return [i.product_id for i in self.items]

    @property
    def is_empty(self) -> bool:
        return not self.items

    def get(self, product_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def contains(self, product_id: str) -> bool:
        return self.get(product_id) is not None

    def with_item(self, item: CartItem) -> "Cart":
        return self.model_copy(update={"items": self.items + (item,)})

    def without(self, product_id: str) -> "Cart":
        return self.model_copy(update={
            "items": tuple(i for i in self.items if i.product_id != product_id)
        })

    def replacing(self, product_id: str, item: Optional[CartItem]) -> "Cart":
        """Restore one entry to a prior value, keeping the rest of the cart."""
        if item is None:
            return self.without(product_id)
        if self.contains(product_id):
            return self.model_copy(update={
                "items": tuple(item if i.product_id == product_id else i for i in self.items)
            })
        return self.with_item(item)

    def total(self, plan_type: PlanType) -> float:
        return sum(i.price_for(plan_type) * i.quantity for i in self.items)


# ============================================================================
# SECTION 5: CUSTOMER PROFILE
# ============================================================================

class CustomerProfile(BaseModel):
    """Identity used for KYC checks and hosted checkout prefill."""
    user_id: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    pan_number: Optional[str] = None
    date_of_birth: Optional[str] = None

    REQUIRED_KYC_FIELDS: ClassVar[tuple[str, ...]] = ("pan_number", "date_of_birth", "phone")

    def missing_kyc_fields(self) -> list[str]:
        return [f for f in self.REQUIRED_KYC_FIELDS if not getattr(self, f)]

    @classmethod
    def from_payload(cls, data: dict) -> "CustomerProfile":
        return cls(
            user_id=data.get("_id") or data.get("id"),
            full_name=data.get("fullName") or data.get("username"),
            email=data.get("email"),
            phone=data.get("phone"),
            pan_number=data.get("pandetails") or data.get("panNumber"),
            date_of_birth=data.get("dateOfBirth"),
        )


# ============================================================================
# SECTION 6: ESIGN & PAYMENT
# ============================================================================

class EsignArtifact(BaseModel):
    document_id: str
    product_type: ProductType
    product_id: str
    status: EsignStatus = EsignStatus.PENDING
    authentication_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_completed(self) -> bool:
        return self.status == EsignStatus.COMPLETED

    def transition_to(self, status: EsignStatus) -> "EsignArtifact":
        return self.model_copy(update={"status": status, "updated_at": utcnow()})


class PaymentAttempt(BaseModel):
    """One gateway attempt; superseded attempts are kept for audit."""
    attempt_id: str = Field(default_factory=lambda: f"ATT-{uuid.uuid4().hex[:10].upper()}")
    correlation_id: str
    gateway: GatewayKind
    gateway_id: str
    method: Optional[PaymentMethod] = None
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    previous_outcome: Optional[AttemptOutcome] = None
    superseded: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @computed_field
    @property
    def is_live(self) -> bool:
        return not self.superseded and self.outcome in (AttemptOutcome.PENDING, AttemptOutcome.REDIRECT)

    def transition_to(self, outcome: AttemptOutcome, **changes: Any) -> "PaymentAttempt":
        """Immutable transition with version bump"""
        return self.model_copy(update={
            "previous_outcome": self.outcome,
            "outcome": outcome,
            "updated_at": utcnow(),
            "version": self.version + 1,
            **changes,
        })


class PaymentIntent(BaseModel):
    """Everything a gateway needs to execute one attempt."""
    intent_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    gateway_id: str
    gateway: GatewayKind
    plan_type: PlanType
    recurring: bool = False
    product_type: ProductType = ProductType.PORTFOLIO
    product_id: Optional[str] = None
    cart_id: Optional[str] = None
    amount: float = 0.0
    currency: str = "INR"
    coupon_code: Optional[str] = None
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    method: Optional[PaymentMethod] = None
    payment_details: dict[str, Any] = Field(default_factory=dict)
    return_url: Optional[str] = None
    customer: Optional[CustomerProfile] = None
    created_at: datetime = Field(default_factory=utcnow)


class PaymentResult(BaseModel):
    """What a gateway execute call settled on."""
    outcome: AttemptOutcome
    gateway_id: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    subscription_id: Optional[str] = None
    next_action: Optional[NextAction] = None
    redirect_url: Optional[str] = None
    verified: bool = False
    message: Optional[str] = None
