"""
Checkout flow state that survives full-page redirects.

PaymentFlowState lives for an hour and tells a reloaded page where to pick
the checkout back up. PostLoginState (30 minutes) remembers what the user
was doing when they were sent to log in.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from checkout_engine.config import settings
from checkout_engine.schemas.domain import PaymentMethod, PlanType, ProductType, utcnow
from checkout_engine.services.session_store import ISessionStore, SessionKeys


class FlowStep(str, Enum):
    CONSENT = "consent"
    AUTH = "auth"
    PROFILE = "profile"
    ESIGN = "esign"
    GATEWAY = "gateway"
    PROCESSING = "processing"
    AWAITING_RETURN = "awaiting_return"


STEP_ORDER = [
    FlowStep.CONSENT,
    FlowStep.AUTH,
    FlowStep.PROFILE,
    FlowStep.ESIGN,
    FlowStep.GATEWAY,
    FlowStep.PROCESSING,
    FlowStep.AWAITING_RETURN,
]


class PaymentFlowState(BaseModel):
    correlation_id: str
    current_step: FlowStep
    is_authenticated: bool = False
    product_type: ProductType = ProductType.PORTFOLIO
    product_id: Optional[str] = None
    use_cart: bool = False
    plan_type: PlanType = PlanType.MONTHLY
    recurring: bool = False
    coupon_code: Optional[str] = None
    method: Optional[PaymentMethod] = None
    gateway_id: Optional[str] = None
    subscription_id: Optional[str] = None
    saved_at: datetime = Field(default_factory=utcnow)


class PaymentFlowStore:

    def __init__(self, session: ISessionStore, ttl_seconds: Optional[int] = None):
        self._session = session
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.FLOW_STATE_TTL_SECONDS

    async def save(self, state: PaymentFlowState) -> None:
        await self._session.set(
            SessionKeys.PAYMENT_FLOW_STATE,
            state.model_dump(mode="json"),
            ttl_seconds=self._ttl,
        )

    async def load(self) -> Optional[PaymentFlowState]:
        raw = await self._session.get(SessionKeys.PAYMENT_FLOW_STATE)
        return PaymentFlowState.model_validate(raw) if raw else None

    async def clear(self) -> None:
        await self._session.delete(SessionKeys.PAYMENT_FLOW_STATE)

    async def should_continue_flow(self, is_authenticated: bool) -> Optional[FlowStep]:
        """Step a reloaded page should resume at, or None to start fresh."""
        state = await self.load()
        if state is None:
            return None

        # Sent off to log in and came back authenticated
        if not state.is_authenticated and is_authenticated and state.current_step == FlowStep.AUTH:
            return FlowStep.PROFILE

        if is_authenticated and state.current_step in (FlowStep.CONSENT, FlowStep.ESIGN, FlowStep.AWAITING_RETURN):
            return state.current_step

        # Mandate confirmation timed out; the subscription can still be re-checked
        if is_authenticated and state.current_step == FlowStep.PROCESSING and state.subscription_id:
            return FlowStep.PROCESSING

        return None


# =============================================================================
# POST-LOGIN INTENT
# =============================================================================

class PostLoginAction(str, Enum):
    PURCHASE = "purchase"
    CART = "cart"
    CHECKOUT = "checkout"


class PostLoginState(BaseModel):
    action: PostLoginAction
    product_id: Optional[str] = None
    plan_type: Optional[PlanType] = None
    redirect_path: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class PostLoginStore:

    def __init__(self, session: ISessionStore, ttl_seconds: Optional[int] = None):
        self._session = session
        self._ttl = ttl_seconds if ttl_seconds is not None else settings.POST_LOGIN_STATE_TTL_SECONDS

    async def save(self, state: PostLoginState) -> None:
        await self._session.set(SessionKeys.POST_LOGIN_STATE, state.model_dump(mode="json"), ttl_seconds=self._ttl)

    async def consume(self) -> Optional[PostLoginState]:
        raw = await self._session.get(SessionKeys.POST_LOGIN_STATE)
        if not raw:
            return None
        await self._session.delete(SessionKeys.POST_LOGIN_STATE)
        return PostLoginState.model_validate(raw)
