"""
Gateway Adapter Interface
=========================
Uniform contract over the payment backends:

    create_payment_intent(cart, plan_type, options) -> PaymentIntent
    execute(intent, handlers) -> PaymentResult    (suspends until terminal)
    check_mandate(subscription_id) -> VerificationStatus

Errors surfaced to the orchestrator: ValidationError, GatewayRejected,
NetworkError, Cancelled.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field

from checkout_engine.errors import CheckoutError, GatewayConfigurationError
from checkout_engine.schemas.domain import (
    Cart,
    CustomerProfile,
    GatewayKind,
    PaymentIntent,
    PaymentMethod,
    PaymentResult,
    PlanType,
    ProductType,
)

MANDATE_METHODS = {"emandate", "upi_autopay", "enach"}


class VerificationStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    FAILED = "failed"


# =============================================================================
# DESCRIPTORS & ELIGIBILITY
# =============================================================================

class GatewayDescriptor(BaseModel):
    """Configured gateway as advertised by /api/payment/gateways"""
    id: str
    name: str
    kind: GatewayKind = GatewayKind.ORDER_BASED
    supported_methods: list[str] = Field(default_factory=list)
    supports_subscriptions: bool = True
    supports_one_time: bool = True
    enabled: bool = True

    @computed_field
    @property
    def supports_emandate(self) -> bool:
        return any(m in MANDATE_METHODS for m in self.supported_methods)

    def is_eligible(self, recurring: bool) -> bool:
        if not self.enabled:
            return False
        if recurring:
            return self.supports_subscriptions
        # Mandate-capable gateways are not offered for one-time plans
        return self.supports_one_time and not self.supports_emandate

    @classmethod
    def from_payload(cls, data: dict) -> "GatewayDescriptor":
        kind = data.get("kind")
        if kind is None:
            kind = GatewayKind.SERVER_TO_SERVER if data.get("flow") == "s2s" else GatewayKind.ORDER_BASED
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            kind=kind,
            supported_methods=list(data.get("supportedMethods") or []),
            supports_subscriptions=bool(data.get("supportsSubscriptions", True)),
            supports_one_time=bool(data.get("supportsOneTime", True)),
            enabled=bool(data.get("enabled", True)),
        )


def eligible_gateways(descriptors: list[GatewayDescriptor], recurring: bool) -> list[GatewayDescriptor]:
    """
    Gateways usable for the plan cadence.

    Raises GatewayConfigurationError when none qualify; there is no
    silent default gateway.
    """
    eligible = [d for d in descriptors if d.is_eligible(recurring)]
    if not eligible:
        raise GatewayConfigurationError(
            "No eligible payment gateway configured",
            details={"recurring": recurring, "configured": [d.id for d in descriptors]},
        )
    return eligible


# =============================================================================
# INTENT OPTIONS & HANDLERS
# =============================================================================

class IntentOptions(BaseModel):
    """Checkout choices that shape a payment intent."""
    product_type: ProductType = ProductType.PORTFOLIO
    product_id: Optional[str] = None
    recurring: bool = False
    coupon_code: Optional[str] = None
    method: Optional[PaymentMethod] = None
    payment_details: dict[str, Any] = Field(default_factory=dict)
    return_url: Optional[str] = None
    customer: Optional[CustomerProfile] = None


class PaymentHandlers:
    """Optional callbacks fired when execute settles."""

    def __init__(
        self,
        on_success: Optional[Callable[[PaymentResult], Awaitable[None]]] = None,
        on_failure: Optional[Callable[[CheckoutError], Awaitable[None]]] = None,
    ):
        self.on_success = on_success
        self.on_failure = on_failure


# =============================================================================
# ADAPTER INTERFACE
# =============================================================================

class IGatewayAdapter(ABC):
    """Gateway adapter interface"""

    descriptor: GatewayDescriptor

    @property
    def id(self) -> str:
        return self.descriptor.id

    @property
    def kind(self) -> GatewayKind:
        return self.descriptor.kind

    @abstractmethod
    async def create_payment_intent(
        self,
        cart: Cart,
        plan_type: PlanType,
        options: Optional[IntentOptions] = None,
    ) -> PaymentIntent:
        pass

    @abstractmethod
    async def execute(self, intent: PaymentIntent, handlers: Optional[PaymentHandlers] = None) -> PaymentResult:
        pass

    @abstractmethod
    async def check_mandate(self, subscription_id: str) -> VerificationStatus:
        """One backend status check for a recurring subscription."""
        pass


class BaseGatewayAdapter(IGatewayAdapter):
    """Runs the adapter-specific _execute and fires handlers once it settles."""

    def __init__(self, descriptor: GatewayDescriptor):
        self.descriptor = descriptor
        self._logger = structlog.get_logger().bind(component="gateway", gateway_id=descriptor.id)

    async def execute(self, intent: PaymentIntent, handlers: Optional[PaymentHandlers] = None) -> PaymentResult:
        handlers = handlers or PaymentHandlers()
        try:
            result = await self._execute(intent)
        except CheckoutError as e:
            self._logger.warning("gateway_execute_failed", intent_id=intent.intent_id, code=e.code)
            if handlers.on_failure is not None:
                await handlers.on_failure(e)
            raise
        self._logger.info("gateway_execute_settled",
                          intent_id=intent.intent_id,
                          outcome=result.outcome.value,
                          next_action=result.next_action.value if result.next_action else None)
        if handlers.on_success is not None:
            await handlers.on_success(result)
        return result

    @abstractmethod
    async def _execute(self, intent: PaymentIntent) -> PaymentResult:
        pass

    @staticmethod
    def _target(cart: Cart, options: IntentOptions) -> tuple[Optional[str], Optional[str]]:
        """(product_id, cart_id) the backend should charge for."""
        if options.product_id:
            return options.product_id, None
        if len(cart.items) == 1 and cart.id is None:
            return cart.items[0].product_id, None
        return None, cart.id
