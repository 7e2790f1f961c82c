"""
Order-based gateway adapter
===========================
Server-side order, hosted checkout overlay, then a mandatory server-side
signature verification. Client-reported success is never trusted alone.

Features:
- Duplicate-order prevention window keyed by product and plan
- Verification results cached for a short window
- Idempotent verification retried on network failure
- Recurring plans create a mandate subscription; its confirmation is
  left to the orchestrator's bounded verification
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel

from checkout_engine.config import settings
from checkout_engine.errors import GatewayRejected, NetworkError, ValidationError
from checkout_engine.gateways.base import (
    BaseGatewayAdapter,
    GatewayDescriptor,
    IntentOptions,
    VerificationStatus,
)
from checkout_engine.schemas.domain import (
    AttemptOutcome,
    Cart,
    PaymentIntent,
    PaymentResult,
    PlanType,
    utcnow,
)
from checkout_engine.services.backend_client import IBackendApi


# =============================================================================
# HOSTED CHECKOUT CONTRACT
# =============================================================================

class HostedCheckoutResult(BaseModel):
    """Success callback payload of the hosted overlay"""
    payment_id: str
    signature: str
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None


class IHostedCheckout(ABC):
    """
    The checkout overlay. Raises Cancelled when the user dismisses it and
    GatewayRejected when the processor reports payment.failed.
    """

    @abstractmethod
    async def open(self, options: dict) -> HostedCheckoutResult:
        pass


_ACTIVE = {"active", "authenticated"}
_PENDING = {"pending", "created"}
_RETRYABLE_MESSAGES = ("no matching subscriptions found",)


def classify_emandate(payload: dict) -> VerificationStatus:
    if payload.get("success") is False:
        message = str(payload.get("message") or payload.get("error") or "").lower()
        if any(m in message for m in _RETRYABLE_MESSAGES):
            return VerificationStatus.PENDING
        return VerificationStatus.FAILED
    subscription = payload.get("subscription") or {}
    status = str(subscription.get("status") or payload.get("status") or "").lower()
    if status in _ACTIVE or subscription.get("isActive") is True:
        return VerificationStatus.ACTIVE
    if status in _PENDING or not status:
        return VerificationStatus.PENDING
    return VerificationStatus.FAILED


class OrderCheckoutAdapter(BaseGatewayAdapter):
    """
    Example:
        adapter = OrderCheckoutAdapter(descriptor, api, overlay)
        intent = await adapter.create_payment_intent(cart, PlanType.YEARLY)
        result = await adapter.execute(intent)   # verified before SUCCESS
    """

    def __init__(
        self,
        descriptor: GatewayDescriptor,
        api: IBackendApi,
        hosted_checkout: IHostedCheckout,
        *,
        dedup_window_seconds: Optional[int] = None,
        verification_ttl_seconds: Optional[int] = None,
        network_retries: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(descriptor)
        self._api = api
        self._hosted = hosted_checkout
        self._dedup_window = timedelta(seconds=dedup_window_seconds
                                       if dedup_window_seconds is not None
                                       else settings.ORDER_DEDUP_WINDOW_SECONDS)
        self._verification_ttl = timedelta(seconds=verification_ttl_seconds
                                           if verification_ttl_seconds is not None
                                           else settings.VERIFICATION_CACHE_TTL_SECONDS)
        self._network_retries = network_retries if network_retries is not None else settings.VERIFY_NETWORK_RETRIES
        self._clock = clock
        self._sleep = sleep

        self._recent_orders: dict[str, tuple[dict, datetime]] = {}
        self._verifications: dict[str, tuple[bool, datetime]] = {}

    # =========================================================================
    # INTENT
    # =========================================================================

    async def create_payment_intent(
        self,
        cart: Cart,
        plan_type: PlanType,
        options: Optional[IntentOptions] = None,
    ) -> PaymentIntent:
        options = options or IntentOptions()
        product_id, cart_id = self._target(cart, options)
        if not product_id and not cart_id:
            raise ValidationError("Nothing to pay for", field="cart")

        if options.recurring:
            mandate = await self._api.create_emandate(
                product_type=options.product_type.value,
                product_id=product_id,
                interval=plan_type.value,
                coupon_code=options.coupon_code,
                cart_id=cart_id,
            )
            subscription_id = mandate.get("subscriptionId")
            if not subscription_id:
                raise GatewayRejected("Mandate could not be created")
            return PaymentIntent(
                gateway_id=self.id,
                gateway=self.kind,
                plan_type=plan_type,
                recurring=True,
                product_type=options.product_type,
                product_id=product_id,
                cart_id=cart_id,
                amount=float(mandate.get("amount", cart.total(plan_type))),
                currency=mandate.get("currency", "INR"),
                coupon_code=options.coupon_code,
                subscription_id=subscription_id,
                customer=options.customer,
            )

        order = await self._create_order_once(product_id, cart_id, plan_type, options)
        return PaymentIntent(
            gateway_id=self.id,
            gateway=self.kind,
            plan_type=plan_type,
            product_type=options.product_type,
            product_id=product_id,
            cart_id=cart_id,
            amount=float(order.get("amount", cart.total(plan_type))),
            currency=order.get("currency", "INR"),
            coupon_code=options.coupon_code,
            order_id=order["orderId"],
            customer=options.customer,
        )

    async def _create_order_once(
        self,
        product_id: Optional[str],
        cart_id: Optional[str],
        plan_type: PlanType,
        options: IntentOptions,
    ) -> dict:
        key = f"order_{product_id or cart_id}_{plan_type.value}"
        now = self._clock()
        cached = self._recent_orders.get(key)
        if cached is not None and now - cached[1] < self._dedup_window:
            self._logger.info("order_reused", key=key, order_id=cached[0].get("orderId"))
            return cached[0]

        order = await self._api.create_order(
            product_type=options.product_type.value,
            product_id=product_id,
            plan_type=plan_type.value,
            coupon_code=options.coupon_code,
            cart_id=cart_id,
        )
        if not order.get("orderId"):
            raise GatewayRejected("Order could not be created")
        self._recent_orders[key] = (order, now)
        self._logger.info("order_created", key=key, order_id=order["orderId"])
        return order

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _overlay_options(self, intent: PaymentIntent) -> dict:
        options = {
            "amount": intent.amount,
            "currency": intent.currency,
            "plan_type": intent.plan_type.value,
        }
        if intent.recurring:
            options["subscription_id"] = intent.subscription_id
        else:
            options["order_id"] = intent.order_id
        if intent.customer is not None:
            options["prefill"] = {
                "name": intent.customer.full_name,
                "email": intent.customer.email,
                "contact": intent.customer.phone,
            }
        return options

    async def _execute(self, intent: PaymentIntent) -> PaymentResult:
        callback = await self._hosted.open(self._overlay_options(intent))

        if intent.recurring:
            # Confirmed by the orchestrator's bounded mandate verification
            return PaymentResult(
                outcome=AttemptOutcome.PENDING,
                gateway_id=self.id,
                payment_id=callback.payment_id,
                subscription_id=intent.subscription_id,
            )

        order_id = callback.order_id or intent.order_id
        verified = await self.verify_payment(order_id, callback.payment_id, callback.signature)
        if not verified:
            raise GatewayRejected("Payment verification failed", details={"order_id": order_id})

        self._forget_order(intent)
        return PaymentResult(
            outcome=AttemptOutcome.SUCCESS,
            gateway_id=self.id,
            order_id=order_id,
            payment_id=callback.payment_id,
            verified=True,
        )

    def _forget_order(self, intent: PaymentIntent) -> None:
        key = f"order_{intent.product_id or intent.cart_id}_{intent.plan_type.value}"
        self._recent_orders.pop(key, None)

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_payment(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Server-side signature verification; idempotent, so retried on network failure."""
        key = f"{order_id}:{payment_id}"
        now = self._clock()
        cached = self._verifications.get(key)
        if cached is not None and now - cached[1] < self._verification_ttl:
            return cached[0]

        attempt = 0
        while True:
            try:
                payload = await self._api.verify_payment(order_id, payment_id, signature)
                break
            except NetworkError:
                attempt += 1
                if attempt > self._network_retries:
                    raise
                self._logger.warning("verify_payment_retry", order_id=order_id, attempt=attempt)
                await self._sleep(float(attempt))

        verified = bool(payload.get("success")) and payload.get("verified", True) is not False
        self._verifications[key] = (verified, self._clock())
        self._logger.info("payment_verified" if verified else "payment_verification_rejected",
                          order_id=order_id)
        return verified

    async def check_mandate(self, subscription_id: str) -> VerificationStatus:
        return classify_emandate(await self._api.verify_emandate(subscription_id))
