"""
Checkout State Machine
======================
One purchase attempt from consent to a terminal state:

    Idle -> Consent -> Auth -> ProfileCompletion -> GatewaySelection
         -> Processing <-> Esign -> Success | Error
                      \\-> AwaitingReturn (full-page redirect; resumed later)

Every user interaction is an awaited prompt. After each await the session
checks whether the user cancelled in the meantime, so a late gateway or
backend response never moves a cancelled checkout forward.

When the backend answers a payment call with ESIGN_REQUIRED/ESIGN_PENDING
the in-flight call is parked, the eSign gate runs, and the *same* call on
the *same* gateway is retried.
"""

import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field, model_validator

from checkout_engine.auth import AuthSession
from checkout_engine.cart.reconciler import CartReconciler
from checkout_engine.checkout.flow_state import FlowStep, PaymentFlowState, PaymentFlowStore
from checkout_engine.checkout.messages import error_code_for, user_message_for
from checkout_engine.checkout.profile import apply_fields, to_backend_payload, validate_kyc_fields
from checkout_engine.checkout.verification import MandateVerifier
from checkout_engine.config import settings
from checkout_engine.entitlements.service import EntitlementService
from checkout_engine.errors import (
    AuthRequired,
    Cancelled,
    CheckoutError,
    EsignFailed,
    EsignRequired,
    GatewayConfigurationError,
    GatewayRejected,
    PopupBlocked,
    ValidationError,
    VerificationTimeout,
)
from checkout_engine.esign.gate import EsignGate, EsignOutcome, EsignState
from checkout_engine.gateways.base import (
    GatewayDescriptor,
    IGatewayAdapter,
    IntentOptions,
    eligible_gateways,
)
from checkout_engine.gateways.server_to_server import ServerToServerAdapter
from checkout_engine.schemas.domain import (
    AttemptOutcome,
    Cart,
    CartItem,
    CustomerProfile,
    EsignArtifact,
    PaymentAttempt,
    PaymentMethod,
    PaymentResult,
    PlanType,
    ProductType,
    utcnow,
)
from checkout_engine.schemas.events import (
    CheckoutCancelledEvent,
    EsignCompletedEvent,
    MandatePendingEvent,
    PaymentFailedEvent,
    PaymentVerifiedEvent,
    PaymentVerifiedPayload,
)
from checkout_engine.services.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.event_bus import IEventBus
from checkout_engine.services.navigation import INavigator
from checkout_engine.services.session_store import ISessionStore


# =============================================================================
# STATES & MODELS
# =============================================================================

class CheckoutState(str, Enum):
    IDLE = "idle"
    CONSENT = "consent"
    AUTH = "auth"
    PROFILE_COMPLETION = "profile_completion"
    GATEWAY_SELECTION = "gateway_selection"
    PROCESSING = "processing"
    ESIGN = "esign"
    AWAITING_RETURN = "awaiting_return"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATES = {CheckoutState.SUCCESS, CheckoutState.ERROR}


class CheckoutRequest(BaseModel):
    """What the user asked to buy, and how."""
    product_type: ProductType = ProductType.PORTFOLIO
    product_id: Optional[str] = None
    use_cart: bool = False
    plan_type: PlanType = PlanType.MONTHLY
    recurring: bool = False
    coupon_code: Optional[str] = None
    method: Optional[PaymentMethod] = None
    payment_details: dict[str, Any] = Field(default_factory=dict)
    gateway_id: Optional[str] = None
    return_url: Optional[str] = None

    @model_validator(mode="after")
    def _has_target(self) -> "CheckoutRequest":
        if not self.use_cart and not self.product_id:
            raise ValueError("product_id is required unless paying for the cart")
        return self


class CheckoutOutcome(BaseModel):
    state: CheckoutState
    correlation_id: str
    error_code: Optional[str] = None
    message: Optional[str] = None
    silent: bool = False
    redirect_url: Optional[str] = None
    fallback_url: Optional[str] = None
    attempt_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @computed_field
    @property
    def actions(self) -> list[str]:
        if self.state == CheckoutState.ERROR and not self.silent:
            return ["try_again", "cancel"]
        return []


class ICheckoutPrompts(ABC):
    """User interactions the checkout suspends on."""

    @abstractmethod
    async def confirm_consent(self, request: CheckoutRequest) -> bool:
        pass

    @abstractmethod
    async def authenticate(self) -> Optional[str]:
        """Returns an auth token, or None when the user gave up."""
        pass

    @abstractmethod
    async def complete_profile(self, missing: list[str], profile: CustomerProfile) -> Optional[dict]:
        pass

    @abstractmethod
    async def choose_gateway(self, options: list[GatewayDescriptor]) -> Optional[str]:
        pass

    @abstractmethod
    async def esign_consent(self, artifact: EsignArtifact) -> bool:
        pass


class _Suspended(Exception):
    """Checkout handed the page to a redirect; resumed on return."""

    def __init__(self, redirect_url: Optional[str]):
        super().__init__(redirect_url)
        self.redirect_url = redirect_url


def request_from_flow(flow: PaymentFlowState) -> CheckoutRequest:
    return CheckoutRequest(
        product_type=flow.product_type,
        product_id=flow.product_id,
        use_cart=flow.use_cart or not flow.product_id,
        plan_type=flow.plan_type,
        recurring=flow.recurring,
        coupon_code=flow.coupon_code,
        method=flow.method,
        gateway_id=flow.gateway_id,
    )


# =============================================================================
# CHECKOUT SESSION
# =============================================================================

class CheckoutSession:
    """
    Drives one user's checkout.

    Example:
        session = CheckoutSession(api=api, gateways=adapters, esign_gate=gate,
                                  cart=carts, entitlements=entitlements,
                                  prompts=ui, session=store)
        outcome = await session.run(CheckoutRequest(product_id="p1", plan_type=PlanType.YEARLY))
    """

    VERSION = "1.0.0"

    def __init__(
        self,
        *,
        api: IBackendApi,
        gateways: list[IGatewayAdapter],
        esign_gate: EsignGate,
        cart: CartReconciler,
        entitlements: EntitlementService,
        prompts: ICheckoutPrompts,
        session: ISessionStore,
        auth: Optional[AuthSession] = None,
        event_bus: Optional[IEventBus] = None,
        audit_log: Optional[IAuditLog] = None,
        verifier: Optional[MandateVerifier] = None,
        navigator: Optional[INavigator] = None,
        require_esign_upfront: bool = False,
        max_esign_rounds: Optional[int] = None,
        success_path: Optional[str] = None,
    ):
        self._api = api
        self._gateways: dict[str, IGatewayAdapter] = {g.id: g for g in gateways}
        self._esign = esign_gate
        self._cart = cart
        self._entitlements = entitlements
        self._prompts = prompts
        self._auth = auth or AuthSession(api, cart, event_bus)
        self._bus = event_bus
        self._audit = audit_log or InMemoryAuditLog()
        self._verifier = verifier or MandateVerifier()
        self._navigator = navigator
        self._flow = PaymentFlowStore(session)
        self._require_esign_upfront = require_esign_upfront
        self._max_esign_rounds = max_esign_rounds if max_esign_rounds is not None else settings.ESIGN_MAX_ROUNDS
        self._success_path = success_path or settings.SUCCESS_REDIRECT_PATH

        self._state = CheckoutState.IDLE
        self._request: Optional[CheckoutRequest] = None
        self._correlation_id: Optional[str] = None
        self._selected_gateway_id: Optional[str] = None
        self._attempts: list[PaymentAttempt] = []
        self._outcome: Optional[CheckoutOutcome] = None
        self._cancelled = False
        self._running = False
        self._base_logger = structlog.get_logger().bind(component="checkout", version=self.VERSION)

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> CheckoutState:
        return self._state

    @property
    def correlation_id(self) -> Optional[str]:
        return self._correlation_id

    @property
    def selected_gateway_id(self) -> Optional[str]:
        return self._selected_gateway_id

    @property
    def attempts(self) -> list[PaymentAttempt]:
        return list(self._attempts)

    @property
    def current_attempt(self) -> Optional[PaymentAttempt]:
        return self._attempts[-1] if self._attempts else None

    @property
    def last_outcome(self) -> Optional[CheckoutOutcome]:
        return self._outcome

    @property
    def audit_log(self) -> IAuditLog:
        return self._audit

    @property
    def _logger(self):
        return self._base_logger.bind(correlation_id=self._correlation_id)

    def _ensure_active(self) -> None:
        if self._cancelled:
            raise Cancelled()

    async def _set_state(self, state: CheckoutState) -> None:
        previous = self._state
        self._state = state
        self._logger.info("checkout_transition", previous=previous.value, state=state.value)
        await self._audit_event(
            AuditEventType.STATE_CHANGED, "checkout", self._correlation_id,
            previous_state={"state": previous.value},
            new_state={"state": state.value},
        )

    def _finish(self, state: CheckoutState, **fields) -> CheckoutOutcome:
        attempt = self.current_attempt
        self._outcome = CheckoutOutcome(
            state=state,
            correlation_id=self._correlation_id,
            attempt_id=attempt.attempt_id if attempt else None,
            subscription_id=attempt.subscription_id if attempt else None,
            **fields,
        )
        return self._outcome

    def _begin(self, request: CheckoutRequest, correlation_id: Optional[str], gateway_id: Optional[str]) -> None:
        self._request = request
        self._correlation_id = correlation_id or str(uuid.uuid4())
        self._selected_gateway_id = gateway_id
        self._cancelled = False
        self._outcome = None

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def run(
        self,
        request: CheckoutRequest,
        *,
        resume_from: Optional[FlowStep] = None,
        correlation_id: Optional[str] = None,
        gateway_id: Optional[str] = None,
    ) -> CheckoutOutcome:
        if self._running:
            raise CheckoutError("A checkout is already in progress")

        self._begin(request, correlation_id, gateway_id)
        self._running = True
        await self._audit_event(
            AuditEventType.CHECKOUT_STARTED, "checkout", self._correlation_id,
            new_state=request.model_dump(mode="json", exclude={"payment_details"}),
            metadata={"resume_from": resume_from.value if resume_from else None},
        )
        self._logger.info("checkout_started",
                          product_id=request.product_id,
                          use_cart=request.use_cart,
                          plan_type=request.plan_type.value,
                          recurring=request.recurring)

        try:
            if resume_from is None or resume_from == FlowStep.CONSENT:
                await self._consent_step()
            await self._auth_step()
            profile = await self._profile_step()
            await self._upfront_esign_step(profile)
            adapter = await self._gateway_step()
            return await self._processing_step(adapter, profile)
        except _Suspended as suspended:
            await self._set_state(CheckoutState.AWAITING_RETURN)
            return self._finish(CheckoutState.AWAITING_RETURN, redirect_url=suspended.redirect_url)
        except CheckoutError as e:
            return await self._fail(e)
        except Exception as e:
            self._logger.exception("checkout_unexpected_error")
            return await self._fail(e)
        finally:
            self._running = False

    async def restart(self) -> CheckoutOutcome:
        """Try Again: back to Consent with the cart untouched."""
        if self._request is None:
            raise CheckoutError("Nothing to restart")
        return await self.run(self._request)

    async def cancel(self) -> CheckoutOutcome:
        """User-initiated; terminal and silent. Idempotent."""
        if self._state in TERMINAL_STATES or self._state == CheckoutState.IDLE:
            return self._outcome or CheckoutOutcome(state=self._state, correlation_id=self._correlation_id or "")
        self._cancelled = True
        if self._esign.state in (EsignState.CONSENT_SHOWN, EsignState.SIGNING_IN_PROGRESS):
            await self._esign.cancel()
        return await self._mark_cancelled()

    async def close(self) -> None:
        if self._state not in TERMINAL_STATES and self._state != CheckoutState.IDLE:
            await self.cancel()
        self._state = CheckoutState.IDLE
        self._logger.info("checkout_closed")

    async def resume_flow(self, return_params: Optional[dict] = None) -> Optional[CheckoutOutcome]:
        """Pick a persisted flow back up after a page reload, if one applies."""
        step = await self._flow.should_continue_flow(self._api.is_authenticated)
        if step is None:
            return None
        if step == FlowStep.AWAITING_RETURN:
            return await self.resume_from_return(return_params or {})
        if step == FlowStep.ESIGN:
            return await self.resume_after_esign_redirect()
        if step == FlowStep.PROCESSING:
            return await self.resume_verification()

        flow = await self._flow.load()
        return await self.run(
            self._request_for(flow),
            resume_from=step,
            correlation_id=flow.correlation_id,
            gateway_id=flow.gateway_id,
        )

    async def resume_after_esign_redirect(self) -> Optional[CheckoutOutcome]:
        flow = await self._flow.load()
        if flow is None:
            return None
        request = self._request_for(flow)
        self._begin(request, flow.correlation_id, flow.gateway_id)

        esign = await self._esign.resume_after_redirect()
        try:
            self._raise_for_esign(esign)
        except CheckoutError as e:
            return await self._fail(e)

        return await self.run(
            request,
            resume_from=FlowStep.ESIGN,
            correlation_id=flow.correlation_id,
            gateway_id=flow.gateway_id,
        )

    async def resume_from_return(self, params: dict) -> CheckoutOutcome:
        """Browser came back from a server-to-server authorization redirect."""
        if self._running:
            raise CheckoutError("A checkout is already in progress")

        flow = await self._flow.load()
        adapter = self._return_adapter(flow)
        request = self._request_for(flow) if flow else CheckoutRequest(use_cart=True, recurring=True)
        self._begin(request, flow.correlation_id if flow else None, adapter.id if adapter else None)
        self._running = True
        try:
            if adapter is None:
                raise GatewayConfigurationError("No server-to-server gateway configured")
            await self._set_state(CheckoutState.PROCESSING)
            subscription_id = await adapter.resolve_return(params)
            if not subscription_id:
                raise CheckoutError("No pending payment to confirm")
            return await self._confirm_subscription(adapter, subscription_id, AttemptOutcome.REDIRECT)
        except CheckoutError as e:
            return await self._fail(e)
        finally:
            self._running = False

    async def resume_verification(self) -> Optional[CheckoutOutcome]:
        """Re-check a mandate whose confirmation timed out before the page reloaded."""
        if self._running:
            raise CheckoutError("A checkout is already in progress")

        flow = await self._flow.load()
        if flow is None or not flow.subscription_id:
            return None
        adapter = self._gateways.get(flow.gateway_id)
        self._begin(self._request_for(flow), flow.correlation_id, flow.gateway_id)
        self._running = True
        try:
            if adapter is None:
                raise GatewayConfigurationError(
                    "Gateway of the pending payment is not available",
                    details={"gateway_id": flow.gateway_id},
                )
            await self._set_state(CheckoutState.PROCESSING)
            self._logger.info("mandate_verification_resumed",
                              gateway_id=adapter.id,
                              subscription_id=flow.subscription_id)
            return await self._confirm_subscription(adapter, flow.subscription_id, AttemptOutcome.PENDING)
        except CheckoutError as e:
            return await self._fail(e)
        finally:
            self._running = False

    async def _confirm_subscription(
        self,
        adapter: IGatewayAdapter,
        subscription_id: str,
        outcome: AttemptOutcome,
    ) -> CheckoutOutcome:
        attempt = self.current_attempt
        if attempt is None or attempt.subscription_id != subscription_id:
            await self._new_attempt(adapter)
            await self._update_attempt(outcome, subscription_id=subscription_id)

        try:
            await self._verify_mandate(adapter, subscription_id)
        except GatewayRejected:
            await self._clear_correlation(adapter)
            raise
        await self._clear_correlation(adapter)
        return await self._succeed(adapter, PaymentResult(
            outcome=AttemptOutcome.SUCCESS,
            gateway_id=adapter.id,
            subscription_id=subscription_id,
            verified=True,
        ))

    @staticmethod
    async def _clear_correlation(adapter: IGatewayAdapter) -> None:
        if isinstance(adapter, ServerToServerAdapter):
            await adapter.clear_correlation()

    async def open_esign_in_same_tab(self) -> CheckoutOutcome:
        """Fallback offered after a blocked popup."""
        esign = await self._esign.open_in_same_tab()
        await self._save_flow(FlowStep.ESIGN)
        await self._set_state(CheckoutState.AWAITING_RETURN)
        url = esign.artifact.authentication_url if esign.artifact else None
        return self._finish(CheckoutState.AWAITING_RETURN, redirect_url=url)

    def _request_for(self, flow: PaymentFlowState) -> CheckoutRequest:
        # Payment details are never persisted; reuse them while this session still holds them
        if self._request is not None and self._correlation_id == flow.correlation_id:
            return self._request
        return request_from_flow(flow)

    def _return_adapter(self, flow: Optional[PaymentFlowState]) -> Optional[ServerToServerAdapter]:
        if flow is not None and isinstance(self._gateways.get(flow.gateway_id), ServerToServerAdapter):
            return self._gateways[flow.gateway_id]
        for adapter in self._gateways.values():
            if isinstance(adapter, ServerToServerAdapter):
                return adapter
        return None

    # =========================================================================
    # STEPS
    # =========================================================================

    async def _consent_step(self) -> None:
        await self._set_state(CheckoutState.CONSENT)
        await self._save_flow(FlowStep.CONSENT)
        agreed = await self._prompts.confirm_consent(self._request)
        self._ensure_active()
        if not agreed:
            raise Cancelled("Consent declined")

    async def _auth_step(self) -> None:
        if self._api.is_authenticated:
            return
        await self._set_state(CheckoutState.AUTH)
        await self._save_flow(FlowStep.AUTH)
        token = await self._prompts.authenticate()
        self._ensure_active()
        if not token:
            raise AuthRequired()
        await self._auth.login(token)
        self._ensure_active()

    async def _profile_step(self) -> CustomerProfile:
        profile = CustomerProfile.from_payload(await self._api.get_profile())
        self._ensure_active()
        missing = profile.missing_kyc_fields()
        if not missing:
            return profile

        await self._set_state(CheckoutState.PROFILE_COMPLETION)
        submitted = await self._prompts.complete_profile(missing, profile)
        self._ensure_active()
        if submitted is None:
            raise Cancelled("Profile completion abandoned")

        cleaned = validate_kyc_fields(submitted)
        still_missing = [f for f in missing if f not in cleaned]
        if still_missing:
            raise ValidationError(f"Missing {still_missing[0].replace('_', ' ')}", field=still_missing[0])

        await self._api.update_profile(to_backend_payload(cleaned))
        self._ensure_active()
        self._logger.info("profile_completed", fields=sorted(cleaned))
        return apply_fields(profile, cleaned)

    async def _upfront_esign_step(self, profile: CustomerProfile) -> None:
        if not (self._require_esign_upfront and self._request.recurring):
            return
        product_type, product_id = self._esign_subject()
        if self._esign.is_satisfied(product_type, product_id):
            return
        await self._run_esign(profile, signal=None)

    async def _gateway_step(self) -> IGatewayAdapter:
        eligible = eligible_gateways([g.descriptor for g in self._gateways.values()], self._request.recurring)
        ids = [d.id for d in eligible]

        chosen = next((g for g in (self._selected_gateway_id, self._request.gateway_id) if g in ids), None)
        if chosen is None and len(eligible) == 1:
            chosen = ids[0]
        if chosen is None:
            await self._set_state(CheckoutState.GATEWAY_SELECTION)
            await self._save_flow(FlowStep.GATEWAY)
            chosen = await self._prompts.choose_gateway(eligible)
            self._ensure_active()
            if chosen is None:
                raise Cancelled("No payment option chosen")
            if chosen not in ids:
                raise ValidationError("Choose one of the available payment options", field="gateway_id")

        self._selected_gateway_id = chosen
        self._logger.info("gateway_selected", gateway_id=chosen, eligible=ids)
        return self._gateways[chosen]

    async def _processing_step(self, adapter: IGatewayAdapter, profile: CustomerProfile) -> CheckoutOutcome:
        await self._set_state(CheckoutState.PROCESSING)
        await self._save_flow(FlowStep.PROCESSING)
        request = self._request

        cart = await self._checkout_cart()
        self._ensure_active()
        options = IntentOptions(
            product_type=request.product_type,
            product_id=None if request.use_cart else request.product_id,
            recurring=request.recurring,
            coupon_code=request.coupon_code,
            method=request.method,
            payment_details=request.payment_details,
            return_url=request.return_url,
            customer=profile,
        )

        await self._new_attempt(adapter)
        intent = await self._with_esign(
            profile, lambda: adapter.create_payment_intent(cart, request.plan_type, options))
        self._ensure_active()
        await self._update_attempt(AttemptOutcome.PENDING,
                                   order_id=intent.order_id,
                                   subscription_id=intent.subscription_id)
        if intent.subscription_id:
            await self._save_flow(FlowStep.PROCESSING, subscription_id=intent.subscription_id)

        result = await self._with_esign(profile, lambda: adapter.execute(intent))
        self._ensure_active()
        return await self._settle(adapter, result)

    async def _checkout_cart(self) -> Cart:
        if not self._request.use_cart:
            return Cart(items=(CartItem(product_id=self._request.product_id,
                                        product_type=self._request.product_type),))
        cart = await self._cart.refresh()
        if cart.is_empty:
            raise ValidationError("Your cart is empty", field="cart")
        return cart

    async def _settle(self, adapter: IGatewayAdapter, result: PaymentResult) -> CheckoutOutcome:
        if result.outcome == AttemptOutcome.REDIRECT:
            await self._update_attempt(AttemptOutcome.REDIRECT, subscription_id=result.subscription_id)
            await self._save_flow(FlowStep.AWAITING_RETURN, subscription_id=result.subscription_id)
            await self._set_state(CheckoutState.AWAITING_RETURN)
            return self._finish(CheckoutState.AWAITING_RETURN, redirect_url=result.redirect_url)

        if result.outcome == AttemptOutcome.PENDING:
            if result.subscription_id:
                await self._save_flow(FlowStep.PROCESSING, subscription_id=result.subscription_id)
            await self._verify_mandate(adapter, result.subscription_id)
        elif not result.verified:
            raise GatewayRejected("Payment was not verified by the backend")

        return await self._succeed(adapter, result)

    async def _verify_mandate(self, adapter: IGatewayAdapter, subscription_id: Optional[str]) -> None:
        if not subscription_id:
            raise GatewayRejected("Missing subscription reference")
        try:
            await self._verifier.verify(adapter, subscription_id, is_cancelled=lambda: self._cancelled)
        except VerificationTimeout:
            # Hand it to the background watcher; the bank may still confirm
            if self._bus is not None and not self._cancelled:
                await self._bus.publish(MandatePendingEvent(
                    correlation_id=self._correlation_id,
                    payload={"gateway_id": adapter.id, "subscription_id": subscription_id},
                ))
            raise
        self._ensure_active()

    async def _succeed(self, adapter: IGatewayAdapter, result: PaymentResult) -> CheckoutOutcome:
        attempt = self.current_attempt
        await self._update_attempt(
            AttemptOutcome.SUCCESS,
            order_id=result.order_id,
            subscription_id=result.subscription_id or (attempt.subscription_id if attempt else None),
        )
        await self._flow.clear()
        await self._set_state(CheckoutState.SUCCESS)

        payload = PaymentVerifiedPayload(
            gateway_id=adapter.id,
            gateway=adapter.kind,
            order_id=result.order_id,
            subscription_id=result.subscription_id,
            payment_id=result.payment_id,
        )
        await self._audit_event(AuditEventType.PAYMENT_VERIFIED, "attempt",
                                self.current_attempt.attempt_id if self.current_attempt else self._correlation_id,
                                new_state=payload.model_dump(mode="json"))

        if self._bus is not None:
            await self._bus.publish(PaymentVerifiedEvent.build(payload, self._correlation_id))
        else:
            await self._entitlements.invalidate(reason="payment.verified", correlation_id=self._correlation_id)
        await self._entitlements.get_access(force_refresh=True)

        if self._request.use_cart:
            try:
                await self._cart.refresh()
            except CheckoutError as e:
                self._logger.warning("cart_refresh_after_payment_failed", error=str(e))

        if self._navigator is not None:
            await self._navigator.redirect(self._success_path)
        self._logger.info("checkout_succeeded", gateway_id=adapter.id)
        return self._finish(CheckoutState.SUCCESS, redirect_url=self._success_path)

    # =========================================================================
    # ESIGN INTERCEPTION
    # =========================================================================

    async def _with_esign(self, profile: CustomerProfile, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run a payment call; on an eSign signal, sign and retry the same call."""
        rounds = 0
        while True:
            try:
                return await call()
            except EsignRequired as signal:
                self._ensure_active()
                rounds += 1
                self._logger.info("esign_signal_received",
                                  code=signal.code,
                                  gateway_id=self._selected_gateway_id,
                                  round=rounds)
                if rounds > self._max_esign_rounds:
                    raise EsignFailed("Signature still required after verification") from signal
                await self._run_esign(profile, signal)
                await self._set_state(CheckoutState.PROCESSING)

    async def _run_esign(self, profile: CustomerProfile, signal: Optional[EsignRequired]) -> None:
        await self._set_state(CheckoutState.ESIGN)
        await self._audit_event(
            AuditEventType.ESIGN_REQUIRED, "esign", self._correlation_id,
            metadata={"signal": signal.code if signal else None, "gateway_id": self._selected_gateway_id},
        )

        product_type, product_id = self._esign_subject()
        outcome = await self._esign.start_verification(
            product_type,
            product_id,
            consent=self._prompts.esign_consent,
            signal=signal,
            customer=self._esign_customer(profile),
            force=signal is not None,
        )
        self._ensure_active()
        await self._audit_event(
            AuditEventType.ESIGN_FINISHED, "esign",
            outcome.artifact.document_id if outcome.artifact else self._correlation_id,
            new_state={"state": outcome.state.value, "reason": outcome.reason},
        )

        if outcome.redirected:
            await self._save_flow(FlowStep.ESIGN)
            raise _Suspended(outcome.artifact.authentication_url if outcome.artifact else None)
        self._raise_for_esign(outcome)

        cart_id = self._cart.cart.id
        if self._request.use_cart and cart_id:
            confirmation = await self._api.verify_cart_esign(cart_id)
            self._ensure_active()
            if confirmation.get("success") is False:
                raise EsignFailed("Cart signature not confirmed", details={"cart_id": cart_id})

        if self._bus is not None:
            await self._bus.publish(EsignCompletedEvent(
                correlation_id=self._correlation_id,
                payload={"document_id": outcome.artifact.document_id if outcome.artifact else None},
            ))

    @staticmethod
    def _raise_for_esign(outcome: EsignOutcome) -> None:
        if outcome.completed:
            return
        if outcome.state == EsignState.CANCELLED:
            raise Cancelled("Signature cancelled")
        if outcome.reason == PopupBlocked.code:
            raise PopupBlocked(outcome.fallback_url)
        raise EsignFailed(details={"reason": outcome.reason})

    def _esign_subject(self) -> tuple[ProductType, str]:
        if not self._request.use_cart and self._request.product_id:
            return self._request.product_type, self._request.product_id
        return ProductType.PORTFOLIO, self._cart.cart.id or "cart"

    @staticmethod
    def _esign_customer(profile: CustomerProfile) -> dict:
        return {"name": profile.full_name, "email": profile.email, "phone": profile.phone}

    # =========================================================================
    # FAILURE & CANCELLATION
    # =========================================================================

    async def _fail(self, exc: BaseException) -> CheckoutOutcome:
        if isinstance(exc, Cancelled) or self._cancelled:
            return await self._mark_cancelled()

        code = error_code_for(exc)
        attempt = self.current_attempt
        if attempt is not None and attempt.is_live:
            await self._update_attempt(AttemptOutcome.FAILED)
        if not isinstance(exc, VerificationTimeout):
            await self._flow.clear()
        await self._set_state(CheckoutState.ERROR)
        await self._audit_event(AuditEventType.PAYMENT_FAILED, "checkout", self._correlation_id,
                                metadata={"code": code, "error": str(exc)})
        if self._bus is not None:
            await self._bus.publish(PaymentFailedEvent(
                correlation_id=self._correlation_id,
                payload={"code": code, "gateway_id": self._selected_gateway_id},
            ))

        self._logger.warning("checkout_failed", code=code, error=str(exc))
        return self._finish(
            CheckoutState.ERROR,
            error_code=code,
            message=user_message_for(exc),
            fallback_url=getattr(exc, "fallback_url", None),
        )

    async def _mark_cancelled(self) -> CheckoutOutcome:
        if self._outcome is not None and self._outcome.error_code == Cancelled.code:
            return self._outcome

        self._cancelled = True
        attempt = self.current_attempt
        if attempt is not None and attempt.is_live:
            await self._update_attempt(AttemptOutcome.FAILED)
        await self._flow.clear()
        await self._set_state(CheckoutState.ERROR)
        await self._audit_event(AuditEventType.CHECKOUT_CANCELLED, "checkout", self._correlation_id, actor="user")
        if self._bus is not None:
            await self._bus.publish(CheckoutCancelledEvent(
                correlation_id=self._correlation_id,
                payload={"gateway_id": self._selected_gateway_id},
            ))
        self._logger.info("checkout_cancelled")
        return self._finish(
            CheckoutState.ERROR,
            error_code=Cancelled.code,
            message=Cancelled.user_message,
            silent=True,
        )

    # =========================================================================
    # ATTEMPTS, FLOW STATE & AUDIT
    # =========================================================================

    async def _new_attempt(self, adapter: IGatewayAdapter) -> PaymentAttempt:
        for i, previous in enumerate(self._attempts):
            if previous.is_live:
                self._attempts[i] = previous.model_copy(update={
                    "superseded": True,
                    "updated_at": utcnow(),
                    "version": previous.version + 1,
                })
                await self._audit_event(AuditEventType.ATTEMPT_SUPERSEDED, "attempt", previous.attempt_id)

        attempt = PaymentAttempt(
            correlation_id=self._correlation_id,
            gateway=adapter.kind,
            gateway_id=adapter.id,
            method=self._request.method,
        )
        self._attempts.append(attempt)
        await self._audit_event(AuditEventType.ATTEMPT_CREATED, "attempt", attempt.attempt_id,
                                new_state=attempt.model_dump(mode="json"))
        return attempt

    async def _update_attempt(self, outcome: AttemptOutcome, **changes) -> None:
        attempt = self.current_attempt
        if attempt is None:
            return
        updated = attempt.transition_to(outcome, **{k: v for k, v in changes.items() if v is not None})
        self._attempts[-1] = updated
        await self._audit_event(
            AuditEventType.ATTEMPT_UPDATED, "attempt", updated.attempt_id,
            previous_state={"outcome": attempt.outcome.value, "version": attempt.version},
            new_state={"outcome": updated.outcome.value, "version": updated.version},
        )

    async def _save_flow(self, step: FlowStep, **extra) -> None:
        request = self._request
        await self._flow.save(PaymentFlowState(
            correlation_id=self._correlation_id,
            current_step=step,
            is_authenticated=self._api.is_authenticated,
            product_type=request.product_type,
            product_id=request.product_id,
            use_cart=request.use_cart,
            plan_type=request.plan_type,
            recurring=request.recurring,
            coupon_code=request.coupon_code,
            method=request.method,
            gateway_id=self._selected_gateway_id,
            **extra,
        ))

    async def _audit_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Optional[str],
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        metadata: Optional[dict] = None,
        actor: str = "system",
    ) -> None:
        await self._audit.append(AuditLogEntry(
            correlation_id=self._correlation_id or "",
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id or "",
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        ))
