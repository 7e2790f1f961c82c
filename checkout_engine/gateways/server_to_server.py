"""
Server-to-server gateway adapter
================================
Four payment methods (UPI, card, net-banking mandate, physical mandate)
initiated from the backend. The processor answers with a next action:

- REDIRECT     full-page redirect to bank authorization
- SHOW_LINK    redirect to a UPI deep link
- POLL_STATUS  no redirect; confirmation may take days (physical mandate)

The subscription id and return URL are kept in session storage so the
status can be re-checked when the browser comes back.
"""

from typing import Optional

from checkout_engine.config import settings
from checkout_engine.errors import GatewayRejected, ValidationError
from checkout_engine.gateways.base import (
    BaseGatewayAdapter,
    GatewayDescriptor,
    IntentOptions,
    VerificationStatus,
)
from checkout_engine.schemas.domain import (
    AttemptOutcome,
    Cart,
    NextAction,
    PaymentIntent,
    PaymentMethod,
    PaymentResult,
    PlanType,
)
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.navigation import INavigator
from checkout_engine.services.session_store import ISessionStore, SessionKeys


PROCESSOR_METHODS = {
    PaymentMethod.UPI: "upi",
    PaymentMethod.CARD: "card",
    PaymentMethod.NETBANKING_MANDATE: "enach",
    PaymentMethod.PHYSICAL_MANDATE: "pnach",
}

RETURN_PARAM_NAMES = ("subscription_id", "cf_subscription_id", "sub_id")

_CARD_FIELDS = ("card_number", "card_holder_name", "card_expiry_mm", "card_expiry_yy", "card_cvv")
_MANDATE_FIELDS = ("account_holder_name", "account_number", "account_number_confirm", "bank_code")


# =============================================================================
# LOCAL VALIDATION (never reaches the network)
# =============================================================================

def _require(details: dict, fields: tuple[str, ...]) -> None:
    for field in fields:
        if not str(details.get(field) or "").strip():
            raise ValidationError(f"Missing {field.replace('_', ' ')}", field=field)


def validate_payment_details(method: Optional[PaymentMethod], details: dict) -> dict:
    """Validate and normalize method-specific details into the processor payload."""
    if method is None:
        raise ValidationError("Choose a payment method", field="method")

    if method == PaymentMethod.UPI:
        upi_id = str(details.get("upi_id") or "").strip()
        return {"upiId": upi_id} if upi_id else {}

    if method == PaymentMethod.CARD:
        _require(details, _CARD_FIELDS)
        number = str(details["card_number"]).replace(" ", "")
        mm = str(details["card_expiry_mm"]).zfill(2)
        if not number.isdigit():
            raise ValidationError("Card number must be numeric", field="card_number")
        if not (mm.isdigit() and 1 <= int(mm) <= 12):
            raise ValidationError("Invalid expiry month", field="card_expiry_mm")
        return {
            "cardNumber": number,
            "cardHolderName": str(details["card_holder_name"]).strip(),
            "cardExpiryMM": mm,
            "cardExpiryYY": str(details["card_expiry_yy"]),
            "cardCvv": str(details["card_cvv"]),
        }

    _require(details, _MANDATE_FIELDS)
    if str(details["account_number"]) != str(details["account_number_confirm"]):
        raise ValidationError("Account numbers do not match", field="account_number_confirm")
    payload = {
        "accountHolderName": str(details["account_holder_name"]).strip(),
        "accountNumber": str(details["account_number"]),
        "bankCode": str(details["bank_code"]),
        "accountType": details.get("account_type", "SAVINGS"),
    }
    if method == PaymentMethod.PHYSICAL_MANDATE:
        _require(details, ("ifsc",))
        payload["ifsc"] = str(details["ifsc"]).upper()
    return payload


def classify_s2s_status(payload: dict) -> VerificationStatus:
    subscription = payload.get("subscription") or {}
    if subscription.get("isActive") is True:
        return VerificationStatus.ACTIVE
    status = str(subscription.get("status") or "").lower()
    processor_status = str(subscription.get("cashfreeStatus") or "").upper()
    if status == "pending" and processor_status in ("BANK_APPROVAL_PENDING", "INITIALIZED", ""):
        return VerificationStatus.PENDING
    if status == "active":
        return VerificationStatus.ACTIVE
    return VerificationStatus.FAILED


class ServerToServerAdapter(BaseGatewayAdapter):
    """
    Example:
        adapter = ServerToServerAdapter(descriptor, api, session, navigator)
        intent = await adapter.create_payment_intent(cart, PlanType.MONTHLY, IntentOptions(
            recurring=True, method=PaymentMethod.NETBANKING_MANDATE, payment_details={...}))
        result = await adapter.execute(intent)
    """

    def __init__(
        self,
        descriptor: GatewayDescriptor,
        api: IBackendApi,
        session: ISessionStore,
        navigator: INavigator,
        *,
        return_url: Optional[str] = None,
    ):
        super().__init__(descriptor)
        self._api = api
        self._session = session
        self._navigator = navigator
        self._return_url = return_url or settings.PAYMENT_RETURN_PATH

    async def create_payment_intent(
        self,
        cart: Cart,
        plan_type: PlanType,
        options: Optional[IntentOptions] = None,
    ) -> PaymentIntent:
        options = options or IntentOptions()
        # Validate before any network call
        details = validate_payment_details(options.method, options.payment_details)
        product_id, cart_id = self._target(cart, options)
        if not product_id and not cart_id:
            raise ValidationError("Nothing to pay for", field="cart")

        mandate = await self._api.create_emandate(
            product_type=options.product_type.value,
            product_id=product_id,
            interval=plan_type.value,
            coupon_code=options.coupon_code,
            cart_id=cart_id,
        )
        subscription_id = mandate.get("subscriptionId")
        if not subscription_id:
            raise GatewayRejected("Subscription could not be created")

        return PaymentIntent(
            gateway_id=self.id,
            gateway=self.kind,
            plan_type=plan_type,
            recurring=options.recurring,
            product_type=options.product_type,
            product_id=product_id,
            cart_id=cart_id,
            amount=float(mandate.get("amount", cart.total(plan_type))),
            currency=mandate.get("currency", "INR"),
            coupon_code=options.coupon_code,
            subscription_id=subscription_id,
            method=options.method,
            payment_details=details,
            return_url=options.return_url or self._return_url,
            customer=options.customer,
        )

    async def _execute(self, intent: PaymentIntent) -> PaymentResult:
        response = await self._api.initiate_s2s_payment(
            intent.subscription_id,
            PROCESSOR_METHODS[intent.method],
            intent.payment_details,
        )
        if not response.get("success"):
            raise GatewayRejected(
                "Payment initiation rejected",
                details={"subscription_id": intent.subscription_id},
            )

        try:
            next_action = NextAction(response.get("nextAction") or NextAction.POLL_STATUS.value)
        except ValueError as e:
            raise GatewayRejected("Unsupported processor action") from e

        await self._remember(intent)

        if next_action in (NextAction.REDIRECT, NextAction.SHOW_LINK):
            url = response.get("redirectUrl") if next_action == NextAction.REDIRECT else response.get("paymentLink")
            if not url:
                raise GatewayRejected("Processor did not return an authorization link")
            await self._navigator.redirect(url)
            return PaymentResult(
                outcome=AttemptOutcome.REDIRECT,
                gateway_id=self.id,
                subscription_id=intent.subscription_id,
                next_action=next_action,
                redirect_url=url,
            )

        return PaymentResult(
            outcome=AttemptOutcome.PENDING,
            gateway_id=self.id,
            subscription_id=intent.subscription_id,
            next_action=NextAction.POLL_STATUS,
        )

    # =========================================================================
    # RETURN HANDLING
    # =========================================================================

    async def _remember(self, intent: PaymentIntent) -> None:
        await self._session.set(SessionKeys.S2S_SUBSCRIPTION_ID, intent.subscription_id)
        await self._session.set(SessionKeys.S2S_RETURN_URL, intent.return_url)

    async def resolve_return(self, params: Optional[dict] = None) -> Optional[str]:
        """Subscription id from return-URL params, falling back to session storage."""
        params = params or {}
        for name in RETURN_PARAM_NAMES:
            if params.get(name):
                return str(params[name])
        return await self._session.get(SessionKeys.S2S_SUBSCRIPTION_ID)

    async def clear_correlation(self) -> None:
        await self._session.delete(SessionKeys.S2S_SUBSCRIPTION_ID)
        await self._session.delete(SessionKeys.S2S_RETURN_URL)

    async def check_mandate(self, subscription_id: str) -> VerificationStatus:
        return classify_s2s_status(await self._api.get_s2s_status(subscription_id))
