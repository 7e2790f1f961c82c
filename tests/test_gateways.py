# ==============================================================================
# FILE: tests/test_gateways.py
# DESCRIPTION: Gateway eligibility, the order-based adapter and the
#              server-to-server adapter
# ==============================================================================

from datetime import datetime, timedelta, timezone

import pytest

from checkout_engine.errors import Cancelled, GatewayConfigurationError, GatewayRejected, NetworkError, ValidationError
from checkout_engine.gateways import (
    GatewayDescriptor,
    IntentOptions,
    OrderCheckoutAdapter,
    PaymentHandlers,
    ServerToServerAdapter,
    VerificationStatus,
    classify_emandate,
    classify_s2s_status,
    eligible_gateways,
    validate_payment_details,
)
from checkout_engine.schemas.domain import (
    AttemptOutcome,
    Cart,
    CartItem,
    GatewayKind,
    NextAction,
    PaymentMethod,
    PlanType,
)
from checkout_engine.services.session_store import SessionKeys
from fakes import (
    MANDATE_GATEWAY,
    ORDER_GATEWAY,
    S2S_GATEWAY,
    FakeHostedCheckout,
    RecordingSleep,
    instant_sleep,
)

SINGLE = Cart(items=(CartItem(product_id="p1", price_metadata={"monthly": 999}),))
MULTI = Cart(id="cart-1", items=(CartItem(product_id="p1"), CartItem(product_id="p2")))

MANDATE_DETAILS = {
    "account_holder_name": "Asha Rao",
    "account_number": "1234567890",
    "account_number_confirm": "1234567890",
    "bank_code": "HDFC",
}


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def order_adapter(api, hosted=None, **kwargs):
    kwargs.setdefault("sleep", instant_sleep)
    return OrderCheckoutAdapter(ORDER_GATEWAY, api, hosted or FakeHostedCheckout(), **kwargs)


def s2s_adapter(api, session, navigator):
    return ServerToServerAdapter(S2S_GATEWAY, api, session, navigator)


# ------------------------------------------------------------------------------
# Eligibility
# ------------------------------------------------------------------------------

class TestEligibility:

    def test_one_time_plans_exclude_mandate_gateways(self):
        eligible = eligible_gateways([ORDER_GATEWAY, MANDATE_GATEWAY, S2S_GATEWAY], recurring=False)
        assert [g.id for g in eligible] == ["razorpay"]

    def test_recurring_plans_accept_subscription_gateways(self):
        eligible = eligible_gateways([ORDER_GATEWAY, MANDATE_GATEWAY, S2S_GATEWAY], recurring=True)
        assert [g.id for g in eligible] == ["razorpay", "razorpay-emandate", "cashfree"]

    def test_no_eligible_gateway_is_configuration_error(self):
        with pytest.raises(GatewayConfigurationError):
            eligible_gateways([MANDATE_GATEWAY], recurring=False)
        with pytest.raises(GatewayConfigurationError):
            eligible_gateways([], recurring=True)

    def test_disabled_gateway_is_never_eligible(self):
        disabled = ORDER_GATEWAY.model_copy(update={"enabled": False})
        with pytest.raises(GatewayConfigurationError):
            eligible_gateways([disabled], recurring=True)

    def test_descriptor_from_payload(self):
        descriptor = GatewayDescriptor.from_payload({
            "id": "cashfree",
            "flow": "s2s",
            "supportedMethods": ["enach"],
            "supportsOneTime": False,
        })
        assert descriptor.kind == GatewayKind.SERVER_TO_SERVER
        assert descriptor.name == "cashfree"
        assert descriptor.supports_emandate


class TestClassification:

    def test_emandate_statuses(self):
        assert classify_emandate({"success": True, "subscription": {"status": "active"}}) == VerificationStatus.ACTIVE
        assert classify_emandate({"subscription": {"status": "authenticated"}}) == VerificationStatus.ACTIVE
        assert classify_emandate({"subscription": {"status": "created"}}) == VerificationStatus.PENDING
        assert classify_emandate({"subscription": {"status": "halted"}}) == VerificationStatus.FAILED

    def test_emandate_not_found_yet_is_retryable(self):
        payload = {"success": False, "message": "No matching subscriptions found"}
        assert classify_emandate(payload) == VerificationStatus.PENDING
        assert classify_emandate({"success": False, "message": "Mandate rejected"}) == VerificationStatus.FAILED

    def test_s2s_statuses(self):
        assert classify_s2s_status({"subscription": {"isActive": True}}) == VerificationStatus.ACTIVE
        assert classify_s2s_status(
            {"subscription": {"status": "pending", "cashfreeStatus": "BANK_APPROVAL_PENDING"}}
        ) == VerificationStatus.PENDING
        assert classify_s2s_status(
            {"subscription": {"status": "pending", "cashfreeStatus": "CANCELLED"}}
        ) == VerificationStatus.FAILED


# ------------------------------------------------------------------------------
# Order-based adapter
# ------------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_duplicate_orders_reused_within_window(authed_api):
    clock = Clock()
    adapter = order_adapter(authed_api, dedup_window_seconds=300, clock=clock)

    first = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)
    second = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)
    assert first.order_id == second.order_id
    assert len(authed_api.called("create_order")) == 1

    clock.now += timedelta(seconds=301)
    third = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)
    assert third.order_id != first.order_id


@pytest.mark.asyncio
async def test_cart_with_id_orders_by_cart(authed_api):
    adapter = order_adapter(authed_api)

    intent = await adapter.create_payment_intent(MULTI, PlanType.YEARLY)

    assert intent.cart_id == "cart-1"
    assert intent.product_id is None
    assert authed_api.called("create_order")[0] == ("create_order", None, "cart-1", "yearly")


@pytest.mark.asyncio
async def test_one_time_payment_verified_server_side(authed_api):
    hosted = FakeHostedCheckout()
    adapter = order_adapter(authed_api, hosted)
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)

    result = await adapter.execute(intent)

    assert result.outcome == AttemptOutcome.SUCCESS
    assert result.verified
    assert result.payment_id == "pay_1"
    assert hosted.opened[0]["order_id"] == intent.order_id
    assert authed_api.called("verify_payment") == [("verify_payment", intent.order_id, "pay_1")]

    # Completed orders are not reused
    again = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)
    assert again.order_id != intent.order_id


@pytest.mark.asyncio
async def test_rejected_verification_fails_attempt(authed_api):
    authed_api.verify_response = {"success": False}
    failures = []

    async def on_failure(error):
        failures.append(error.code)

    adapter = order_adapter(authed_api)
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)

    with pytest.raises(GatewayRejected):
        await adapter.execute(intent, PaymentHandlers(on_failure=on_failure))

    assert failures == ["gateway_rejected"]


@pytest.mark.asyncio
async def test_verification_results_are_cached(authed_api):
    adapter = order_adapter(authed_api)

    assert await adapter.verify_payment("o1", "pay_1", "sig")
    assert await adapter.verify_payment("o1", "pay_1", "sig")

    assert len(authed_api.called("verify_payment")) == 1


@pytest.mark.asyncio
async def test_verification_retried_on_network_error(authed_api):
    sleep = RecordingSleep()
    authed_api.raise_next["verify_payment"] = [NetworkError("reset")]
    adapter = order_adapter(authed_api, sleep=sleep, network_retries=2)

    assert await adapter.verify_payment("o1", "pay_1", "sig")

    assert len(authed_api.called("verify_payment")) == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_dismissed_overlay_is_cancellation(authed_api):
    adapter = order_adapter(authed_api, FakeHostedCheckout(dismiss=True))
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY)

    with pytest.raises(Cancelled):
        await adapter.execute(intent)

    assert authed_api.called("verify_payment") == []


@pytest.mark.asyncio
async def test_recurring_plan_creates_mandate_and_stays_pending(authed_api):
    adapter = order_adapter(authed_api)

    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(recurring=True))
    result = await adapter.execute(intent)

    assert intent.subscription_id == "sub_1"
    assert result.outcome == AttemptOutcome.PENDING
    assert authed_api.called("create_order") == []

    authed_api.emandate_statuses = [{"success": True, "subscription": {"status": "active"}}]
    assert await adapter.check_mandate("sub_1") == VerificationStatus.ACTIVE


# ------------------------------------------------------------------------------
# Server-to-server adapter
# ------------------------------------------------------------------------------

class TestPaymentDetails:

    def test_card_details_normalized(self):
        payload = validate_payment_details(PaymentMethod.CARD, {
            "card_number": "4111 1111 1111 1111",
            "card_holder_name": " Asha ",
            "card_expiry_mm": "7",
            "card_expiry_yy": "29",
            "card_cvv": "123",
        })
        assert payload["cardNumber"] == "4111111111111111"
        assert payload["cardExpiryMM"] == "07"
        assert payload["cardHolderName"] == "Asha"

    def test_missing_method(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payment_details(None, {})
        assert exc_info.value.field == "method"

    def test_physical_mandate_requires_ifsc(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_payment_details(PaymentMethod.PHYSICAL_MANDATE, MANDATE_DETAILS)
        assert exc_info.value.field == "ifsc"

    def test_upi_without_vpa_is_allowed(self):
        assert validate_payment_details(PaymentMethod.UPI, {}) == {}


@pytest.mark.asyncio
async def test_invalid_details_never_reach_the_network(authed_api, session, navigator):
    adapter = s2s_adapter(authed_api, session, navigator)
    details = dict(MANDATE_DETAILS, account_number_confirm="999")

    with pytest.raises(ValidationError) as exc_info:
        await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(
            recurring=True, method=PaymentMethod.NETBANKING_MANDATE, payment_details=details))

    assert exc_info.value.field == "account_number_confirm"
    assert authed_api.calls == []


@pytest.mark.asyncio
async def test_redirect_action_navigates_and_remembers_subscription(authed_api, session, navigator):
    adapter = s2s_adapter(authed_api, session, navigator)
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(
        recurring=True, method=PaymentMethod.NETBANKING_MANDATE, payment_details=MANDATE_DETAILS))

    result = await adapter.execute(intent)

    assert result.outcome == AttemptOutcome.REDIRECT
    assert result.next_action == NextAction.REDIRECT
    assert navigator.history == ["https://bank.example/auth"]
    assert await session.get(SessionKeys.S2S_SUBSCRIPTION_ID) == "sub_1"
    assert authed_api.called("initiate_s2s_payment") == [("initiate_s2s_payment", "sub_1", "enach")]


@pytest.mark.asyncio
async def test_show_link_action_redirects_to_payment_link(authed_api, session, navigator):
    authed_api.s2s_response = {"success": True, "nextAction": "SHOW_LINK", "paymentLink": "upi://pay?x=1"}
    adapter = s2s_adapter(authed_api, session, navigator)
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(
        recurring=True, method=PaymentMethod.UPI))

    result = await adapter.execute(intent)

    assert result.next_action == NextAction.SHOW_LINK
    assert navigator.last == "upi://pay?x=1"


@pytest.mark.asyncio
async def test_poll_status_action_stays_pending(authed_api, session, navigator):
    authed_api.s2s_response = {"success": True, "nextAction": "POLL_STATUS"}
    adapter = s2s_adapter(authed_api, session, navigator)
    details = dict(MANDATE_DETAILS, ifsc="hdfc0001")
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(
        recurring=True, method=PaymentMethod.PHYSICAL_MANDATE, payment_details=details))

    result = await adapter.execute(intent)

    assert result.outcome == AttemptOutcome.PENDING
    assert navigator.history == []
    assert intent.payment_details["ifsc"] == "HDFC0001"


@pytest.mark.asyncio
async def test_initiation_rejected(authed_api, session, navigator):
    authed_api.s2s_response = {"success": False}
    adapter = s2s_adapter(authed_api, session, navigator)
    intent = await adapter.create_payment_intent(SINGLE, PlanType.MONTHLY, IntentOptions(
        recurring=True, method=PaymentMethod.UPI))

    with pytest.raises(GatewayRejected):
        await adapter.execute(intent)


@pytest.mark.asyncio
async def test_return_resolution_prefers_params_then_session(authed_api, session, navigator):
    adapter = s2s_adapter(authed_api, session, navigator)
    await session.set(SessionKeys.S2S_SUBSCRIPTION_ID, "sub_saved")

    assert await adapter.resolve_return({"cf_subscription_id": "sub_param"}) == "sub_param"
    assert await adapter.resolve_return({}) == "sub_saved"

    await adapter.clear_correlation()
    assert await adapter.resolve_return() is None
