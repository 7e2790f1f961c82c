# ==============================================================================
# FILE: tests/test_entitlements.py
# DESCRIPTION: Access resolution precedence and the cached entitlement service
# ==============================================================================

from datetime import datetime, timedelta, timezone

import pytest

from checkout_engine.entitlements import (
    EntitlementService,
    normalize_subscriptions,
    portfolio_access_ids,
    resolve,
    tier_of,
)
from checkout_engine.errors import NetworkError
from checkout_engine.schemas.domain import AccessType, SubscriptionRecord
from checkout_engine.schemas.events import EventType, LoginEvent, PaymentVerifiedEvent, PaymentVerifiedPayload

NOW = datetime(2026, 1, 15, tzinfo=timezone.utc)
FUTURE = "2027-01-01T00:00:00Z"
PAST = "2025-01-01T00:00:00Z"


def bundle_row(sub_id, bundle_id, category, active=True, expiry=FUTURE):
    return {
        "_id": sub_id,
        "productType": "Bundle",
        "productId": {"_id": bundle_id, "category": category},
        "isActive": active,
        "expiryDate": expiry,
    }


def portfolio_row(sub_id, portfolio_id, active=True, expiry=FUTURE):
    return {
        "_id": sub_id,
        "productType": "Portfolio",
        "productId": portfolio_id,
        "isActive": active,
        "expiryDate": expiry,
    }


def records(*rows):
    return [SubscriptionRecord.from_payload(r) for r in rows]


# ------------------------------------------------------------------------------
# Resolver
# ------------------------------------------------------------------------------

class TestResolve:

    def test_premium_takes_precedence_over_basic(self):
        access = resolve(
            records(bundle_row("s1", "b-basic", "basic"), bundle_row("s2", "b-prem", "premium")),
            [],
            now=NOW,
        )
        assert access.subscription_type == AccessType.PREMIUM
        assert access.has_basic and access.has_premium
        assert access.has_basic_access()
        assert access.can_access_tips()

    def test_premium_does_not_unlock_unlisted_portfolio(self):
        access = resolve(records(bundle_row("s1", "b1", "premium")), ["portfolio-x"], now=NOW)

        assert access.has_premium_access()
        assert access.has_portfolio_access("portfolio-x")
        assert not access.has_portfolio_access("portfolio-y")
        assert not access.can_access_tip(portfolio_id="portfolio-y")

    def test_individual_from_portfolio_subscription(self):
        access = resolve(records(portfolio_row("s1", "p1")), ["p1"], now=NOW)
        assert access.subscription_type == AccessType.INDIVIDUAL
        assert not access.has_basic_access()

    def test_individual_from_access_list_alone(self):
        access = resolve([], ["p1"], now=NOW)
        assert access.subscription_type == AccessType.INDIVIDUAL

    def test_no_subscriptions_means_none(self):
        access = resolve([], [], now=NOW)
        assert access.subscription_type == AccessType.NONE
        assert not access.can_access_tip(category="basic")

    def test_expired_and_inactive_rows_grant_nothing(self):
        access = resolve(
            records(
                bundle_row("s1", "b1", "premium", expiry=PAST),
                bundle_row("s2", "b2", "basic", active=False),
            ),
            [],
            now=NOW,
        )
        assert access.subscription_type == AccessType.NONE
        assert not access.has_basic and not access.has_premium

    def test_inactive_premium_falls_back_to_active_basic(self):
        access = resolve(
            records(
                bundle_row("s1", "b-prem", "premium", active=False),
                bundle_row("s2", "b-basic", "basic"),
            ),
            ["X"],
            now=NOW,
        )

        assert access.has_basic is True
        assert access.has_premium is False
        assert access.portfolio_access == frozenset({"X"})
        assert access.subscription_type == AccessType.BASIC
        assert access.has_portfolio_access("X")
        assert not access.has_portfolio_access("Y")

    def test_caller_bundle_tiers_override_embedded_category(self):
        record = records(bundle_row("s1", "b1", "basic"))[0]
        assert tier_of(record, {"b1": "premium"}).value == "premium"

    def test_basic_tip_categories(self):
        access = resolve(records(bundle_row("s1", "b1", "basic")), [], now=NOW)
        assert access.can_access_tip(category="basic")
        assert not access.can_access_tip(category="premium")


class TestNormalize:

    def test_bare_and_embedded_product_refs(self):
        payload = {
            "bundleSubscriptions": [bundle_row("s1", "b1", "basic")],
            "individualSubscriptions": [portfolio_row("s2", "p1")],
            "accessData": {"portfolioAccess": ["p1", "p2"]},
        }
        rows = normalize_subscriptions(payload)

        assert [r.product_id for r in rows] == ["b1", "p1"]
        assert rows[0].product.kind == "embedded"
        assert rows[1].product.kind == "id"
        assert portfolio_access_ids(payload) == ["p1", "p2"]

    def test_naive_expiry_is_treated_as_utc(self):
        row = records(portfolio_row("s1", "p1", expiry="2026-01-15T12:00:00"))[0]
        assert row.expiry_date.tzinfo is not None
        assert row.is_current(NOW)


# ------------------------------------------------------------------------------
# Service
# ------------------------------------------------------------------------------

class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_unauthenticated_user_gets_no_access_without_fetching(api):
    service = EntitlementService(api)

    access = await service.get_access()

    assert access.subscription_type == AccessType.NONE
    assert api.called("fetch_subscriptions") == []


@pytest.mark.asyncio
async def test_access_is_cached_until_ttl_expires(authed_api):
    clock = Clock(NOW)
    authed_api.subscriptions = {"bundleSubscriptions": [bundle_row("s1", "b1", "basic")]}
    service = EntitlementService(authed_api, ttl_seconds=300, clock=clock)

    await service.get_access()
    await service.has_basic_access()
    assert len(authed_api.called("fetch_subscriptions")) == 1

    clock.now = NOW + timedelta(seconds=301)
    await service.get_access()
    assert len(authed_api.called("fetch_subscriptions")) == 2


@pytest.mark.asyncio
async def test_fetch_failure_denies_and_is_not_cached(authed_api):
    authed_api.raise_next["fetch_subscriptions"] = [NetworkError("down")]
    service = EntitlementService(authed_api, clock=Clock(NOW))

    denied = await service.get_access()
    assert denied.subscription_type == AccessType.NONE

    authed_api.subscriptions = {"bundleSubscriptions": [bundle_row("s1", "b1", "premium")]}
    granted = await service.get_access()
    assert granted.subscription_type == AccessType.PREMIUM


@pytest.mark.asyncio
async def test_login_and_payment_events_invalidate_cache(authed_api, bus):
    service = EntitlementService(authed_api, event_bus=bus, clock=Clock(NOW))
    await service.attach()

    await service.get_access()
    await bus.publish(LoginEvent())
    await service.get_access()

    await bus.publish(PaymentVerifiedEvent.build(
        PaymentVerifiedPayload(gateway_id="razorpay", gateway="order-based", order_id="o1"),
        correlation_id="corr-1",
    ))
    await service.get_access()

    assert len(authed_api.called("fetch_subscriptions")) == 3
    invalidations = bus.get_published_events(EventType.ACCESS_INVALIDATED)
    assert [e.payload["reason"] for e in invalidations] == ["auth.login", "payment.verified"]
    assert invalidations[-1].correlation_id == "corr-1"


@pytest.mark.asyncio
async def test_refresh_after_payment_refetches(authed_api):
    service = EntitlementService(authed_api, clock=Clock(NOW))
    await service.get_access()

    authed_api.subscriptions = {"individualSubscriptions": [portfolio_row("s1", "p1")],
                                "accessData": {"portfolioAccess": ["p1"]}}
    access = await service.refresh_after_payment()

    assert access.has_portfolio_access("p1")
    assert await service.has_portfolio_access("p1")
    assert len(authed_api.called("fetch_subscriptions")) == 2
