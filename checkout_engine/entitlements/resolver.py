"""
Entitlement Resolver
====================
Pure resolution of what a user may see from their subscription rows and
the backend's accessible-portfolio list.

- hasBasic / hasPremium come from tiers of current subscriptions
- portfolioAccess is the backend list verbatim; tiers never widen it
- subscriptionType precedence: premium > basic > individual > none
"""

from datetime import datetime
from typing import Iterable, Optional

from checkout_engine.schemas.domain import (
    AccessType,
    ProductType,
    SubscriptionAccess,
    SubscriptionRecord,
    Tier,
    ref_attr,
)


def _parse_tier(value: Optional[str]) -> Optional[Tier]:
    if not value:
        return None
    try:
        return Tier(str(value).lower())
    except ValueError:
        return None


def tier_of(record: SubscriptionRecord, bundle_tiers: Optional[dict[str, str]] = None) -> Optional[Tier]:
    """
    Tier granted by one subscription row.

    Only bundles carry a tier. It comes from the caller's catalog when
    known, otherwise from the embedded bundle/product category.
    """
    if record.product_type != ProductType.BUNDLE:
        return None
    if bundle_tiers and record.product_id in bundle_tiers:
        return _parse_tier(bundle_tiers[record.product_id])
    return _parse_tier(ref_attr(record.bundle, "category")) or _parse_tier(ref_attr(record.product, "category"))


def resolve(
    subscriptions: Iterable[SubscriptionRecord],
    portfolio_access_ids: Iterable[str],
    *,
    bundle_tiers: Optional[dict[str, str]] = None,
    now: Optional[datetime] = None,
) -> SubscriptionAccess:
    has_basic = False
    has_premium = False
    has_individual = False

    for record in subscriptions:
        if not record.is_current(now):
            continue
        tier = tier_of(record, bundle_tiers)
        if tier == Tier.PREMIUM:
            has_premium = True
        elif tier == Tier.BASIC:
            has_basic = True
        elif record.product_type == ProductType.PORTFOLIO:
            has_individual = True

    portfolio_access = frozenset(str(pid) for pid in portfolio_access_ids if pid)

    if has_premium:
        subscription_type = AccessType.PREMIUM
    elif has_basic:
        subscription_type = AccessType.BASIC
    elif has_individual or portfolio_access:
        subscription_type = AccessType.INDIVIDUAL
    else:
        subscription_type = AccessType.NONE

    return SubscriptionAccess(
        has_basic=has_basic,
        has_premium=has_premium,
        portfolio_access=portfolio_access,
        subscription_type=subscription_type,
    )


def normalize_subscriptions(payload: dict) -> list[SubscriptionRecord]:
    """Bundle and individual rows from /api/user/subscriptions, normalized once."""
    rows = list(payload.get("bundleSubscriptions") or []) + list(payload.get("individualSubscriptions") or [])
    if not rows and isinstance(payload.get("subscriptions"), list):
        rows = list(payload["subscriptions"])
    return [SubscriptionRecord.from_payload(row) for row in rows]


def portfolio_access_ids(payload: dict) -> list[str]:
    access = payload.get("accessData") or {}
    return [str(pid) for pid in access.get("portfolioAccess") or []]
