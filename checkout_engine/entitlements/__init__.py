"""
Entitlements: pure access resolution plus the cached per-session service.
"""

from checkout_engine.entitlements.resolver import (
    resolve,
    tier_of,
    normalize_subscriptions,
    portfolio_access_ids,
)
from checkout_engine.entitlements.service import EntitlementService

__all__ = [
    # Resolution
    "resolve",
    "tier_of",
    "normalize_subscriptions",
    "portfolio_access_ids",
    # Service
    "EntitlementService",
]
