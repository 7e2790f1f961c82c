"""
Entitlement Service
===================
Owns the cached SubscriptionAccess for one user session.

- TTL cache (5 minutes) because every protected view queries it
- Invalidated on login, logout, verified payment and explicit refresh
- A failed fetch yields the "none" access value and is never cached
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from checkout_engine.config import settings
from checkout_engine.errors import CheckoutError
from checkout_engine.entitlements.resolver import (
    normalize_subscriptions,
    portfolio_access_ids,
    resolve,
)
from checkout_engine.schemas.domain import SubscriptionAccess, SubscriptionRecord, utcnow
from checkout_engine.schemas.events import AccessInvalidatedEvent, BaseEvent, EventType
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.event_bus import IEventBus


class EntitlementService:
    """
    Cached entitlement lookups with an explicit invalidation API.

    Example:
        entitlements = EntitlementService(api, event_bus=bus)
        await entitlements.attach()
        if await entitlements.has_portfolio_access(portfolio_id):
            ...
    """

    def __init__(
        self,
        api: IBackendApi,
        event_bus: Optional[IEventBus] = None,
        ttl_seconds: Optional[int] = None,
        bundle_tiers: Optional[dict[str, str]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._api = api
        self._bus = event_bus
        self._ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.ACCESS_CACHE_TTL_SECONDS)
        self._bundle_tiers = bundle_tiers or {}
        self._clock = clock

        self._access: Optional[SubscriptionAccess] = None
        self._subscriptions: list[SubscriptionRecord] = []
        self._expires_at: Optional[datetime] = None
        self._generation = 0
        self._fetch_lock = asyncio.Lock()
        self._subscription_id: Optional[str] = None
        self._logger = structlog.get_logger().bind(component="entitlements")

    async def attach(self) -> None:
        """Subscribe to the events that make cached access stale."""
        if self._bus is None or self._subscription_id is not None:
            return
        self._subscription_id = await self._bus.subscribe(
            [EventType.AUTH_LOGIN, EventType.AUTH_LOGOUT, EventType.PAYMENT_VERIFIED],
            self._on_event,
        )

    async def detach(self) -> None:
        if self._bus is not None and self._subscription_id is not None:
            await self._bus.unsubscribe(self._subscription_id)
            self._subscription_id = None

    async def _on_event(self, event: BaseEvent) -> None:
        await self.invalidate(reason=event.event_type.value, correlation_id=event.correlation_id)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _is_fresh(self) -> bool:
        return self._access is not None and self._expires_at is not None and self._clock() < self._expires_at

    async def get_access(self, force_refresh: bool = False) -> SubscriptionAccess:
        if not self._api.is_authenticated:
            return SubscriptionAccess.none()
        if not force_refresh and self._is_fresh():
            return self._access

        async with self._fetch_lock:
            # Another caller may have refreshed while we waited
            if not force_refresh and self._is_fresh():
                return self._access
            return await self._fetch()

    async def get_subscriptions(self, force_refresh: bool = False) -> list[SubscriptionRecord]:
        await self.get_access(force_refresh=force_refresh)
        return list(self._subscriptions)

    async def _fetch(self) -> SubscriptionAccess:
        generation = self._generation
        try:
            payload = await self._api.fetch_subscriptions()
            records = normalize_subscriptions(payload)
            access = resolve(
                records,
                portfolio_access_ids(payload),
                bundle_tiers=self._bundle_tiers,
                now=self._clock(),
            )
        except (CheckoutError, ValueError, KeyError, TypeError) as e:
            # No data means no access, never "unknown => allow"
            self._logger.warning("access_fetch_failed", error=str(e), error_type=type(e).__name__)
            return SubscriptionAccess.none()

        if generation != self._generation:
            # Invalidated mid-flight; serve the result but do not cache it
            self._logger.info("access_fetch_superseded")
            return access

        self._access = access
        self._subscriptions = records
        self._expires_at = self._clock() + self._ttl
        self._logger.info("access_resolved",
                          subscription_type=access.subscription_type.value,
                          portfolios=len(access.portfolio_access),
                          subscriptions=len(records))
        return access

    async def has_portfolio_access(self, portfolio_id: str) -> bool:
        return (await self.get_access()).has_portfolio_access(portfolio_id)

    async def has_basic_access(self) -> bool:
        return (await self.get_access()).has_basic_access()

    async def has_premium_access(self) -> bool:
        return (await self.get_access()).has_premium_access()

    async def can_access_tips(self) -> bool:
        return (await self.get_access()).can_access_tips()

    async def can_access_tip(self, category: Optional[str] = None, portfolio_id: Optional[str] = None) -> bool:
        return (await self.get_access()).can_access_tip(category, portfolio_id)

    # =========================================================================
    # INVALIDATION
    # =========================================================================

    async def invalidate(self, reason: str = "explicit", correlation_id: Optional[str] = None) -> None:
        self._generation += 1
        self._access = None
        self._subscriptions = []
        self._expires_at = None
        self._logger.info("access_invalidated", reason=reason)
        if self._bus is not None:
            event = AccessInvalidatedEvent(payload={"reason": reason})
            if correlation_id:
                event.correlation_id = correlation_id
            await self._bus.publish(event)

    async def force_refresh(self) -> SubscriptionAccess:
        await self.invalidate(reason="force_refresh")
        return await self.get_access(force_refresh=True)

    async def refresh_after_payment(self) -> SubscriptionAccess:
        await self.invalidate(reason="payment")
        return await self.get_access(force_refresh=True)
