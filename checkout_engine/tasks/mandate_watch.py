"""
Mandate Watch - pending mandate follow-up
=========================================
Background task that re-checks recurring subscriptions whose confirmation
outlived the checkout's bounded verification (physical mandates can take
days) and publishes payment.verified once the bank confirms.

Features:
- Registers from mandate.pending events
- Checks a bounded batch every cycle (default 15 minutes)
- Drops entries that fail or exceed the maximum age
- Configurable via MANDATE_WATCH_* environment variables
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Union

import structlog
from pydantic import BaseModel, Field

from checkout_engine.config import settings
from checkout_engine.errors import CheckoutError
from checkout_engine.gateways.base import IGatewayAdapter, VerificationStatus
from checkout_engine.schemas.domain import utcnow
from checkout_engine.schemas.events import (
    BaseEvent,
    EventType,
    PaymentFailedEvent,
    PaymentVerifiedEvent,
    PaymentVerifiedPayload,
)
from checkout_engine.services.event_bus import IEventBus

logger = structlog.get_logger().bind(component="mandate_watch")


# =============================================================================
# CONFIGURATION
# =============================================================================

class MandateWatchConfig:
    """Mandate watch configuration"""

    # How often to re-check pending mandates (seconds)
    CHECK_INTERVAL = settings.MANDATE_WATCH_INTERVAL_SECONDS

    # Maximum mandates checked per cycle
    BATCH_SIZE = settings.MANDATE_WATCH_BATCH_SIZE

    # Give up after this many days
    MAX_AGE_DAYS = settings.MANDATE_WATCH_MAX_AGE_DAYS

    ENABLED = settings.MANDATE_WATCH_ENABLED


config = MandateWatchConfig()


# =============================================================================
# PENDING MANDATE STORE
# =============================================================================

class PendingMandate(BaseModel):
    subscription_id: str
    gateway_id: str
    correlation_id: str
    registered_at: datetime = Field(default_factory=utcnow)
    last_checked_at: Optional[datetime] = None
    checks: int = 0


class IPendingMandateStore(ABC):

    @abstractmethod
    async def count(self) -> int:
        pass

    @abstractmethod
    async def add(self, mandate: PendingMandate) -> None:
        pass

    @abstractmethod
    async def list_pending(self, limit: int) -> list[PendingMandate]:
        """Least recently checked first."""
        pass

    @abstractmethod
    async def update(self, mandate: PendingMandate) -> None:
        pass

    @abstractmethod
    async def remove(self, subscription_id: str) -> None:
        pass


class InMemoryPendingMandateStore(IPendingMandateStore):

    def __init__(self):
        self._items: dict[str, PendingMandate] = {}
        self._lock = asyncio.Lock()

    async def add(self, mandate: PendingMandate) -> None:
        async with self._lock:
            # Re-registration keeps the original age
            existing = self._items.get(mandate.subscription_id)
            if existing is None:
                self._items[mandate.subscription_id] = mandate

    async def list_pending(self, limit: int) -> list[PendingMandate]:
        async with self._lock:
            ordered = sorted(
                self._items.values(),
                key=lambda m: (m.last_checked_at is not None, m.last_checked_at or m.registered_at),
            )
            return ordered[:limit]

    async def update(self, mandate: PendingMandate) -> None:
        async with self._lock:
            if mandate.subscription_id in self._items:
                self._items[mandate.subscription_id] = mandate

    async def remove(self, subscription_id: str) -> None:
        async with self._lock:
            self._items.pop(subscription_id, None)

    async def count(self) -> int:
        async with self._lock:
            return len(self._items)


# =============================================================================
# WATCHER
# =============================================================================

AdapterSource = Union[dict[str, IGatewayAdapter], Callable[[], dict[str, IGatewayAdapter]]]


class IWatchCycle(ABC):
    """Anything mandate_watch_loop can drive."""

    @abstractmethod
    async def run_cycle(self) -> dict:
        pass


class MandateWatcher(IWatchCycle):
    """
    Example:
        watcher = MandateWatcher(store, adapters, bus)
        await watcher.attach()
        asyncio.create_task(mandate_watch_loop(watcher))
    """

    def __init__(
        self,
        store: IPendingMandateStore,
        adapters: AdapterSource,
        event_bus: IEventBus,
        watch_config: MandateWatchConfig = config,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        # A callable is read each cycle so late-loaded gateways are seen
        self._adapters = adapters if callable(adapters) else (lambda: adapters)
        self._bus = event_bus
        self._config = watch_config
        self._clock = clock
        self._subscription_ids: list[str] = []

    async def attach(self) -> None:
        if not self._subscription_ids:
            self._subscription_ids = [
                await self._bus.subscribe([EventType.MANDATE_PENDING], self._on_pending),
                await self._bus.subscribe([EventType.PAYMENT_VERIFIED], self._on_verified),
            ]

    async def detach(self) -> None:
        for subscription_id in self._subscription_ids:
            await self._bus.unsubscribe(subscription_id)
        self._subscription_ids = []

    async def pending_count(self) -> int:
        return await self._store.count()

    async def _on_pending(self, event: BaseEvent) -> None:
        subscription_id = event.payload.get("subscription_id")
        gateway_id = event.payload.get("gateway_id")
        if not subscription_id or not gateway_id:
            logger.warning("mandate_pending_event_incomplete", event_id=event.event_id)
            return
        await self.register(subscription_id, gateway_id, event.correlation_id)

    async def _on_verified(self, event: BaseEvent) -> None:
        # Confirmed by a resumed checkout; nothing left to watch
        subscription_id = event.payload.get("subscription_id")
        if subscription_id:
            await self._store.remove(subscription_id)

    async def register(self, subscription_id: str, gateway_id: str, correlation_id: str) -> None:
        await self._store.add(PendingMandate(
            subscription_id=subscription_id,
            gateway_id=gateway_id,
            correlation_id=correlation_id,
            registered_at=self._clock(),
        ))
        logger.info("mandate_registered", subscription_id=subscription_id, gateway_id=gateway_id)

    async def run_cycle(self) -> dict:
        """Check one batch. Returns per-outcome counts."""
        stats = {"checked": 0, "activated": 0, "failed": 0, "expired": 0, "errors": 0}
        pending = await self._store.list_pending(self._config.BATCH_SIZE)
        max_age = timedelta(days=self._config.MAX_AGE_DAYS)
        adapters = self._adapters()

        for mandate in pending:
            now = self._clock()
            if now - mandate.registered_at > max_age:
                await self._store.remove(mandate.subscription_id)
                stats["expired"] += 1
                logger.error("mandate_expired_unconfirmed",
                             subscription_id=mandate.subscription_id,
                             checks=mandate.checks,
                             requires_manual_intervention=True)
                continue

            adapter = adapters.get(mandate.gateway_id)
            if adapter is None:
                await self._store.remove(mandate.subscription_id)
                stats["errors"] += 1
                logger.error("mandate_gateway_unknown",
                             subscription_id=mandate.subscription_id,
                             gateway_id=mandate.gateway_id)
                continue

            try:
                status = await adapter.check_mandate(mandate.subscription_id)
            except CheckoutError as e:
                stats["errors"] += 1
                logger.warning("mandate_check_failed", subscription_id=mandate.subscription_id, error=str(e))
                await self._store.update(mandate.model_copy(update={"last_checked_at": now}))
                continue

            stats["checked"] += 1
            if status == VerificationStatus.ACTIVE:
                await self._store.remove(mandate.subscription_id)
                await self._bus.publish(PaymentVerifiedEvent.build(
                    PaymentVerifiedPayload(
                        gateway_id=adapter.id,
                        gateway=adapter.kind,
                        subscription_id=mandate.subscription_id,
                    ),
                    correlation_id=mandate.correlation_id,
                ))
                stats["activated"] += 1
                logger.info("mandate_activated", subscription_id=mandate.subscription_id)
            elif status == VerificationStatus.FAILED:
                await self._store.remove(mandate.subscription_id)
                await self._bus.publish(PaymentFailedEvent(
                    correlation_id=mandate.correlation_id,
                    payload={"subscription_id": mandate.subscription_id, "gateway_id": adapter.id},
                ))
                stats["failed"] += 1
                logger.warning("mandate_rejected", subscription_id=mandate.subscription_id)
            else:
                await self._store.update(mandate.model_copy(update={
                    "last_checked_at": now,
                    "checks": mandate.checks + 1,
                }))

        if pending:
            logger.info("mandate_watch_cycle_complete", **stats)
        return stats


async def mandate_watch_loop(
    watcher: IWatchCycle,
    watch_config: MandateWatchConfig = config,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Background task: one cycle every CHECK_INTERVAL seconds until cancelled."""
    logger.info("mandate_watch_started",
                interval=watch_config.CHECK_INTERVAL,
                batch_size=watch_config.BATCH_SIZE,
                enabled=watch_config.ENABLED)

    if not watch_config.ENABLED:
        logger.info("mandate_watch_disabled")
        return

    while True:
        try:
            await watcher.run_cycle()
        except Exception as e:
            logger.error("mandate_watch_loop_error", error=str(e))

        await sleep(watch_config.CHECK_INTERVAL)
