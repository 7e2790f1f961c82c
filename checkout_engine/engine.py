"""
Engine Context
==============
Wires the per-user-session collaborators together: session storage, the
event bus, entitlements, the cart reconciler, the eSign gate and the
configured gateway adapters. Each context also owns the watcher that keeps
checking mandates whose confirmation outlived the checkout. A checkout is started from here.

Example:
    engine = EngineContext(BackendClient(), hosted_checkout=overlay)
    await engine.start()
    outcome = await engine.checkout(prompts).run(CheckoutRequest(product_id="p1"))
    await engine.close()
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from checkout_engine.auth import AuthSession
from checkout_engine.cart.reconciler import CartReconciler, MergeResult
from checkout_engine.checkout.coupons import CouponService
from checkout_engine.checkout.flow_state import PaymentFlowStore, PostLoginStore
from checkout_engine.checkout.state_machine import CheckoutSession, ICheckoutPrompts
from checkout_engine.checkout.verification import MandateVerifier
from checkout_engine.entitlements.service import EntitlementService
from checkout_engine.errors import GatewayConfigurationError
from checkout_engine.esign.gate import EsignGate
from checkout_engine.esign.surfaces import ISigningSurface, RedirectSigningSurface
from checkout_engine.gateways.base import GatewayDescriptor, IGatewayAdapter
from checkout_engine.gateways.order_checkout import IHostedCheckout, OrderCheckoutAdapter
from checkout_engine.gateways.server_to_server import ServerToServerAdapter
from checkout_engine.schemas.domain import GatewayKind
from checkout_engine.schemas.events import BaseEvent, EventType
from checkout_engine.services.audit import IAuditLog, InMemoryAuditLog
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.event_bus import IEventBus, InMemoryEventBus
from checkout_engine.services.navigation import INavigator, RecordingNavigator
from checkout_engine.services.session_store import ISessionStore, InMemorySessionStore
from checkout_engine.tasks.mandate_watch import (
    IPendingMandateStore,
    InMemoryPendingMandateStore,
    MandateWatchConfig,
    MandateWatcher,
)
from checkout_engine.tasks.mandate_watch import config as watch_defaults

logger = structlog.get_logger().bind(component="engine")


class EngineContext:

    def __init__(
        self,
        api: IBackendApi,
        *,
        session: Optional[ISessionStore] = None,
        event_bus: Optional[IEventBus] = None,
        navigator: Optional[INavigator] = None,
        surface: Optional[ISigningSurface] = None,
        hosted_checkout: Optional[IHostedCheckout] = None,
        gateways: Optional[list[IGatewayAdapter]] = None,
        audit_log: Optional[IAuditLog] = None,
        user_agent: Optional[str] = None,
        bundle_tiers: Optional[dict[str, str]] = None,
        pending_mandates: Optional[IPendingMandateStore] = None,
        watch_config: MandateWatchConfig = watch_defaults,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api = api
        self.session = session or InMemorySessionStore()
        self.event_bus = event_bus or InMemoryEventBus()
        self.navigator = navigator or RecordingNavigator()
        self.audit_log = audit_log or InMemoryAuditLog()

        self.cart = CartReconciler.for_session(api, self.session)
        self.entitlements = EntitlementService(api, event_bus=self.event_bus, bundle_tiers=bundle_tiers)
        self.auth = AuthSession(api, self.cart, self.event_bus)
        self.esign = EsignGate(
            api,
            surface or RedirectSigningSurface(self.navigator),
            self.session,
            user_agent=user_agent,
            sleep=sleep,
        )
        self.verifier = MandateVerifier(sleep=sleep)
        self.coupons = CouponService(api)
        self.post_login = PostLoginStore(self.session)
        self.flow = PaymentFlowStore(self.session)
        self.mandate_watcher = MandateWatcher(
            pending_mandates or InMemoryPendingMandateStore(),
            self.adapters_by_id,
            self.event_bus,
            watch_config=watch_config,
        )

        self._hosted_checkout = hosted_checkout
        self._sleep = sleep
        self.gateways: list[IGatewayAdapter] = list(gateways or [])
        self._checkout: Optional[CheckoutSession] = None
        self._settled_subscription: Optional[str] = None

    async def start(self) -> None:
        await self.entitlements.attach()
        await self.mandate_watcher.attach()
        if self._settled_subscription is None:
            self._settled_subscription = await self.event_bus.subscribe(
                [EventType.PAYMENT_VERIFIED, EventType.PAYMENT_FAILED], self._on_mandate_settled)
        if self.api.is_authenticated:
            await self.cart.on_login()
        else:
            await self.cart.refresh()

    # =========================================================================
    # GATEWAYS
    # =========================================================================

    async def load_gateways(self) -> list[IGatewayAdapter]:
        """Build adapters for the gateways the backend has configured."""
        descriptors = [GatewayDescriptor.from_payload(d) for d in await self.api.list_gateways()]
        adapters = []
        for descriptor in descriptors:
            if not descriptor.enabled:
                continue
            if descriptor.kind == GatewayKind.ORDER_BASED and self._hosted_checkout is None:
                # Server-side contexts cannot open the overlay
                logger.warning("gateway_skipped_no_hosted_checkout", gateway_id=descriptor.id)
                continue
            adapters.append(self.build_adapter(descriptor))
        self.gateways = adapters
        logger.info("gateways_loaded", gateways=[g.id for g in self.gateways])
        return self.gateways

    def build_adapter(self, descriptor: GatewayDescriptor) -> IGatewayAdapter:
        if descriptor.kind == GatewayKind.SERVER_TO_SERVER:
            return ServerToServerAdapter(descriptor, self.api, self.session, self.navigator)
        if self._hosted_checkout is None:
            raise GatewayConfigurationError(
                "Order-based gateway needs a hosted checkout",
                details={"gateway_id": descriptor.id},
            )
        return OrderCheckoutAdapter(descriptor, self.api, self._hosted_checkout, sleep=self._sleep)

    def adapters_by_id(self) -> dict[str, IGatewayAdapter]:
        return {g.id: g for g in self.gateways}

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    def checkout(self, prompts: ICheckoutPrompts, **options) -> CheckoutSession:
        """A checkout session bound to this context; replaces any previous one."""
        self._checkout = CheckoutSession(
            api=self.api,
            gateways=self.gateways,
            esign_gate=self.esign,
            cart=self.cart,
            entitlements=self.entitlements,
            prompts=prompts,
            session=self.session,
            auth=self.auth,
            event_bus=self.event_bus,
            audit_log=self.audit_log,
            verifier=self.verifier,
            navigator=self.navigator,
            **options,
        )
        return self._checkout

    @property
    def current_checkout(self) -> Optional[CheckoutSession]:
        return self._checkout

    async def _on_mandate_settled(self, event: BaseEvent) -> None:
        """Drop the saved flow once its pending subscription has a verdict."""
        subscription_id = event.payload.get("subscription_id")
        if not subscription_id:
            return
        flow = await self.flow.load()
        if flow is not None and flow.subscription_id == subscription_id:
            await self.flow.clear()
            logger.info("pending_flow_settled",
                        subscription_id=subscription_id,
                        event_type=event.event_type.value)

    # =========================================================================
    # AUTH
    # =========================================================================

    async def login(self, token: str) -> MergeResult:
        return await self.auth.login(token)

    async def logout(self) -> None:
        if self._checkout is not None:
            await self._checkout.close()
        await self.auth.logout()

    async def close(self) -> None:
        if self._checkout is not None:
            await self._checkout.close()
        await self.mandate_watcher.detach()
        if self._settled_subscription is not None:
            await self.event_bus.unsubscribe(self._settled_subscription)
            self._settled_subscription = None
        await self.entitlements.detach()
        await self.api.close()
