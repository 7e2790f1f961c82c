"""
Login / logout transitions for one engine session.

A login switches the effective cart to the server cart (merging the local
one) and publishes auth.login so cached access is dropped.
"""

from typing import Optional

import structlog

from checkout_engine.cart.reconciler import CartReconciler, MergeResult
from checkout_engine.schemas.events import LoginEvent, LogoutEvent
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.event_bus import IEventBus

logger = structlog.get_logger().bind(component="auth")


class AuthSession:

    def __init__(self, api: IBackendApi, cart: CartReconciler, event_bus: Optional[IEventBus] = None):
        self._api = api
        self._cart = cart
        self._bus = event_bus

    @property
    def is_authenticated(self) -> bool:
        return self._api.is_authenticated

    async def login(self, token: str) -> MergeResult:
        self._api.set_token(token)
        merge = await self._cart.on_login()
        if self._bus is not None:
            await self._bus.publish(LoginEvent(payload={"merged": merge.added + merge.already_present}))
        logger.info("login_completed", merged=len(merge.added), merge_complete=merge.complete)
        return merge

    async def logout(self) -> None:
        self._api.set_token(None)
        await self._cart.on_logout()
        if self._bus is not None:
            await self._bus.publish(LogoutEvent())
        logger.info("logout_completed")
