"""
Cart stores: the server-backed cart and the session-persisted local cart.

Both expose the same ICartStore contract so the reconciler can treat
whichever one is effective identically.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog

from checkout_engine.errors import BackendError, DuplicateItem, NotFound
from checkout_engine.schemas.domain import Cart, CartItem, ProductType, ref_attr, to_ref
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.session_store import ISessionStore, SessionKeys


class ICartStore(ABC):
    """Cart storage interface"""

    @abstractmethod
    async def load(self) -> Cart:
        pass

    @abstractmethod
    async def add(self, item: CartItem) -> Cart:
        """Add an item; raises DuplicateItem when already present."""
        pass

    @abstractmethod
    async def remove(self, product_id: str) -> Cart:
        pass

    @abstractmethod
    async def clear(self) -> Cart:
        pass


def cart_from_payload(payload: Optional[dict]) -> Cart:
    """Server cart document -> Cart, keeping the first entry per product."""
    payload = payload or {}
    items: list[CartItem] = []
    seen: set[str] = set()
    for row in payload.get("items") or []:
        ref = to_ref(row.get("portfolio") or row.get("productId"))
        if ref is None or not ref.id or ref.id in seen:
            continue
        seen.add(ref.id)
        fees = ref_attr(ref, "subscriptionFee") or []
        items.append(CartItem(
            product_id=ref.id,
            product_type=row.get("productType") or ProductType.PORTFOLIO.value,
            quantity=min(max(int(row.get("quantity", 1)), 0), 1),
            name=ref_attr(ref, "name"),
            price_metadata={
                str(fee["type"]): float(fee["price"])
                for fee in fees
                if isinstance(fee, dict) and "type" in fee and "price" in fee
            },
        ))
    return Cart(id=payload.get("_id"), items=tuple(items))


class ServerCartStore(ICartStore):
    """Authoritative cart for authenticated users."""

    def __init__(self, api: IBackendApi):
        self._api = api
        self._logger = structlog.get_logger().bind(component="server_cart")

    async def load(self) -> Cart:
        return cart_from_payload(await self._api.get_cart())

    async def add(self, item: CartItem) -> Cart:
        try:
            payload = await self._api.add_to_cart(item.product_id, quantity=1)
        except BackendError as e:
            if e.status_code in (400, 409) and "already" in e.message.lower():
                raise DuplicateItem(item.product_id) from e
            raise
        return cart_from_payload(payload)

    async def remove(self, product_id: str) -> Cart:
        try:
            return cart_from_payload(await self._api.remove_from_cart(product_id))
        except NotFound:
            # Already gone server-side
            self._logger.info("remove_missing_item", product_id=product_id)
            return await self.load()

    async def clear(self) -> Cart:
        try:
            return cart_from_payload(await self._api.clear_cart())
        except NotFound:
            return Cart()


class LocalCartStore(ICartStore):
    """Cart for unauthenticated users, persisted in session storage."""

    def __init__(self, session: ISessionStore, key: str = SessionKeys.LOCAL_CART):
        self._session = session
        self._key = key

    async def load(self) -> Cart:
        raw = await self._session.get(self._key) or []
        return Cart(items=tuple(CartItem.model_validate(row) for row in raw))

    async def _save(self, cart: Cart) -> Cart:
        await self._session.set(self._key, [i.model_dump(mode="json") for i in cart.items])
        return cart

    async def add(self, item: CartItem) -> Cart:
        cart = await self.load()
        if cart.contains(item.product_id):
            raise DuplicateItem(item.product_id)
        return await self._save(cart.with_item(item))

    async def remove(self, product_id: str) -> Cart:
        return await self._save((await self.load()).without(product_id))

    async def clear(self) -> Cart:
        await self._session.delete(self._key)
        return Cart()
