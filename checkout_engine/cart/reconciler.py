"""
Cart Reconciler
===============
Keeps the local (unauthenticated) cart and the server cart consistent.

Features:
- Exactly one effective store, chosen by authentication state
- Optimistic mutations as commands: apply, snapshot, confirm or restore
- Per-product serialization so rapid repeat clicks cannot interleave
- All-or-nothing merge of the local cart into the server cart on login
"""

import asyncio
from collections import defaultdict
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel, Field, computed_field

from checkout_engine.cart.stores import ICartStore, LocalCartStore, ServerCartStore
from checkout_engine.errors import CheckoutError, DuplicateItem, QuantityExceeded
from checkout_engine.schemas.domain import Cart, CartItem, PlanType, ProductType
from checkout_engine.services.backend_client import IBackendApi
from checkout_engine.services.session_store import ISessionStore, SessionKeys


class MergeResult(BaseModel):
    """Outcome of one local -> server merge"""
    added: list[str] = Field(default_factory=list)
    already_present: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    local_cleared: bool = False

    @computed_field
    @property
    def complete(self) -> bool:
        return not self.failed

    @property
    def is_noop(self) -> bool:
        return not (self.added or self.already_present or self.failed)


class CartMutation:
    """
    One optimistic cart command.

    ``apply`` produces the optimistic view; ``commit`` performs the store
    call and returns the confirmed cart. The prior entry for the product
    is the snapshot restored on failure.
    """

    def __init__(
        self,
        name: str,
        product_id: str,
        apply: Callable[[Cart], Cart],
        commit: Callable[[], Awaitable[Cart]],
    ):
        self.name = name
        self.product_id = product_id
        self.apply = apply
        self.commit = commit
        self.snapshot: Optional[CartItem] = None


class CartReconciler:
    """
    Effective cart for one user session.

    Example:
        carts = CartReconciler.for_session(api, session)
        await carts.add_item("portfolio-1", price_metadata={"monthly": 999})
        await carts.on_login()   # merges the local cart into the server cart
    """

    def __init__(self, local: ICartStore, server: ICartStore, session: ISessionStore):
        self._local = local
        self._server = server
        self._session = session
        self._authenticated = False
        self._cart = Cart()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._merge_lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="cart_reconciler")

    @classmethod
    def for_session(cls, api: IBackendApi, session: ISessionStore) -> "CartReconciler":
        return cls(LocalCartStore(session), ServerCartStore(api), session)

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def cart(self) -> Cart:
        """Currently visible cart, optimistic mutations included."""
        return self._cart

    @property
    def effective_store(self) -> ICartStore:
        return self._server if self._authenticated else self._local

    def total(self, plan_type: PlanType) -> float:
        return self._cart.total(plan_type)

    async def refresh(self) -> Cart:
        self._cart = await self.effective_store.load()
        return self._cart

    # =========================================================================
    # OPTIMISTIC COMMANDS
    # =========================================================================

    async def _execute(self, mutation: CartMutation) -> Cart:
        mutation.snapshot = self._cart.get(mutation.product_id)
        self._cart = mutation.apply(self._cart)
        try:
            confirmed = await mutation.commit()
        except Exception as e:
            self._cart = self._cart.replacing(mutation.product_id, mutation.snapshot)
            self._logger.warning("cart_mutation_rolled_back",
                                 mutation=mutation.name,
                                 product_id=mutation.product_id,
                                 error=str(e))
            await self._reload_after_failure()
            raise
        self._cart = confirmed
        self._logger.info("cart_mutation_confirmed",
                          mutation=mutation.name,
                          product_id=mutation.product_id,
                          items=len(confirmed.items))
        return confirmed

    async def _reload_after_failure(self) -> None:
        try:
            self._cart = await self.effective_store.load()
        except CheckoutError as e:
            self._logger.warning("cart_reload_failed", error=str(e))

    async def add_item(
        self,
        product_id: str,
        *,
        product_type: ProductType = ProductType.PORTFOLIO,
        name: Optional[str] = None,
        price_metadata: Optional[dict[str, float]] = None,
    ) -> Cart:
        item = CartItem(
            product_id=product_id,
            product_type=product_type,
            quantity=1,
            name=name,
            price_metadata=price_metadata or {},
        )
        async with self._locks[product_id]:
            if self._cart.contains(product_id):
                raise DuplicateItem(product_id)
            return await self._add_locked(item)

    async def _add_locked(self, item: CartItem) -> Cart:
        store = self.effective_store
        return await self._execute(CartMutation(
            "add", item.product_id,
            apply=lambda cart: cart.with_item(item),
            commit=lambda: store.add(item),
        ))

    async def remove_item(self, product_id: str) -> Cart:
        async with self._locks[product_id]:
            return await self._remove_locked(product_id)

    async def _remove_locked(self, product_id: str) -> Cart:
        store = self.effective_store
        return await self._execute(CartMutation(
            "remove", product_id,
            apply=lambda cart: cart.without(product_id),
            commit=lambda: store.remove(product_id),
        ))

    async def set_quantity(self, product_id: str, quantity: int) -> Cart:
        """Quantities live in {0, 1}; 0 removes, 1 adds a missing item, above 1 is refused."""
        if quantity > 1:
            raise QuantityExceeded(field="quantity")
        async with self._locks[product_id]:
            if quantity <= 0:
                return await self._remove_locked(product_id)
            if self._cart.contains(product_id):
                return self._cart
            return await self._add_locked(CartItem(product_id=product_id))

    async def clear(self) -> Cart:
        self._cart = await self.effective_store.clear()
        return self._cart

    # =========================================================================
    # LOGIN / LOGOUT
    # =========================================================================

    async def on_login(self) -> MergeResult:
        """Switch to the server cart; merges once per login transition."""
        if self._authenticated:
            return MergeResult()
        self._authenticated = True
        result = await self.merge_local_into_server()
        await self._reload_after_failure()
        return result

    async def on_logout(self) -> None:
        self._authenticated = False
        await self.refresh()

    async def merge_local_into_server(self) -> MergeResult:
        """
        All-or-nothing merge: the local cart is cleared only when every
        item reached the server cart. Items the server already holds count
        as merged, so a retry after partial failure is safe.
        """
        async with self._merge_lock:
            result = MergeResult()
            local_cart = await self._local.load()
            pending_id = await self._session.get(SessionKeys.PENDING_PRODUCT_ID)

            items = list(local_cart.items)
            if pending_id and not local_cart.contains(pending_id):
                items.insert(0, CartItem(product_id=pending_id))

            if not items:
                return result

            for item in items:
                try:
                    await self._server.add(item)
                    result.added.append(item.product_id)
                except DuplicateItem:
                    result.already_present.append(item.product_id)
                except CheckoutError as e:
                    result.failed[item.product_id] = e.code

            if result.failed:
                self._logger.warning("cart_merge_incomplete",
                                     added=result.added,
                                     failed=list(result.failed))
                return result

            await self._local.clear()
            await self._session.delete(SessionKeys.PENDING_PRODUCT_ID)
            result.local_cleared = True
            self._logger.info("cart_merged",
                              added=len(result.added),
                              already_present=len(result.already_present))
            return result

    # =========================================================================
    # PRE-LOGIN INTENT
    # =========================================================================

    async def remember_pending_product(self, product_id: str) -> None:
        await self._session.set(SessionKeys.PENDING_PRODUCT_ID, product_id)

    async def remember_cart_redirect(self, path: str = "/cart") -> None:
        await self._session.set(SessionKeys.PENDING_CART_REDIRECT, path)

    async def consume_cart_redirect(self) -> Optional[str]:
        path = await self._session.get(SessionKeys.PENDING_CART_REDIRECT)
        if path is not None:
            await self._session.delete(SessionKeys.PENDING_CART_REDIRECT)
        return path
