"""
Session-scoped persistence
==========================
Carries correlation identifiers across full-page redirects (pending
subscription id, return URL, eSign document id, payment-flow state) and
holds the unauthenticated local cart.

Values must be JSON-compatible; entries may carry a TTL.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Optional

from checkout_engine.schemas.domain import utcnow


class SessionKeys:
    LOCAL_CART = "localCart"
    PENDING_PRODUCT_ID = "pendingPortfolioId"
    PENDING_CART_REDIRECT = "pendingCartRedirect"
    PAYMENT_FLOW_STATE = "paymentFlowState"
    POST_LOGIN_STATE = "postLoginState"
    S2S_SUBSCRIPTION_ID = "cashfree_subscription_id"
    S2S_RETURN_URL = "cashfree_return_url"
    ESIGN_PENDING = "esign_pending"


class ISessionStore(ABC):
    """Session storage interface"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemorySessionStore(ISessionStore):
    """
    Dict-backed session store.
    Values are round-tripped through JSON so the same data survives a
    browser-storage or Redis backed implementation unchanged.
    """

    def __init__(self):
        self._data: dict[str, tuple[str, Optional[datetime]]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires = entry
            if expires is not None and utcnow() >= expires:
                del self._data[key]
                return None
            return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires = utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        async with self._lock:
            self._data[key] = (json.dumps(value), expires)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    def keys(self) -> list[str]:
        return list(self._data.keys())
