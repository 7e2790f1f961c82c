# api/server.py
# ============================================================================
# CHECKOUT ENGINE — FASTAPI SERVER
# ============================================================================
# Hosts one engine context per client session (X-Session-Id header):
# access queries, cart commands, login, cancellation and the return URL of
# server-to-server payments.
# ============================================================================

import asyncio
import os
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from checkout_engine import __version__
from checkout_engine.checkout.messages import user_message_for
from checkout_engine.checkout.state_machine import ICheckoutPrompts
from checkout_engine.config import BackendConfig, settings
from checkout_engine.engine import EngineContext
from checkout_engine.errors import (
    AuthRequired,
    BackendError,
    CheckoutError,
    DuplicateItem,
    EsignRequired,
    GatewayConfigurationError,
    NetworkError,
    NotFound,
    ValidationError,
    VerificationTimeout,
)
from checkout_engine.schemas.domain import Cart, PlanType, ProductType, utcnow
from checkout_engine.services.backend_client import BackendClient
from checkout_engine.tasks.mandate_watch import IWatchCycle, MandateWatchConfig, mandate_watch_loop
from checkout_engine.tasks.mandate_watch import config as watch_defaults

logger = structlog.get_logger().bind(component="api")

ContextFactory = Callable[[str], EngineContext]


# ============================================================================
# SESSION REGISTRY
# ============================================================================

class SessionRegistry(IWatchCycle):
    """
    Engine contexts by client session id (in production, back with Redis).

    A context unused for ``idle_ttl_seconds`` is closed on the next sweep
    unless its watcher still holds pending mandates. Once ``max_sessions``
    is reached the least recently used context is closed to make room.
    """

    def __init__(
        self,
        factory: ContextFactory,
        idle_ttl_seconds: Optional[float] = None,
        max_sessions: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._factory = factory
        self._idle_ttl = timedelta(seconds=(
            idle_ttl_seconds if idle_ttl_seconds is not None else settings.SESSION_IDLE_TTL_SECONDS
        ))
        self._max_sessions = max_sessions or settings.MAX_SESSIONS
        self._clock = clock
        self._contexts: "OrderedDict[str, EngineContext]" = OrderedDict()
        self._last_used: Dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> EngineContext:
        async with self._lock:
            now = self._clock()
            context = self._contexts.get(session_id)
            if context is None:
                await self._evict_idle(now)
                while len(self._contexts) >= self._max_sessions:
                    await self._evict(next(iter(self._contexts)), reason="capacity")
                context = self._factory(session_id)
                await context.start()
                self._contexts[session_id] = context
                logger.info("session_created", session_id=session_id[:8], active_sessions=len(self._contexts))
            self._contexts.move_to_end(session_id)
            self._last_used[session_id] = now
            return context

    async def evict_idle(self) -> int:
        async with self._lock:
            return await self._evict_idle(self._clock())

    async def _evict_idle(self, now: datetime) -> int:
        evicted = 0
        for session_id in list(self._contexts):
            if now - self._last_used[session_id] < self._idle_ttl:
                continue
            if await self._contexts[session_id].mandate_watcher.pending_count():
                continue
            await self._evict(session_id, reason="idle")
            evicted += 1
        return evicted

    async def _evict(self, session_id: str, reason: str) -> None:
        context = self._contexts.pop(session_id)
        self._last_used.pop(session_id, None)
        pending = await context.mandate_watcher.pending_count()
        if pending:
            logger.warning("session_evicted_with_pending_mandates", session_id=session_id[:8], pending=pending)
        await context.close()
        logger.info("session_evicted", session_id=session_id[:8], reason=reason)

    async def run_cycle(self) -> dict:
        """One mandate watch cycle across every live context, then an idle sweep."""
        async with self._lock:
            contexts = list(self._contexts.values())
        totals: Dict[str, int] = {}
        for context in contexts:
            stats = await context.mandate_watcher.run_cycle()
            for key, value in stats.items():
                totals[key] = totals.get(key, 0) + value
        totals["evicted"] = await self.evict_idle()
        return totals

    async def close_all(self) -> None:
        async with self._lock:
            contexts = list(self._contexts.values())
            self._contexts.clear()
            self._last_used.clear()
        for context in contexts:
            await context.close()

    def __len__(self) -> int:
        return len(self._contexts)


def default_context_factory(session_id: str) -> EngineContext:
    return EngineContext(BackendClient(BackendConfig.from_env()))


class HeadlessPrompts(ICheckoutPrompts):
    """Server-side resumption never asks the user anything."""

    async def confirm_consent(self, request):
        return False

    async def authenticate(self):
        return None

    async def complete_profile(self, missing, profile):
        return None

    async def choose_gateway(self, options):
        return None

    async def esign_consent(self, artifact):
        return False


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    active_sessions: int


class AddItemRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    product_type: ProductType = ProductType.PORTFOLIO
    name: Optional[str] = None
    price_metadata: Dict[str, float] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    token: str = Field(..., min_length=1)


class CartResponse(BaseModel):
    cart_id: Optional[str] = None
    items: List[Dict[str, Any]]
    total: float
    plan_type: PlanType


def _cart_response(cart: Cart, plan_type: PlanType) -> CartResponse:
    return CartResponse(
        cart_id=cart.id,
        items=[item.model_dump(mode="json") for item in cart.items],
        total=cart.total(plan_type),
        plan_type=plan_type,
    )


# Subclasses before their bases
_STATUS_BY_ERROR = [
    (DuplicateItem, 409),
    (ValidationError, 400),
    (AuthRequired, 401),
    (NotFound, 404),
    (EsignRequired, 412),
    (GatewayConfigurationError, 503),
    (NetworkError, 502),
    (VerificationTimeout, 202),
]


def status_for(exc: CheckoutError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    if isinstance(exc, BackendError):
        return exc.status_code
    return 500


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    context_factory: Optional[ContextFactory] = None,
    *,
    registry: Optional[SessionRegistry] = None,
    watch_config: MandateWatchConfig = watch_defaults,
) -> FastAPI:
    registry = registry or SessionRegistry(context_factory or default_context_factory)
    start_time = utcnow()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("server_starting", version=__version__)
        watch_task = None
        if watch_config.ENABLED:
            watch_task = asyncio.create_task(mandate_watch_loop(registry, watch_config))
        app.state.mandate_watch = watch_task

        yield

        if watch_task is not None:
            watch_task.cancel()
            try:
                await watch_task
            except asyncio.CancelledError:
                pass
        await registry.close_all()
        logger.info("server_stopped")

    app = FastAPI(
        title="Checkout Engine",
        description="Subscription checkout and entitlement engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        status = status_for(exc)
        logger.warning("request_failed", path=request.url.path, code=exc.code, status=status)
        return JSONResponse(
            status_code=status,
            content={"error": exc.code, "message": user_message_for(exc), "details": exc.details},
        )

    async def get_context(x_session_id: str = Header(..., min_length=1)) -> EngineContext:
        return await registry.get(x_session_id)

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        uptime = (utcnow() - start_time).total_seconds()
        return HealthResponse(
            status="healthy",
            version=__version__,
            uptime_seconds=uptime,
            active_sessions=len(registry),
        )

    @app.get("/access")
    async def get_access(refresh: bool = False, context: EngineContext = Depends(get_context)):
        access = await context.entitlements.get_access(force_refresh=refresh)
        return access.model_dump(mode="json")

    @app.get("/cart", response_model=CartResponse)
    async def get_cart(plan_type: PlanType = PlanType.MONTHLY, context: EngineContext = Depends(get_context)):
        return _cart_response(await context.cart.refresh(), plan_type)

    @app.post("/cart/items", response_model=CartResponse)
    async def add_cart_item(body: AddItemRequest, context: EngineContext = Depends(get_context)):
        cart = await context.cart.add_item(
            body.product_id,
            product_type=body.product_type,
            name=body.name,
            price_metadata=body.price_metadata,
        )
        return _cart_response(cart, PlanType.MONTHLY)

    @app.delete("/cart/items/{product_id}", response_model=CartResponse)
    async def remove_cart_item(product_id: str, context: EngineContext = Depends(get_context)):
        return _cart_response(await context.cart.remove_item(product_id), PlanType.MONTHLY)

    @app.post("/auth/login")
    async def login(body: LoginRequest, context: EngineContext = Depends(get_context)):
        merge = await context.login(body.token)
        redirect = await context.cart.consume_cart_redirect()
        access = await context.entitlements.get_access()
        return {
            "merge": merge.model_dump(mode="json"),
            "redirect": redirect,
            "access": access.model_dump(mode="json"),
        }

    @app.post("/checkout/cancel")
    async def cancel_checkout(context: EngineContext = Depends(get_context)):
        checkout = context.current_checkout
        if checkout is None:
            return {"state": "idle"}
        outcome = await checkout.cancel()
        return outcome.model_dump(mode="json")

    @app.get("/payment/return")
    async def payment_return(request: Request, context: EngineContext = Depends(get_context)):
        if not context.gateways:
            await context.load_gateways()
        checkout = context.current_checkout or context.checkout(HeadlessPrompts())
        outcome = await checkout.resume_from_return(dict(request.query_params))
        return outcome.model_dump(mode="json")

    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "checkout_engine.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "development") == "development",
        log_level="info",
    )
