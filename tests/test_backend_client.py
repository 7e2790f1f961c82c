# ==============================================================================
# FILE: tests/test_backend_client.py
# DESCRIPTION: HTTP status and body signals mapped onto the error taxonomy
# ==============================================================================

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from checkout_engine.config import BackendConfig
from checkout_engine.errors import (
    AuthRequired,
    BackendError,
    EsignPending,
    EsignRequired,
    NetworkError,
    NotFound,
)
from checkout_engine.services.backend_client import BackendClient
from checkout_engine.services.resilience import CircuitBreaker, CircuitState, with_circuit_breaker

pytestmark = pytest.mark.asyncio


def client_for(handler, token=None, breaker=None):
    return BackendClient(
        BackendConfig(base_url="http://backend.test", token=token),
        transport=httpx.MockTransport(handler),
        circuit_breaker=breaker,
    )


async def test_bearer_token_and_json_body_are_sent():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={"items": []})

    client = client_for(handler, token="tok-1")
    await client.add_to_cart("p1")
    await client.close()

    assert seen["auth"] == "Bearer tok-1"
    assert seen["path"] == "/api/user/cart"
    assert b'"portfolioId":"p1"' in seen["body"].replace(b" ", b"")


async def test_no_authorization_header_without_token():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={})

    client = client_for(handler)
    await client.fetch_subscriptions()
    await client.close()

    assert seen["auth"] is None
    assert not client.is_authenticated


async def test_412_esign_required_carries_document():
    def handler(request):
        return httpx.Response(412, json={
            "code": "ESIGN_REQUIRED",
            "message": "Sign first",
            "documentId": "DOC-7",
            "authenticationUrl": "https://sign.example/DOC-7",
        })

    client = client_for(handler, token="t")
    with pytest.raises(EsignRequired) as exc_info:
        await client.create_order(product_type="Portfolio", product_id="p1", plan_type="monthly")

    assert type(exc_info.value) is EsignRequired
    assert exc_info.value.document_id == "DOC-7"
    assert exc_info.value.authentication_url == "https://sign.example/DOC-7"


async def test_success_false_esign_pending_is_signal_not_success():
    def handler(request):
        return httpx.Response(200, json={
            "success": False,
            "code": "ESIGN_PENDING",
            "documentId": "DOC-8",
            "authenticationUrl": "https://sign.example/DOC-8",
        })

    client = client_for(handler, token="t")
    with pytest.raises(EsignPending) as exc_info:
        await client.create_emandate(product_type="Portfolio", product_id="p1", interval="monthly")

    assert exc_info.value.document_id == "DOC-8"


async def test_success_false_without_code_is_returned():
    def handler(request):
        return httpx.Response(200, json={"success": False, "message": "nope"})

    client = client_for(handler, token="t")
    body = await client.verify_payment("o1", "p1", "s1")

    assert body["success"] is False


@pytest.mark.parametrize("status,error_type", [
    (401, AuthRequired),
    (404, NotFound),
    (500, BackendError),
    (400, BackendError),
])
async def test_status_codes_map_to_errors(status, error_type):
    def handler(request):
        return httpx.Response(status, json={"message": "boom", "code": "X"})

    client = client_for(handler, token="t")
    with pytest.raises(error_type) as exc_info:
        await client.get_cart()

    if isinstance(exc_info.value, BackendError):
        assert exc_info.value.status_code == status


async def test_412_without_esign_code_is_plain_backend_error():
    def handler(request):
        return httpx.Response(412, json={"code": "OTHER"})

    client = client_for(handler, token="t")
    with pytest.raises(BackendError) as exc_info:
        await client.get_cart()

    assert not isinstance(exc_info.value, EsignRequired)
    assert exc_info.value.status_code == 412


async def test_transport_failure_becomes_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = client_for(handler, token="t")
    with pytest.raises(NetworkError):
        await client.get_profile()


async def test_repeated_network_failures_open_the_breaker():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        raise httpx.ConnectError("refused", request=request)

    breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout=60)
    client = client_for(handler, token="t", breaker=breaker)

    for _ in range(2):
        with pytest.raises(NetworkError):
            await client.get_cart()
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(NetworkError):
        await client.get_cart()
    assert len(calls) == 2


async def test_backend_errors_do_not_trip_the_breaker():
    def handler(request):
        return httpx.Response(500, json={"message": "boom"})

    breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=60)
    client = client_for(handler, token="t", breaker=breaker)

    with pytest.raises(BackendError):
        await client.get_cart()

    assert breaker.state == CircuitState.CLOSED


class Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


async def test_half_open_admits_a_single_trial_call():
    clock = Clock()
    breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=30, clock=clock)
    await breaker.record_failure(NetworkError("down"))
    assert breaker.state == CircuitState.OPEN

    release = asyncio.Event()
    started = []

    @with_circuit_breaker(breaker)
    async def call(n):
        started.append(n)
        await release.wait()
        return n

    clock.now += timedelta(seconds=31)
    first = asyncio.create_task(call(1))
    while not started:
        await asyncio.sleep(0)
    assert breaker.state == CircuitState.HALF_OPEN

    with pytest.raises(NetworkError):
        await call(2)
    assert started == [1]

    release.set()
    assert await first == 1
    assert breaker.state == CircuitState.CLOSED
    assert await call(3) == 3


async def test_failed_trial_reopens_the_circuit():
    clock = Clock()
    breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=30, clock=clock)
    await breaker.record_failure(NetworkError("down"))

    @with_circuit_breaker(breaker)
    async def call():
        raise NetworkError("still down")

    clock.now += timedelta(seconds=31)
    with pytest.raises(NetworkError):
        await call()
    assert breaker.state == CircuitState.OPEN

    clock.now += timedelta(seconds=10)
    assert await breaker.acquire() is False


async def test_cancelled_trial_frees_the_slot():
    clock = Clock()
    breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=30, clock=clock)
    await breaker.record_failure(NetworkError("down"))

    entered = asyncio.Event()

    @with_circuit_breaker(breaker)
    async def hang():
        entered.set()
        await asyncio.Event().wait()

    clock.now += timedelta(seconds=31)
    task = asyncio.create_task(hang())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.acquire() is True


async def test_gateway_list_accepts_wrapped_or_bare_payload():
    def wrapped(request):
        return httpx.Response(200, json={"gateways": [{"id": "razorpay"}]})

    def bare(request):
        return httpx.Response(200, json=[{"id": "cashfree"}])

    assert await client_for(wrapped).list_gateways() == [{"id": "razorpay"}]
    assert await client_for(bare).list_gateways() == [{"id": "cashfree"}]


async def test_cart_checkout_order_uses_cart_endpoint():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"orderId": "o1"})

    client = client_for(handler, token="t")
    await client.create_order(product_type="Portfolio", product_id=None, plan_type="monthly", cart_id="cart-1")
    await client.create_order(product_type="Portfolio", product_id="p1", plan_type="monthly")

    assert paths == ["/api/subscriptions/checkout", "/api/subscriptions/order"]
