# services/backend_client.py
# ============================================================================
# CHECKOUT ENGINE — BACKEND REST CLIENT
# ============================================================================
# Purpose: The single place that talks HTTP to the platform backend
#
# FAILURE HANDLING:
# - Transport failures and timeouts become NetworkError
# - HTTP 412 + code=ESIGN_REQUIRED becomes EsignRequired
# - HTTP 200 + success:false + code=ESIGN_PENDING becomes EsignPending
# - 401 becomes AuthRequired, 404 NotFound, other non-2xx BackendError
# - Raw payloads never travel past this module inside exceptions' messages
# ============================================================================

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog

from checkout_engine.config import BackendConfig
from checkout_engine.errors import (
    AuthRequired,
    BackendError,
    EsignPending,
    EsignRequired,
    NetworkError,
    NotFound,
)
from checkout_engine.services.resilience import CircuitBreaker, with_circuit_breaker

logger = structlog.get_logger().bind(component="backend_client")


# ============================================================================
# SECTION 1: INTERFACE
# ============================================================================

class IBackendApi(ABC):
    """Everything the engine needs from the platform backend."""

    @property
    @abstractmethod
    def is_authenticated(self) -> bool:
        pass

    @abstractmethod
    def set_token(self, token: Optional[str]) -> None:
        pass

    async def close(self) -> None:
        """Release transport resources."""
        return None

    # --- Entitlements ---

    @abstractmethod
    async def fetch_subscriptions(self) -> dict:
        pass

    # --- Cart ---

    @abstractmethod
    async def get_cart(self) -> dict:
        pass

    @abstractmethod
    async def add_to_cart(self, product_id: str, quantity: int = 1) -> dict:
        pass

    @abstractmethod
    async def remove_from_cart(self, product_id: str) -> dict:
        pass

    @abstractmethod
    async def clear_cart(self) -> dict:
        pass

    # --- Gateways & payments ---

    @abstractmethod
    async def list_gateways(self) -> list[dict]:
        pass

    @abstractmethod
    async def create_order(
        self,
        *,
        product_type: str,
        product_id: Optional[str],
        plan_type: str,
        coupon_code: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> dict:
        pass

    @abstractmethod
    async def verify_payment(self, order_id: str, payment_id: str, signature: str) -> dict:
        pass

    @abstractmethod
    async def create_emandate(
        self,
        *,
        product_type: str,
        product_id: Optional[str],
        interval: str,
        coupon_code: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> dict:
        pass

    @abstractmethod
    async def verify_emandate(self, subscription_id: str) -> dict:
        pass

    @abstractmethod
    async def initiate_s2s_payment(self, subscription_id: str, method: str, details: dict) -> dict:
        pass

    @abstractmethod
    async def get_s2s_status(self, subscription_id: str) -> dict:
        pass

    # --- eSign ---

    @abstractmethod
    async def create_esign_request(self, product_type: str, product_id: str, customer: dict) -> dict:
        pass

    @abstractmethod
    async def get_esign_status(self, document_id: str) -> dict:
        pass

    @abstractmethod
    async def verify_cart_esign(self, cart_id: str) -> dict:
        pass

    # --- Profile & coupons ---

    @abstractmethod
    async def get_profile(self) -> dict:
        pass

    @abstractmethod
    async def update_profile(self, fields: dict) -> dict:
        pass

    @abstractmethod
    async def validate_coupon(self, code: str) -> dict:
        pass


# ============================================================================
# SECTION 2: HTTPX IMPLEMENTATION
# ============================================================================

class BackendClient(IBackendApi):
    """
    httpx-based backend client.

    Example:
        client = BackendClient(BackendConfig.from_env())
        client.set_token(access_token)
        payload = await client.fetch_subscriptions()
        await client.close()
    """

    def __init__(
        self,
        config: Optional[BackendConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config or BackendConfig.from_env()
        self._token = self.config.token
        self._breaker = circuit_breaker or CircuitBreaker("backend_api")
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def is_authenticated(self) -> bool:
        return bool(self._token)

    def set_token(self, token: Optional[str]) -> None:
        self._token = token

    async def close(self):
        await self._client.aclose()

    # =========================================================================
    # REQUEST PIPELINE
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        guarded = with_circuit_breaker(self._breaker)(self._send)
        return await guarded(method, path, json=json, timeout=timeout)

    async def _send(self, method: str, path: str, *, json: Optional[dict], timeout: Optional[float]) -> Any:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                headers=headers,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as e:
            logger.warning("backend_timeout", method=method, path=path)
            raise NetworkError("Request timed out") from e
        except httpx.TransportError as e:
            logger.warning("backend_unreachable", method=method, path=path, error=str(e))
            raise NetworkError("Backend unreachable") from e

        body = self._parse_body(response)
        self._raise_for_signal(response.status_code, body, path)
        return body

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"message": response.text[:200]}

    @staticmethod
    def _raise_for_signal(status_code: int, body: Any, path: str) -> None:
        data = body if isinstance(body, dict) else {}
        code = data.get("code")
        message = data.get("message") or data.get("error") or ""

        if status_code == 412 and code == "ESIGN_REQUIRED":
            logger.info("esign_required_signal", path=path)
            raise EsignRequired(
                message,
                document_id=data.get("documentId"),
                authentication_url=data.get("authenticationUrl"),
            )

        if 200 <= status_code < 300:
            if data.get("success") is False and code == "ESIGN_PENDING":
                logger.info("esign_pending_signal", path=path)
                raise EsignPending(
                    message,
                    document_id=data.get("documentId"),
                    authentication_url=data.get("authenticationUrl"),
                )
            return

        logger.warning("backend_error", path=path, status_code=status_code, code=code)
        if status_code == 401:
            raise AuthRequired(message)
        if status_code == 404:
            raise NotFound(message, status_code=404, error_code=code)
        raise BackendError(message, status_code=status_code, error_code=code)

    # =========================================================================
    # ENTITLEMENTS
    # =========================================================================

    async def fetch_subscriptions(self) -> dict:
        return await self._request("GET", "/api/user/subscriptions")

    # =========================================================================
    # CART
    # =========================================================================

    async def get_cart(self) -> dict:
        return await self._request("GET", "/api/user/cart")

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> dict:
        return await self._request("POST", "/api/user/cart", json={
            "portfolioId": product_id,
            "quantity": quantity,
        })

    async def remove_from_cart(self, product_id: str) -> dict:
        return await self._request("DELETE", f"/api/user/cart/portfolio/{product_id}")

    async def clear_cart(self) -> dict:
        body = await self._request("DELETE", "/api/user/cart")
        return body.get("cart", body) if isinstance(body, dict) else {}

    # =========================================================================
    # GATEWAYS & PAYMENTS
    # =========================================================================

    async def list_gateways(self) -> list[dict]:
        body = await self._request("GET", "/api/payment/gateways")
        if isinstance(body, dict):
            return list(body.get("gateways", []))
        return list(body or [])

    async def create_order(
        self,
        *,
        product_type: str,
        product_id: Optional[str],
        plan_type: str,
        coupon_code: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> dict:
        payload: dict[str, Any] = {"planType": plan_type}
        if coupon_code:
            payload["couponCode"] = coupon_code
        if cart_id:
            payload["cartId"] = cart_id
            return await self._request("POST", "/api/subscriptions/checkout", json=payload)
        payload.update({"productType": product_type, "productId": product_id})
        return await self._request("POST", "/api/subscriptions/order", json=payload)

    async def verify_payment(self, order_id: str, payment_id: str, signature: str) -> dict:
        return await self._request(
            "POST",
            "/api/subscriptions/verify",
            json={"orderId": order_id, "paymentId": payment_id, "signature": signature},
            timeout=self.config.verify_timeout_seconds,
        )

    async def create_emandate(
        self,
        *,
        product_type: str,
        product_id: Optional[str],
        interval: str,
        coupon_code: Optional[str] = None,
        cart_id: Optional[str] = None,
    ) -> dict:
        payload: dict[str, Any] = {"interval": interval}
        if cart_id:
            payload["cartId"] = cart_id
        else:
            payload.update({"productType": product_type, "productId": product_id})
        if coupon_code:
            payload["couponCode"] = coupon_code
        return await self._request("POST", "/api/subscriptions/emandate", json=payload)

    async def verify_emandate(self, subscription_id: str) -> dict:
        return await self._request(
            "POST",
            "/api/subscriptions/emandate/verify",
            json={"subscriptionId": subscription_id},
            timeout=self.config.verify_timeout_seconds,
        )

    async def initiate_s2s_payment(self, subscription_id: str, method: str, details: dict) -> dict:
        return await self._request("POST", "/api/subscription/cashfree/s2s/pay", json={
            "subscriptionId": subscription_id,
            "paymentMethod": method,
            "paymentDetails": details,
        })

    async def get_s2s_status(self, subscription_id: str) -> dict:
        return await self._request(
            "GET",
            f"/api/subscription/cashfree/status/{subscription_id}",
            timeout=self.config.verify_timeout_seconds,
        )

    # =========================================================================
    # ESIGN
    # =========================================================================

    async def create_esign_request(self, product_type: str, product_id: str, customer: dict) -> dict:
        return await self._request("POST", "/api/digio/create-sign-request", json={
            "productType": product_type,
            "productId": product_id,
            "customer": customer,
        })

    async def get_esign_status(self, document_id: str) -> dict:
        return await self._request("POST", "/api/digio/check-status", json={"documentId": document_id})

    async def verify_cart_esign(self, cart_id: str) -> dict:
        return await self._request("POST", "/api/digio/cart/verify", json={"cartId": cart_id})

    # =========================================================================
    # PROFILE & COUPONS
    # =========================================================================

    async def get_profile(self) -> dict:
        return await self._request("GET", "/api/user/profile")

    async def update_profile(self, fields: dict) -> dict:
        return await self._request("PUT", "/api/user/profile", json=fields)

    async def validate_coupon(self, code: str) -> dict:
        return await self._request("GET", f"/api/coupons/check/{code}")
