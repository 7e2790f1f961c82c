"""
Bounded mandate verification.

Checks a recurring subscription's status with increasing delay between
attempts (2s, 3s, 4.5s, 5s ... capped) and gives up with
VerificationTimeout after the attempt cap. The cancellation predicate is
consulted around every await.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

from checkout_engine.config import settings
from checkout_engine.errors import Cancelled, GatewayRejected, NetworkError, VerificationTimeout
from checkout_engine.gateways.base import IGatewayAdapter, VerificationStatus


class MandateVerifier:

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        backoff: Optional[float] = None,
        max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max_attempts if max_attempts is not None else settings.MANDATE_VERIFY_MAX_ATTEMPTS
        self.base_delay = base_delay if base_delay is not None else settings.MANDATE_VERIFY_BASE_DELAY_SECONDS
        self.backoff = backoff if backoff is not None else settings.MANDATE_VERIFY_BACKOFF
        self.max_delay = max_delay if max_delay is not None else settings.MANDATE_VERIFY_MAX_DELAY_SECONDS
        self._sleep = sleep
        self._logger = structlog.get_logger().bind(component="mandate_verifier")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based attempt."""
        return min(self.base_delay * (self.backoff ** (attempt - 1)), self.max_delay)

    async def verify(
        self,
        adapter: IGatewayAdapter,
        subscription_id: str,
        *,
        is_cancelled: Callable[[], bool] = lambda: False,
    ) -> VerificationStatus:
        for attempt in range(1, self.max_attempts + 1):
            if is_cancelled():
                raise Cancelled()

            try:
                status = await adapter.check_mandate(subscription_id)
            except NetworkError as e:
                self._logger.warning("mandate_check_network_error", attempt=attempt, error=str(e))
                status = VerificationStatus.PENDING

            if is_cancelled():
                raise Cancelled()

            self._logger.info("mandate_check",
                              subscription_id=subscription_id,
                              attempt=attempt,
                              status=status.value)

            if status == VerificationStatus.ACTIVE:
                return status
            if status == VerificationStatus.FAILED:
                raise GatewayRejected("Mandate was not authorized", details={"subscription_id": subscription_id})

            if attempt < self.max_attempts:
                await self._sleep(self.delay_for(attempt))

        raise VerificationTimeout(
            "Mandate confirmation still pending",
            details={"subscription_id": subscription_id, "attempts": self.max_attempts},
        )
