"""
Engine Configuration
====================
Environment-driven settings for the checkout engine.

Every timing constant used by the polling and retry loops lives here so
tests and deployments can tighten or relax them without touching code.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


# =============================================================================
# SETTINGS
# =============================================================================

class Settings:
    """Checkout engine settings"""

    # Backend REST API
    API_BASE_URL: str = os.getenv("CHECKOUT_API_BASE_URL", "http://localhost:8000")
    API_TIMEOUT_SECONDS: float = float(os.getenv("CHECKOUT_API_TIMEOUT", "15.0"))
    PAYMENT_VERIFY_TIMEOUT_SECONDS: float = float(os.getenv("PAYMENT_VERIFY_TIMEOUT_SECONDS", "30.0"))

    # Entitlement cache
    ACCESS_CACHE_TTL_SECONDS: int = int(os.getenv("ACCESS_CACHE_TTL_SECONDS", "300"))  # 5 minutes

    # eSign gate
    ESIGN_POLL_INTERVAL_SECONDS: float = float(os.getenv("ESIGN_POLL_INTERVAL_SECONDS", "2.0"))
    ESIGN_MAX_POLL_ATTEMPTS: int = int(os.getenv("ESIGN_MAX_POLL_ATTEMPTS", "150"))  # 5 minutes at 2s
    ESIGN_GRACE_PERIOD_SECONDS: float = float(os.getenv("ESIGN_GRACE_PERIOD_SECONDS", "2.0"))
    ESIGN_RESUME_ATTEMPTS: int = int(os.getenv("ESIGN_RESUME_ATTEMPTS", "3"))
    ESIGN_MAX_ROUNDS: int = int(os.getenv("ESIGN_MAX_ROUNDS", "2"))

    # Mandate verification (bounded retry with increasing delay)
    MANDATE_VERIFY_MAX_ATTEMPTS: int = int(os.getenv("MANDATE_VERIFY_MAX_ATTEMPTS", "5"))
    MANDATE_VERIFY_BASE_DELAY_SECONDS: float = float(os.getenv("MANDATE_VERIFY_BASE_DELAY_SECONDS", "2.0"))
    MANDATE_VERIFY_BACKOFF: float = float(os.getenv("MANDATE_VERIFY_BACKOFF", "1.5"))
    MANDATE_VERIFY_MAX_DELAY_SECONDS: float = float(os.getenv("MANDATE_VERIFY_MAX_DELAY_SECONDS", "5.0"))

    # Order-based gateway
    ORDER_DEDUP_WINDOW_SECONDS: int = int(os.getenv("ORDER_DEDUP_WINDOW_SECONDS", "300"))
    VERIFICATION_CACHE_TTL_SECONDS: int = int(os.getenv("VERIFICATION_CACHE_TTL_SECONDS", "300"))
    VERIFY_NETWORK_RETRIES: int = int(os.getenv("VERIFY_NETWORK_RETRIES", "2"))

    # Session-scoped state
    FLOW_STATE_TTL_SECONDS: int = int(os.getenv("FLOW_STATE_TTL_SECONDS", "3600"))  # 1 hour
    POST_LOGIN_STATE_TTL_SECONDS: int = int(os.getenv("POST_LOGIN_STATE_TTL_SECONDS", "1800"))  # 30 minutes

    # Redirect targets
    SUCCESS_REDIRECT_PATH: str = os.getenv("SUCCESS_REDIRECT_PATH", "/dashboard")
    PENDING_REDIRECT_PATH: str = os.getenv("PENDING_REDIRECT_PATH", "/dashboard?payment=pending")
    PAYMENT_RETURN_PATH: str = os.getenv("PAYMENT_RETURN_PATH", "/payment/return")

    # Circuit breaker around the backend client
    CB_FAILURE_THRESHOLD: int = int(os.getenv("CB_FAILURE_THRESHOLD", "5"))
    CB_RESET_TIMEOUT_SECONDS: float = float(os.getenv("CB_RESET_TIMEOUT_SECONDS", "30.0"))

    # Background mandate watcher
    MANDATE_WATCH_INTERVAL_SECONDS: int = int(os.getenv("MANDATE_WATCH_INTERVAL", "900"))  # 15 minutes
    MANDATE_WATCH_BATCH_SIZE: int = int(os.getenv("MANDATE_WATCH_BATCH_SIZE", "25"))
    MANDATE_WATCH_MAX_AGE_DAYS: int = int(os.getenv("MANDATE_WATCH_MAX_AGE_DAYS", "10"))
    MANDATE_WATCH_ENABLED: bool = _env_bool("MANDATE_WATCH_ENABLED", "true")

    # HTTP session contexts
    SESSION_IDLE_TTL_SECONDS: int = int(os.getenv("SESSION_IDLE_TTL_SECONDS", "1800"))  # 30 minutes
    MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "5000"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


# =============================================================================
# BACKEND CONNECTION
# =============================================================================

@dataclass
class BackendConfig:
    """Configuration for the REST backend connection."""
    base_url: str
    token: Optional[str] = None
    timeout_seconds: float = 15.0
    verify_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "BackendConfig":
        return cls(
            base_url=os.getenv("CHECKOUT_API_BASE_URL", settings.API_BASE_URL),
            token=os.getenv("CHECKOUT_API_TOKEN") or None,
            timeout_seconds=float(os.getenv("CHECKOUT_API_TIMEOUT", str(settings.API_TIMEOUT_SECONDS))),
            verify_timeout_seconds=float(
                os.getenv("PAYMENT_VERIFY_TIMEOUT_SECONDS", str(settings.PAYMENT_VERIFY_TIMEOUT_SECONDS))
            ),
        )
