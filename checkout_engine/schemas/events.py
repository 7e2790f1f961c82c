# schemas/events.py
# ============================================================================
# CHECKOUT ENGINE — EVENT SCHEMAS
# ============================================================================
# Typed events published on the in-process bus. Cache invalidation and the
# background mandate watcher are driven entirely by these.
# ============================================================================

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from checkout_engine.schemas.domain import GatewayKind, utcnow


class EventType(str, Enum):
    AUTH_LOGIN = "auth.login"
    AUTH_LOGOUT = "auth.logout"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_FAILED = "payment.failed"
    MANDATE_PENDING = "mandate.pending"
    CHECKOUT_CANCELLED = "checkout.cancelled"
    ACCESS_INVALIDATED = "access.invalidated"
    ESIGN_COMPLETED = "esign.completed"


class BaseEvent(BaseModel):
    """Base for all bus events"""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = "checkout_engine"
    payload: dict = Field(default_factory=dict)


# --- Auth ---

class LoginEvent(BaseEvent):
    event_type: EventType = EventType.AUTH_LOGIN


class LogoutEvent(BaseEvent):
    event_type: EventType = EventType.AUTH_LOGOUT


# --- Payment ---

class PaymentVerifiedPayload(BaseModel):
    gateway_id: str
    gateway: GatewayKind
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_id: Optional[str] = None


class PaymentVerifiedEvent(BaseEvent):
    event_type: EventType = EventType.PAYMENT_VERIFIED

    @classmethod
    def build(cls, payload: PaymentVerifiedPayload, correlation_id: str) -> "PaymentVerifiedEvent":
        return cls(correlation_id=correlation_id, payload=payload.model_dump(mode="json"))


class PaymentFailedEvent(BaseEvent):
    event_type: EventType = EventType.PAYMENT_FAILED


class MandatePendingEvent(BaseEvent):
    event_type: EventType = EventType.MANDATE_PENDING


class CheckoutCancelledEvent(BaseEvent):
    event_type: EventType = EventType.CHECKOUT_CANCELLED


class AccessInvalidatedEvent(BaseEvent):
    event_type: EventType = EventType.ACCESS_INVALIDATED


class EsignCompletedEvent(BaseEvent):
    event_type: EventType = EventType.ESIGN_COMPLETED
