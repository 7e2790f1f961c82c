"""
Checkout Engine Schemas
"""

from checkout_engine.schemas.domain import (
    # Enums
    ProductType,
    PlanType,
    Tier,
    AccessType,
    EsignStatus,
    GatewayKind,
    PaymentMethod,
    NextAction,
    AttemptOutcome,
    # Refs
    IdRef,
    EmbeddedRef,
    Ref,
    to_ref,
    ref_attr,
    # Models
    SubscriptionRecord,
    SubscriptionAccess,
    CartItem,
    Cart,
    CustomerProfile,
    EsignArtifact,
    PaymentAttempt,
    PaymentIntent,
    PaymentResult,
    utcnow,
)
from checkout_engine.schemas.events import (
    EventType,
    BaseEvent,
    LoginEvent,
    LogoutEvent,
    PaymentVerifiedPayload,
    PaymentVerifiedEvent,
    PaymentFailedEvent,
    MandatePendingEvent,
    CheckoutCancelledEvent,
    AccessInvalidatedEvent,
    EsignCompletedEvent,
)

__all__ = [
    # Enums
    "ProductType",
    "PlanType",
    "Tier",
    "AccessType",
    "EsignStatus",
    "GatewayKind",
    "PaymentMethod",
    "NextAction",
    "AttemptOutcome",
    # Refs
    "IdRef",
    "EmbeddedRef",
    "Ref",
    "to_ref",
    "ref_attr",
    # Models
    "SubscriptionRecord",
    "SubscriptionAccess",
    "CartItem",
    "Cart",
    "CustomerProfile",
    "EsignArtifact",
    "PaymentAttempt",
    "PaymentIntent",
    "PaymentResult",
    "utcnow",
    # Events
    "EventType",
    "BaseEvent",
    "LoginEvent",
    "LogoutEvent",
    "PaymentVerifiedPayload",
    "PaymentVerifiedEvent",
    "PaymentFailedEvent",
    "MandatePendingEvent",
    "CheckoutCancelledEvent",
    "AccessInvalidatedEvent",
    "EsignCompletedEvent",
]
