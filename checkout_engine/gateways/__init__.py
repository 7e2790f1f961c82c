"""
Payment gateway adapters.
"""

from checkout_engine.gateways.base import (
    GatewayDescriptor,
    IGatewayAdapter,
    BaseGatewayAdapter,
    IntentOptions,
    PaymentHandlers,
    VerificationStatus,
    eligible_gateways,
)
from checkout_engine.gateways.order_checkout import (
    OrderCheckoutAdapter,
    IHostedCheckout,
    HostedCheckoutResult,
    classify_emandate,
)
from checkout_engine.gateways.server_to_server import (
    ServerToServerAdapter,
    validate_payment_details,
    classify_s2s_status,
    PROCESSOR_METHODS,
)

__all__ = [
    # Contract
    "GatewayDescriptor",
    "IGatewayAdapter",
    "BaseGatewayAdapter",
    "IntentOptions",
    "PaymentHandlers",
    "VerificationStatus",
    "eligible_gateways",
    # Order-based
    "OrderCheckoutAdapter",
    "IHostedCheckout",
    "HostedCheckoutResult",
    "classify_emandate",
    # Server-to-server
    "ServerToServerAdapter",
    "validate_payment_details",
    "classify_s2s_status",
    "PROCESSOR_METHODS",
]
