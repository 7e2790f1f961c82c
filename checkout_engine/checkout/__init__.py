"""
Checkout orchestration.
"""

from checkout_engine.checkout.state_machine import (
    CheckoutState,
    CheckoutRequest,
    CheckoutOutcome,
    CheckoutSession,
    ICheckoutPrompts,
    TERMINAL_STATES,
)
from checkout_engine.checkout.verification import MandateVerifier
from checkout_engine.checkout.flow_state import (
    FlowStep,
    PaymentFlowState,
    PaymentFlowStore,
    PostLoginAction,
    PostLoginState,
    PostLoginStore,
)
from checkout_engine.checkout.coupons import (
    Coupon,
    CouponService,
    Discount,
    DiscountType,
    calculate_discount,
)
from checkout_engine.checkout.messages import user_message_for
from checkout_engine.checkout.profile import validate_kyc_fields

__all__ = [
    # State machine
    "CheckoutState",
    "CheckoutRequest",
    "CheckoutOutcome",
    "CheckoutSession",
    "ICheckoutPrompts",
    "TERMINAL_STATES",
    "MandateVerifier",
    # Flow persistence
    "FlowStep",
    "PaymentFlowState",
    "PaymentFlowStore",
    "PostLoginAction",
    "PostLoginState",
    "PostLoginStore",
    # Coupons
    "Coupon",
    "CouponService",
    "Discount",
    "DiscountType",
    "calculate_discount",
    # Helpers
    "user_message_for",
    "validate_kyc_fields",
]
