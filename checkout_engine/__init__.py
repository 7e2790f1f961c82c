"""
Checkout Engine
===============
Subscription checkout and entitlement engine: access resolution, cart
reconciliation, eSign gating, payment gateway adapters and the checkout
state machine.
"""

from checkout_engine.logging_config import configure_logging

__version__ = "1.0.0"

configure_logging()
