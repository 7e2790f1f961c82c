"""
Cart: stores and the local/server reconciler.
"""

from checkout_engine.cart.stores import (
    ICartStore,
    ServerCartStore,
    LocalCartStore,
    cart_from_payload,
)
from checkout_engine.cart.reconciler import CartReconciler, CartMutation, MergeResult

__all__ = [
    # Stores
    "ICartStore",
    "ServerCartStore",
    "LocalCartStore",
    "cart_from_payload",
    # Reconciler
    "CartReconciler",
    "CartMutation",
    "MergeResult",
]
