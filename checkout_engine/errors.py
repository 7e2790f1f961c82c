"""
Checkout Error Taxonomy
=======================
Every failure the engine surfaces is a CheckoutError subclass carrying a
stable ``code`` and a ``user_message`` that is safe to show.

Propagation:
- ValidationError and Cancelled are raised locally, before any network call
- EsignRequired / EsignPending are recoverable through the eSign gate
- everything else is caught at the checkout boundary and mapped to Error
"""

from typing import Optional


class CheckoutError(Exception):
    """Base class for all engine errors"""

    code: str = "checkout_error"
    user_message: str = "Something went wrong. Please try again."
    silent: bool = False

    def __init__(self, message: str = "", *, details: Optional[dict] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.details = details or {}


class ValidationError(CheckoutError):
    code = "validation_error"
    user_message = "Please check the details you entered."

    def __init__(self, message: str = "", *, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.field = field


class QuantityExceeded(ValidationError):
    code = "quantity_exceeded"
    user_message = "Quantity cannot exceed 1."


class DuplicateItem(CheckoutError):
    code = "duplicate_item"
    user_message = "This item is already in your cart. Each portfolio can only be purchased once."

    def __init__(self, product_id: str):
        super().__init__(f"{product_id} is already in the cart", details={"product_id": product_id})
        self.product_id = product_id


class AuthRequired(CheckoutError):
    code = "auth_required"
    user_message = "Please sign in to continue."


class EsignRequired(CheckoutError):
    """Backend refused the payment call until an eSign artifact exists."""

    code = "ESIGN_REQUIRED"
    user_message = "Digital signature verification is required before payment."

    def __init__(
        self,
        message: str = "",
        *,
        document_id: Optional[str] = None,
        authentication_url: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.document_id = document_id
        self.authentication_url = authentication_url


class EsignPending(EsignRequired):
    """A signing request exists but is not completed; resumable via authentication_url."""

    code = "ESIGN_PENDING"
    user_message = "Please complete your pending digital signature to continue."


class EsignFailed(CheckoutError):
    code = "esign_failed"
    user_message = "Verification was not completed. Please try again."


class PopupBlocked(EsignFailed):
    code = "popup_blocked"
    user_message = "Popup blocked. Please allow popups for this site or open verification in this tab."

    def __init__(self, fallback_url: Optional[str] = None):
        super().__init__(details={"fallback_url": fallback_url})
        self.fallback_url = fallback_url


class GatewayRejected(CheckoutError):
    code = "gateway_rejected"
    user_message = "Your payment could not be completed. Please try again."


class GatewayConfigurationError(CheckoutError):
    code = "gateway_configuration"
    user_message = "Payments are temporarily unavailable. Please try again later."


class VerificationTimeout(CheckoutError):
    code = "verification_timeout"
    user_message = (
        "We could not confirm your payment yet. If money was debited, "
        "your subscription will activate once the bank confirms."
    )


class NetworkError(CheckoutError):
    code = "network_error"
    user_message = "Network problem. Please check your connection and try again."


class BackendError(CheckoutError):
    """Non-2xx backend response that is not one of the structured signals."""

    code = "backend_error"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.error_code = error_code


class NotFound(BackendError):
    code = "not_found"


class Cancelled(CheckoutError):
    """User-initiated; always terminal and never shown as an error."""

    code = "cancelled"
    user_message = "Payment cancelled."
    silent = True
