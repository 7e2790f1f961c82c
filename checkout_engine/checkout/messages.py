"""
User-facing text for checkout failures.
"""

from checkout_engine.errors import BackendError, CheckoutError, ValidationError

GENERIC_MESSAGE = CheckoutError.user_message


def user_message_for(exc: BaseException) -> str:
    if isinstance(exc, ValidationError):
        # Field-level messages are written for the user
        return exc.message
    if isinstance(exc, BackendError) and exc.status_code >= 500:
        return "Our servers are having trouble right now. Please try again shortly."
    if isinstance(exc, CheckoutError):
        return exc.user_message
    return GENERIC_MESSAGE


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, CheckoutError):
        return exc.code
    return "internal_error"
