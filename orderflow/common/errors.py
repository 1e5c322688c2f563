"""Error taxonomy surfaced by checkout, payment and webhook operations.

Every error carries a stable `code` the storefront maps to a message, an HTTP
status, and a JSON-safe `detail` dict.
"""

from typing import Any


class CheckoutError(Exception):
    code = "CHECKOUT_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.code.lower())
        self.message = message or self.code.lower()
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        body = {"error": self.code, "message": self.message, **self.detail}
        if self.retryable:
            body["retryable"] = True
        return body


class EmptyCartError(CheckoutError):
    code = "EMPTY_CART"


class ProductUnavailableError(CheckoutError):
    code = "PRODUCT_UNAVAILABLE"


class OutOfStockError(CheckoutError):
    code = "OUT_OF_STOCK"
    status_code = 409


class InvalidDiscountError(CheckoutError):
    code = "INVALID_DISCOUNT"


class OrderNotFoundError(CheckoutError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class InvalidOrderStateError(CheckoutError):
    code = "INVALID_ORDER_STATE"
    status_code = 409


class MaxRetriesExceededError(CheckoutError):
    code = "MAX_RETRIES_EXCEEDED"


class PaymentProviderError(CheckoutError):
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = 502
    retryable = True


class WebhookVerificationError(CheckoutError):
    code = "INVALID_SIGNATURE"


class WebhookPayloadError(CheckoutError):
    code = "INVALID_PAYLOAD"


class RateLimitedError(CheckoutError):
    code = "RATE_LIMITED"
    status_code = 429
