"""
例外定義

すべてのドメイン例外は StorefrontError を継承する。
HTTP ステータスへの対応付けは ERROR_STATUS_CODES に集約し、
FastAPI の例外ハンドラとチェックアウトの結果生成で共有する。
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str, details: object | None = None):
        self.details = details
        super().__init__(message)


class InvalidInputError(StorefrontError):
    """Raised when a request is malformed (bad CEP, empty cart, missing address)."""


class UnauthorizedError(StorefrontError):
    """Raised when the bearer token is missing or rejected by the identity provider."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class OrderNotFoundError(StorefrontError):
    """Raised when an order id doesn't exist (or belongs to another customer)."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class ProductNotFoundError(StorefrontError):
    """Raised when a cart line references an unknown or inactive product/size."""

    def __init__(self, product_id: str, size: str | None = None):
        self.product_id = product_id
        self.size = size
        label = f"{product_id} ({size})" if size else product_id
        super().__init__(f"Product not available: {label}")


class PaymentNotFoundError(StorefrontError):
    """Raised when the payment provider has no payment with the given id."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class PaymentRejectedError(StorefrontError):
    """Raised when the payment provider answers 4xx. details holds its raw payload."""


class ProviderUnavailableError(StorefrontError):
    """Raised when an external provider is unreachable, failing (5xx) or not configured."""


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    InvalidInputError: 400,
    PaymentRejectedError: 400,
    UnauthorizedError: 401,
    OrderNotFoundError: 404,
    ProductNotFoundError: 404,
    PaymentNotFoundError: 404,
    ProviderUnavailableError: 500,
}


def status_code_for(exc: Exception) -> int:
    return ERROR_STATUS_CODES.get(type(exc), 500)


def error_body(exc: Exception) -> dict:
    body: dict = {"error": str(exc)}
    details = getattr(exc, "details", None)
    if details is not None:
        body["details"] = details
    return body
