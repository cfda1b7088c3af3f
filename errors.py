"""Custom exceptions for the Gebeya API."""
from typing import Optional


class ShopError(Exception):
    """Base exception for all API errors."""

    pass


class InvalidRequestError(ShopError):
    """Raised when a request is missing fields or carries an unusable payload."""

    pass


class InvalidIdentifierError(ShopError):
    """Raised when an identifier is not a valid ObjectId."""

    def __init__(self, kind: str, value: str):
        self.kind = kind
        self.value = value
        super().__init__(f"Invalid {kind} id: {value}")


class AuthenticationError(ShopError):
    """Raised when a bearer token is missing, expired or malformed."""

    pass


class PermissionDeniedError(ShopError):
    """Raised when an authenticated user lacks the admin role."""

    def __init__(self, message: str = "Admin privileges required"):
        super().__init__(message)


class OrderNotFoundError(ShopError):
    """Raised when an order id doesn't resolve."""

    def __init__(self, order_id: int, user_id: Optional[str] = None):
        self.order_id = order_id
        self.user_id = user_id
        msg = f"Order not found: {order_id}"
        if user_id:
            msg = f"Order {order_id} not found for user {user_id}"
        super().__init__(msg)


class ProductNotFoundError(ShopError):
    """Raised when a product id doesn't resolve."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class CartItemNotFoundError(ShopError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Item not found in cart: {product_id}")


class InsufficientStockError(ShopError):
    """Raised when a sale would drive a product's stock below zero."""

    def __init__(self, product_id: str, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Not enough stock for product {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg)


class SoldCountDecreaseError(ShopError):
    def __init__(self, product_id: str, current: int, requested: int):
        self.product_id = product_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Sold count cannot decrease for product {product_id} ({current} -> {requested})"
        )


class ConcurrentModificationError(ShopError):
    """Raised when a conditional update lost a race with another writer."""

    pass


class ReconciliationStateError(ShopError):
    """Raised when a reconciliation retry finds nothing it may take over."""

    def __init__(self, order_id: int, state: Optional[str]):
        self.order_id = order_id
        self.state = state
        super().__init__(
            f"Order {order_id} has no stock reconciliation to retry (state: {state or 'none'})"
        )


class UpstreamError(ShopError):
    """Base for failures of the database or the object store; safe to retry."""

    pass


class DatabaseUnavailableError(UpstreamError):
    def __init__(self, message: str = "Database not configured"):
        super().__init__(message)


class ObjectStorageError(UpstreamError):
    pass
