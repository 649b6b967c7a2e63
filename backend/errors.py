"""Exceptions raised by the store core and rendered by the HTTP layer."""

from typing import Dict, Optional


class StoreError(Exception):
    """Base exception for all store errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, object]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(StoreError):
    """Raised when a payload is missing fields or carries malformed values."""

    status_code = 400


class BusinessRuleError(StoreError):
    """Raised when a well-formed request breaks a store rule."""

    status_code = 400


class EmptyCartError(BusinessRuleError):
    def __init__(self):
        super().__init__("Cart is empty")


class ProductUnavailableError(BusinessRuleError):
    """Raised when a product is missing or no longer active."""

    def __init__(self, product_id: str, title: Optional[str] = None):
        self.product_id = product_id
        self.title = title
        label = title or product_id
        super().__init__(
            f'Product "{label}" is no longer available',
            {"productId": product_id},
        )


class InsufficientStockError(BusinessRuleError):
    def __init__(self, product_id: str, title: str, available: int, requested: int):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        super().__init__(
            f'Insufficient stock for "{title}". '
            f"Available: {available}, Requested: {requested}",
            {"productId": product_id, "available": available, "requested": requested},
        )


class NotFoundError(StoreError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found", {"orderId": order_id})


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product not found", {"productId": product_id})


class CartItemNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Item not found in cart", {"productId": product_id})


class UserNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__(
            "User not found. Please try logging out and logging in again."
        )


class ConflictError(StoreError):
    """Raised when a write lost a race against another writer."""

    status_code = 409


class CartChangedError(ConflictError):
    def __init__(self):
        super().__init__(
            "Your cart changed while it was being processed. Please review it and try again."
        )


class InvalidStatusTransitionError(ConflictError):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot change order status from {current} to {requested}.",
            {"currentStatus": current, "requestedStatus": requested},
        )


class PaymentProviderError(StoreError):
    """Raised when the payment processor cannot be reached or refuses a request."""

    status_code = 502
