"""Custom exceptions for the storefront API.

Every error carries a message that is safe to show to the buyer.
"""


class StoreError(Exception):
    """Base exception for all storefront errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StoreError):
    """Raised when a request is missing fields or carries malformed values."""

    pass


class NotFoundError(StoreError):
    """Raised when an order, product, cart item or checkout doesn't exist."""

    def __init__(self, kind: str, ident: str | None = None):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found")


class StateConflictError(StoreError):
    """Raised when a transition is not allowed from the current state."""

    pass


class AlreadyCancelledError(StateConflictError):
    """Raised when cancelling an order that is already cancelled."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order is already cancelled")


class OutOfStockError(StateConflictError):
    """Raised when a size bucket can't cover the requested quantity."""

    def __init__(self, product_id: str, size: int, requested: int, available: int = 0):
        self.product_id = product_id
        self.size = size
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough stock for size {size} (requested {requested}, available {available})")


class PaymentDeclinedError(StoreError):
    """Raised when a simulated payment is declined. Nothing is persisted."""

    pass


class ProviderError(StoreError):
    """Raised when the hosted payment provider call fails."""

    pass


class WebhookSignatureError(ProviderError):
    """Raised when a provider notification fails signature verification."""

    def __init__(self):
        super().__init__("Webhook signature verification failed")


class CheckoutInProgressError(StoreError):
    """Raised when the same user already has a checkout running."""

    def __init__(self):
        super().__init__("A checkout is already in progress for this cart")


class AuthError(StoreError):
    """Raised when the bearer token is missing, invalid or expired."""

    pass


class ForbiddenError(StoreError):
    """Raised when a non-admin calls an admin route."""

    def __init__(self):
        super().__init__("Admin only")
