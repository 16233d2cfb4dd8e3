"""Custom exceptions for storefront."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class ValidationError(StorefrontError):
    """Raised when request input is malformed or violates a business rule."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class EmptyCartError(ValidationError):
    """Raised when checking out a cart with no items."""

    def __init__(self):
        super().__init__("Cart is empty. Add items before checking out.")


class NotFoundError(StorefrontError):
    """Raised when a requested entity doesn't exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ProductNotFoundError(NotFoundError):
    """Raised when a product doesn't exist or is not available."""

    def __init__(self, product_id: str):
        super().__init__("Product", product_id)


class OrderNotFoundError(NotFoundError):
    """Raised when an order doesn't exist (or belongs to another user)."""

    def __init__(self, order_ref: str):
        super().__init__("Order", order_ref)


class CartItemNotFoundError(NotFoundError):
    """Raised when a cart item doesn't exist in the caller's cart."""

    def __init__(self, item_id: str):
        super().__init__("Cart item", item_id)


class ConflictError(StorefrontError):
    """Raised when a write collides with existing state (duplicate sku/slug)."""

    pass


class PaymentAlreadySettledError(ConflictError):
    """Raised when starting a payment for an order that is paid or refunded."""

    def __init__(self, order_number: str, payment_status: str):
        self.order_number = order_number
        self.payment_status = payment_status
        super().__init__(f"Order {order_number} is already {payment_status}")


class InsufficientStockError(StorefrontError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: str, name: str, available: int, requested: int):
        self.product_id = product_id
        self.name = name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {name}. Available: {available}, requested: {requested}"
        )


class InvalidStateError(StorefrontError):
    """Raised when an order transition is not legal from its current state."""

    def __init__(self, order_number: str, current: str, action: str):
        self.order_number = order_number
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} order {order_number} in status '{current}'")


class SignatureVerificationError(StorefrontError):
    """Raised when a payment callback fails signature verification."""

    def __init__(self, gateway: str, reason: str | None = None):
        self.gateway = gateway
        msg = f"Invalid {gateway} signature"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class PaymentGatewayError(StorefrontError):
    """Raised when a payment gateway call fails or the gateway is not configured."""

    def __init__(self, gateway: str, message: str, configured: bool = True):
        self.gateway = gateway
        self.configured = configured
        super().__init__(f"{gateway}: {message}")


class AuthorizationError(StorefrontError):
    """Raised when a caller lacks the identity or key an endpoint needs."""

    pass
