"""Exception hierarchy for the order service.

Every error carries the HTTP status code it maps to and a ``status``
discriminator: ``fail`` for caller errors (4xx), ``error`` for server
errors (5xx).
"""

from typing import Iterable, List, Optional


class OrderServiceError(Exception):
    """Base exception for all order service errors."""

    status_code = 500
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status(self) -> str:
        return "fail" if self.status_code < 500 else "error"


# --- 400 ---


class ValidationError(OrderServiceError):
    status_code = 400
    default_message = "Invalid request."


class EmptyCartError(ValidationError):
    default_message = "Your cart is empty."


class InvalidAddressError(ValidationError):
    def __init__(self, address_id):
        self.address_id = address_id
        super().__init__(f"Shipping address {address_id} is invalid or does not belong to you.")


class GatewayRequestError(ValidationError):
    """The payment gateway rejected the request itself (4xx)."""

    def __init__(self, message: str, gateway_status: Optional[int] = None):
        self.gateway_status = gateway_status
        super().__init__(f"Payment gateway error: {message}")


class MissingSignatureError(ValidationError):
    default_message = "Missing 'x-signature' header."


class InvalidSignatureError(ValidationError):
    default_message = "Invalid signature."


class StaleSignatureError(InvalidSignatureError):
    default_message = "Signature timestamp outside the accepted window."


# --- 401 / 403 ---


class AuthenticationError(OrderServiceError):
    status_code = 401
    default_message = "Authentication required."


class PermissionDeniedError(OrderServiceError):
    status_code = 403
    default_message = "You do not have permission to perform this action."


# --- 404 ---


class NotFoundError(OrderServiceError):
    status_code = 404
    default_message = "Resource not found."


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class CartNotFoundError(NotFoundError):
    default_message = "Cart not found."


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


# --- 409 ---


class ConflictError(OrderServiceError):
    status_code = 409
    default_message = "Conflict with the current state of the resource."


class InsufficientStockError(ConflictError):
    """Raised with every short line of a cart, never just the first."""

    def __init__(self, shortages: Iterable[str]):
        self.shortages: List[str] = list(shortages)
        super().__init__("Insufficient stock for: " + "; ".join(self.shortages))


class OrderNotPendingError(ConflictError):
    def __init__(self, status: str):
        self.current_status = status
        super().__init__(f"Order is no longer pending payment (status: {status}).")


class PaymentAlreadyInitiatedError(ConflictError):
    default_message = "Payment already started for this order."


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move order from '{current}' to '{target}'.")


class ConcurrentUpdateError(ConflictError):
    default_message = "The order was modified concurrently. Please retry."


class DuplicateOrderError(ConflictError):
    default_message = "An order with this identifier already exists."


# --- 5xx ---


class InternalError(OrderServiceError):
    status_code = 500
    default_message = "Internal server error."


class GatewayCallError(InternalError):
    """Network failure, timeout, 5xx or malformed response from the gateway."""

    def __init__(self, message: str):
        super().__init__(f"Payment gateway call failed: {message}")


class PaymentPersistenceError(InternalError):
    default_message = (
        "The payment was submitted but the order could not be updated. "
        "It will be reconciled automatically."
    )


class PaymentConfigUnavailableError(InternalError):
    default_message = "Payment configuration unavailable."


class GatewayUnavailableError(OrderServiceError):
    status_code = 503
    default_message = "Payment gateway unavailable."
