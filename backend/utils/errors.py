from fastapi import HTTPException, status


class MarketlyError(HTTPException):
    """
    Base class for every business failure raised by the order/payout core.
    Each subclass carries its HTTP status and a stable machine-readable code.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    code = "MARKETLY_ERROR"
    default_detail = "Request could not be processed"

    def __init__(self, detail: str | None = None, **context):
        self.context = context
        super().__init__(
            status_code=type(self).status_code,
            detail=detail or self.default_detail,
        )


# -------------------------------
# Validation
# -------------------------------

class ValidationError(MarketlyError):
    code = "VALIDATION_ERROR"
    default_detail = "Invalid request"


class EmptyCartError(MarketlyError):
    code = "EMPTY_CART"
    default_detail = "Cart is empty"


# -------------------------------
# Lookups
# -------------------------------

class ProductNotFoundError(MarketlyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "PRODUCT_NOT_FOUND"
    default_detail = "Product not found"


class OrderNotFoundError(MarketlyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "ORDER_NOT_FOUND"
    default_detail = "Order not found"


class PayoutNotFoundError(MarketlyError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "PAYOUT_NOT_FOUND"
    default_detail = "Payout transaction not found"


# -------------------------------
# Business rules
# -------------------------------

class InsufficientStockError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "INSUFFICIENT_STOCK"
    default_detail = "Insufficient stock"


class InvalidTransitionError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"
    default_detail = "Status transition not allowed"


class OrderNotCancellableError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "ORDER_NOT_CANCELLABLE"
    default_detail = "Order cannot be cancelled at this stage"


class ReturnWindowExpiredError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "RETURN_WINDOW_EXPIRED"
    default_detail = "Return window has expired"


class NoEligibleOrdersError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "NO_ELIGIBLE_ORDERS"
    default_detail = "No eligible orders for payout"


class NotAuthorizedError(MarketlyError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "NOT_AUTHORIZED"
    default_detail = "Not authorized"


# -------------------------------
# Concurrency
# -------------------------------

class ConcurrentModificationError(MarketlyError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONCURRENT_MODIFICATION"
    default_detail = "Resource was modified concurrently, please retry"
