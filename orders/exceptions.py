"""
Order errors.

Each error carries a machine ``code`` and the HTTP status the API layer
answers with. Storage errors are not wrapped; they propagate as-is.
"""


class OrderError(Exception):
    """Base class for order placement and lifecycle errors."""
    code = 'error'
    status_code = 400


class OrderValidationError(OrderError):
    """Raised when checkout input is rejected before any stock is touched."""
    code = 'validation'
    status_code = 400

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)


class PurchaseLimitExceededError(OrderValidationError):
    """Raised when a buyer would exceed a product's max_per_student."""

    def __init__(self, product_name: str, limit: int, already_purchased: int, requested: int):
        self.product_name = product_name
        self.limit = limit
        self.already_purchased = already_purchased
        self.requested = requested
        super().__init__(
            f"Purchase limit for {product_name} is {limit}: "
            f"already purchased {already_purchased}, requested {requested}",
            field='items',
        )


class StockUnavailableError(OrderError):
    """Raised when a line item could not be reserved."""
    code = 'stock_unavailable'
    status_code = 409

    def __init__(self, product_id, item_name: str, requested: int, option_id=None):
        self.product_id = product_id
        self.option_id = option_id
        self.item_name = item_name
        self.requested = requested
        super().__init__(f"Insufficient stock for {item_name}: requested {requested}")


class ProductNotFoundError(OrderError):
    code = 'not_found'
    status_code = 404

    def __init__(self, product_ids):
        self.product_ids = sorted(product_ids)
        super().__init__(f"Products not found: {self.product_ids}")


class OrderNotFoundError(OrderError):
    code = 'not_found'
    status_code = 404

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidTransitionError(OrderError):
    """Raised when a status change is not in the transition table."""
    code = 'invalid_transition'
    status_code = 409

    def __init__(self, current: str, attempted: str, allowed=(), message: str = None):
        self.current = current
        self.attempted = attempted
        self.allowed = sorted(allowed)
        super().__init__(message or (
            f'Invalid status transition: "{current}" -> "{attempted}". '
            f"Allowed transitions: [{', '.join(self.allowed)}]"
        ))
