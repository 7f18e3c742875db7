"""
Domain errors. Routes translate these into HTTP responses; ProviderError never
leaves the lifecycle controller, it is recorded onto the order instead.
"""


class BrandmartError(Exception):
    """Base class for all domain errors."""


class OrderNotFound(BrandmartError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Order not found: {key}")


class ProductNotFound(BrandmartError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderStateError(BrandmartError):
    """Raised when a requested transition is not allowed from the current status."""
    def __init__(self, current_status: str, message: str | None = None):
        self.current_status = current_status
        super().__init__(message or f"Not allowed in status: {current_status}")


class Forbidden(BrandmartError):
    pass


class InvalidPayload(BrandmartError):
    """Webhook body could not be parsed into a known event shape."""


class ProviderError(BrandmartError):
    """A payment or shipment provider call failed or timed out."""
    def __init__(self, provider: str, message: str, status_code: int | None = None, body: dict | None = None):
        self.provider = provider
        self.status_code = status_code
        self.body = body or {}
        super().__init__(f"{provider}: {message}")
