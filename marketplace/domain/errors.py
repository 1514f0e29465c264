# marketplace/domain/errors.py


class MarketplaceError(Exception):
    """Base for domain errors raised by the cart/order services."""

    code = "marketplace_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFoundError(MarketplaceError, LookupError):
    """Object does not exist or is not owned by the requesting identity."""

    code = "not_found"


class InvalidStateError(MarketplaceError, ValueError):
    """Operation not allowed in the object's current lifecycle state."""

    code = "invalid_state"


class ValidationFailure(MarketplaceError, ValueError):
    """Malformed input, rejected before any write."""

    code = "validation_failed"


class ConcurrencyConflict(MarketplaceError, RuntimeError):
    """Lost a race against a concurrent request."""

    code = "concurrency_conflict"


class UpstreamFailure(MarketplaceError, RuntimeError):
    """Catalog, payment gateway or provisioning API failed or timed out."""

    code = "upstream_failure"
