class StoreError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(StoreError):
    status_code = 400


class NotFoundError(StoreError):
    status_code = 404


class ConflictError(StoreError):
    status_code = 409


class CartConflictError(ConflictError):
    """The cart changed underneath a read-modify-write."""


class InvalidTransitionError(StoreError):
    status_code = 400


class PaymentGatewayError(Exception):
    """Raised by the gateway adapter on transport or API failures."""
