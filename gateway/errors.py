"""
Error taxonomy for the integration gateway.

Request-level errors (validation, ownership, conflicts) are raised by the
services and translated to HTTP responses in main.py. Delivery errors are
scoped to a single ledger row and never escape a sweep.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Malformed input, rejected before any row is written."""

    status_code = 400


class NotFoundError(GatewayError):
    """Referenced key, webhook or delivery does not exist."""

    status_code = 404


class NotAuthorizedError(GatewayError):
    """Referenced resource exists but is owned by someone else."""

    status_code = 403


class ConflictError(GatewayError):
    """Delivery row is currently leased by another worker."""

    status_code = 409


class DeliveryError(GatewayError):
    """Base class for errors recorded on a delivery row."""


class TransientDeliveryError(DeliveryError):
    """
    A single attempt failed (non-2xx response, network error or timeout).

    Carries whatever the receiver returned so it can be stored on the row.
    """

    def __init__(self, message: str, response_code: int | None = None, response_body: str | None = None):
        super().__init__(message)
        self.response_code = response_code
        self.response_body = response_body


class TerminalDeliveryError(DeliveryError):
    """Retry ceiling reached; the row is permanently failed."""

    def __init__(self, delivery_id: str, attempts: int):
        super().__init__("Max retries exceeded")
        self.delivery_id = delivery_id
        self.attempts = attempts
