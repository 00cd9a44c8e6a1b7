"""Error taxonomy for payment reconciliation.

Each exception carries the HTTP status the view layer answers with. Only
``GatewayUnavailable`` and ``Conflict`` are worth retrying; everything else is
a definitive answer for the current request.
"""


class PaymentError(Exception):
    status_code = 500
    default_message = "Payment processing error"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(PaymentError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(PaymentError):
    status_code = 401
    default_message = "Unauthorized"


class NotFound(PaymentError):
    status_code = 404
    default_message = "Not found"


class Conflict(PaymentError):
    status_code = 409
    default_message = "Record changed concurrently, retry"


class RateLimited(PaymentError):
    status_code = 429
    default_message = "Too many requests"


class TransitionNotAllowed(PaymentError):
    status_code = 400
    default_message = "Action not allowed in the current payment state"


class InvariantViolation(PaymentError):
    status_code = 500
    default_message = "Payment state invariant violated"


class GatewayUnavailable(PaymentError):
    """The gateway could not give an answer. Status unknown, never "failed"."""

    status_code = 502
    default_message = "Payment gateway unavailable"


class DeadlineExceeded(GatewayUnavailable):
    default_message = "Request deadline exceeded"
