class PaymentError(Exception):
    """Base class for failures surfaced by the payment-confirmation core."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    status_code = 400


class AuthenticityError(PaymentError):
    # digest or merchant mismatch on an inbound notification
    status_code = 400


class AuthorizationError(PaymentError):
    status_code = 403


class NotFoundError(PaymentError):
    status_code = 404


class ConflictError(PaymentError):
    status_code = 409


class TransientInfraError(PaymentError):
    status_code = 500


class EmailDeliveryError(PaymentError):
    status_code = 502
