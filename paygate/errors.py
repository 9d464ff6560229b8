from typing import Optional


class PayGateError(Exception):
    """Base error; ``status_code`` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(PayGateError):
    status_code = 400


class SignatureError(PayGateError):
    status_code = 401


class MerchantInactiveError(PayGateError):
    status_code = 403


class MerchantNotFoundError(PayGateError):
    status_code = 404


class OrderNotFoundError(PayGateError):
    status_code = 404


class IdempotencyConflictError(PayGateError):
    status_code = 409


class InsufficientBalanceError(PayGateError):
    status_code = 422


class LedgerInvariantError(PayGateError):
    """A guarded balance update matched no row; the transaction must roll back."""

    status_code = 500


class GatewayError(PayGateError):
    status_code = 502
    retryable = True

    def __init__(self, message: str, gateway_code: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.gateway_code = gateway_code


class GatewaySubmissionError(GatewayError):
    pass


class GatewayQueryError(GatewayError):
    pass


class CallbackFormatError(GatewayError):
    status_code = 400
    retryable = False
