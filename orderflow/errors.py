"""
Error taxonomy for OrderFlow.

Services raise these; the API layer maps them to HTTP responses.
"""


class OrderFlowError(Exception):
    """Base class for all domain errors."""
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(OrderFlowError):
    """Referenced row does not exist or lies outside the caller's tenant scope."""
    status_code = 404


class ForbiddenError(OrderFlowError):
    """Actor lacks tenant scope or the required role."""
    status_code = 403


class ValidationError(OrderFlowError):
    """Missing or invalid input, disabled feature, exhausted quota, or invalid transition."""
    status_code = 400


class ConflictError(OrderFlowError):
    """Another writer got there first: a concurrent transition or an in-flight retry of the same event."""
    status_code = 409


class TransactionFailure(OrderFlowError):
    """A persistence error aborted a multi-step mutation. Everything was rolled back."""
    status_code = 500


class DeliveryFailure(OrderFlowError):
    """Non-2xx response, network error or timeout while delivering a webhook."""
    status_code = 502

    def __init__(self, detail: str, status_code: int | None = None, response_body: str | None = None):
        super().__init__(detail)
        self.http_status_code = status_code
        self.response_body = response_body
