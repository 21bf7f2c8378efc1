"""Failure kinds surfaced by the payment session flow.

Every error carries a stable `kind` string (returned to callers as-is) and the
HTTP status the API layer maps it to.
"""


class PaymentFlowError(Exception):
    """Base class for all expected failures of the payment flow."""

    kind = "InternalError"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PaymentFlowError):
    """Caller input broke one or more rules; `errors` lists every one of them."""

    kind = "ValidationError"
    status_code = 400

    def __init__(self, errors: list[str]) -> None:
        super().__init__("invalid payment request: " + "; ".join(errors))
        self.errors = errors


class GatewayError(PaymentFlowError):
    """The Open Payments network rejected or failed a request."""

    kind = "GatewayError"
    status_code = 502


class WalletLookupError(GatewayError):
    kind = "WalletLookupError"


class GrantError(GatewayError):
    """A grant was not in the expected state (finalized vs. pending)."""

    kind = "GrantError"


class GatewayTimeoutError(GatewayError):
    kind = "TimeoutError"
    status_code = 504


class SessionNotFoundError(PaymentFlowError):
    kind = "NotFoundError"
    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} not found or expired")
        self.session_id = session_id


class InvalidStateError(PaymentFlowError):
    kind = "InvalidStateError"
    status_code = 409


class InternalConfigError(PaymentFlowError):
    """Signing credentials are missing or unusable. Fatal at startup."""

    kind = "InternalConfigError"
