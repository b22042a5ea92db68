"""Failures raised by the pairing and token services.

Handlers in ``server.api`` translate these into HTTP responses. Messages reach
the caller and say nothing about why a token or code was rejected beyond what
the caller can act on.
"""


class PairingError(Exception):
    """Base class for pairing and token failures."""

    code = "error"
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class NotFound(PairingError):
    code = "not_found"
    message = "Invalid or expired code"


class Expired(PairingError):
    code = "code_expired"
    message = "Pairing code expired, please try again"


class AlreadyLinked(PairingError):
    code = "already_linked"
    message = "This code has already been used"


class Pending(PairingError):
    """Registration exists but has not been linked yet. Not a failure: poll again."""

    code = "not_ready"
    message = "Device not linked yet"


class Invalid(PairingError):
    code = "invalid_token"
    message = "Invalid or expired token"


class RateLimited(PairingError):
    code = "rate_limited"
    message = "Too many attempts"

    def __init__(self, retry_after: int):
        super().__init__(f"Too many attempts. Try again in {retry_after}s")
        self.retry_after = retry_after
