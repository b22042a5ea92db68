"""Failures surfaced by the pairing client."""


class PairingClientError(Exception):
    """Base class for pairing client failures."""


class StorageUnavailable(PairingClientError):
    """Local persistence cannot be read or written."""


class NotAuthenticated(PairingClientError):
    """No usable device credential. The device must pair again."""


class RegistrationExpired(PairingClientError):
    """The pairing code expired before it was exchanged."""

    def __init__(self, message: str = "Pairing code expired, please try again"):
        super().__init__(message)


class RegistrationNotFound(PairingClientError):
    """The server does not know this device id and code pair."""

    def __init__(self, message: str = "Pairing code not recognised, please try again"):
        super().__init__(message)


class TransientError(PairingClientError):
    """Timeout, connection failure or 5xx. Safe to retry."""


class ServerError(PairingClientError):
    """Unexpected response that retrying will not fix."""

    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = status_code
