"""DevicePair Database Models."""

from server.models.registration import DeviceRegistration
from server.models.token import DeviceToken

__all__ = [
    "DeviceRegistration",
    "DeviceToken",
]
