"""Pairing and device token request/response schemas.

Wire format is camelCase; Python attributes stay snake_case.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Pairing ---

class RegisterRequest(CamelModel):
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)


class RegisterResponse(CamelModel):
    device_id: str
    code: str
    expires_at: str


class LinkRequest(CamelModel):
    code: str = Field(min_length=1, max_length=32)


class LinkResponse(CamelModel):
    device_id: str


class ExchangeRequest(CamelModel):
    device_id: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=32)
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=100)


class TokenResponse(CamelModel):
    token: str
    expires_at: str
    device_id: str


# --- Device management ---

class DeviceResponse(CamelModel):
    device_id: str
    device_name: str
    user_email: str
    issued_at: str
    rotated_at: Optional[str]
    last_used_at: Optional[str]
    expires_at: str
    is_active: bool


class DeviceListResponse(CamelModel):
    devices: list[DeviceResponse]
    total_devices: int
    active_devices: int


class DeviceRenameRequest(CamelModel):
    device_name: str


class PingResponse(CamelModel):
    ok: bool
    device_id: str
    user_id: str
    user_email: str


class CleanupResponse(CamelModel):
    registrations: int
    tokens: int
