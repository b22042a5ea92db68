"""Device registration model."""

import secrets
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from server.utils.clock import utcnow


class DeviceRegistration(SQLModel, table=True):
    __tablename__ = "device_registrations"

    id: str = Field(default_factory=lambda: f"reg_{secrets.token_hex(8)}", primary_key=True)
    device_id: str = Field(index=True)
    code_hash: str = Field(unique=True, index=True)  # sha256 of the normalized code
    device_fingerprint: Optional[str] = None
    linked: bool = Field(default=False)
    user_id: Optional[str] = Field(default=None, index=True)
    user_email: Optional[str] = None
    linked_at: Optional[datetime] = None
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
