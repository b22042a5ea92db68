"""Device token model."""

import secrets
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from server.utils.clock import utcnow


class DeviceToken(SQLModel, table=True):
    __tablename__ = "device_tokens"

    id: str = Field(default_factory=lambda: f"tok_{secrets.token_hex(8)}", primary_key=True)
    token_hash: str = Field(unique=True, index=True)  # raw token is never stored
    device_id: str = Field(unique=True, index=True)
    device_fingerprint: Optional[str] = None
    user_id: str = Field(index=True)
    user_email: str
    device_name: str
    issued_at: datetime
    rotated_at: Optional[datetime] = None
    expires_at: datetime = Field(index=True)
    last_used_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
