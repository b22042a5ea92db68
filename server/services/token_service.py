"""Device token store: minting, validation, rotation and housekeeping.

Only ``hash_token(raw)`` is ever written. Every state change that must be
atomic (touch, rotate) is a single conditional UPDATE whose row count tells
the caller whether it won.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from server.config import settings
from server.models.registration import DeviceRegistration
from server.models.token import DeviceToken
from server.services.errors import Invalid, NotFound
from server.utils.clock import as_utc, utcnow
from server.utils.security import generate_raw_token, hash_token, is_well_formed_token

logger = logging.getLogger(__name__)

MAX_DEVICE_NAME_LENGTH = 100


@dataclass
class IssuedToken:
    """A freshly minted credential. ``token`` is the raw secret, revealed once."""

    token: str
    device_id: str
    expires_at: datetime


@dataclass
class TokenContext:
    user_id: str
    user_email: str
    device_id: str
    device_name: str
    issued_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime


def default_device_name(device_id: str) -> str:
    return f"Device {device_id[-8:]}"


def _context(row: DeviceToken) -> TokenContext:
    return TokenContext(
        user_id=row.user_id,
        user_email=row.user_email,
        device_id=row.device_id,
        device_name=row.device_name,
        issued_at=as_utc(row.issued_at),
        last_used_at=as_utc(row.last_used_at) if row.last_used_at else None,
        expires_at=as_utc(row.expires_at),
    )


def mint_for_registration(
    registration: DeviceRegistration,
    session: Session,
    device_name: str | None = None,
    now: datetime | None = None,
) -> IssuedToken:
    """Issue the device's credential, replacing any earlier one for the same device."""
    now = now or utcnow()
    raw = generate_raw_token()
    expires_at = now + timedelta(seconds=settings.token_ttl_seconds)
    values = {
        "token_hash": hash_token(raw),
        "device_fingerprint": registration.device_fingerprint,
        "user_id": registration.user_id,
        "user_email": registration.user_email or "",
        "issued_at": now,
        "rotated_at": None,
        "expires_at": expires_at,
        "last_used_at": None,
    }
    if device_name:
        values["device_name"] = device_name

    stmt = (
        update(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(col(DeviceToken.device_id) == registration.device_id)
    )
    result = session.exec(stmt.values(**values))
    if result.rowcount == 0:
        values.setdefault("device_name", default_device_name(registration.device_id))
        session.add(DeviceToken(device_id=registration.device_id, **values))
        try:
            session.commit()
        except IntegrityError:
            # A concurrent exchange inserted the row first; take it over.
            session.rollback()
            session.exec(stmt.values(**values))
            session.commit()
    else:
        session.commit()

    logger.info("Issued token for device %s (user %s)", registration.device_id, registration.user_id)
    return IssuedToken(token=raw, device_id=registration.device_id, expires_at=expires_at)


def validate(raw_token: str, session: Session, now: datetime | None = None) -> TokenContext:
    """Check a bearer token and record its use. Raises Invalid on any failure."""
    if not is_well_formed_token(raw_token):
        raise Invalid()
    now = now or utcnow()
    token_hash = hash_token(raw_token)

    # Touch only moves last_used_at forward
    session.exec(
        update(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(
            col(DeviceToken.token_hash) == token_hash,
            col(DeviceToken.expires_at) > now,
            or_(col(DeviceToken.last_used_at).is_(None), col(DeviceToken.last_used_at) <= now),
        )
        .values(last_used_at=now)
    )
    session.commit()

    row = session.exec(
        select(DeviceToken).where(
            DeviceToken.token_hash == token_hash,
            DeviceToken.expires_at > now,
        )
    ).first()
    if not row:
        raise Invalid()
    return _context(row)


def refresh(raw_token: str, session: Session, now: datetime | None = None) -> IssuedToken:
    """Rotate a live token. The old value stops validating in the same statement."""
    if not is_well_formed_token(raw_token):
        raise Invalid()
    now = now or utcnow()
    new_raw = generate_raw_token()
    new_hash = hash_token(new_raw)
    expires_at = now + timedelta(seconds=settings.token_ttl_seconds)

    result = session.exec(
        update(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(
            col(DeviceToken.token_hash) == hash_token(raw_token),
            col(DeviceToken.expires_at) > now,
        )
        .values(
            token_hash=new_hash,
            rotated_at=now,
            expires_at=expires_at,
            last_used_at=now,
        )
    )
    session.commit()
    if result.rowcount != 1:
        raise Invalid()

    row = session.exec(select(DeviceToken).where(DeviceToken.token_hash == new_hash)).one()
    logger.info("Rotated token for device %s", row.device_id)
    return IssuedToken(token=new_raw, device_id=row.device_id, expires_at=expires_at)


def _delete_registrations(device_id: str, session: Session) -> int:
    """Drop the device's pairing rows so its code cannot mint another token."""
    result = session.exec(
        delete(DeviceRegistration)
        .execution_options(synchronize_session=False)
        .where(col(DeviceRegistration.device_id) == device_id)
    )
    return result.rowcount


def logout(raw_token: str, session: Session) -> bool:
    """Delete the credential row owning this token, and the device's registration."""
    if not is_well_formed_token(raw_token):
        return False
    token_hash = hash_token(raw_token)
    row = session.exec(select(DeviceToken).where(DeviceToken.token_hash == token_hash)).first()
    if not row:
        return False
    device_id = row.device_id

    result = session.exec(
        delete(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(col(DeviceToken.token_hash) == token_hash)
    )
    if result.rowcount:
        _delete_registrations(device_id, session)
    session.commit()
    if result.rowcount:
        logger.info("Logged out device %s", device_id)
    return result.rowcount > 0


def list_devices(user_id: str, session: Session) -> list[DeviceToken]:
    return list(
        session.exec(
            select(DeviceToken)
            .where(DeviceToken.user_id == user_id)
            .order_by(col(DeviceToken.issued_at).desc())
        ).all()
    )


def rename_device(device_id: str, user_id: str, name: str, session: Session) -> DeviceToken:
    trimmed = name.strip()
    if not trimmed:
        raise ValueError("Device name cannot be empty")
    if len(trimmed) > MAX_DEVICE_NAME_LENGTH:
        raise ValueError(f"Device name cannot exceed {MAX_DEVICE_NAME_LENGTH} characters")

    device = session.exec(
        select(DeviceToken).where(DeviceToken.device_id == device_id, DeviceToken.user_id == user_id)
    ).first()
    if not device:
        raise NotFound("Device not found")

    device.device_name = trimmed
    session.add(device)
    session.commit()
    session.refresh(device)
    return device


def revoke_device(device_id: str, user_id: str, session: Session) -> None:
    result = session.exec(
        delete(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(
            col(DeviceToken.device_id) == device_id,
            col(DeviceToken.user_id) == user_id,
        )
    )
    if result.rowcount == 0:
        session.rollback()
        raise NotFound("Device not found")
    _delete_registrations(device_id, session)
    session.commit()
    logger.info("Revoked device %s for user %s", device_id, user_id)


def cleanup_expired(session: Session, now: datetime | None = None) -> tuple[int, int]:
    """Delete expired registrations and tokens. Returns (registrations, tokens)."""
    now = now or utcnow()
    regs = session.exec(
        delete(DeviceRegistration)
        .execution_options(synchronize_session=False)
        .where(col(DeviceRegistration.expires_at) <= now)
    )
    toks = session.exec(
        delete(DeviceToken)
        .execution_options(synchronize_session=False)
        .where(col(DeviceToken.expires_at) <= now)
    )
    session.commit()
    if regs.rowcount or toks.rowcount:
        logger.info("Removed %d expired registrations, %d expired tokens", regs.rowcount, toks.rowcount)
    return regs.rowcount, toks.rowcount
