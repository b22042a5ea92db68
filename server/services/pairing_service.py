"""Device pairing business logic: register, link, exchange.

Registrations live in the database, so a pairing survives a server restart
and is visible to every server process. The link step is a compare-and-swap
on ``linked``; nothing here relies on in-process locking for correctness.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from server.config import settings
from server.models.registration import DeviceRegistration
from server.services import token_service
from server.services.errors import AlreadyLinked, Expired, NotFound, Pending, RateLimited
from server.services.token_service import IssuedToken
from server.utils.clock import as_utc, utcnow
from server.utils.security import generate_device_id, generate_pairing_code, hash_code

logger = logging.getLogger(__name__)

CODE_GENERATION_ATTEMPTS = 5


@dataclass
class IssuedRegistration:
    """Result of ``register``. ``code`` is the only copy of the raw code."""

    device_id: str
    code: str
    expires_at: datetime


# --- Link attempt limiting ---

@dataclass
class LinkAttempts:
    failures: int = 0
    lockout_until: float = 0.0


class LinkRateLimiter:
    """Locks a user out of linking after repeated unknown codes.

    Per process and best-effort; the size of the code space is what makes
    guessing infeasible, this only slows down a single account.
    """

    def __init__(self, max_attempts: int, lockout_seconds: int):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._attempts: dict[str, LinkAttempts] = {}
        self._lock = threading.Lock()

    def check(self, user_id: str, now: float | None = None) -> None:
        now = now if now is not None else time.time()
        with self._lock:
            state = self._attempts.get(user_id)
            if state and state.lockout_until > now:
                raise RateLimited(int(state.lockout_until - now) + 1)

    def record_failure(self, user_id: str, now: float | None = None) -> None:
        now = now if now is not None else time.time()
        with self._lock:
            state = self._attempts.setdefault(user_id, LinkAttempts())
            state.failures += 1
            if state.failures >= self.max_attempts:
                state.lockout_until = now + self.lockout_seconds
                state.failures = 0
                logger.warning("Link attempts locked for user %s", user_id)

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._attempts.pop(user_id, None)


link_limiter = LinkRateLimiter(settings.link_max_attempts, settings.link_lockout_seconds)


# --- Registrar ---

def register(
    fingerprint: str | None,
    session: Session,
    now: datetime | None = None,
) -> IssuedRegistration:
    """Create an unlinked registration with a fresh device id and pairing code."""
    now = now or utcnow()
    expires_at = now + timedelta(seconds=settings.registration_ttl_seconds)

    for attempt in range(CODE_GENERATION_ATTEMPTS):
        code = generate_pairing_code()
        registration = DeviceRegistration(
            device_id=generate_device_id(),
            code_hash=hash_code(code),
            device_fingerprint=fingerprint,
            expires_at=expires_at,
            created_at=now,
        )
        session.add(registration)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning("Pairing code collision, regenerating (attempt %d)", attempt + 1)
            continue

        logger.info("Registered device %s, code expires at %s", registration.device_id, expires_at.isoformat())
        return IssuedRegistration(device_id=registration.device_id, code=code, expires_at=expires_at)

    raise RuntimeError("Could not allocate a unique pairing code")


# --- Linker ---

def link(
    code: str,
    user_id: str,
    user_email: str,
    session: Session,
    now: datetime | None = None,
) -> str:
    """Bind an unexpired, unlinked registration to a user. Returns the device id."""
    now = now or utcnow()
    link_limiter.check(user_id, now.timestamp())
    code_hash = hash_code(code)

    result = session.exec(
        update(DeviceRegistration)
        .execution_options(synchronize_session=False)
        .where(
            col(DeviceRegistration.code_hash) == code_hash,
            col(DeviceRegistration.linked) == False,  # noqa: E712
            col(DeviceRegistration.expires_at) > now,
        )
        .values(linked=True, user_id=user_id, user_email=user_email, linked_at=now)
    )
    session.commit()

    registration = session.exec(
        select(DeviceRegistration).where(DeviceRegistration.code_hash == code_hash)
    ).first()

    if result.rowcount == 1:
        link_limiter.reset(user_id)
        logger.info("Linked device %s to user %s", registration.device_id, user_id)
        return registration.device_id

    if not registration or as_utc(registration.expires_at) <= now:
        link_limiter.record_failure(user_id, now.timestamp())
        raise NotFound()
    raise AlreadyLinked()


# --- Exchanger ---

def exchange(
    device_id: str,
    code: str,
    session: Session,
    fingerprint: str | None = None,
    device_name: str | None = None,
    now: datetime | None = None,
) -> IssuedToken:
    """Trade a linked registration for a device token.

    Raises Pending while the human has not linked the code yet, so the
    client keeps polling; NotFound and Expired mean the code is dead.
    """
    now = now or utcnow()
    registration = session.exec(
        select(DeviceRegistration).where(
            DeviceRegistration.code_hash == hash_code(code),
            DeviceRegistration.device_id == device_id,
        )
    ).first()

    if not registration:
        raise NotFound()
    if fingerprint and registration.device_fingerprint and fingerprint != registration.device_fingerprint:
        logger.warning("Fingerprint mismatch on exchange for device %s", device_id)
        raise NotFound()
    if as_utc(registration.expires_at) <= now:
        raise Expired()
    if not registration.linked:
        raise Pending()

    return token_service.mint_for_registration(registration, session, device_name=device_name, now=now)
