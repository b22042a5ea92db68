"""Security utilities: pairing codes, device tokens, canonical hashing, web sessions."""

import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone

import jwt

from server.config import settings


# --- Identifiers & pairing codes ---

# Crockford base32: no I, L, O or U, so codes survive being read aloud
CODE_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_CODE_TRANSLATION = str.maketrans({"O": "0", "I": "1", "L": "1"})


def generate_device_id() -> str:
    return f"dev_{secrets.token_hex(16)}"


def generate_pairing_code(length: int | None = None) -> str:
    """Generate a human-enterable pairing code (32^10 combinations by default)."""
    n = length or settings.code_length
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(n))


def normalize_code(code: str) -> str:
    """Canonical form of a code as typed by a human."""
    cleaned = code.strip().upper().replace("-", "").replace(" ", "")
    return cleaned.translate(_CODE_TRANSLATION)


# --- Device tokens ---

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,256}$")


def generate_raw_token() -> str:
    return secrets.token_urlsafe(settings.token_bytes)


def is_well_formed_token(token: str) -> bool:
    return bool(token) and _TOKEN_RE.match(token) is not None


# --- Canonical hash ---

def hash_secret(value: str) -> str:
    """SHA-256 over UTF-8, lowercase hex. The only hash used for stored secrets."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_token(token: str) -> str:
    return hash_secret(token)


def hash_code(code: str) -> str:
    return hash_secret(normalize_code(code))


# --- Web session (issued by the identity provider) ---

def create_session_token(user_id: str, email: str, expires_minutes: int = 60) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": user_id,
        "email": email,
        "exp": expire,
        "type": "session",
    }
    return jwt.encode(payload, settings.session_secret, algorithm=settings.session_algorithm)


def decode_session_token(token: str) -> dict:
    """Decode and validate a web session token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.session_secret, algorithms=[settings.session_algorithm])
