"""Stable, non-reversible device identity for this install."""

import hashlib
import logging
import secrets

logger = logging.getLogger(__name__)

INSTALL_ID_KEY = "install_id"


def get_or_create_install_id(storage) -> str:
    """Return the persisted install id, creating it (128 random bits) on first use.

    Raises StorageUnavailable if the id cannot be persisted; an id that is not
    saved would give every call a different fingerprint.
    """
    install_id = storage.load(INSTALL_ID_KEY)
    if install_id:
        return install_id

    install_id = secrets.token_hex(16)
    storage.save(INSTALL_ID_KEY, install_id)
    logger.info("Generated new install id")
    return install_id


def coarse_client_signal(client_name: str, client_version: str) -> str:
    """Low-cardinality bucket: name plus major version only."""
    major = client_version.split(".", 1)[0] or "0"
    return f"{client_name}/{major}"


def fingerprint(storage, client_signal: str) -> str:
    install_id = get_or_create_install_id(storage)
    return hashlib.sha256(f"{install_id}|{client_signal}".encode("utf-8")).hexdigest()
