"""Control-panel passwords at rest.

TOKEN_ENCRYPTION_KEY holds one or more comma-separated Fernet keys. New values
are encrypted with the first key; any listed key decrypts, so a key can be
rotated by prepending the new one.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from app.core.config import get_settings
from app.core.exceptions import AppError
from app.core.logging import get_logger

log = get_logger(__name__)


def _dev_key(secret_key: str) -> bytes:
    # Only used when no key is configured (local development, tests)
    return base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode()).digest())


def _get_fernet() -> MultiFernet:
    settings = get_settings()
    raw_keys = [k.strip() for k in (settings.token_encryption_key or "").split(",") if k.strip()]
    try:
        keys = [Fernet(k.encode()) for k in raw_keys] or [Fernet(_dev_key(settings.secret_key))]
    except ValueError as e:
        raise AppError(f"Invalid TOKEN_ENCRYPTION_KEY: {e}", code="ENCRYPTION_MISCONFIGURED") from e
    return MultiFernet(keys)


def encrypt_secret(plain: str) -> str:
    if not plain:
        return ""
    return _get_fernet().encrypt(plain.encode()).decode()


def decrypt_secret(encrypted: str | None) -> str:
    """Return the plaintext, or "" when missing or encrypted under a key no longer configured."""
    if not encrypted:
        return ""
    try:
        return _get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        log.warning("secret_decrypt_failed")
        return ""
