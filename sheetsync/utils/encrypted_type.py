"""SQLAlchemy TypeDecorator for transparent Fernet encryption of token columns."""

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import TypeDecorator, Text

log = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _fernet_for(secret_key: str) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"sheetsync-token-encryption-v1",
        iterations=100_000,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))


def _get_fernet() -> Fernet:
    """Derive a Fernet key from the app secret key."""
    from ..config import settings
    return _fernet_for(settings.secret_key)


def encrypt_value(plaintext: str) -> str:
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    return _get_fernet().decrypt(ciphertext.encode()).decode()


class EncryptedText(TypeDecorator):
    """Transparently encrypts/decrypts text values stored in the database.

    Tokens are never written in plaintext: an encryption failure raises.
    """
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return decrypt_value(value)
        except InvalidToken:
            # Rows written before encryption was enabled
            log.warning("Stored token is not a valid Fernet token, returning as-is")
            return value
