"""
Login credential hashing (Argon2id).

The login hash authenticates the user and nothing else; it is never used
as key material for the vault.
"""
import logging

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from ..conf import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

_hasher = PasswordHasher()


def hash_password(password: str) -> str:
    """Return an encoded Argon2id hash (parameters and salt embedded)."""
    return _hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """Check a login password against its stored hash.

    Returns:
        True on match; False on mismatch, an unreadable hash or a
        password UTF-8 cannot encode.
    """
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, UnicodeEncodeError):
        return False
    except InvalidHashError:
        logger.warning("Stored login hash is not a valid Argon2 hash")
        return False


def needs_rehash(password_hash: str) -> bool:
    """True when the stored hash uses weaker parameters than the current ones."""
    return _hasher.check_needs_rehash(password_hash)
