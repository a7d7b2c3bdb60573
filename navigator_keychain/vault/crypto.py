"""
Vault Crypto Core — Key derivation, secret encryption and envelope serialization.

- Key derivation: scrypt(password, salt, N>=16384, r=8, p=1) → 256-bit master key
- Secret layer: AES-256-GCM(master_key, random 128-bit IV, AAD=config.aad)
  → EncryptedEnvelope {encrypted, iv, authTag} serialized as JSON

Security Note:
    Never log plaintext, ciphertext or key material.
    IVs are random 128-bit; every call to ``encrypt`` draws a fresh one.
"""
import asyncio
import hashlib
import logging
import secrets
from typing import NamedTuple, Optional, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, ConfigDict

from ..conf import LOGGER_NAME
from ..exceptions import IntegrityError, KeyDerivationError, ValidationError
from .config import VaultConfig, get_config

logger = logging.getLogger(LOGGER_NAME)

KEY_LENGTH = 32  # AES-256
TAG_LENGTH = 16  # GCM tag

KeyMaterial = Union[bytes, bytearray, memoryview, str]


def is_encodable(text: str) -> bool:
    """False for strings UTF-8 cannot carry, such as lone surrogates."""
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _utf8(text: str, step: str) -> bytes:
    try:
        return text.encode("utf-8")
    except UnicodeEncodeError as err:
        raise ValidationError(
            "Text contains characters that cannot be encoded as UTF-8",
            step=step,
        ) from err


class DerivedKey(NamedTuple):
    key: bytes
    salt: bytes

    @property
    def hex(self) -> str:
        return self.key.hex()


class EncryptedEnvelope(BaseModel):
    """Ciphertext, IV and authentication tag, each hex-encoded."""

    model_config = ConfigDict(frozen=True)

    ciphertext: str
    iv: str
    auth_tag: str

    def to_json(self) -> str:
        """Storage form; field names kept compatible with existing rows."""
        return orjson.dumps({
            "encrypted": self.ciphertext,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }).decode("utf-8")

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "EncryptedEnvelope":
        """Parse a stored envelope.

        Raises:
            IntegrityError: If the value is not a well-formed envelope.
        """
        try:
            parsed = orjson.loads(data)
            return cls(
                ciphertext=parsed["encrypted"],
                iv=parsed["iv"],
                auth_tag=parsed["authTag"],
            )
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as err:
            raise IntegrityError(f"Malformed envelope: {err}") from err


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    password: str,
    salt: Optional[bytes] = None,
    config: Optional[VaultConfig] = None,
) -> DerivedKey:
    """Stretch a login password into a 32-byte master key using scrypt.

    Args:
        password: User login password.
        salt: Optional salt; a fresh random salt is generated when omitted.
        config: Cost parameters, defaults to the process configuration.

    Returns:
        DerivedKey(key, salt).

    Raises:
        ValidationError: The password is not encodable as UTF-8.
        KeyDerivationError: If scrypt cannot allocate its working memory.
    """
    config = config or get_config()
    secret = _utf8(password, "derive")
    if salt is None:
        salt = secrets.token_bytes(config.salt_length)
    kdf = Scrypt(
        salt=salt,
        length=config.key_length,
        n=config.scrypt_n,
        r=config.scrypt_r,
        p=config.scrypt_p,
    )
    try:
        key = kdf.derive(secret)
    except MemoryError as err:
        raise KeyDerivationError(
            f"scrypt could not allocate memory (N={config.scrypt_n})",
            step="derive",
        ) from err
    return DerivedKey(key=key, salt=salt)


async def derive_key_async(
    password: str,
    salt: Optional[bytes] = None,
    config: Optional[VaultConfig] = None,
) -> DerivedKey:
    """Run ``derive_key`` in a worker thread to keep the event loop free."""
    return await asyncio.to_thread(derive_key, password, salt, config)


def coerce_key(key: KeyMaterial) -> bytes:
    """Accept raw key bytes or the hex form stored on the user record."""
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key)
        except ValueError as err:
            raise IntegrityError("Master key is not valid hex") from err
    key = bytes(key)
    if len(key) != KEY_LENGTH:
        raise IntegrityError(
            f"Master key must be {KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


def is_valid_master_key(master_key: str) -> bool:
    try:
        return len(bytes.fromhex(master_key)) == KEY_LENGTH
    except (ValueError, TypeError):
        return False


def secure_hash(data: str) -> str:
    """SHA-256 fingerprint, not for secrets."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Secret encryption
# ---------------------------------------------------------------------------

def encrypt(
    plaintext: str,
    key: KeyMaterial,
    config: Optional[VaultConfig] = None,
) -> EncryptedEnvelope:
    """Encrypt a secret under the master key with AES-256-GCM.

    Args:
        plaintext: Secret to encrypt.
        key: 32-byte master key (raw or hex).
        config: Supplies IV length and the associated-data tag.

    Returns:
        EncryptedEnvelope with independent ciphertext, iv and auth_tag.

    Raises:
        ValidationError: The plaintext is not encodable as UTF-8.
    """
    config = config or get_config()
    data = _utf8(plaintext, "encrypt")
    cipher = AESGCM(coerce_key(key))
    iv = secrets.token_bytes(config.iv_length)
    sealed = cipher.encrypt(iv, data, config.aad.encode("utf-8"))
    return EncryptedEnvelope(
        ciphertext=sealed[:-TAG_LENGTH].hex(),
        iv=iv.hex(),
        auth_tag=sealed[-TAG_LENGTH:].hex(),
    )


def decrypt(
    envelope: EncryptedEnvelope,
    key: KeyMaterial,
    config: Optional[VaultConfig] = None,
) -> str:
    """Verify and decrypt an envelope.

    Raises:
        IntegrityError: Wrong key, tampered fields or corrupted ciphertext.
    """
    config = config or get_config()
    cipher = AESGCM(coerce_key(key))
    try:
        iv = bytes.fromhex(envelope.iv)
        tag = bytes.fromhex(envelope.auth_tag)
        if len(tag) != TAG_LENGTH:
            raise IntegrityError(
                f"Authentication tag must be {TAG_LENGTH} bytes, got {len(tag)}"
            )
        sealed = bytes.fromhex(envelope.ciphertext) + tag
        plaintext = cipher.decrypt(iv, sealed, config.aad.encode("utf-8"))
    except InvalidTag as err:
        raise IntegrityError(
            "Authentication tag did not verify (wrong key or tampered data)"
        ) from err
    except ValueError as err:
        raise IntegrityError(f"Malformed envelope field: {err}") from err
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise IntegrityError("Decrypted payload is not valid UTF-8") from err


def encrypt_for_storage(
    plaintext: str,
    key: KeyMaterial,
    config: Optional[VaultConfig] = None,
) -> str:
    return encrypt(plaintext, key, config).to_json()


def decrypt_from_storage(
    envelope: Union[str, bytes],
    key: KeyMaterial,
    config: Optional[VaultConfig] = None,
) -> str:
    return decrypt(EncryptedEnvelope.from_json(envelope), key, config)
