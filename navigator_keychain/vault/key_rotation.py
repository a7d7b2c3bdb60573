"""
Vault Key Rotation — Re-encryption of every secret when the login password changes.

The protocol runs as one all-or-nothing unit of work per user:

    authenticate → validate → snapshot → decrypt → derive → re-encrypt
    → commit (single transaction) → swap the session key

Nothing is persisted before the commit step, so any failure before it
leaves the vault untouched; a failure inside it rolls back. Rotations for
the same user are serialized by a per-user lock.

Security Note:
    Plaintext exists in memory only between the decrypt and re-encrypt
    phases. Never log plaintext, ciphertext or key material.
"""
import asyncio
import logging
import weakref
from typing import Any, Optional

from pydantic import BaseModel

from ..conf import LOGGER_NAME
from ..data import VaultSession
from ..exceptions import (
    AuthenticationError,
    DecryptionError,
    IntegrityError,
    MigrationError,
    SessionStateError,
    ValidationError,
)
from ..storage import AbstractStore
from .config import VaultConfig, get_config
from .crypto import (
    decrypt_from_storage,
    derive_key_async,
    encrypt_for_storage,
    is_encodable,
)
from .hashing import hash_password, verify_password
from .strength import score

logger = logging.getLogger(LOGGER_NAME)


class RotationResult(BaseModel):
    user_id: int
    migrated_count: int
    committed: bool = True


def require_session_key(session: Optional[VaultSession], user_id: int) -> bytes:
    """Return the live master key of a session that belongs to ``user_id``.

    Raises:
        SessionStateError: No session, a foreign session, or no key in it.
    """
    if session is None or not session.is_authenticated:
        raise SessionStateError("User not authenticated.")
    if session.user_id != user_id:
        raise SessionStateError("Session does not belong to this user.")
    return session.master_key


def password_policy_violations(
    password: Optional[str], config: VaultConfig
) -> list[str]:
    """Every policy rule the password breaks (empty list when it is valid)."""
    if not password:
        return ["Password is required"]
    errors = []
    if len(password) < config.min_password_length:
        errors.append(
            f"Password must be {config.min_password_length} characters or more"
        )
    if len(password) > config.max_password_length:
        errors.append(
            f"Password must be at most {config.max_password_length} characters"
        )
    if not password.strip():
        errors.append("Password cannot be only whitespace")
    if not is_encodable(password):
        errors.append("Password contains invalid characters")
    return errors


class KeyRotation:
    """Runs the key rotation protocol against a store."""

    def __init__(
        self, store: AbstractStore, config: Optional[VaultConfig] = None
    ) -> None:
        self._store = store
        self._config = config or get_config()
        # entries live only while some caller holds the lock object
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def user_lock(self, user_id: int) -> asyncio.Lock:
        """Mutual-exclusion point for writes that depend on the user's key."""
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def rotate(
        self,
        session: VaultSession,
        user_id: int,
        old_password: str,
        new_password: str,
    ) -> RotationResult:
        """Change the login password and re-encrypt every secret under the new key.

        Args:
            session: Authenticated session holding the current master key.
            user_id: Owner of the vault.
            old_password: Current login password.
            new_password: Replacement login password.

        Returns:
            RotationResult with the number of migrated secrets.

        Raises:
            AuthenticationError: ``old_password`` does not match.
            SessionStateError: The session carries no master key.
            ValidationError: ``new_password`` breaks policy.
            DecryptionError: A secret does not verify under the session key.
            MigrationError: The commit failed and was rolled back.
        """
        async with self.user_lock(user_id):
            return await self._rotate(session, user_id, old_password, new_password)

    async def _rotate(
        self,
        session: VaultSession,
        user_id: int,
        old_password: str,
        new_password: str,
    ) -> RotationResult:
        # 1. authenticate
        user = await self._store.find_user_by_id(user_id)
        if user is None or not await asyncio.to_thread(
            verify_password, user.password_hash, old_password or ""
        ):
            logger.warning("Key rotation refused for user=%s: bad credentials", user_id)
            raise AuthenticationError(
                "Current password doesn't match.", step="authenticate"
            )
        try:
            old_key = require_session_key(session, user_id)
        except SessionStateError as err:
            err.step = "authenticate"
            raise

        # 2. validate
        errors = password_policy_violations(new_password, self._config)
        if errors:
            raise ValidationError(errors, step="validate")

        logger.info("Starting key rotation for user=%s", user_id)

        # 3. snapshot
        secrets = sorted(
            await self._store.find_secrets_by_owner(user_id), key=lambda s: s.id
        )

        # 4. decrypt
        plaintexts: dict[int, str] = {}
        for secret in secrets:
            try:
                plaintexts[secret.id] = decrypt_from_storage(
                    secret.envelope, old_key, self._config
                )
            except IntegrityError as err:
                logger.error(
                    "Key rotation aborted for user=%s: secret id=%s does not "
                    "decrypt under the session key",
                    user_id, secret.id,
                )
                raise DecryptionError(secret.id) from err

        # 5. derive
        derived = await derive_key_async(new_password, config=self._config)
        password_hash = await asyncio.to_thread(hash_password, new_password)

        # 6. re-encrypt
        patches: dict[int, dict[str, Any]] = {}
        for secret_id, plaintext in plaintexts.items():
            patches[secret_id] = {
                "envelope": encrypt_for_storage(plaintext, derived.key, self._config),
                "strength": score(plaintext),
            }
        plaintexts.clear()

        # 7. commit
        try:
            async with self._store.transaction() as tx:
                await self._store.update_user(
                    user_id,
                    {
                        "password_hash": password_hash,
                        "master_key": derived.hex,
                        "key_salt": derived.salt.hex(),
                        "previous_key_salt": user.key_salt,
                    },
                    tx=tx,
                )
                for secret_id, patch in patches.items():
                    await self._store.update_secret(secret_id, patch, tx=tx)
        except Exception as err:
            logger.error(
                "Key rotation commit failed for user=%s, rolled back: %s",
                user_id, err,
            )
            raise MigrationError(step="commit") from err

        # 8. swap the live key
        session.replace_master_key(derived.key)
        logger.info(
            "Key rotation committed for user=%s: %d secret(s) migrated",
            user_id, len(patches),
        )
        return RotationResult(user_id=user_id, migrated_count=len(patches))
