"""
Recovery of orphaned secrets — entries no longer readable under the session key.

``recover`` derives candidate keys from a password the user supplies
(using the salts on the user record) and re-encrypts every entry it can
read under the current session key. Rows are updated one at a time, not
in a shared transaction: an interrupted run leaves some rows migrated
and the rest untouched, and can simply be run again.

``cleanup`` deletes every entry the session key cannot read. It is
irreversible and never runs on its own.
"""
import logging
from typing import Optional

from pydantic import BaseModel, Field

from ..conf import LOGGER_NAME
from ..data import VaultSession
from ..exceptions import IntegrityError, VaultError
from ..storage import AbstractStore
from .config import VaultConfig, get_config
from .crypto import decrypt_from_storage, derive_key_async, encrypt_for_storage
from .key_rotation import require_session_key

logger = logging.getLogger(LOGGER_NAME)


class RecoveredSecret(BaseModel):
    id: int
    site: str
    login_name: str
    migrated: bool = False


class RecoveryResult(BaseModel):
    total: int = 0
    recovered: list[RecoveredSecret] = Field(default_factory=list)
    failed: list[int] = Field(default_factory=list)

    @property
    def migrated_count(self) -> int:
        return sum(1 for item in self.recovered if item.migrated)


class CleanupResult(BaseModel):
    deleted_count: int = 0
    deleted_ids: list[int] = Field(default_factory=list)


class RecoveryReconciler:
    """Best-effort salvage of secrets encrypted under an older key."""

    def __init__(
        self, store: AbstractStore, config: Optional[VaultConfig] = None
    ) -> None:
        self._store = store
        self._config = config or get_config()

    async def _candidate_keys(self, user_id: int, password: str) -> list[bytes]:
        user = await self._store.find_user_by_id(user_id)
        if user is None:
            return []
        keys = []
        for salt in (user.previous_key_salt, user.key_salt):
            if salt:
                derived = await derive_key_async(
                    password, bytes.fromhex(salt), self._config
                )
                keys.append(derived.key)
        return keys

    def _try_decrypt(self, envelope: str, keys: list[bytes]) -> Optional[str]:
        for key in keys:
            try:
                return decrypt_from_storage(envelope, key, self._config)
            except IntegrityError:
                continue
        return None

    async def recover(
        self,
        session: VaultSession,
        user_id: int,
        candidate_password: str,
    ) -> RecoveryResult:
        """Migrate secrets readable under ``candidate_password`` to the session key.

        Returns:
            RecoveryResult listing recovered entries and the ids that stayed
            unreadable under every key.
        """
        current_key = require_session_key(session, user_id)
        secrets = sorted(
            await self._store.find_secrets_by_owner(user_id), key=lambda s: s.id
        )
        result = RecoveryResult(total=len(secrets))
        logger.info(
            "Starting recovery for user=%s: %d secret(s) to check",
            user_id, len(secrets),
        )

        candidates: Optional[list[bytes]] = None
        for secret in secrets:
            if self._try_decrypt(secret.envelope, [current_key]) is not None:
                logger.debug("Secret id=%s already readable", secret.id)
                result.recovered.append(
                    RecoveredSecret(
                        id=secret.id, site=secret.site, login_name=secret.login_name
                    )
                )
                continue

            if candidates is None:
                candidates = await self._candidate_keys(user_id, candidate_password)
            plaintext = self._try_decrypt(secret.envelope, candidates)
            if plaintext is None:
                logger.debug("Secret id=%s unreadable under every key", secret.id)
                result.failed.append(secret.id)
                continue

            try:
                await self._store.update_secret(
                    secret.id,
                    {
                        "envelope": encrypt_for_storage(
                            plaintext, current_key, self._config
                        )
                    },
                )
            except (VaultError, KeyError, ValueError) as err:
                logger.error(
                    "Failed to migrate secret id=%s for user=%s: %s",
                    secret.id, user_id, err,
                )
                result.failed.append(secret.id)
                continue
            logger.debug("Secret id=%s migrated to the session key", secret.id)
            result.recovered.append(
                RecoveredSecret(
                    id=secret.id,
                    site=secret.site,
                    login_name=secret.login_name,
                    migrated=True,
                )
            )

        logger.info(
            "Recovery finished for user=%s: %d recovered (%d migrated), %d failed",
            user_id, len(result.recovered), result.migrated_count, len(result.failed),
        )
        return result

    async def orphaned(self, session: VaultSession, user_id: int) -> list[int]:
        """Ids of secrets the session key cannot decrypt."""
        current_key = require_session_key(session, user_id)
        return [
            secret.id
            for secret in await self._store.find_secrets_by_owner(user_id)
            if self._try_decrypt(secret.envelope, [current_key]) is None
        ]

    async def cleanup(self, session: VaultSession, user_id: int) -> CleanupResult:
        """Delete every orphaned secret of the user."""
        orphaned = sorted(await self.orphaned(session, user_id))
        if not orphaned:
            logger.info("Cleanup for user=%s: no orphaned secrets", user_id)
            return CleanupResult()
        deleted = await self._store.delete_secrets(orphaned, user_id)
        logger.warning(
            "Cleanup for user=%s deleted %d orphaned secret(s): %s",
            user_id, deleted, orphaned,
        )
        return CleanupResult(deleted_count=deleted, deleted_ids=orphaned)
