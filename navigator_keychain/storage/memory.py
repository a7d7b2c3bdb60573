"""
In-process store.

Transactions are serialized by a lock and snapshot both tables on entry;
any exception inside the block restores the snapshot.
"""
import asyncio
import itertools
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any, Optional

from ..conf import LOGGER_NAME
from ..exceptions import ConflictError
from ..models import Secret, User, utcnow
from .abstract import AbstractStore, SECRET_FIELDS, USER_FIELDS, check_patch

logger = logging.getLogger(LOGGER_NAME)


class MemoryTransaction:
    def __init__(self, users: dict[int, User], secrets: dict[int, Secret]):
        self.users = dict(users)
        self.secrets = dict(secrets)
        self.active = True


class MemoryStore(AbstractStore):
    """Dictionary-backed store for tests and single-process use."""

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._secrets: dict[int, Secret] = {}
        self._user_ids = itertools.count(1)
        self._secret_ids = itertools.count(1)
        self._tx_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._tx_lock:
            # models are replaced on write, never mutated, so shallow copies suffice
            tx = MemoryTransaction(self._users, self._secrets)
            try:
                yield tx
            except BaseException:
                self._users = tx.users
                self._secrets = tx.secrets
                logger.debug("Memory transaction rolled back")
                raise
            finally:
                tx.active = False

    # --- users ---

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        for user in self._users.values():
            if user.email == email:
                return user.model_copy()
        return None

    async def create_user(self, data: dict[str, Any]) -> User:
        user = User(id=next(self._user_ids), **data)
        if await self.find_user_by_email(user.email):
            raise ConflictError()
        self._users[user.id] = user
        return user.model_copy()

    async def update_user(
        self, user_id: int, patch: dict[str, Any], tx: Any = None
    ) -> User:
        check_patch(patch, USER_FIELDS)
        current = self._users.get(user_id)
        if current is None:
            raise KeyError(f"User {user_id} not found")
        user = User.model_validate(
            {**current.model_dump(), **patch, "updated_at": utcnow()}
        )
        self._users[user_id] = user
        return user.model_copy()

    # --- secrets ---

    async def find_secrets_by_owner(
        self,
        owner_id: int,
        category: Optional[str] = None,
        favorites_only: bool = False,
        search: Optional[str] = None,
    ) -> list[Secret]:
        rows = [s for s in self._secrets.values() if s.owner_id == owner_id]
        if category:
            rows = [s for s in rows if s.category == category]
        if favorites_only:
            rows = [s for s in rows if s.is_favorite]
        if search:
            needle = search.lower()
            rows = [s for s in rows if needle in s.site.lower()]
        if category or favorites_only or search:
            rows.sort(key=lambda s: s.site)
        else:
            rows.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return [s.model_copy() for s in rows]

    async def find_secret(self, secret_id: int, owner_id: int) -> Optional[Secret]:
        secret = self._secrets.get(secret_id)
        if secret is None or secret.owner_id != owner_id:
            return None
        return secret.model_copy()

    async def create_secret(self, data: dict[str, Any]) -> Secret:
        secret = Secret(id=next(self._secret_ids), **data)
        self._secrets[secret.id] = secret
        return secret.model_copy()

    async def update_secret(
        self, secret_id: int, patch: dict[str, Any], tx: Any = None
    ) -> Secret:
        check_patch(patch, SECRET_FIELDS)
        current = self._secrets.get(secret_id)
        if current is None:
            raise KeyError(f"Secret {secret_id} not found")
        secret = Secret.model_validate(
            {**current.model_dump(), **patch, "updated_at": utcnow()}
        )
        self._secrets[secret_id] = secret
        return secret.model_copy()

    async def delete_secrets(self, ids: Iterable[int], owner_id: int) -> int:
        count = 0
        for secret_id in set(ids):
            secret = self._secrets.get(secret_id)
            if secret is not None and secret.owner_id == owner_id:
                del self._secrets[secret_id]
                count += 1
        return count
