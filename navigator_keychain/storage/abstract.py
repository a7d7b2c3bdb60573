"""
Persistence contract consumed by the vault.

Every write accepts an optional ``tx`` handle obtained from
``transaction()``; writes issued with the same handle commit or roll back
together.
"""
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from typing import Any, Optional

from ..models import Secret, User

SECRET_FIELDS = frozenset({
    "site", "login_name", "envelope", "category", "notes",
    "is_favorite", "strength", "last_used_at",
})

USER_FIELDS = frozenset({
    "name", "email", "password_hash", "master_key", "key_salt",
    "previous_key_salt", "last_login_at",
})


def check_patch(patch: dict[str, Any], allowed: frozenset) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"Unknown fields in update: {sorted(unknown)}")


class AbstractStore(ABC):
    """Users and their secrets."""

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Scoped unit of work: commit on normal exit, roll back on error."""

    # --- users ---

    @abstractmethod
    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    @abstractmethod
    async def create_user(self, data: dict[str, Any]) -> User:
        """Insert a user; raises ``ConflictError`` on a duplicate email."""

    @abstractmethod
    async def update_user(
        self, user_id: int, patch: dict[str, Any], tx: Any = None
    ) -> User:
        ...

    # --- secrets ---

    @abstractmethod
    async def find_secrets_by_owner(
        self,
        owner_id: int,
        category: Optional[str] = None,
        favorites_only: bool = False,
        search: Optional[str] = None,
    ) -> list[Secret]:
        """Newest first; ordered by site when any filter is given."""

    @abstractmethod
    async def find_secret(self, secret_id: int, owner_id: int) -> Optional[Secret]:
        ...

    @abstractmethod
    async def create_secret(self, data: dict[str, Any]) -> Secret:
        ...

    @abstractmethod
    async def update_secret(
        self, secret_id: int, patch: dict[str, Any], tx: Any = None
    ) -> Secret:
        ...

    @abstractmethod
    async def delete_secrets(self, ids: Iterable[int], owner_id: int) -> int:
        """Delete the given ids that belong to ``owner_id``; returns the count."""
