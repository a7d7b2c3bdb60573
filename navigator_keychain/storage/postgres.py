"""
PostgreSQL store over an asyncpg-compatible connection pool.

The pool must provide ``acquire()`` yielding connections with
``fetch``, ``fetchrow``, ``fetchval``, ``execute`` and ``transaction()``.
"""
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any, Optional

from ..conf import LOGGER_NAME
from ..exceptions import ConflictError
from ..models import Secret, User
from .abstract import AbstractStore, SECRET_FIELDS, USER_FIELDS, check_patch

logger = logging.getLogger(LOGGER_NAME)

# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE SCHEMA IF NOT EXISTS keychain;

CREATE TABLE IF NOT EXISTS keychain.users (
    id SERIAL PRIMARY KEY,
    name VARCHAR(100) NOT NULL,
    email VARCHAR(255) NOT NULL UNIQUE,
    password_hash VARCHAR(255) NOT NULL,
    master_key TEXT,
    key_salt VARCHAR(128),
    previous_key_salt VARCHAR(128),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_login_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS keychain.secrets (
    id SERIAL PRIMARY KEY,
    owner_id INTEGER NOT NULL REFERENCES keychain.users (id)
        ON UPDATE CASCADE ON DELETE CASCADE,
    site VARCHAR(255) NOT NULL,
    login_name VARCHAR(255) NOT NULL,
    envelope TEXT NOT NULL,
    category VARCHAR(20) NOT NULL DEFAULT 'other',
    notes TEXT NOT NULL DEFAULT '',
    is_favorite BOOLEAN NOT NULL DEFAULT FALSE,
    strength SMALLINT NOT NULL DEFAULT 0 CHECK (strength BETWEEN 0 AND 5),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    last_used_at TIMESTAMPTZ
);

CREATE INDEX IF NOT EXISTS secrets_owner_idx ON keychain.secrets (owner_id);
CREATE INDEX IF NOT EXISTS secrets_owner_site_idx ON keychain.secrets (owner_id, site);
CREATE INDEX IF NOT EXISTS secrets_owner_category_idx ON keychain.secrets (owner_id, category);
"""

_USER_COLUMNS = (
    "id, name, email, password_hash, master_key, key_salt, "
    "previous_key_salt, created_at, updated_at, last_login_at"
)

_SECRET_COLUMNS = (
    "id, owner_id, site, login_name, envelope, category, notes, "
    "is_favorite, strength, created_at, updated_at, last_used_at"
)

_SELECT_USER_BY_ID = f"""
SELECT {_USER_COLUMNS}
FROM keychain.users
WHERE id = $1
"""

_SELECT_USER_BY_EMAIL = f"""
SELECT {_USER_COLUMNS}
FROM keychain.users
WHERE email = $1
"""

_INSERT_USER = f"""
INSERT INTO keychain.users (name, email, password_hash, master_key, key_salt)
VALUES ($1, $2, $3, $4, $5)
ON CONFLICT (email) DO NOTHING
RETURNING {_USER_COLUMNS}
"""

_SELECT_SECRET = f"""
SELECT {_SECRET_COLUMNS}
FROM keychain.secrets
WHERE id = $1 AND owner_id = $2
"""

_INSERT_SECRET = f"""
INSERT INTO keychain.secrets
    (owner_id, site, login_name, envelope, category, notes, is_favorite, strength)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
RETURNING {_SECRET_COLUMNS}
"""

_DELETE_SECRETS = """
DELETE FROM keychain.secrets
WHERE id = ANY($1::int[]) AND owner_id = $2
"""


def _escape_like(text: str) -> str:
    """Make LIKE wildcards in user text match literally (escape char ``\\``)."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _update_statement(table: str, columns: str, patch: dict[str, Any]) -> str:
    # field names are checked against the column whitelist before this runs
    assignments = ", ".join(
        f"{field} = ${index}" for index, field in enumerate(patch, start=2)
    )
    return (
        f"UPDATE keychain.{table} SET {assignments}, updated_at = NOW() "
        f"WHERE id = $1 RETURNING {columns}"
    )


def _deleted_count(status: str) -> int:
    """Parse asyncpg's command tag, e.g. ``DELETE 3``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresStore(AbstractStore):
    """Store backed by the ``keychain`` schema."""

    def __init__(self, db_pool: Any) -> None:
        self._pool = db_pool

    async def create_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Keychain schema ensured")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self._pool.acquire() as conn:
            tx = conn.transaction()
            await tx.start()
            try:
                yield conn
            except BaseException:
                await tx.rollback()
                raise
            else:
                await tx.commit()

    @asynccontextmanager
    async def _connection(self, tx: Any = None) -> AsyncIterator[Any]:
        if tx is not None:
            yield tx
        else:
            async with self._pool.acquire() as conn:
                yield conn

    # --- users ---

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_USER_BY_ID, user_id)
        return User.model_validate(dict(row)) if row else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_USER_BY_EMAIL, email.strip().lower())
        return User.model_validate(dict(row)) if row else None

    async def create_user(self, data: dict[str, Any]) -> User:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _INSERT_USER,
                data["name"],
                data["email"].strip().lower(),
                data["password_hash"],
                data.get("master_key"),
                data.get("key_salt"),
            )
        if row is None:
            raise ConflictError()
        return User.model_validate(dict(row))

    async def update_user(
        self, user_id: int, patch: dict[str, Any], tx: Any = None
    ) -> User:
        check_patch(patch, USER_FIELDS)
        sql = _update_statement("users", _USER_COLUMNS, patch)
        async with self._connection(tx) as conn:
            row = await conn.fetchrow(sql, user_id, *patch.values())
        if row is None:
            raise KeyError(f"User {user_id} not found")
        return User.model_validate(dict(row))

    # --- secrets ---

    async def find_secrets_by_owner(
        self,
        owner_id: int,
        category: Optional[str] = None,
        favorites_only: bool = False,
        search: Optional[str] = None,
    ) -> list[Secret]:
        clauses = ["owner_id = $1"]
        args: list[Any] = [owner_id]
        if category:
            args.append(category)
            clauses.append(f"category = ${len(args)}")
        if favorites_only:
            clauses.append("is_favorite")
        if search:
            args.append(f"%{_escape_like(search)}%")
            clauses.append(f"site ILIKE ${len(args)} ESCAPE '\\'")
        order = "site ASC" if len(clauses) > 1 else "created_at DESC, id DESC"
        sql = (
            f"SELECT {_SECRET_COLUMNS} FROM keychain.secrets "
            f"WHERE {' AND '.join(clauses)} ORDER BY {order}"
        )
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [Secret.model_validate(dict(row)) for row in rows]

    async def find_secret(self, secret_id: int, owner_id: int) -> Optional[Secret]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(_SELECT_SECRET, secret_id, owner_id)
        return Secret.model_validate(dict(row)) if row else None

    async def create_secret(self, data: dict[str, Any]) -> Secret:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                _INSERT_SECRET,
                data["owner_id"],
                data["site"],
                data["login_name"],
                data["envelope"],
                data.get("category", "other"),
                data.get("notes", ""),
                data.get("is_favorite", False),
                data.get("strength", 0),
            )
        return Secret.model_validate(dict(row))

    async def update_secret(
        self, secret_id: int, patch: dict[str, Any], tx: Any = None
    ) -> Secret:
        check_patch(patch, SECRET_FIELDS)
        sql = _update_statement("secrets", _SECRET_COLUMNS, patch)
        async with self._connection(tx) as conn:
            row = await conn.fetchrow(sql, secret_id, *patch.values())
        if row is None:
            raise KeyError(f"Secret {secret_id} not found")
        return Secret.model_validate(dict(row))

    async def delete_secrets(self, ids: Iterable[int], owner_id: int) -> int:
        ids = sorted(set(ids))
        if not ids:
            return 0
        async with self._pool.acquire() as conn:
            status = await conn.execute(_DELETE_SECRETS, ids, owner_id)
        return _deleted_count(status)
