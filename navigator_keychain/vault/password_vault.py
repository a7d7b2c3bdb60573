"""
PasswordVault — Public API of the keychain.

Provides:
- ``register`` / ``login`` / ``logout`` / ``check`` — account lifecycle,
  ``login`` returns the VaultSession carrying the master key
- ``create_secret`` / ``list_secrets`` / ``get_secret`` / ``update_secret`` /
  ``delete_secret`` / ``toggle_favorite`` — credential CRUD scoped to the
  session's user
- ``change_password`` / ``rotate`` — key rotation (see ``key_rotation``)
- ``recover`` / ``cleanup`` — orphaned secret handling (see ``recovery``)
- ``encrypt_for_storage`` / ``decrypt_from_storage`` / ``score_strength`` /
  ``generate`` — stateless helpers

Reads are lenient and writes are strict: ``list_secrets`` returns one
``SecretResult`` per row, failed rows included, and the caller decides
whether to drop them with ``readable()``.

Security Note:
    Never log plaintext or ciphertext values. Only log ids and counts.
"""
import asyncio
import hmac
import logging
import re
from collections.abc import Iterable
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from ..conf import LOGGER_NAME, SESSION_TIMEOUT, SESSION_USER
from ..data import VaultSession
from ..exceptions import (
    AuthenticationError,
    IntegrityError,
    NotFoundError,
    SessionStateError,
    ValidationError,
)
from ..models import Category, Secret, User, utcnow
from ..storage import AbstractStore
from . import crypto, generator, strength
from .config import VaultConfig, get_config
from .hashing import hash_password, needs_rehash, verify_password
from .key_rotation import KeyRotation, RotationResult, password_policy_violations
from .recovery import CleanupResult, RecoveryReconciler, RecoveryResult

logger = logging.getLogger(LOGGER_NAME)

_NAME_PATTERN = re.compile(r"^[a-zA-ZÀ-ÿ\s]+$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")
_WHITESPACE = re.compile(r"\s+")

MAX_FIELD_LENGTH = 255
MAX_SECRET_LENGTH = 1000
MAX_NOTES_LENGTH = 1000


class SecretResult(BaseModel):
    """Outcome of decrypting one stored secret."""

    model_config = {"arbitrary_types_allowed": True}

    secret: Secret
    password: Optional[str] = Field(default=None, repr=False)
    error: Optional[IntegrityError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data = self.secret.summary()
        data["password"] = self.password
        data["strength_label"] = strength.label(self.secret.strength)
        return data


def readable(results: Iterable[SecretResult]) -> list[SecretResult]:
    """Drop the rows that failed to decrypt."""
    return [result for result in results if result.ok]


def _normalize(value: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip())


def _category(value: Union[str, Category, None], errors: list[str]) -> str:
    try:
        return Category(value or Category.OTHER).value
    except ValueError:
        errors.append("Category must be one of the valid options")
        return Category.OTHER.value


class PasswordVault:
    """Password vault bound to a store.

    Secrets are encrypted with the user's master key, derived from the login
    password with scrypt and carried by the VaultSession returned from
    ``login()``. Changing the login password re-encrypts the whole vault in a
    single transaction.
    """

    def __init__(
        self, store: AbstractStore, config: Optional[VaultConfig] = None
    ) -> None:
        self._store = store
        self._config = config or get_config()
        self._rotation = KeyRotation(store, self._config)
        self._reconciler = RecoveryReconciler(store, self._config)

    @property
    def store(self) -> AbstractStore:
        return self._store

    # ------------------------------------------------------------------
    # Stateless helpers
    # ------------------------------------------------------------------

    def encrypt_for_storage(self, plaintext: str, key: crypto.KeyMaterial) -> str:
        return crypto.encrypt_for_storage(plaintext, key, self._config)

    def decrypt_from_storage(self, envelope: str, key: crypto.KeyMaterial) -> str:
        return crypto.decrypt_from_storage(envelope, key, self._config)

    @staticmethod
    def score_strength(plaintext: str) -> int:
        return strength.score(plaintext)

    @staticmethod
    def generate(options: Union[generator.GeneratorOptions, dict, None] = None) -> str:
        return generator.generate(options)

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _user_id(session: Optional[VaultSession]) -> int:
        if session is None or not session.is_authenticated:
            raise SessionStateError("User not authenticated.")
        return session.user_id

    def _session_key(self, session: Optional[VaultSession]) -> tuple[int, bytes]:
        user_id = self._user_id(session)
        return user_id, session.master_key

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        confirm_password: str,
    ) -> User:
        """Create an account and its master key.

        Raises:
            ValidationError: With every problem found in the input.
            ConflictError: The e-mail is already registered.
        """
        name = _normalize(name)
        email = (email or "").strip().lower()
        errors = []
        if not name or not email or not password or not confirm_password:
            errors.append("All data are obligatory")
        if name and not (2 <= len(name) <= 100):
            errors.append("Name must be between 2 and 100 characters")
        if name and not _NAME_PATTERN.match(name):
            errors.append("Name must contain only letters and spaces")
        if email and (len(email) > MAX_FIELD_LENGTH or not _EMAIL_PATTERN.match(email)):
            errors.append("Email must have valid format (ex: user@domain.com)")
        if password and password != confirm_password:
            errors.append("Passwords are not the same.")
        if password:
            errors.extend(password_policy_violations(password, self._config))
            if strength.score(password) < self._config.min_registration_strength:
                errors.append(
                    "Weak Password. Use capital letters, numbers and special "
                    "characters to increase strength."
                )
        if errors:
            raise ValidationError(errors, step="register")

        derived = await crypto.derive_key_async(password, config=self._config)
        password_hash = await asyncio.to_thread(hash_password, password)
        user = await self._store.create_user({
            "name": name,
            "email": email,
            "password_hash": password_hash,
            "master_key": derived.hex,
            "key_salt": derived.salt.hex(),
        })
        logger.info("Registered user=%s", user.id)
        return user

    async def login(self, email: str, password: str) -> VaultSession:
        """Authenticate and open a session carrying the master key.

        Raises:
            ValidationError: Missing e-mail or password.
            AuthenticationError: Unknown e-mail or wrong password.
        """
        if not email or not password:
            raise ValidationError("Email and password are obligatory", step="login")
        user = await self._store.find_user_by_email(email)
        if user is None or not await asyncio.to_thread(
            verify_password, user.password_hash, password
        ):
            logger.warning("Failed login attempt")
            raise AuthenticationError(step="login")

        patch: dict[str, Any] = {"last_login_at": utcnow()}
        if user.master_key is None:
            salt = bytes.fromhex(user.key_salt) if user.key_salt else None
            derived = await crypto.derive_key_async(password, salt, self._config)
            patch["master_key"] = derived.hex
            patch["key_salt"] = derived.salt.hex()
            master_key = derived.key
            logger.info("Derived first master key for user=%s", user.id)
        else:
            master_key = bytes.fromhex(user.master_key)
        if needs_rehash(user.password_hash):
            patch["password_hash"] = await asyncio.to_thread(hash_password, password)
        user = await self._store.update_user(user.id, patch)

        session = VaultSession(
            identity=user.id,
            new=True,
            master_key=master_key,
            max_age=SESSION_TIMEOUT,
        )
        session[SESSION_USER] = user.public()
        logger.info("User=%s logged in", user.id)
        return session

    @staticmethod
    def logout(session: VaultSession) -> None:
        """Wipe the session key and drop the session state."""
        user_id = session.user_id
        session.invalidate()
        logger.info("User=%s logged out", user_id)

    @staticmethod
    def check(session: Optional[VaultSession]) -> dict[str, Any]:
        logged_in = bool(session is not None and session.is_authenticated)
        return {
            "is_logged_in": logged_in,
            "user": session.user if logged_in else None,
            "has_master_key": bool(logged_in and session.has_master_key),
        }

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def _check_fields(
        self,
        errors: list[str],
        site: Optional[str] = None,
        login_name: Optional[str] = None,
        password: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> None:
        if site is not None and not (1 <= len(site) <= MAX_FIELD_LENGTH):
            errors.append("Website must be between 1 and 255 characters")
        if login_name is not None and not (1 <= len(login_name) <= MAX_FIELD_LENGTH):
            errors.append("Username must be between 1 and 255 characters")
        if password is not None and not (1 <= len(password) <= MAX_SECRET_LENGTH):
            errors.append("Password must be between 1 and 1000 characters")
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            errors.append("Notes must be at most 1000 characters")
        for field, value in (
            ("Website", site),
            ("Username", login_name),
            ("Password", password),
            ("Notes", notes),
        ):
            if value is not None and not crypto.is_encodable(value):
                errors.append(f"{field} contains invalid characters")

    async def _current_key(self, session: VaultSession, user_id: int) -> bytes:
        """Session key, provided it is still the one stored for the user.

        Call with the user lock held. A session opened before the last
        rotation carries a retired key and must log in again.
        """
        key = session.master_key
        user = await self._store.find_user_by_id(user_id)
        if (
            user is None
            or user.master_key is None
            or not hmac.compare_digest(key, bytes.fromhex(user.master_key))
        ):
            logger.warning("Rejected write from a stale session for user=%s", user_id)
            raise SessionStateError("Master key is out of date. Log in again.")
        return key

    def _decrypt(self, secret: Secret, key: bytes) -> SecretResult:
        try:
            password = crypto.decrypt_from_storage(secret.envelope, key, self._config)
        except IntegrityError as err:
            logger.error(
                "Secret id=%s for user=%s is not readable under the session key",
                secret.id, secret.owner_id,
            )
            return SecretResult(secret=secret, error=err)
        return SecretResult(secret=secret, password=password)

    async def create_secret(
        self,
        session: VaultSession,
        site: str,
        login_name: str,
        password: str,
        category: Union[str, Category, None] = None,
        notes: Optional[str] = None,
    ) -> Secret:
        user_id = self._user_id(session)
        site = _normalize(site)
        login_name = _normalize(login_name)
        notes = _normalize(notes)
        errors: list[str] = []
        self._check_fields(errors, site, login_name, password or "", notes)
        category = _category(category, errors)
        if errors:
            raise ValidationError(errors, step="create")

        async with self._rotation.user_lock(user_id):
            key = await self._current_key(session, user_id)
            secret = await self._store.create_secret({
                "owner_id": user_id,
                "site": site,
                "login_name": login_name,
                "envelope": crypto.encrypt_for_storage(password, key, self._config),
                "category": category,
                "notes": notes,
                "is_favorite": False,
                "strength": strength.score(password),
            })
        logger.debug("Secret id=%s created for user=%s", secret.id, user_id)
        return secret

    async def list_secrets(
        self,
        session: VaultSession,
        category: Union[str, Category, None] = None,
        favorites_only: bool = False,
        search: Optional[str] = None,
    ) -> list[SecretResult]:
        """Decrypt the user's secrets, one result per row."""
        user_id, key = self._session_key(session)
        if category is not None:
            errors: list[str] = []
            category = _category(category, errors)
            if errors:
                raise ValidationError(errors, step="list")
        rows = await self._store.find_secrets_by_owner(
            user_id,
            category=category,
            favorites_only=favorites_only,
            search=_normalize(search) or None,
        )
        return [self._decrypt(secret, key) for secret in rows]

    async def get_secret(self, session: VaultSession, secret_id: int) -> SecretResult:
        user_id, key = self._session_key(session)
        secret = await self._store.find_secret(secret_id, user_id)
        if secret is None:
            raise NotFoundError()
        result = self._decrypt(secret, key)
        if result.ok:
            secret = await self._store.update_secret(
                secret.id, {"last_used_at": utcnow()}
            )
            result = SecretResult(secret=secret, password=result.password)
        return result

    async def update_secret(
        self,
        session: VaultSession,
        secret_id: int,
        site: Optional[str] = None,
        login_name: Optional[str] = None,
        password: Optional[str] = None,
        category: Union[str, Category, None] = None,
        notes: Optional[str] = None,
        is_favorite: Optional[bool] = None,
    ) -> Secret:
        """Partial update; a new password replaces envelope and strength."""
        user_id = self._user_id(session)
        patch: dict[str, Any] = {}
        errors: list[str] = []
        if site is not None:
            patch["site"] = _normalize(site)
        if login_name is not None:
            patch["login_name"] = _normalize(login_name)
        if notes is not None:
            patch["notes"] = _normalize(notes)
        if category is not None:
            patch["category"] = _category(category, errors)
        if is_favorite is not None:
            patch["is_favorite"] = bool(is_favorite)
        self._check_fields(
            errors,
            patch.get("site"),
            patch.get("login_name"),
            password,
            patch.get("notes"),
        )
        if errors:
            raise ValidationError(errors, step="update")

        async with self._rotation.user_lock(user_id):
            if await self._store.find_secret(secret_id, user_id) is None:
                raise NotFoundError()
            if password is not None:
                key = await self._current_key(session, user_id)
                patch["envelope"] = crypto.encrypt_for_storage(
                    password, key, self._config
                )
                patch["strength"] = strength.score(password)
            if not patch:
                return await self._store.find_secret(secret_id, user_id)
            return await self._store.update_secret(secret_id, patch)

    async def delete_secret(self, session: VaultSession, secret_id: int) -> None:
        user_id = self._user_id(session)
        deleted = await self._store.delete_secrets([secret_id], user_id)
        if not deleted:
            raise NotFoundError()
        logger.debug("Secret id=%s deleted for user=%s", secret_id, user_id)

    async def toggle_favorite(self, session: VaultSession, secret_id: int) -> Secret:
        user_id = self._user_id(session)
        secret = await self._store.find_secret(secret_id, user_id)
        if secret is None:
            raise NotFoundError()
        return await self._store.update_secret(
            secret_id, {"is_favorite": not secret.is_favorite}
        )

    # ------------------------------------------------------------------
    # Key lifecycle
    # ------------------------------------------------------------------

    async def rotate(
        self, session: VaultSession, old_password: str, new_password: str
    ) -> RotationResult:
        return await self._rotation.rotate(
            session, self._user_id(session), old_password, new_password
        )

    async def change_password(
        self,
        session: VaultSession,
        current_password: str,
        new_password: str,
        confirm_new_password: str,
    ) -> RotationResult:
        """Check the confirmation, then rotate the vault to the new password."""
        if not current_password or not new_password or not confirm_new_password:
            raise ValidationError("All fields are obligatory", step="validate")
        if new_password != confirm_new_password:
            raise ValidationError("Passwords are not the same.", step="validate")
        return await self.rotate(session, current_password, new_password)

    async def recover(
        self, session: VaultSession, old_password: str
    ) -> RecoveryResult:
        if not old_password:
            raise ValidationError("Old password is required", step="recover")
        return await self._reconciler.recover(
            session, self._user_id(session), old_password
        )

    async def cleanup(self, session: VaultSession) -> CleanupResult:
        return await self._reconciler.cleanup(session, self._user_id(session))
