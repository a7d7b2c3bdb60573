"""
Vault error taxonomy.

Every error raised by the keychain derives from ``VaultError``. Errors that
abort a multi-step operation record the ``step`` that failed; ``committed``
is always False for a raised error, nothing is persisted before a failure
is reported.
"""
from typing import Any, Optional


class VaultError(Exception):
    """Base class for keychain errors."""

    default_message: str = "Vault operation failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        step: Optional[str] = None,
        **kwargs: Any
    ) -> None:
        self.message = message or self.default_message
        self.step = step
        self.committed = False
        self.context = kwargs
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}: {self.message} step={self.step}>"

    def to_dict(self) -> dict:
        """User-facing summary: what failed and whether anything was saved."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "step": self.step,
            "committed": self.committed,
        }


class ValidationError(VaultError):
    """Caller input is invalid; carries every violation found."""

    default_message = "Invalid data"

    def __init__(self, errors, *, step: Optional[str] = None) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors: list[str] = list(errors)
        super().__init__(
            f"Invalid data: {', '.join(self.errors)}", step=step
        )


class AuthenticationError(VaultError):
    default_message = "Incorrect email or password"


class IntegrityError(VaultError):
    """Ciphertext envelope did not verify under the given key."""

    default_message = "Envelope failed authentication"


class DecryptionError(IntegrityError):
    """A stored secret could not be decrypted during a vault-wide operation."""

    def __init__(
        self,
        secret_id: Any,
        message: Optional[str] = None,
        *,
        step: Optional[str] = "decrypt"
    ) -> None:
        self.secret_id = secret_id
        super().__init__(
            message or f"Secret {secret_id} is not decryptable under the session key",
            step=step
        )


class SessionStateError(VaultError):
    default_message = "Master key not found in session. Log in again."


class MigrationError(VaultError):
    """Commit of re-encrypted data failed and was rolled back."""

    default_message = "Key migration failed; no changes were committed"


class InvalidOptionsError(VaultError):
    default_message = "At least one character type must be included"


class ConflictError(VaultError):
    default_message = "Account already registered with this e-mail."


class NotFoundError(VaultError):
    default_message = "Secret not found."


class KeyDerivationError(VaultError):
    """Key stretching could not complete; retrying with the same input fails again."""

    default_message = "Key derivation failed"
