"""Keychain Vault — Per-user password vault encrypted under a login-derived key.

Security Note (Threat Model):
    Secrets are decrypted in process memory while a request handles them,
    and the master key lives in the VaultSession for the session lifetime.
    A memory dump of the application process could expose the master key,
    from which every secret of that user can be recovered.
    The key buffer is zeroed on rotation and logout, but copies made by
    the crypto backend are outside our control; this is an accepted
    limitation.
"""

from .config import VaultConfig, get_config
from .crypto import (
    DerivedKey,
    EncryptedEnvelope,
    decrypt,
    decrypt_from_storage,
    derive_key,
    encrypt,
    encrypt_for_storage,
    is_valid_master_key,
    secure_hash,
)
from .generator import GeneratorOptions, generate
from .key_rotation import KeyRotation, RotationResult
from .password_vault import PasswordVault, SecretResult, readable
from .recovery import CleanupResult, RecoveryReconciler, RecoveryResult
from .strength import score

__all__ = [
    "PasswordVault",
    "SecretResult",
    "readable",
    "KeyRotation",
    "RotationResult",
    "RecoveryReconciler",
    "RecoveryResult",
    "CleanupResult",
    "VaultConfig",
    "get_config",
    "DerivedKey",
    "EncryptedEnvelope",
    "derive_key",
    "encrypt",
    "decrypt",
    "encrypt_for_storage",
    "decrypt_from_storage",
    "is_valid_master_key",
    "secure_hash",
    "GeneratorOptions",
    "generate",
    "score",
]
