"""
Vault Configuration — key-derivation cost and password policy.

Reads overrides from environment variables:
    KEYCHAIN_SCRYPT_N = <power of two, >= 16384>
    KEYCHAIN_MIN_PASSWORD_LENGTH = <integer>
    KEYCHAIN_MIN_STRENGTH = <integer 0-5>
    KEYCHAIN_AAD = <associated-data tag bound to every envelope>

Security Note:
    Changing ``aad`` makes every existing envelope undecryptable.
"""
import os
import logging
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator, model_validator

from ..conf import LOGGER_NAME

logger = logging.getLogger(LOGGER_NAME)

DEFAULT_AAD = "ChemKey-Password"


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    scrypt_n: int = Field(default=16384, ge=16384)
    scrypt_r: int = Field(default=8, ge=1)
    scrypt_p: int = Field(default=1, ge=1)
    key_length: int = Field(default=32)
    salt_length: int = Field(default=32, ge=16)
    iv_length: int = Field(default=16, ge=12, le=16)
    aad: str = Field(default=DEFAULT_AAD, min_length=1)
    min_password_length: int = Field(default=8, ge=1)
    max_password_length: int = Field(default=128, ge=8)
    min_registration_strength: int = Field(default=2, ge=0, le=5)

    model_config = {"frozen": True}

    @field_validator("scrypt_n")
    @classmethod
    def validate_cost(cls, v: int) -> int:
        """scrypt requires N to be a power of two."""
        if v & (v - 1):
            raise ValueError(f"scrypt_n must be a power of two, got {v}")
        return v

    @field_validator("key_length")
    @classmethod
    def validate_key_length(cls, v: int) -> int:
        if v != 32:
            raise ValueError("Only 256-bit keys are supported")
        return v

    @model_validator(mode="after")
    def validate_password_bounds(self) -> "VaultConfig":
        if self.min_password_length > self.max_password_length:
            raise ValueError(
                f"min_password_length ({self.min_password_length}) exceeds "
                f"max_password_length ({self.max_password_length})"
            )
        return self

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading overrides from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        if "KEYCHAIN_SCRYPT_N" in os.environ:
            values["scrypt_n"] = int(os.environ["KEYCHAIN_SCRYPT_N"])
        if "KEYCHAIN_MIN_PASSWORD_LENGTH" in os.environ:
            values["min_password_length"] = int(
                os.environ["KEYCHAIN_MIN_PASSWORD_LENGTH"]
            )
        if "KEYCHAIN_MIN_STRENGTH" in os.environ:
            values["min_registration_strength"] = int(
                os.environ["KEYCHAIN_MIN_STRENGTH"]
            )
        if "KEYCHAIN_AAD" in os.environ:
            values["aad"] = os.environ["KEYCHAIN_AAD"]
        config = cls(**values)
        logger.debug(
            "Vault config loaded: scrypt N=%d r=%d p=%d",
            config.scrypt_n, config.scrypt_r, config.scrypt_p,
        )
        return config


@lru_cache()
def get_config() -> VaultConfig:
    """Process-wide configuration, read from the environment once."""
    return VaultConfig.from_env()
