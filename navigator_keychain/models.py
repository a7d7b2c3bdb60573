"""
Keychain records — users and their stored secrets.

``User.master_key`` and ``User.password_hash`` are sensitive and excluded
from ``public()``; only the session layer and the key rotation protocol
read them.
"""
from enum import Enum
from typing import Any, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, Enum):
    SOCIAL = "social"
    WORK = "work"
    FINANCIAL = "financial"
    EMAIL = "email"
    ENTERTAINMENT = "entertainment"
    OTHER = "other"


class User(BaseModel):
    """Account owning a set of secrets."""

    model_config = ConfigDict(validate_assignment=True)

    id: int
    name: str
    email: str
    password_hash: str = Field(repr=False)
    master_key: Optional[str] = Field(default=None, repr=False)
    # hex scrypt salts; the previous one is kept for recovery after a rotation
    key_salt: Optional[str] = None
    previous_key_salt: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    def public(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "email": self.email}


class Secret(BaseModel):
    """A stored credential; the password lives only inside ``envelope``."""

    model_config = ConfigDict(
        validate_assignment=True, use_enum_values=True, validate_default=True
    )

    id: int
    owner_id: int
    site: str
    login_name: str
    envelope: str = Field(repr=False)
    category: Category = Category.OTHER
    notes: str = ""
    is_favorite: bool = False
    strength: int = Field(default=0, ge=0, le=5)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None

    def summary(self) -> dict[str, Any]:
        """Display fields, without the envelope."""
        return self.model_dump(exclude={"envelope"})
