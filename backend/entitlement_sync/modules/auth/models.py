"""User model for authentication."""

import re
import uuid
from datetime import datetime
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import JSON, Boolean, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from entitlement_sync.core.database import Base

# Rounds can be raised later; older hashes are upgraded on next login.
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,20}$")


def validate_password_policy(password: str) -> list[str]:
    """Validate password against policy requirements.

    Policy requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit

    Returns:
        list[str]: List of policy violations (empty if valid)
    """
    violations = []

    if len(password) < 8:
        violations.append("Password must be at least 8 characters long")

    if not re.search(r"[A-Za-z]", password):
        violations.append("Password must contain at least one letter")

    if not re.search(r"\d", password):
        violations.append("Password must contain at least one digit")

    return violations


def validate_username(username: str) -> bool:
    """3-20 characters: letters, digits and underscores."""
    return bool(USERNAME_PATTERN.match(username))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Check a password against a stored bcrypt hash.

    With no stored hash a dummy verification still runs, so an unknown
    username costs the same time as a wrong password.
    """
    if hashed_password is None:
        pwd_context.dummy_verify()
        return False
    return pwd_context.verify(plain_password, hashed_password)


def password_needs_rehash(hashed_password: str) -> bool:
    """True when the hash was made with weaker parameters than the current ones."""
    return pwd_context.needs_update(hashed_password)


class User(Base):
    """Account identity: credentials and account-owned preferences."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    saved_channels: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def set_password(self, password: str) -> None:
        self.password_hash = hash_password(password)

    def verify_password(self, password: str) -> bool:
        return verify_password(password, self.password_hash)
