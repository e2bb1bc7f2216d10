"""Authentication module."""

from entitlement_sync.modules.auth.jwt import (
    AuthTokens,
    TokenBlacklist,
    TokenManager,
    TokenPayload,
)
from entitlement_sync.modules.auth.models import (
    User,
    hash_password,
    validate_password_policy,
    verify_password,
)
from entitlement_sync.modules.auth.repository import UserRepository

__all__ = [
    "AuthTokens",
    "TokenBlacklist",
    "TokenManager",
    "TokenPayload",
    "User",
    "hash_password",
    "validate_password_policy",
    "verify_password",
    "UserRepository",
]
