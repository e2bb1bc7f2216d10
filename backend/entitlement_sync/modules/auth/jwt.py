"""JWT token management for authentication."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from entitlement_sync.core.config import AuthConfig


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str  # User ID
    exp: datetime
    iat: datetime
    type: str  # "access" or "refresh"
    jti: str  # JWT ID for blacklisting


class AuthTokens(BaseModel):
    """Authentication tokens response."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


class TokenBlacklist:
    """In-memory token blacklist for logout functionality.

    One instance per application; a multi-process deployment would back this
    with Redis.
    """

    def __init__(self) -> None:
        self._blacklisted_tokens: set[str] = set()

    def add(self, jti: str) -> None:
        """Add token JTI to blacklist."""
        self._blacklisted_tokens.add(jti)

    def is_blacklisted(self, jti: str) -> bool:
        """Check if token JTI is blacklisted."""
        return jti in self._blacklisted_tokens

    def clear(self) -> None:
        """Clear all blacklisted tokens (for testing)."""
        self._blacklisted_tokens.clear()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Issues and validates HS256 bearer tokens."""

    def __init__(self, config: AuthConfig, blacklist: Optional[TokenBlacklist] = None):
        self.config = config
        self.blacklist = blacklist if blacklist is not None else TokenBlacklist()

    def create_token(
        self,
        user_id: uuid.UUID,
        token_type: str,
        expires_delta: timedelta,
    ) -> tuple[str, str]:
        """Create a JWT token.

        Args:
            user_id: User UUID
            token_type: "access" or "refresh"
            expires_delta: Token expiration time

        Returns:
            tuple[str, str]: (token, jti) - The encoded token and its unique ID
        """
        jti = str(uuid.uuid4())
        now = _utcnow()
        expire = now + expires_delta

        payload = {
            "sub": str(user_id),
            "exp": expire,
            "iat": now,
            "type": token_type,
            "jti": jti,
        }

        token = jwt.encode(payload, self.config.secret_key, algorithm=self.config.algorithm)
        return token, jti

    def create_access_token(self, user_id: uuid.UUID) -> tuple[str, str]:
        expires_delta = timedelta(minutes=self.config.access_token_expire_minutes)
        return self.create_token(user_id, "access", expires_delta)

    def create_refresh_token(self, user_id: uuid.UUID) -> tuple[str, str]:
        expires_delta = timedelta(days=self.config.refresh_token_expire_days)
        return self.create_token(user_id, "refresh", expires_delta)

    def create_auth_tokens(self, user_id: uuid.UUID) -> AuthTokens:
        """Create both access and refresh tokens."""
        access_token, _ = self.create_access_token(user_id)
        refresh_token, _ = self.create_refresh_token(user_id)

        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.config.access_token_expire_minutes * 60,
        )

    def decode_token(self, token: str) -> Optional[TokenPayload]:
        """Decode a JWT token and check its signature and expiry.

        Args:
            token: Encoded JWT token

        Returns:
            TokenPayload | None: Decoded payload if valid, None otherwise
        """
        try:
            payload = jwt.decode(token, self.config.secret_key, algorithms=[self.config.algorithm])
            return TokenPayload(
                sub=payload["sub"],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                type=payload["type"],
                jti=payload["jti"],
            )
        except (JWTError, KeyError, TypeError, ValueError):
            return None

    def validate_token(self, token: str, expected_type: str = "access") -> Optional[TokenPayload]:
        """Validate a JWT token.

        Args:
            token: Encoded JWT token
            expected_type: Expected token type ("access" or "refresh")

        Returns:
            TokenPayload | None: Decoded payload if valid, None otherwise
        """
        payload = self.decode_token(token)

        if payload is None:
            return None

        # Check token type
        if payload.type != expected_type:
            return None

        # Check if blacklisted
        if self.blacklist.is_blacklisted(payload.jti):
            return None

        # Check expiration
        if payload.exp < _utcnow():
            return None

        return payload

    def blacklist_token(self, token: str) -> bool:
        """Blacklist a token for logout.

        Returns:
            bool: True if successfully blacklisted
        """
        payload = self.decode_token(token)
        if payload is None:
            return False

        self.blacklist.add(payload.jti)
        return True

    def get_user_id_from_token(self, token: str) -> Optional[uuid.UUID]:
        """Extract user ID from a valid access token."""
        payload = self.validate_token(token, "access")
        if payload is None:
            return None

        try:
            return uuid.UUID(payload.sub)
        except ValueError:
            return None
