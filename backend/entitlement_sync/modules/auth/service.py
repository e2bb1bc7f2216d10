"""Authentication service for account management and authentication."""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.logging import log_info
from entitlement_sync.modules.auth.jwt import AuthTokens, TokenManager
from entitlement_sync.modules.auth.models import User, password_needs_rehash, verify_password
from entitlement_sync.modules.auth.repository import UserRepository
from entitlement_sync.modules.billing.models import EntitlementState
from entitlement_sync.modules.billing.repository import EntitlementRepository

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Exception raised for authentication failures."""

    pass


class UserExistsError(Exception):
    """Exception raised when user already exists."""

    pass


class AuthService:
    """Service for authentication operations."""

    def __init__(self, session: AsyncSession, tokens: TokenManager):
        """Initialize auth service.

        Args:
            session: Async SQLAlchemy session
            tokens: Token issuer/validator for this application
        """
        self.session = session
        self.tokens = tokens
        self.user_repo = UserRepository(session)
        self.entitlement_repo = EntitlementRepository(session)

    async def register(self, username: str, email: str, password: str) -> tuple[User, AuthTokens]:
        """Register a new account with a tier ``none`` entitlement.

        Args:
            username: Unique login name
            email: User email address
            password: Plain text password

        Returns:
            tuple[User, AuthTokens]: Created user and its first tokens

        Raises:
            UserExistsError: If the username or email is already registered
        """
        email = email.lower().strip()

        if await self.user_repo.exists(username, email):
            raise UserExistsError("User with this email or username already exists")

        try:
            user = await self.user_repo.create(username=username, email=email, password=password)
            await self.entitlement_repo.create_for_user(user.id)
        except IntegrityError:
            raise UserExistsError("User with this email or username already exists")

        log_info(logger, "Account registered", user_id=str(user.id))
        return user, self.tokens.create_auth_tokens(user.id)

    async def login(self, username: str, password: str) -> tuple[User, AuthTokens]:
        """Authenticate by username and password.

        Raises:
            AuthenticationError: Always with the same message, whatever failed
        """
        user = await self.user_repo.get_by_username(username)
        stored_hash = user.password_hash if user is not None else None
        if not verify_password(password, stored_hash) or not user.is_active:
            raise AuthenticationError("Invalid credentials")

        if password_needs_rehash(user.password_hash):
            await self.user_repo.update_password(user, password)
        await self.user_repo.update_last_login(user)
        return user, self.tokens.create_auth_tokens(user.id)

    async def refresh_token(self, refresh_token: str) -> AuthTokens:
        """Refresh access token using refresh token.

        Raises:
            AuthenticationError: If refresh token is invalid
        """
        payload = self.tokens.validate_token(refresh_token, "refresh")
        if payload is None:
            raise AuthenticationError("Invalid or expired refresh token")

        user = await self.user_repo.get_by_id(uuid.UUID(payload.sub))
        if user is None or not user.is_active:
            raise AuthenticationError("Invalid or expired refresh token")

        # Blacklist old refresh token (token rotation)
        self.tokens.blacklist_token(refresh_token)

        return self.tokens.create_auth_tokens(user.id)

    def logout(self, access_token: str, refresh_token: Optional[str] = None) -> bool:
        """Revoke the presented tokens.

        Returns:
            bool: True if the access token was revoked
        """
        revoked = self.tokens.blacklist_token(access_token)
        if refresh_token:
            self.tokens.blacklist_token(refresh_token)
        return revoked

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
    ) -> None:
        """Change the account password.

        Raises:
            AuthenticationError: If the current password is wrong
        """
        if not user.verify_password(current_password):
            raise AuthenticationError("Current password is incorrect")

        await self.user_repo.update_password(user, new_password)
        log_info(logger, "Password changed", user_id=str(user.id))

    async def get_entitlement(self, user_id: uuid.UUID) -> Optional[EntitlementState]:
        row = await self.entitlement_repo.get_by_user_id(user_id)
        return EntitlementState.from_row(row) if row else None

    async def profile(self, user: User, now: Optional[datetime] = None) -> dict:
        """Profile fields for ``UserResponse``, including the subscription tier."""
        entitlement = await self.get_entitlement(user.id)
        now = now or datetime.now(timezone.utc)
        return {
            "id": str(user.id),
            "username": user.username,
            "email": user.email,
            "subscription_tier": entitlement.plan_tier.value if entitlement else "none",
            "subscription_status": entitlement.effective_status(now) if entitlement else "none",
            "created_at": user.created_at,
            "last_login_at": user.last_login_at,
        }
