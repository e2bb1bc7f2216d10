"""User repository for database operations."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.modules.auth.models import User


class UserRepository:
    """Repository for User CRUD operations."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: Async SQLAlchemy session
        """
        self.session = session

    async def create(self, username: str, email: str, password: str) -> User:
        """Create a new user.

        Args:
            username: Unique login name
            email: User email address (stored lower-cased)
            password: Plain text password

        Returns:
            User: Created user instance
        """
        user = User(username=username, email=email.lower(), password_hash="", saved_channels=[])
        user.set_password(password)
        self.session.add(user)
        await self.session.flush()
        await self.session.refresh(user)
        return user

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> User | None:
        result = await self.session.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(
            select(User).where(User.email == email.lower())
        )
        return result.scalar_one_or_none()

    async def exists(self, username: str, email: str) -> bool:
        """Check if a user already holds the username or the email.

        Args:
            username: Username to check
            email: Email address to check

        Returns:
            bool: True if either is taken
        """
        result = await self.session.execute(
            select(User.id).where(or_(User.username == username, User.email == email.lower()))
        )
        return result.first() is not None

    async def update_password(self, user: User, new_password: str) -> User:
        user.set_password(new_password)
        await self.session.flush()
        return user

    async def update_last_login(self, user: User) -> User:
        """Update user's last login timestamp."""
        user.last_login_at = datetime.now(timezone.utc)
        await self.session.flush()
        return user

    async def update_saved_channels(self, user: User, channels: list[str]) -> User:
        """Replace the account's saved channel list.

        Args:
            user: User instance
            channels: Channel ids in display order

        Returns:
            User: Updated user instance
        """
        user.saved_channels = list(channels)
        await self.session.flush()
        return user
