"""Authentication schemas for request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from entitlement_sync.modules.auth.models import validate_password_policy, validate_username


def _check_password(v: str) -> str:
    violations = validate_password_policy(v)
    if violations:
        raise ValueError(violations[0])
    return v


class RegisterRequest(BaseModel):
    """User registration request."""

    username: str = Field(..., min_length=3, max_length=20, description="Login name")
    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=8, description="User password (min 8 characters)")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        v = v.strip()
        if not validate_username(v):
            raise ValueError("Username may only contain letters, digits and underscores")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        """At least 8 characters with one letter and one digit."""
        return _check_password(v)

    model_config = {
        "json_schema_extra": {
            "example": {
                "username": "channel_hunter",
                "email": "user@example.com",
                "password": "SecurePass123",
            }
        }
    }


class LoginRequest(BaseModel):
    """User login request."""

    username: str = Field(..., description="Login name")
    password: str = Field(..., description="User password")


class TokenResponse(BaseModel):
    """Authentication token response."""

    access_token: str = Field(..., alias="accessToken", description="JWT access token")
    refresh_token: str = Field(..., alias="refreshToken", description="JWT refresh token")
    expires_in: int = Field(..., alias="expiresIn", description="Token expiration time in seconds")
    token_type: str = Field("bearer", alias="tokenType", description="Token type")

    model_config = {"populate_by_name": True}


class UserResponse(BaseModel):
    """User profile response."""

    id: str = Field(..., description="User ID")
    username: str = Field(..., description="Login name")
    email: str = Field(..., description="User email")
    subscription_tier: str = Field("none", alias="subscriptionTier", description="Current plan tier")
    subscription_status: str = Field(
        "none", alias="subscriptionStatus", description="Entitlement status as read now"
    )
    created_at: Optional[datetime] = Field(None, alias="createdAt", description="Account creation timestamp")
    last_login_at: Optional[datetime] = Field(None, alias="lastLoginAt", description="Last login timestamp")

    model_config = {"populate_by_name": True}


class AuthResponse(TokenResponse):
    """Tokens plus the authenticated profile."""

    user: UserResponse


class RefreshTokenRequest(BaseModel):
    """Refresh token request."""

    refresh_token: str = Field(..., alias="refreshToken", description="Refresh token")


class PasswordChangeRequest(BaseModel):
    """Password change for the signed-in account."""

    current_password: str = Field(..., alias="currentPassword", description="Current password")
    new_password: str = Field(..., alias="newPassword", min_length=8, description="New password")

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return _check_password(v)


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str
