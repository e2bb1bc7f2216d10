"""Authentication router for registration, login, and token management."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_sync.core.database import get_db
from entitlement_sync.modules.auth.gate import get_current_user, get_token_manager, security
from entitlement_sync.modules.auth.jwt import AuthTokens, TokenManager
from entitlement_sync.modules.auth.models import User
from entitlement_sync.modules.auth.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    RefreshTokenRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from entitlement_sync.modules.auth.service import AuthenticationError, AuthService, UserExistsError

router = APIRouter(prefix="/auth", tags=["auth"])


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    tokens: TokenManager = Depends(get_token_manager),
) -> AuthService:
    return AuthService(db, tokens)


def _token_fields(tokens: AuthTokens) -> dict:
    return {
        "access_token": tokens.access_token,
        "refresh_token": tokens.refresh_token,
        "expires_in": tokens.expires_in,
        "token_type": tokens.token_type,
    }


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register new user",
)
async def register(
    data: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Register a new account and sign it in.

    Raises:
        HTTPException: 400 if the username or email is taken
    """
    try:
        user, tokens = await service.register(
            username=data.username,
            email=data.email,
            password=data.password,
        )
    except UserExistsError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    profile = await service.profile(user)
    return AuthResponse(**_token_fields(tokens), user=UserResponse(**profile))


@router.post("/login", response_model=AuthResponse, summary="Login")
async def login(
    data: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate by username and password."""
    try:
        user, tokens = await service.login(data.username, data.password)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )

    profile = await service.profile(user)
    return AuthResponse(**_token_fields(tokens), user=UserResponse(**profile))


@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh(
    data: RefreshTokenRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokenResponse:
    """Exchange a refresh token for a new token pair (the old one is revoked)."""
    try:
        tokens = await service.refresh_token(data.refresh_token)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenResponse(**_token_fields(tokens))


@router.post("/logout", response_model=MessageResponse, summary="Logout")
async def logout(
    data: Optional[RefreshTokenRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the current access token and, if given, the refresh token."""
    service.logout(credentials.credentials, data.refresh_token if data else None)
    return MessageResponse(message="Successfully logged out")


@router.get("/me", response_model=UserResponse, summary="Current user")
async def me(
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> UserResponse:
    return UserResponse(**await service.profile(current_user))


@router.post("/password/change", response_model=MessageResponse, summary="Change password")
async def change_password(
    data: PasswordChangeRequest,
    current_user: User = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    try:
        await service.change_password(current_user, data.current_password, data.new_password)
    except AuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return MessageResponse(message="Password changed successfully")
