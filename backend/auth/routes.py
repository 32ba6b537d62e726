"""
Authentication API endpoints.

This module provides REST API endpoints for:
- User registration
- Login/logout
- Token refresh with rotation (refresh tokens are single use)
- Password reset
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import or_
from sqlalchemy.orm import Session

import mailer
import notifications
from database import get_db
from models import RefreshToken, User, UserRole, UserSettings
from responses import ok
from schemas import user_payload
from time_utils import as_utc, utc_now
from auth.security import (
    PASSWORD_RESET_EXPIRE_MINUTES,
    create_access_token,
    create_password_reset_token,
    decode_password_reset_token,
    generate_refresh_token,
    hash_password,
    is_production_like,
    refresh_token_expiry,
    verify_password,
)
from auth.dependencies import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


# Request/Response schemas
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=100)
    full_name: str = Field(..., min_length=1, max_length=255)

    @field_validator("username", "full_name")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(None, alias="refreshToken")

    class Config:
        populate_by_name = True


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    new_password: str = Field(..., min_length=6, max_length=100, alias="newPassword")

    class Config:
        populate_by_name = True


def issue_tokens(db: Session, user: User) -> dict:
    """Create an access token and store a fresh refresh token for ``user``."""
    role = user.role.value if hasattr(user.role, "value") else user.role
    access_token = create_access_token({"sub": str(user.id), "role": role, "email": user.email})
    refresh_token = generate_refresh_token()
    db.add(RefreshToken(user_id=user.id, token=refresh_token, expires_at=refresh_token_expiry()))
    return {"accessToken": access_token, "refreshToken": refresh_token}


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account.

    Returns:
        The created user plus an access/refresh token pair

    Raises:
        HTTPException: 400 if the email or username is already taken
    """
    email = request.email.lower()
    logger.info(f"Registration attempt for email: {email}")

    existing_user = (
        db.query(User)
        .filter(or_(User.email == email, User.username == request.username))
        .first()
    )
    if existing_user:
        logger.info(f"Registration failed: email or username already exists: {email}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already exists with this email or username",
        )

    new_user = User(
        username=request.username,
        email=email,
        password_hash=hash_password(request.password),
        full_name=request.full_name,
        role=UserRole.user,
        is_active=True,
    )
    db.add(new_user)
    db.flush()
    db.add(UserSettings(user_id=new_user.id))

    tokens = issue_tokens(db, new_user)
    db.commit()
    db.refresh(new_user)

    logger.info(f"User registered successfully: {new_user.email} (ID: {new_user.id})")
    return ok({"user": user_payload(new_user), **tokens})


@router.post("/login")
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Authenticate with email and password.

    Raises:
        HTTPException: 401 if the credentials are wrong or the account is deactivated
    """
    email = request.email.lower()
    logger.info(f"Login attempt for email: {email}")

    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed: invalid credentials for {email}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    if not user.is_active:
        logger.info(f"Login failed: user account is deactivated: {email}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is deactivated")

    user.last_login = utc_now()
    tokens = issue_tokens(db, user)
    db.commit()
    db.refresh(user)

    logger.info(f"Login successful for user: {user.email} (ID: {user.id})")
    return ok({"user": user_payload(user), **tokens})


@router.post("/refresh-token")
async def refresh_access_token(request: RefreshRequest, db: Session = Depends(get_db)):
    """
    Exchange a refresh token for a new token pair.

    The presented token is deleted, so it cannot be used again.
    """
    if not request.refresh_token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Refresh token required")

    stored = db.query(RefreshToken).filter(RefreshToken.token == request.refresh_token).first()
    if stored is None:
        logger.info("Refresh failed: unknown refresh token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

    if as_utc(stored.expires_at) <= utc_now():
        logger.info(f"Refresh failed: expired refresh token for user {stored.user_id}")
        db.delete(stored)
        db.commit()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

    user = db.query(User).filter(User.id == stored.user_id).first()
    if user is None or not user.is_active:
        logger.info(f"Refresh failed: user {stored.user_id} not found or inactive")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    db.delete(stored)
    tokens = issue_tokens(db, user)
    db.commit()

    logger.debug(f"Token pair rotated for user: {user.email}")
    return ok(tokens)


@router.post("/logout")
async def logout(request: Optional[RefreshRequest] = None, db: Session = Depends(get_db)):
    """Revoke the given refresh token. Always succeeds."""
    if request and request.refresh_token:
        deleted = db.query(RefreshToken).filter(RefreshToken.token == request.refresh_token).delete()
        db.commit()
        logger.info(f"Logout: revoked {deleted} refresh token(s)")
    return ok(message="Logged out successfully")


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    """Get the current user's profile with settings."""
    return ok(user_payload(current_user, include_settings=True))


@router.post("/forgot-password")
async def forgot_password(request: ForgotPasswordRequest, db: Session = Depends(get_db)):
    """
    Start a password reset.

    The response is the same whether or not the email is registered. Outside
    production the token is also returned so the flow can be exercised
    without a mail server.
    """
    email = request.email.lower()
    user = db.query(User).filter(User.email == email).first()
    data = None

    if user and user.is_active:
        token = create_password_reset_token(user.id)
        content = mailer.password_reset_email(user, token, PASSWORD_RESET_EXPIRE_MINUTES)
        await asyncio.to_thread(notifications.deliver_email, user, content)
        logger.info(f"Password reset requested for user {user.id}")
        if not is_production_like():
            data = {"resetToken": token}
    else:
        logger.info(f"Password reset requested for unknown or inactive email: {email}")

    return ok(data, message=FORGOT_PASSWORD_MESSAGE)


@router.post("/reset-password")
async def reset_password(request: ResetPasswordRequest, db: Session = Depends(get_db)):
    """
    Set a new password using a reset token.

    All of the user's refresh tokens are revoked, signing out other sessions.
    """
    user_id = decode_password_reset_token(request.token)
    user = db.query(User).filter(User.id == user_id).first() if user_id is not None else None
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired reset token")

    user.password_hash = hash_password(request.new_password)
    db.query(RefreshToken).filter(RefreshToken.user_id == user.id).delete()
    db.commit()

    logger.info(f"Password reset completed for user {user.id}")
    return ok(message="Password has been reset successfully")
