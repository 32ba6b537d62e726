"""
Security utilities for password hashing and token management.

This module provides cryptographic functions for:
- Password hashing using Argon2id (memory-hard, GPU-resistant)
- JWT access token creation and verification
- Opaque refresh token generation
- Short-lived password reset tokens
"""

import logging
import secrets
import os
from datetime import timedelta
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from time_utils import utc_now

load_dotenv()

logger = logging.getLogger(__name__)


def is_production_like() -> bool:
    """
    Check if the current environment is production-like (production or staging).

    Returns:
        True if ENVIRONMENT is "production" or "staging", False otherwise
    """
    env = os.environ.get("ENVIRONMENT", "development").lower()
    return env in ("production", "staging")


def _int_from_env(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer setting, falling back to the default when invalid or out of range."""
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid {name} value in environment. Using default of {default}.")
        return default
    if value < minimum or value > maximum:
        logger.warning(
            f"⚠️  {name}={value} is outside safe range ({minimum}-{maximum}). Using default of {default}."
        )
        return default
    return value


# Password hashing configuration using Argon2id
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# JWT configuration
SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not SECRET_KEY:
    if is_production_like():
        raise ValueError(
            "JWT_SECRET_KEY environment variable is required in production. "
            "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )
    else:
        SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
        logger.warning(
            "⚠️  JWT_SECRET_KEY not set! Using temporary development key. "
            "This is INSECURE for production. Set JWT_SECRET_KEY environment variable."
        )

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = _int_from_env("ACCESS_TOKEN_EXPIRE_MINUTES", 15, 1, 1440)
REFRESH_TOKEN_EXPIRE_DAYS = _int_from_env("REFRESH_TOKEN_EXPIRE_DAYS", 30, 1, 90)
PASSWORD_RESET_EXPIRE_MINUTES = _int_from_env("PASSWORD_RESET_EXPIRE_MINUTES", 15, 1, 1440)


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2id.

    Example:
        >>> hashed = hash_password("my_secure_password")
        >>> verify_password("my_secure_password", hashed)
        True
    """
    logger.debug("Hashing password")
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Returns:
        True if password matches, False otherwise (including malformed hashes)
    """
    logger.debug("Verifying password")
    try:
        is_valid = pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        logger.info("Stored password hash could not be parsed")
        return False
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode in the token (sub, role, email)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token({"sub": "1", "role": "admin"})
    """
    to_encode = data.copy()
    expire = utc_now() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "type": "access"})

    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    logger.debug(f"Access token created for sub={data.get('sub')}, expires at: {expire}")
    return encoded_jwt


def generate_refresh_token() -> str:
    """
    Generate an opaque refresh token.

    The token carries no claims; it is only meaningful as a lookup key into
    the refresh_tokens table, which is what makes it revocable.
    """
    return secrets.token_urlsafe(48)


def refresh_token_expiry():
    """Expiry timestamp for a refresh token issued now."""
    return utc_now() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)


def decode_token(token: str) -> Dict[str, Any]:
    """
    Decode a JWT, raising on any failure.

    Raises:
        ExpiredSignatureError: if the token has expired
        JWTError: if the token is malformed or the signature is invalid
    """
    return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a JWT token.

    Returns:
        Decoded token payload if valid, None otherwise

    Example:
        >>> payload = verify_token(token)
        >>> if payload:
        ...     user_id = payload.get("sub")
    """
    logger.debug("Verifying JWT token")
    try:
        payload = decode_token(token)
        logger.debug(f"Token verified successfully for user: {payload.get('sub')}")
        return payload
    except ExpiredSignatureError:
        logger.info("JWT verification failed: token expired")
        return None
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None


def create_password_reset_token(user_id: int) -> str:
    """Create a short-lived token that authorizes a single password reset."""
    expire = utc_now() + timedelta(minutes=PASSWORD_RESET_EXPIRE_MINUTES)
    return jwt.encode(
        {"sub": str(user_id), "exp": expire, "type": "password_reset"},
        SECRET_KEY,
        algorithm=ALGORITHM,
    )


def decode_password_reset_token(token: str) -> Optional[int]:
    """
    Validate a password reset token.

    Returns:
        The user id the token was issued for, or None if invalid/expired
    """
    payload = verify_token(token)
    if not payload or payload.get("type") != "password_reset":
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
