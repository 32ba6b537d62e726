"""
FastAPI dependencies for authentication and authorization.

This module provides dependency functions that can be used in route handlers to:
- Extract and validate the current user from a bearer access token
- Enforce role-based access control
- Provide convenience shortcuts for common permission checks
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User, UserRole
from auth.security import verify_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)

NOT_AUTHORIZED = "Not authorized to access this route"


def _unauthorized(detail: str = NOT_AUTHORIZED) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from the bearer access token.

    Args:
        credentials: HTTP Bearer credentials (JWT token)
        db: Database session

    Returns:
        User object if authentication succeeds

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired, or the
            user no longer exists or has been deactivated

    Example:
        @router.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise _unauthorized()

    payload = verify_token(credentials.credentials)
    if payload is None:
        raise _unauthorized()

    if payload.get("type") != "access":
        logger.info(f"Invalid token type: {payload.get('type')}")
        raise _unauthorized()

    # Parse sub safely (malformed tokens should return 401, not 500)
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid sub format in token: {payload.get('sub')}")
        raise _unauthorized()

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise _unauthorized("User not found")

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {user_id}")
        raise _unauthorized("User account is deactivated")

    logger.debug(f"User authenticated via JWT: {user.email}")
    return user


def role_value(user: User) -> str:
    role = user.role
    return role.value if hasattr(role, "value") else str(role)


def is_staff(user: User) -> bool:
    """Admins and managers see and manage every task."""
    return role_value(user) in (UserRole.admin.value, UserRole.manager.value)


def require_role(*roles: str):
    """
    Create a dependency that requires one of the given roles.

    Args:
        roles: Roles allowed to access the endpoint ('admin', 'manager', 'user')

    Returns:
        Dependency function that checks the user's role

    Example:
        @router.delete("/api/users/{id}")
        async def delete_user(
            user_id: int,
            current_user: User = Depends(require_role("admin"))
        ):
            pass
    """
    allowed = {r.value if hasattr(r, "value") else r for r in roles}

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        user_role = role_value(current_user)
        if user_role not in allowed:
            logger.info(
                f"Access denied: user {current_user.email} has role '{user_role}', "
                f"allowed roles: {sorted(allowed)}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role '{user_role}' is not authorized to access this route",
            )
        return current_user

    return role_checker


async def get_current_admin(current_user: User = Depends(require_role(UserRole.admin))) -> User:
    """Shortcut for Depends(require_role("admin"))."""
    return current_user


async def get_current_staff(
    current_user: User = Depends(require_role(UserRole.admin, UserRole.manager)),
) -> User:
    """Shortcut for endpoints open to admins and managers."""
    return current_user
