"""
User management endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from auth.dependencies import get_current_admin, get_current_user, is_staff, role_value
from auth.security import hash_password, verify_password
from database import get_db
from models import RefreshToken, Task, User, UserRole, UserSettings, default_email_notifications
from responses import PageParams, ok, page_params
from routers.tasks import serialize_task, task_query
from schemas import ChangePasswordRequest, UserSettingsOut, UserSettingsUpdate, UserUpdate, user_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.get("")
def list_users(
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    paging: PageParams = Depends(page_params()),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(User)
    if role:
        query = query.filter(User.role == role)
    if is_active is not None:
        query = query.filter(User.is_active.is_(is_active))

    total = query.count()
    users = paging.apply(query.order_by(User.created_at.desc(), User.id.desc())).all()
    return ok([user_payload(u) for u in users], pagination=paging.meta(total))


@router.post("/change-password")
def change_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not verify_password(request.current_password, current_user.password_hash):
        logger.info(f"Password change rejected for user {current_user.id}: wrong current password")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")

    current_user.password_hash = hash_password(request.new_password)
    db.commit()
    logger.info(f"Password changed for user {current_user.id}")
    return ok(message="Password updated successfully")


@router.get("/{user_id}")
def get_user(user_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(user_payload(get_user_or_404(db, user_id), include_settings=True))


@router.put("/{user_id}")
def update_user(
    user_id: int,
    user_in: UserUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Update a user profile.

    Users may update themselves; admins may update anyone. ``role`` and
    ``is_active`` are only applied for admins.
    """
    is_admin = role_value(current_user) == UserRole.admin.value
    if not is_admin and current_user.id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to update this user")

    user = get_user_or_404(db, user_id)
    changes = {k: v for k, v in user_in.model_dump(exclude_unset=True).items() if v is not None or k == "avatar_url"}
    if not is_admin:
        changes.pop("role", None)
        changes.pop("is_active", None)
    if "email" in changes:
        changes["email"] = changes["email"].lower()

    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    for field, value in changes.items():
        setattr(user, field, value)

    # Unique username/email violations surface as 409 from the IntegrityError handler
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} updated by {current_user.id}: {', '.join(changes)}")
    return ok(user_payload(user))


@router.delete("/{user_id}")
def deactivate_user(user_id: int, current_user: User = Depends(get_current_admin), db: Session = Depends(get_db)):
    """Deactivate a user and revoke their refresh tokens."""
    if user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot deactivate your own account")

    user = get_user_or_404(db, user_id)
    user.is_active = False
    db.query(RefreshToken).filter(RefreshToken.user_id == user.id).delete()
    db.commit()
    logger.info(f"User {user.id} deactivated by admin {current_user.id}")
    return ok(message="User deactivated successfully")


@router.get("/{user_id}/tasks")
def get_user_tasks(
    user_id: int,
    paging: PageParams = Depends(page_params()),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if current_user.id != user_id and not is_staff(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to view this user's tasks")
    get_user_or_404(db, user_id)

    query = task_query(db).filter(Task.assigned_to == user_id, Task.archived_at.is_(None))
    total = query.count()
    tasks = paging.apply(query.order_by(Task.created_at.desc(), Task.id.desc())).all()
    return ok([serialize_task(t) for t in tasks], pagination=paging.meta(total))


@router.put("/{user_id}/settings")
def update_user_settings(
    user_id: int,
    settings_in: UserSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the current user's settings; email preferences merge over the existing ones."""
    if current_user.id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to update settings for this user",
        )

    changes = {k: v for k, v in settings_in.model_dump(exclude_unset=True).items() if v is not None}
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    settings = current_user.settings
    if settings is None:
        settings = UserSettings(user_id=current_user.id)
        db.add(settings)

    if "email_notifications" in changes:
        merged = dict(settings.email_notifications or default_email_notifications())
        merged.update(changes.pop("email_notifications"))
        # Reassign so the JSON column is flagged dirty
        settings.email_notifications = merged

    for field, value in changes.items():
        setattr(settings, field, value)

    db.commit()
    db.refresh(settings)
    logger.info(f"Settings updated for user {current_user.id}")
    return ok(UserSettingsOut.model_validate(settings).model_dump(mode="json"))
