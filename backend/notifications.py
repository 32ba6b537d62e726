"""
In-app notifications and their matching emails.

Notifications are added to the caller's session; the caller commits them
together with the change that triggered them.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

import mailer
from models import Notification, NotificationType, User

logger = logging.getLogger(__name__)

# Notification type -> key in UserSettings.email_notifications
EMAIL_PREFERENCES = {
    NotificationType.task_assignment.value: "task_assignment",
    NotificationType.status_update.value: "status_update",
    NotificationType.comment.value: "comments",
    NotificationType.due_date_reminder.value: "due_date_reminder",
}


def create_notification(
    db: Session,
    *,
    user_id: int,
    task_id: Optional[int],
    notification_type: str,
    title: str,
    message: Optional[str] = None,
    email_sent: bool = False,
    created_at: Optional[datetime] = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        task_id=task_id,
        notification_type=getattr(notification_type, "value", notification_type),
        title=title,
        message=message,
        is_read=False,
        email_sent=email_sent,
    )
    if created_at is not None:
        notification.created_at = created_at
    db.add(notification)
    return notification


def wants_email(user: User, preference: str) -> bool:
    """Global switch plus the user's own preference."""
    if not mailer.email_enabled():
        return False
    if user.settings is None:
        return True
    return user.settings.wants_email(preference)


def deliver_email(user: User, content: "mailer.EmailContent") -> bool:
    """
    Send an email, logging instead of raising on failure.

    Returns:
        True if the email was sent
    """
    try:
        return mailer.send_email(user.email, content.subject, content.html)
    except Exception:
        logger.exception(f"Failed to send '{content.subject}' email to {user.email}")
        return False


def notify_user(
    db: Session,
    user: User,
    *,
    task_id: Optional[int],
    notification_type: str,
    title: str,
    message: Optional[str] = None,
    email: Optional["mailer.EmailContent"] = None,
    created_at: Optional[datetime] = None,
) -> Notification:
    """
    Insert a notification for ``user`` and send the matching email.

    The email goes out only when email is enabled globally and the user has
    the preference for this notification type switched on. ``email_sent`` on
    the notification records whether it actually went out.

    Example:
        notify_user(db, assignee, task_id=task.id,
                    notification_type=NotificationType.task_assignment,
                    title="New Task Assigned",
                    message=f'You have been assigned to "{task.title}"',
                    email=mailer.task_assignment_email(task, current_user, assignee))
    """
    type_value = getattr(notification_type, "value", notification_type)
    sent = False
    if email is not None and wants_email(user, EMAIL_PREFERENCES.get(type_value, type_value)):
        sent = deliver_email(user, email)

    notification = create_notification(
        db,
        user_id=user.id,
        task_id=task_id,
        notification_type=type_value,
        title=title,
        message=message,
        email_sent=sent,
        created_at=created_at,
    )
    logger.debug(f"Notification '{type_value}' queued for user {user.id} (email_sent={sent})")
    return notification
