"""
Templated HTML email sending over SMTP.

Email is opt-in: nothing is sent unless ENABLE_EMAIL_NOTIFICATIONS is "true"
and EMAIL_HOST / EMAIL_FROM are configured. Settings are read at send time so
they can be changed without re-importing the module.
"""

import html
import logging
import os
import smtplib
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Iterable, Optional

from time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

PRIORITY_COLORS = {
    "low": "#40C057",
    "medium": "#FAB005",
    "high": "#FD7E14",
    "urgent": "#FA5252",
}


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str


def email_enabled() -> bool:
    return os.getenv("ENABLE_EMAIL_NOTIFICATIONS", "false").strip().lower() == "true"


def frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def send_email(to: str, subject: str, html_body: str, text: Optional[str] = None) -> bool:
    """
    Send an HTML email.

    Returns:
        True if the message was handed to the SMTP server, False if email is
        disabled or not configured

    Raises:
        smtplib.SMTPException / OSError: if the SMTP exchange fails
    """
    if not email_enabled():
        logger.debug(f"Email disabled, not sending '{subject}' to {to}")
        return False

    host = os.getenv("EMAIL_HOST", "").strip()
    from_addr = os.getenv("EMAIL_FROM", "").strip()
    if not host or not from_addr:
        logger.warning("⚠️  Email enabled but EMAIL_HOST/EMAIL_FROM not configured; skipping send")
        return False

    port = int(os.getenv("EMAIL_PORT", "587"))
    username = os.getenv("EMAIL_USER", "").strip()
    password = os.getenv("EMAIL_PASSWORD", "").strip()
    starttls = os.getenv("EMAIL_STARTTLS", "true").strip().lower() == "true"

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = from_addr
    message["To"] = to
    message.set_content(text or "This message requires an HTML capable email client.")
    message.add_alternative(html_body, subtype="html")

    with smtplib.SMTP(host=host, port=port, timeout=15) as smtp:
        smtp.ehlo()
        if starttls:
            smtp.starttls()
            smtp.ehlo()
        if username and password:
            smtp.login(username, password)
        smtp.send_message(message)

    logger.info(f"Email sent to {to}: {subject}")
    return True


# ============== Templates ==============

def _e(value) -> str:
    return html.escape("" if value is None else str(value))


def _value(value) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _label(value) -> str:
    return _value(value).replace("_", " ").upper()


def _format_date(value: Optional[datetime], with_time: bool = False) -> str:
    if value is None:
        return "Not set"
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M UTC") if with_time else value.strftime("%Y-%m-%d")


def _button(href: str, label: str) -> str:
    return (
        f'<p><a href="{_e(href)}" style="background-color: #228BE6; color: white; '
        f'padding: 12px 24px; text-decoration: none; border-radius: 4px; display: inline-block;">'
        f"{_e(label)}</a></p>"
    )


def _layout(body: str) -> str:
    return f'<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">{body}</div>'


def _priority(task) -> str:
    priority = _value(task.priority)
    color = PRIORITY_COLORS.get(priority, "#228BE6")
    return f'<span style="color: {color};">{_e(priority.upper())}</span>'


def task_assignment_email(task, assigned_by, assignee) -> EmailContent:
    description = f"<p><strong>Description:</strong></p><div>{_e(task.description)}</div>" if task.description else ""
    assigner = assigned_by.full_name if assigned_by else "TaskFlow"
    body = f"""
        <h2 style="color: #228BE6;">New Task Assigned</h2>
        <p>Hi {_e(assignee.full_name)},</p>
        <p>You have been assigned a new task by <strong>{_e(assigner)}</strong>:</p>
        <div style="background-color: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
          <h3 style="margin-top: 0;">{_e(task.title)}</h3>
          <p><strong>Priority:</strong> {_priority(task)}</p>
          <p><strong>Due Date:</strong> {_format_date(task.due_date)}</p>
          {description}
        </div>
        {_button(f"{frontend_url()}/tasks/{task.id}", "View Task")}
        <hr style="margin: 30px 0; border: none; border-top: 1px solid #e0e0e0;">
        <p style="color: #666; font-size: 12px;">You can manage your notification preferences in settings.</p>
    """
    return EmailContent(subject=f"New Task Assigned: {task.title}", html=_layout(body))


def due_date_reminder_email(task, user) -> EmailContent:
    body = f"""
        <h2 style="color: #FAB005;">Task Due Date Reminder</h2>
        <p>Hi {_e(user.full_name)},</p>
        <p>This is a friendly reminder that your task is due soon:</p>
        <div style="background-color: #fff9db; padding: 20px; border-radius: 8px; margin: 20px 0; border-left: 4px solid #FAB005;">
          <h3 style="margin-top: 0;">{_e(task.title)}</h3>
          <p><strong>Due Date:</strong> {_format_date(task.due_date, with_time=True)}</p>
          <p><strong>Priority:</strong> {_priority(task)}</p>
          <p><strong>Status:</strong> {_e(_label(task.status))}</p>
        </div>
        {_button(f"{frontend_url()}/tasks/{task.id}", "View Task")}
        <p>Don't forget to update the status when completed!</p>
    """
    return EmailContent(subject=f'Reminder: Task "{task.title}" is due soon', html=_layout(body))


def status_update_email(task, user, old_status, new_status, changed_by) -> EmailContent:
    body = f"""
        <h2 style="color: #40C057;">Task Status Updated</h2>
        <p>Hi {_e(user.full_name)},</p>
        <p>The status of your task has been updated by <strong>{_e(changed_by.full_name)}</strong>:</p>
        <div style="background-color: #f5f5f5; padding: 20px; border-radius: 8px; margin: 20px 0;">
          <h3 style="margin-top: 0;">{_e(task.title)}</h3>
          <p>Status changed from <strong>{_e(_label(old_status))}</strong>
             to <strong style="color: #40C057;">{_e(_label(new_status))}</strong></p>
        </div>
        {_button(f"{frontend_url()}/tasks/{task.id}", "View Task")}
    """
    return EmailContent(subject=f"Task Status Updated: {task.title}", html=_layout(body))


def new_comment_email(task, comment, user, comment_author) -> EmailContent:
    body = f"""
        <h2 style="color: #228BE6;">New Comment</h2>
        <p>Hi {_e(user.full_name)},</p>
        <p><strong>{_e(comment_author.full_name)}</strong> commented on your task:</p>
        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 8px; margin: 20px 0;">
          <h3 style="margin-top: 0;">{_e(task.title)}</h3>
        </div>
        <div style="background-color: #fff; padding: 15px; border-radius: 8px; margin: 20px 0; border-left: 3px solid #228BE6;">
          {_e(comment.content)}
        </div>
        {_button(f"{frontend_url()}/tasks/{task.id}", "View Task & Reply")}
    """
    return EmailContent(subject=f"New comment on: {task.title}", html=_layout(body))


def daily_digest_email(user, summary, today: Optional[datetime] = None) -> EmailContent:
    """Render the daily summary; ``summary`` is a scheduler.DigestSummary."""
    today = today or utc_now()
    tiles = [
        ("#e7f5ff", "#228BE6", summary.due_today, "Due Today"),
        ("#d3f9d8", "#40C057", summary.completed, "Completed"),
        ("#ffe3e3", "#FA5252", summary.overdue, "Overdue"),
        ("#fff3bf", "#FAB005", summary.in_progress, "In Progress"),
    ]
    tile_html = "".join(
        f'<div style="background-color: {bg}; padding: 15px; border-radius: 8px; text-align: center;">'
        f'<h3 style="margin: 0; color: {fg};">{count}</h3><p style="margin: 5px 0 0 0;">{label}</p></div>'
        for bg, fg, count, label in tiles
    )
    task_list = _digest_task_list(summary.tasks)
    body = f"""
        <h2 style="color: #228BE6;">Daily Task Summary</h2>
        <p>Hi {_e(user.full_name)},</p>
        <p>Here's your task summary for today:</p>
        <div style="display: grid; grid-template-columns: repeat(2, 1fr); gap: 15px; margin: 20px 0;">{tile_html}</div>
        {task_list}
        {_button(f"{frontend_url()}/dashboard", "View Dashboard")}
        <p>Have a productive day!</p>
    """
    return EmailContent(subject=f"Your Daily Task Summary - {_format_date(today)}", html=_layout(body))


def _digest_task_list(tasks: Iterable) -> str:
    items = "".join(
        f'<li style="background-color: #f8f9fa; padding: 10px; margin: 10px 0; border-radius: 4px;">'
        f"<strong>{_e(task.title)}</strong><br>"
        f"<small>Due: {_format_date(task.due_date, with_time=True)} | Priority: {_e(_value(task.priority))}</small></li>"
        for task in tasks
    )
    if not items:
        return ""
    return f'<h3>Your Tasks:</h3><ul style="list-style: none; padding: 0;">{items}</ul>'


def password_reset_email(user, token: str, expires_minutes: int) -> EmailContent:
    body = f"""
        <h2 style="color: #228BE6;">Reset Your Password</h2>
        <p>Hi {_e(user.full_name)},</p>
        <p>We received a request to reset your password. The link below is valid for {expires_minutes} minutes.</p>
        {_button(f"{frontend_url()}/reset-password?token={token}", "Reset Password")}
        <p style="color: #666; font-size: 12px;">If you didn't request this, you can ignore this email.</p>
    """
    return EmailContent(subject="Password reset request", html=_layout(body))
