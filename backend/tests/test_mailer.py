"""
Tests for email templates and the send switch.
"""

from datetime import datetime, timezone
from types import SimpleNamespace

import mailer
import notifications


def make_task_stub(**fields):
    values = {
        "id": 7,
        "title": "Ship <release>",
        "description": None,
        "priority": "high",
        "status": "in_progress",
        "due_date": datetime(2024, 3, 15, 18, 0, tzinfo=timezone.utc),
    }
    values.update(fields)
    return SimpleNamespace(**values)


def test_send_email_disabled_returns_false(monkeypatch):
    monkeypatch.setenv("ENABLE_EMAIL_NOTIFICATIONS", "false")

    assert mailer.send_email("someone@example.com", "Hi", "<p>Hi</p>") is False


def test_send_email_unconfigured_returns_false(monkeypatch):
    monkeypatch.setenv("ENABLE_EMAIL_NOTIFICATIONS", "true")
    monkeypatch.delenv("EMAIL_HOST", raising=False)
    monkeypatch.delenv("EMAIL_FROM", raising=False)

    assert mailer.send_email("someone@example.com", "Hi", "<p>Hi</p>") is False


def test_assignment_email_escapes_user_content(monkeypatch):
    monkeypatch.setenv("FRONTEND_URL", "https://tasks.example.com/")
    task = make_task_stub()
    assignee = SimpleNamespace(full_name="Ada <script>")
    assigned_by = SimpleNamespace(full_name="Boss")

    content = mailer.task_assignment_email(task, assigned_by, assignee)

    assert content.subject == "New Task Assigned: Ship <release>"
    assert "Ship &lt;release&gt;" in content.html
    assert "<script>" not in content.html
    assert "https://tasks.example.com/tasks/7" in content.html


def test_digest_email_lists_tasks():
    summary = SimpleNamespace(due_today=1, completed=2, overdue=0, in_progress=3, tasks=[make_task_stub()])
    user = SimpleNamespace(full_name="Ada")

    content = mailer.daily_digest_email(user, summary, datetime(2024, 3, 15, tzinfo=timezone.utc))

    assert content.subject == "Your Daily Task Summary - 2024-03-15"
    assert "Your Tasks:" in content.html
    assert "2024-03-15 18:00 UTC" in content.html


def test_deliver_email_swallows_smtp_errors(monkeypatch):
    def failing_send(to, subject, html_body, text=None):
        raise OSError("connection refused")

    monkeypatch.setattr(mailer, "send_email", failing_send)
    user = SimpleNamespace(email="ada@example.com")

    assert notifications.deliver_email(user, mailer.EmailContent(subject="Hi", html="<p>Hi</p>")) is False
