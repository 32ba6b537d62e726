"""
Tests for task endpoints (/api/tasks/*).

Tests cover:
- Role checks (staff-only create/archive, user-only visibility)
- Listing with filters, search and pagination
- Archiving as soft delete
- Update history, completed_date maintenance and notifications
- Comments and attachments
"""

import logging
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
import storage
from time_utils import as_utc, utc_now
from tests.conftest import make_task

logger = logging.getLogger(__name__)


# ============== Create ==============


def test_create_task_as_manager(
    client: TestClient,
    test_db: Session,
    manager_user: models.User,
    regular_user: models.User,
    category: models.Category,
    manager_auth_headers,
):
    due = (utc_now() + timedelta(days=2)).isoformat()
    response = client.post(
        "/api/tasks",
        json={
            "title": "Write report",
            "description": "Quarterly numbers",
            "priority": "high",
            "category_id": category.id,
            "tags": ["finance", "q3"],
            "assigned_to": regular_user.id,
            "due_date": due,
        },
        headers=manager_auth_headers,
    )

    assert response.status_code == 201, response.json()
    data = response.json()["data"]
    assert data["title"] == "Write report"
    assert data["priority"] == "high"
    assert data["status"] == "not_started"
    assert data["task_type"] == "utility"
    assert data["tags"] == ["finance", "q3"]
    assert data["created_by"] == manager_user.id
    assert data["assigned_to_name"] == regular_user.full_name
    assert data["category_name"] == "Work"
    assert data["created_by_name"] == manager_user.full_name

    history = test_db.query(models.TaskHistory).filter(models.TaskHistory.task_id == data["id"]).all()
    assert [h.action for h in history] == ["created"]

    notification = test_db.query(models.Notification).filter(models.Notification.user_id == regular_user.id).one()
    assert notification.notification_type == "task_assignment"
    assert notification.task_id == data["id"]
    assert notification.email_sent is False


def test_create_task_sends_assignment_email(
    client: TestClient,
    test_db: Session,
    regular_user: models.User,
    auth_headers,
    sent_emails,
):
    response = client.post(
        "/api/tasks",
        json={"title": "Email me", "assigned_to": regular_user.id},
        headers=auth_headers,
    )

    assert response.status_code == 201
    assert len(sent_emails) == 1
    assert sent_emails[0][0] == regular_user.email
    assert "Email me" in sent_emails[0][1]
    notification = test_db.query(models.Notification).one()
    assert notification.email_sent is True


def test_create_task_respects_email_preference(
    client: TestClient,
    test_db: Session,
    regular_user: models.User,
    auth_headers,
    sent_emails,
):
    regular_user.settings.email_notifications = {**regular_user.settings.email_notifications, "task_assignment": False}
    test_db.commit()

    response = client.post(
        "/api/tasks",
        json={"title": "Quiet task", "assigned_to": regular_user.id},
        headers=auth_headers,
    )

    assert response.status_code == 201
    assert sent_emails == []
    assert test_db.query(models.Notification).count() == 1


def test_create_task_self_assigned_does_not_notify(
    client: TestClient, test_db: Session, admin_user: models.User, auth_headers
):
    response = client.post(
        "/api/tasks",
        json={"title": "Mine", "assigned_to": admin_user.id},
        headers=auth_headers,
    )

    assert response.status_code == 201
    assert test_db.query(models.Notification).count() == 0


def test_create_task_forbidden_for_user_role(client: TestClient, user_auth_headers):
    response = client.post("/api/tasks", json={"title": "Nope"}, headers=user_auth_headers)

    assert response.status_code == 403
    assert response.json()["error"] == "User role 'user' is not authorized to access this route"


def test_create_task_validation(client: TestClient, auth_headers):
    missing_title = client.post("/api/tasks", json={"description": "no title"}, headers=auth_headers)
    blank_title = client.post("/api/tasks", json={"title": "   "}, headers=auth_headers)
    bad_priority = client.post("/api/tasks", json={"title": "x", "priority": "critical"}, headers=auth_headers)
    bad_recurrence = client.post(
        "/api/tasks",
        json={"title": "x", "is_recurring": True, "recurrence_pattern": {"frequency": "hourly"}},
        headers=auth_headers,
    )

    for response in (missing_title, blank_title, bad_priority, bad_recurrence):
        assert response.status_code == 400
        assert response.json()["error"] == "Validation Error"


def test_create_task_unknown_category_or_assignee(client: TestClient, auth_headers):
    bad_category = client.post("/api/tasks", json={"title": "x", "category_id": 999}, headers=auth_headers)
    bad_assignee = client.post("/api/tasks", json={"title": "x", "assigned_to": 999}, headers=auth_headers)

    assert bad_category.status_code == 400
    assert bad_category.json()["error"] == "Category not found"
    assert bad_assignee.status_code == 400
    assert bad_assignee.json()["error"] == "Assigned user not found"


def test_create_completed_task_sets_completed_date(client: TestClient, auth_headers):
    response = client.post("/api/tasks", json={"title": "Done already", "status": "completed"}, headers=auth_headers)

    assert response.status_code == 201
    assert response.json()["data"]["completed_date"] is not None


# ============== List / Get ==============


def test_list_tasks_paginates_newest_first(client: TestClient, test_db: Session, admin_user: models.User, auth_headers):
    for i in range(12):
        make_task(test_db, admin_user, title=f"Task {i}")

    response = client.get("/api/tasks?page=2&limit=5", headers=auth_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["pagination"] == {"page": 2, "limit": 5, "total": 12, "pages": 3}
    assert [t["title"] for t in body["data"]] == ["Task 6", "Task 5", "Task 4", "Task 3", "Task 2"]


def test_list_tasks_limit_is_capped(client: TestClient, auth_headers):
    response = client.get("/api/tasks?limit=500", headers=auth_headers)

    assert response.status_code == 400


def test_list_tasks_filters(
    client: TestClient,
    test_db: Session,
    admin_user: models.User,
    regular_user: models.User,
    category: models.Category,
    auth_headers,
):
    make_task(test_db, admin_user, title="Fix login bug", priority=models.TaskPriority.urgent,
              status=models.TaskStatus.in_progress, category_id=category.id)
    make_task(test_db, admin_user, title="Plan sprint", description="Login flow review",
              assigned_to=regular_user.id, task_type=models.TaskType.reminder)
    make_task(test_db, admin_user, title="Order snacks", priority=models.TaskPriority.low)

    def titles(query: str):
        response = client.get(f"/api/tasks?{query}", headers=auth_headers)
        assert response.status_code == 200, response.json()
        return sorted(t["title"] for t in response.json()["data"])

    assert titles("status=in_progress") == ["Fix login bug"]
    assert titles("priority=low") == ["Order snacks"]
    assert titles(f"category_id={category.id}") == ["Fix login bug"]
    assert titles(f"assigned_to={regular_user.id}") == ["Plan sprint"]
    assert titles("task_type=reminder") == ["Plan sprint"]
    assert titles("search=LOGIN") == ["Fix login bug", "Plan sprint"]


def test_user_role_only_lists_assigned_tasks(
    client: TestClient,
    test_db: Session,
    admin_user: models.User,
    regular_user: models.User,
    another_user: models.User,
    user_auth_headers,
):
    make_task(test_db, admin_user, title="For regular", assigned_to=regular_user.id)
    make_task(test_db, admin_user, title="For another", assigned_to=another_user.id)
    make_task(test_db, admin_user, title="Unassigned")

    response = client.get(f"/api/tasks?assigned_to={another_user.id}", headers=user_auth_headers)

    assert response.status_code == 200
    assert [t["title"] for t in response.json()["data"]] == ["For regular"]


def test_get_task_hidden_from_other_users(
    client: TestClient,
    task: models.Task,
    user_auth_headers,
    another_user_auth_headers,
    manager_auth_headers,
):
    assert client.get(f"/api/tasks/{task.id}", headers=user_auth_headers).status_code == 200
    assert client.get(f"/api/tasks/{task.id}", headers=manager_auth_headers).status_code == 200

    response = client.get(f"/api/tasks/{task.id}", headers=another_user_auth_headers)
    assert response.status_code == 404
    assert response.json()["error"] == "Task not found"


def test_get_missing_task(client: TestClient, auth_headers):
    assert client.get("/api/tasks/999", headers=auth_headers).status_code == 404


# ============== Archive ==============


def test_archive_task_excludes_it_from_lists(
    client: TestClient, test_db: Session, task: models.Task, auth_headers, user_auth_headers
):
    response = client.delete(f"/api/tasks/{task.id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["message"] == "Task archived successfully"

    test_db.refresh(task)
    assert task.archived_at is not None
    assert test_db.query(models.Task).count() == 1

    listed = client.get("/api/tasks", headers=auth_headers).json()
    assert listed["pagination"]["total"] == 0
    assert client.get("/api/tasks", headers=user_auth_headers).json()["data"] == []

    archived = client.get("/api/tasks?archived=true", headers=auth_headers).json()
    assert [t["id"] for t in archived["data"]] == [task.id]

    actions = [h.action for h in test_db.query(models.TaskHistory).filter(models.TaskHistory.task_id == task.id)]
    assert "archived" in actions
    logger.info("✓ Archived task hidden from default lists")


def test_archived_listing_forbidden_for_user_role(client: TestClient, user_auth_headers):
    assert client.get("/api/tasks?archived=true", headers=user_auth_headers).status_code == 403


def test_archive_requires_staff(client: TestClient, task: models.Task, user_auth_headers):
    assert client.delete(f"/api/tasks/{task.id}", headers=user_auth_headers).status_code == 403


# ============== Update ==============


def test_update_records_history_per_field(client: TestClient, test_db: Session, task: models.Task, auth_headers):
    response = client.put(
        f"/api/tasks/{task.id}",
        json={"title": "Renamed", "priority": "urgent", "description": None},
        headers=auth_headers,
    )

    assert response.status_code == 200, response.json()
    assert response.json()["data"]["title"] == "Renamed"
    history = (
        test_db.query(models.TaskHistory)
        .filter(models.TaskHistory.task_id == task.id, models.TaskHistory.action == "updated")
        .all()
    )
    changes = {h.field_changed: (h.old_value, h.new_value) for h in history}
    # description was already NULL, so it is not a change
    assert changes == {
        "title": ("Assigned Task", "Renamed"),
        "priority": ("medium", "urgent"),
    }


def test_update_with_no_fields(client: TestClient, task: models.Task, auth_headers):
    response = client.put(f"/api/tasks/{task.id}", json={}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "No fields to update"


def test_status_change_notifies_assignee_and_tracks_completion(
    client: TestClient,
    test_db: Session,
    task: models.Task,
    regular_user: models.User,
    auth_headers,
    sent_emails,
):
    completed = client.put(f"/api/tasks/{task.id}", json={"status": "completed"}, headers=auth_headers)
    assert completed.status_code == 200
    assert completed.json()["data"]["completed_date"] is not None

    notification = test_db.query(models.Notification).filter(
        models.Notification.notification_type == "status_update"
    ).one()
    assert notification.user_id == regular_user.id
    assert notification.message == "Status changed to completed"
    assert [subject for _, subject, _ in sent_emails] == [f"Task Status Updated: {task.title}"]

    reopened = client.put(f"/api/tasks/{task.id}", json={"status": "in_progress"}, headers=auth_headers)
    assert reopened.status_code == 200
    assert reopened.json()["data"]["completed_date"] is None


def test_user_can_update_status_but_not_reassign(
    client: TestClient,
    task: models.Task,
    another_user: models.User,
    user_auth_headers,
):
    status_change = client.put(f"/api/tasks/{task.id}", json={"status": "in_progress"}, headers=user_auth_headers)
    assert status_change.status_code == 200

    reassign = client.put(f"/api/tasks/{task.id}", json={"assigned_to": another_user.id}, headers=user_auth_headers)
    assert reassign.status_code == 403
    assert reassign.json()["error"] == "Only admins and managers can reassign tasks"


def test_reassignment_notifies_new_assignee(
    client: TestClient,
    test_db: Session,
    task: models.Task,
    another_user: models.User,
    manager_auth_headers,
):
    response = client.put(f"/api/tasks/{task.id}", json={"assigned_to": another_user.id}, headers=manager_auth_headers)

    assert response.status_code == 200
    assert response.json()["data"]["assigned_to"] == another_user.id
    notification = test_db.query(models.Notification).filter(models.Notification.user_id == another_user.id).one()
    assert notification.notification_type == "task_assignment"


def test_update_hidden_task_is_404(client: TestClient, task: models.Task, another_user_auth_headers):
    response = client.put(f"/api/tasks/{task.id}", json={"status": "completed"}, headers=another_user_auth_headers)

    assert response.status_code == 404


def test_resaving_task_with_deactivated_assignee(
    client: TestClient,
    test_db: Session,
    task: models.Task,
    regular_user: models.User,
    another_user: models.User,
    auth_headers,
):
    current = client.get(f"/api/tasks/{task.id}", headers=auth_headers).json()["data"]
    regular_user.is_active = False
    another_user.is_active = False
    test_db.commit()

    payload = {
        "title": "Assigned Task (edited)",
        "assigned_to": current["assigned_to"],
        "category_id": current["category_id"],
        "priority": current["priority"],
    }
    response = client.put(f"/api/tasks/{task.id}", json=payload, headers=auth_headers)

    assert response.status_code == 200, response.json()
    assert response.json()["data"]["title"] == "Assigned Task (edited)"
    assert response.json()["data"]["assigned_to"] == regular_user.id

    reassign = client.put(f"/api/tasks/{task.id}", json={"assigned_to": another_user.id}, headers=auth_headers)
    assert reassign.status_code == 400
    assert reassign.json()["error"] == "Assigned user not found"


def test_recurring_task_requires_pattern(client: TestClient, auth_headers):
    response = client.post("/api/tasks", json={"title": "Weekly report", "is_recurring": True}, headers=auth_headers)

    assert response.status_code == 400
    assert response.json()["error"] == "Validation Error"

    response = client.post(
        "/api/tasks",
        json={"title": "Weekly report", "is_recurring": True, "recurrence_pattern": {"frequency": "weekly"}},
        headers=auth_headers,
    )
    assert response.status_code == 201
    assert response.json()["data"]["recurrence_pattern"] == {"frequency": "weekly", "interval": 1}


def test_update_to_recurring_requires_pattern(client: TestClient, task: models.Task, auth_headers):
    missing = client.put(f"/api/tasks/{task.id}", json={"is_recurring": True}, headers=auth_headers)
    explicit_null = client.put(
        f"/api/tasks/{task.id}",
        json={"is_recurring": True, "recurrence_pattern": None},
        headers=auth_headers,
    )

    assert missing.status_code == 400
    assert missing.json()["error"] == "Recurring tasks require a recurrence pattern"
    assert explicit_null.status_code == 400

    response = client.put(
        f"/api/tasks/{task.id}",
        json={"is_recurring": True, "recurrence_pattern": {"frequency": "daily", "interval": 2}},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["data"]["is_recurring"] is True


def test_history_is_newest_first_with_user_name(client: TestClient, task: models.Task, admin_user, auth_headers):
    client.put(f"/api/tasks/{task.id}", json={"priority": "high"}, headers=auth_headers)
    client.put(f"/api/tasks/{task.id}", json={"priority": "low"}, headers=auth_headers)

    response = client.get(f"/api/tasks/{task.id}/history", headers=auth_headers)

    assert response.status_code == 200
    entries = response.json()["data"]
    assert [e["new_value"] for e in entries] == ["low", "high"]
    assert entries[0]["user_name"] == admin_user.full_name


# ============== Comments ==============


def test_comment_notifies_assignee(
    client: TestClient,
    test_db: Session,
    task: models.Task,
    admin_user: models.User,
    regular_user: models.User,
    auth_headers,
):
    response = client.post(f"/api/tasks/{task.id}/comments", json={"content": "Any update?"}, headers=auth_headers)

    assert response.status_code == 201, response.json()
    data = response.json()["data"]
    assert data["content"] == "Any update?"
    assert data["user_name"] == admin_user.full_name

    notification = test_db.query(models.Notification).one()
    assert notification.user_id == regular_user.id
    assert notification.notification_type == "comment"


def test_assignee_comment_does_not_notify_self(client: TestClient, test_db: Session, task: models.Task, user_auth_headers):
    response = client.post(f"/api/tasks/{task.id}/comments", json={"content": "On it"}, headers=user_auth_headers)

    assert response.status_code == 201
    assert test_db.query(models.Notification).count() == 0


def test_threaded_comments_in_order(client: TestClient, test_db: Session, task: models.Task, admin_user, auth_headers):
    parent = client.post(f"/api/tasks/{task.id}/comments", json={"content": "First"}, headers=auth_headers).json()["data"]
    reply = client.post(
        f"/api/tasks/{task.id}/comments",
        json={"content": "Reply", "parent_comment_id": parent["id"]},
        headers=auth_headers,
    )
    assert reply.status_code == 201

    other_task = make_task(test_db, admin_user, title="Other")
    cross = client.post(
        f"/api/tasks/{other_task.id}/comments",
        json={"content": "Wrong thread", "parent_comment_id": parent["id"]},
        headers=auth_headers,
    )
    assert cross.status_code == 400

    listed = client.get(f"/api/tasks/{task.id}/comments", headers=auth_headers).json()["data"]
    assert [c["content"] for c in listed] == ["First", "Reply"]
    assert listed[1]["parent_comment_id"] == parent["id"]


def test_empty_comment_rejected(client: TestClient, task: models.Task, auth_headers):
    response = client.post(f"/api/tasks/{task.id}/comments", json={"content": "  "}, headers=auth_headers)

    assert response.status_code == 400


# ============== Attachments ==============


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "UPLOAD_DIR", tmp_path)
    return tmp_path


def test_upload_list_and_delete_attachment(client: TestClient, task: models.Task, auth_headers, upload_dir):
    response = client.post(
        f"/api/tasks/{task.id}/attachments",
        files={"file": ("notes.txt", b"hello world", "text/plain")},
        headers=auth_headers,
    )

    assert response.status_code == 201, response.json()
    attachment = response.json()["data"]
    assert attachment["file_name"] == "notes.txt"
    assert attachment["file_size"] == 11
    assert attachment["file_type"] == "text/plain"
    assert attachment["file_url"].startswith(f"/uploads/{task.id}/")
    stored = storage.path_for_url(attachment["file_url"])
    assert stored.read_bytes() == b"hello world"

    listed = client.get(f"/api/tasks/{task.id}/attachments", headers=auth_headers).json()["data"]
    assert [a["id"] for a in listed] == [attachment["id"]]

    deleted = client.delete(f"/api/tasks/{task.id}/attachments/{attachment['id']}", headers=auth_headers)
    assert deleted.status_code == 200
    assert not stored.exists()


def test_upload_rejects_disallowed_extension(client: TestClient, task: models.Task, auth_headers, upload_dir):
    response = client.post(
        f"/api/tasks/{task.id}/attachments",
        files={"file": ("script.exe", b"MZ", "application/octet-stream")},
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert list(upload_dir.iterdir()) == []


def test_upload_too_large(client: TestClient, task: models.Task, auth_headers, upload_dir, monkeypatch):
    monkeypatch.setattr(storage, "MAX_FILE_SIZE", 10)

    response = client.post(
        f"/api/tasks/{task.id}/attachments",
        files={"file": ("big.txt", b"x" * 11, "text/plain")},
        headers=auth_headers,
    )

    assert response.status_code == 413
    assert list((upload_dir / str(task.id)).iterdir()) == []


def test_delete_attachment_from_other_task(
    client: TestClient, test_db: Session, task: models.Task, admin_user, auth_headers, upload_dir
):
    other_task = make_task(test_db, admin_user, title="Other")
    attachment = client.post(
        f"/api/tasks/{task.id}/attachments",
        files={"file": ("a.md", b"# hi", "text/markdown")},
        headers=auth_headers,
    ).json()["data"]

    response = client.delete(f"/api/tasks/{other_task.id}/attachments/{attachment['id']}", headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["error"] == "Attachment not found"


def test_due_date_round_trips_as_utc(client: TestClient, auth_headers):
    response = client.post(
        "/api/tasks",
        json={"title": "Offset", "due_date": "2030-01-01T12:00:00+02:00"},
        headers=auth_headers,
    )

    assert response.status_code == 201
    returned = datetime.fromisoformat(response.json()["data"]["due_date"])
    assert as_utc(returned).hour == 10
