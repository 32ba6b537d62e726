"""
Task endpoints: CRUD, history, comments and attachments.

Admins and managers see every task. Users with the ``user`` role only see
tasks assigned to them (or created by them, for direct lookups).
"""

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

import mailer
import notifications
import storage
from auth.dependencies import get_current_staff, get_current_user, is_staff
from database import get_db
from models import (
    Attachment,
    Category,
    Comment,
    HistoryAction,
    NotificationType,
    Task,
    TaskHistory,
    TaskPriority,
    TaskStatus,
    TaskType,
    User,
)
from responses import PageParams, ok, page_params
from schemas import RECURRENCE_REQUIRED, CommentCreate, TaskCreate, TaskUpdate
from time_utils import as_utc, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])


# ============== Helpers ==============

def _enum_value(value):
    return value.value if hasattr(value, "value") else value


def serialize_task(task: Task) -> dict:
    """Task columns plus the joined assignee, category and creator fields."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "task_type": _enum_value(task.task_type),
        "priority": _enum_value(task.priority),
        "status": _enum_value(task.status),
        "category_id": task.category_id,
        "tags": task.tags or [],
        "created_by": task.created_by,
        "assigned_to": task.assigned_to,
        "due_date": as_utc(task.due_date),
        "start_date": as_utc(task.start_date),
        "completed_date": as_utc(task.completed_date),
        "is_recurring": task.is_recurring,
        "recurrence_pattern": task.recurrence_pattern,
        "archived_at": as_utc(task.archived_at),
        "created_at": as_utc(task.created_at),
        "updated_at": as_utc(task.updated_at),
        "assigned_to_name": task.assignee.full_name if task.assignee else None,
        "assigned_to_email": task.assignee.email if task.assignee else None,
        "category_name": task.category.name if task.category else None,
        "category_color": task.category.color if task.category else None,
        "created_by_name": task.creator.full_name if task.creator else None,
    }


def task_query(db: Session):
    return db.query(Task).options(
        joinedload(Task.assignee),
        joinedload(Task.category),
        joinedload(Task.creator),
    )


def get_visible_task(db: Session, task_id: int, current_user: User) -> Task:
    """
    Load a task the current user may see.

    Raises:
        HTTPException: 404 if the task does not exist or is not visible
    """
    query = task_query(db).filter(Task.id == task_id)
    if not is_staff(current_user):
        query = query.filter(or_(Task.assigned_to == current_user.id, Task.created_by == current_user.id))
    task = query.first()
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task


def record_history(
    db: Session,
    task_id: int,
    user_id: Optional[int],
    action: HistoryAction,
    field_changed: Optional[str] = None,
    old_value=None,
    new_value=None,
) -> TaskHistory:
    entry = TaskHistory(
        task_id=task_id,
        user_id=user_id,
        action=_enum_value(action),
        field_changed=field_changed,
        old_value=history_value(old_value),
        new_value=history_value(new_value),
    )
    db.add(entry)
    return entry


def history_value(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return str(_enum_value(value))


def _validate_category(db: Session, category_id: Optional[int]) -> None:
    if category_id is not None and db.get(Category, category_id) is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Category not found")


def _validate_assignee(db: Session, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    assignee = db.get(User, user_id)
    if assignee is None or not assignee.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Assigned user not found")
    return assignee


def _notify_assignment(db: Session, task: Task, assignee: User, assigned_by: User) -> None:
    notifications.notify_user(
        db,
        assignee,
        task_id=task.id,
        notification_type=NotificationType.task_assignment,
        title=f"New Task: {task.title}",
        message=f"You have been assigned a task by {assigned_by.full_name}",
        email=mailer.task_assignment_email(task, assigned_by, assignee),
    )


# ============== Tasks ==============

@router.get("")
def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    priority: Optional[TaskPriority] = None,
    category_id: Optional[int] = None,
    assigned_to: Optional[int] = None,
    task_type: Optional[TaskType] = None,
    search: Optional[str] = None,
    archived: bool = False,
    paging: PageParams = Depends(page_params()),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    List tasks, newest first.

    Archived tasks are excluded unless ``archived=true`` (admins and
    managers only), which returns only archived tasks.
    """
    logger.debug(f"Listing tasks for user {current_user.id} (page={paging.page}, limit={paging.limit})")
    query = task_query(db)

    if archived:
        if not is_staff(current_user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized to view archived tasks")
        query = query.filter(Task.archived_at.isnot(None))
    else:
        query = query.filter(Task.archived_at.is_(None))

    if status_filter:
        query = query.filter(Task.status == status_filter)
    if priority:
        query = query.filter(Task.priority == priority)
    if category_id is not None:
        query = query.filter(Task.category_id == category_id)
    if task_type:
        query = query.filter(Task.task_type == task_type)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    if not is_staff(current_user):
        query = query.filter(Task.assigned_to == current_user.id)
    elif assigned_to is not None:
        query = query.filter(Task.assigned_to == assigned_to)

    total = query.count()
    tasks = paging.apply(query.order_by(Task.created_at.desc(), Task.id.desc())).all()
    return ok([serialize_task(t) for t in tasks], pagination=paging.meta(total))


@router.get("/{task_id}")
def get_task(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ok(serialize_task(get_visible_task(db, task_id, current_user)))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_task(
    task_in: TaskCreate,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    """
    Create a task.

    When assigned to someone other than the creator, the assignee gets a
    ``task_assignment`` notification and email.
    """
    _validate_category(db, task_in.category_id)
    assignee = _validate_assignee(db, task_in.assigned_to)

    now = utc_now()
    task = Task(
        title=task_in.title,
        description=task_in.description,
        task_type=task_in.task_type,
        priority=task_in.priority,
        status=task_in.status,
        category_id=task_in.category_id,
        tags=task_in.tags,
        created_by=current_user.id,
        assigned_to=task_in.assigned_to,
        due_date=as_utc(task_in.due_date),
        start_date=as_utc(task_in.start_date),
        completed_date=now if task_in.status == TaskStatus.completed else None,
        is_recurring=task_in.is_recurring,
        recurrence_pattern=task_in.recurrence_pattern.model_dump() if task_in.recurrence_pattern else None,
    )
    db.add(task)
    db.flush()
    record_history(db, task.id, current_user.id, HistoryAction.created)

    if assignee is not None and assignee.id != current_user.id:
        _notify_assignment(db, task, assignee, current_user)

    db.commit()
    logger.info(f"Task created: {task.id} '{task.title}' by user {current_user.id}")
    return ok(serialize_task(get_visible_task(db, task.id, current_user)))


@router.put("/{task_id}")
def update_task(
    task_id: int,
    task_in: TaskUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Partially update a task, recording one history row per changed field.

    Raises:
        HTTPException: 400 if no fields are given, 403 if a ``user`` tries to
            reassign the task, 404 if the task is not visible
    """
    task = get_visible_task(db, task_id, current_user)
    changes = task_in.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    if "title" in changes and changes["title"] is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title cannot be empty")
    for field in ("task_type", "priority", "status", "is_recurring"):
        if field in changes and changes[field] is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} cannot be null")

    is_recurring = changes.get("is_recurring", task.is_recurring)
    pattern = changes["recurrence_pattern"] if "recurrence_pattern" in changes else task.recurrence_pattern
    if is_recurring and not pattern:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=RECURRENCE_REQUIRED)

    # Unchanged references are not re-validated
    new_assignee = None
    if "assigned_to" in changes and changes["assigned_to"] != task.assigned_to:
        if not is_staff(current_user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only admins and managers can reassign tasks",
            )
        new_assignee = _validate_assignee(db, changes["assigned_to"])
    if "category_id" in changes and changes["category_id"] != task.category_id:
        _validate_category(db, changes["category_id"])

    for field in ("due_date", "start_date"):
        if field in changes:
            changes[field] = as_utc(changes[field])

    old_status = task.status
    old_assignee_id = task.assigned_to
    changed_fields = []
    for field, new_value in changes.items():
        old_value = getattr(task, field)
        if field in ("due_date", "start_date"):
            old_value = as_utc(old_value)
        if old_value == new_value:
            continue
        setattr(task, field, new_value)
        record_history(db, task.id, current_user.id, HistoryAction.updated, field, old_value, new_value)
        changed_fields.append(field)

    if "status" in changed_fields:
        if task.status == TaskStatus.completed:
            task.completed_date = utc_now()
        elif old_status == TaskStatus.completed:
            task.completed_date = None

    if "status" in changed_fields and task.assigned_to:
        assignee = db.get(User, task.assigned_to)
        notifications.notify_user(
            db,
            assignee,
            task_id=task.id,
            notification_type=NotificationType.status_update,
            title="Task Status Updated",
            message=f"Status changed to {_enum_value(task.status)}",
            email=mailer.status_update_email(task, assignee, old_status, task.status, current_user),
        )

    if "assigned_to" in changed_fields and new_assignee is not None and new_assignee.id != current_user.id:
        _notify_assignment(db, task, new_assignee, current_user)

    db.commit()
    logger.info(
        f"Task {task.id} updated by user {current_user.id}: {', '.join(changed_fields) or 'no changes'}"
        + (f" (reassigned from {old_assignee_id})" if "assigned_to" in changed_fields else "")
    )
    db.refresh(task)
    return ok(serialize_task(task))


@router.delete("/{task_id}")
def archive_task(task_id: int, current_user: User = Depends(get_current_staff), db: Session = Depends(get_db)):
    """Archive (soft delete) a task."""
    task = get_visible_task(db, task_id, current_user)
    if task.archived_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")

    task.archived_at = utc_now()
    record_history(db, task.id, current_user.id, HistoryAction.archived)
    db.commit()
    logger.info(f"Task {task.id} archived by user {current_user.id}")
    return ok(message="Task archived successfully")


@router.get("/{task_id}/history")
def get_task_history(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    get_visible_task(db, task_id, current_user)
    entries = (
        db.query(TaskHistory)
        .options(joinedload(TaskHistory.user))
        .filter(TaskHistory.task_id == task_id)
        .order_by(TaskHistory.timestamp.desc(), TaskHistory.id.desc())
        .all()
    )
    return ok([
        {
            "id": e.id,
            "task_id": e.task_id,
            "user_id": e.user_id,
            "action": e.action,
            "field_changed": e.field_changed,
            "old_value": e.old_value,
            "new_value": e.new_value,
            "timestamp": as_utc(e.timestamp),
            "user_name": e.user.full_name if e.user else None,
        }
        for e in entries
    ])


# ============== Comments ==============

def serialize_comment(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "task_id": comment.task_id,
        "user_id": comment.user_id,
        "content": comment.content,
        "parent_comment_id": comment.parent_comment_id,
        "created_at": as_utc(comment.created_at),
        "updated_at": as_utc(comment.updated_at),
        "user_name": comment.author.full_name if comment.author else None,
        "avatar_url": comment.author.avatar_url if comment.author else None,
    }


@router.post("/{task_id}/comments", status_code=status.HTTP_201_CREATED)
def add_comment(
    task_id: int,
    comment_in: CommentCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    task = get_visible_task(db, task_id, current_user)

    if comment_in.parent_comment_id is not None:
        parent = db.get(Comment, comment_in.parent_comment_id)
        if parent is None or parent.task_id != task.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Parent comment does not belong to this task",
            )

    comment = Comment(
        task_id=task.id,
        user_id=current_user.id,
        content=comment_in.content,
        parent_comment_id=comment_in.parent_comment_id,
    )
    db.add(comment)
    db.flush()

    if task.assigned_to and task.assigned_to != current_user.id:
        assignee = db.get(User, task.assigned_to)
        notifications.notify_user(
            db,
            assignee,
            task_id=task.id,
            notification_type=NotificationType.comment,
            title="New Comment",
            message=f"{current_user.full_name} commented on your task",
            email=mailer.new_comment_email(task, comment, assignee, current_user),
        )

    db.commit()
    db.refresh(comment)
    logger.info(f"Comment {comment.id} added to task {task.id} by user {current_user.id}")
    return ok(serialize_comment(comment))


@router.get("/{task_id}/comments")
def list_comments(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    get_visible_task(db, task_id, current_user)
    comments = (
        db.query(Comment)
        .options(joinedload(Comment.author))
        .filter(Comment.task_id == task_id)
        .order_by(Comment.created_at.asc(), Comment.id.asc())
        .all()
    )
    return ok([serialize_comment(c) for c in comments])


# ============== Attachments ==============

def serialize_attachment(attachment: Attachment) -> dict:
    return {
        "id": attachment.id,
        "task_id": attachment.task_id,
        "file_name": attachment.file_name,
        "file_url": attachment.file_url,
        "file_size": attachment.file_size,
        "file_type": attachment.file_type,
        "uploaded_by": attachment.uploaded_by,
        "uploaded_at": as_utc(attachment.uploaded_at),
    }


@router.post("/{task_id}/attachments", status_code=status.HTTP_201_CREATED)
async def upload_attachment(
    task_id: int,
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Upload a file to a task.

    Raises:
        HTTPException: 400 for a disallowed file type, 413 if the file is too large
    """
    task = get_visible_task(db, task_id, current_user)
    storage.validate_file_upload(file)
    file_url, file_size = await storage.save_upload_file(task.id, file)

    attachment = Attachment(
        task_id=task.id,
        file_name=file.filename,
        file_url=file_url,
        file_size=file_size,
        file_type=file.content_type or "application/octet-stream",
        uploaded_by=current_user.id,
    )
    db.add(attachment)
    db.commit()
    db.refresh(attachment)
    return ok(serialize_attachment(attachment))


@router.get("/{task_id}/attachments")
def list_attachments(task_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    get_visible_task(db, task_id, current_user)
    attachments = (
        db.query(Attachment)
        .filter(Attachment.task_id == task_id)
        .order_by(Attachment.uploaded_at.desc(), Attachment.id.desc())
        .all()
    )
    return ok([serialize_attachment(a) for a in attachments])


@router.delete("/{task_id}/attachments/{file_id}")
def delete_attachment(
    task_id: int,
    file_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    get_visible_task(db, task_id, current_user)
    attachment = (
        db.query(Attachment)
        .filter(Attachment.id == file_id, Attachment.task_id == task_id)
        .first()
    )
    if attachment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Attachment not found")

    storage.delete_stored_file(attachment.file_url)
    db.delete(attachment)
    db.commit()
    logger.info(f"Attachment {file_id} deleted from task {task_id} by user {current_user.id}")
    return ok(message="Attachment deleted successfully")
