"""
Dashboard statistics and chart data.

Admins and managers see every non-archived task (or one user's, with
``user_id``); users see the tasks assigned to them.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from auth.dependencies import get_current_user, is_staff
from database import get_db
from models import CLOSED_STATUSES, Category, Task, TaskHistory, TaskPriority, TaskStatus, User
from responses import MAX_PAGE_SIZE, ok
from time_utils import as_utc, day_bounds, utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

PRIORITY_ORDER = [TaskPriority.urgent, TaskPriority.high, TaskPriority.medium, TaskPriority.low]
STATUS_ORDER = [
    TaskStatus.not_started,
    TaskStatus.in_progress,
    TaskStatus.on_hold,
    TaskStatus.completed,
    TaskStatus.cancelled,
]
CHART_TYPES = ("completion", "priority", "category", "status")


def scoped_tasks(db: Session, current_user: User, user_id: Optional[int] = None):
    """Non-archived tasks the current user's dashboard covers."""
    query = db.query(Task).filter(Task.archived_at.is_(None))
    if not is_staff(current_user):
        return query.filter(Task.assigned_to == current_user.id)
    if user_id is not None:
        return query.filter(Task.assigned_to == user_id)
    return query


def compute_stats(query, now) -> dict:
    """Dashboard counters over ``query`` (a Task query), each as one COUNT."""
    today_start, today_end = day_bounds(now)
    week_end = today_start + timedelta(days=7)

    total = query.count()
    completed = query.filter(Task.status == TaskStatus.completed).count()

    return {
        "totalTasks": total,
        "completedTasks": completed,
        "overdueTasks": query.filter(Task.due_date < now, Task.status.notin_(CLOSED_STATUSES)).count(),
        "dueToday": query.filter(Task.due_date >= today_start, Task.due_date < today_end).count(),
        "dueThisWeek": query.filter(Task.due_date >= today_start, Task.due_date < week_end).count(),
        "inProgress": query.filter(Task.status == TaskStatus.in_progress).count(),
        "completionRate": round(completed / total * 100, 1) if total else 0,
    }


@router.get("/stats")
def get_stats(
    user_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(compute_stats(scoped_tasks(db, current_user, user_id), utc_now()))


@router.get("/recent")
def get_recent_activity(
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """History of tasks the current user created or is assigned to, newest first."""
    entries = (
        db.query(TaskHistory)
        .join(Task, TaskHistory.task_id == Task.id)
        .options(joinedload(TaskHistory.user), joinedload(TaskHistory.task))
        .filter(or_(Task.assigned_to == current_user.id, Task.created_by == current_user.id))
        .order_by(TaskHistory.timestamp.desc(), TaskHistory.id.desc())
        .limit(limit)
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
            "task_title": e.task.title if e.task else None,
            "user_name": e.user.full_name if e.user else None,
        }
        for e in entries
    ])


def _day_key(value) -> str:
    # SQLite returns DATE() as text, PostgreSQL as a date
    return value if isinstance(value, str) else value.isoformat()


def completion_chart(query, now, days: int) -> list:
    """One {date, count} entry per day for the last ``days`` days, oldest first."""
    today_start, _ = day_bounds(now)
    first_day = today_start - timedelta(days=days - 1)
    completed_day = func.date(Task.completed_date)
    rows = (
        query.filter(Task.status == TaskStatus.completed, Task.completed_date >= first_day)
        .with_entities(completed_day, func.count(Task.id))
        .group_by(completed_day)
        .all()
    )
    counts = {_day_key(day): count for day, count in rows if day is not None}

    chart = []
    for offset in range(days):
        day = (first_day + timedelta(days=offset)).date().isoformat()
        chart.append({"date": day, "count": counts.get(day, 0)})
    return chart


def category_chart(query) -> list:
    rows = (
        query.with_entities(Task.category_id, Category.name, Category.color, func.count(Task.id))
        .outerjoin(Category, Task.category_id == Category.id)
        .group_by(Task.category_id, Category.name, Category.color)
        .all()
    )
    groups = [
        {"category_id": category_id, "name": name, "color": color, "count": count}
        for category_id, name, color, count in rows
    ]
    return sorted(groups, key=lambda g: (-g["count"], g["name"] or ""))


def count_by(query, attribute: str, order) -> list:
    """Counts per value of a Task enum column, zero-filled and in ``order``."""
    column = getattr(Task, attribute)
    counts = dict(query.with_entities(column, func.count(Task.id)).group_by(column).all())
    return [{attribute: value.value, "count": counts.get(value, 0)} for value in order]


@router.get("/charts")
def get_chart_data(
    type: str = Query("completion"),
    days: int = Query(7, ge=1, le=365),
    user_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if type not in CHART_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid chart type")

    query = scoped_tasks(db, current_user, user_id)
    if type == "completion":
        return ok(completion_chart(query, utc_now(), days))
    if type == "priority":
        return ok(count_by(query, "priority", PRIORITY_ORDER))
    if type == "category":
        return ok(category_chart(query))
    return ok(count_by(query, "status", STATUS_ORDER))


@router.get("/tasks-by-status")
def get_tasks_by_status(
    user_id: Optional[int] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ok(count_by(scoped_tasks(db, current_user, user_id), "status", STATUS_ORDER))
