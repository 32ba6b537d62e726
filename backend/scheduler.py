"""
Background jobs over the tasks table.

Four independent jobs, each ``job(db, now=None) -> int`` returning how many
items it processed:

- send_due_date_reminders: every 30 minutes
- send_daily_digest: every day at 09:00 UTC
- archive_completed_tasks: every Sunday at 00:00 UTC
- process_recurring_tasks: every day at 01:00 UTC

``run_scheduler`` is a small polling loop that runs each job when its
schedule matches a minute boundary, catching up on boundaries that
passed during a slow poll. To stop it, cancel the coroutine/task.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.orm import Session

import mailer
import notifications
from models import (
    CLOSED_STATUSES,
    HistoryAction,
    Notification,
    NotificationType,
    Task,
    TaskHistory,
    TaskPriority,
    TaskStatus,
    User,
    UserSettings,
)
from time_utils import as_utc, day_bounds, next_occurrence, utc_now

logger = logging.getLogger(__name__)

REMINDER_WINDOW = timedelta(hours=24)
ARCHIVE_AFTER = timedelta(days=30)
DIGEST_TASK_LIMIT = 5
RECURRENCE_FREQUENCIES = ("daily", "weekly", "monthly")

DEFAULT_POLL_SECONDS = 30.0
MIN_POLL_SECONDS = 1.0
MAX_POLL_SECONDS = 60.0
# Longest backlog of minute boundaries replayed after a stall
MAX_CATCH_UP = timedelta(hours=24)

PRIORITY_RANK = {
    TaskPriority.urgent.value: 0,
    TaskPriority.high.value: 1,
    TaskPriority.medium.value: 2,
    TaskPriority.low.value: 3,
}


def _priority_value(task: Task) -> str:
    return getattr(task.priority, "value", task.priority)


# ============== Due date reminders ==============

def _reminder_exists(db: Session, task_id: int, user_id: int, since: datetime) -> bool:
    return (
        db.query(Notification.id)
        .filter(
            Notification.task_id == task_id,
            Notification.user_id == user_id,
            Notification.notification_type == NotificationType.due_date_reminder.value,
            Notification.created_at >= since,
        )
        .first()
        is not None
    )


def send_due_date_reminders(db: Session, now: Optional[datetime] = None) -> int:
    """
    Remind assignees of open tasks due within the next 24 hours.

    A reminder is inserted only if the assignee has not already been
    reminded about the task during the previous 24 hours, so each task gets
    at most one reminder per run and overlapping runs do not duplicate it.
    """
    now = as_utc(now) if now else utc_now()
    logger.info("⏰ Running due date reminder job...")

    tasks = (
        db.query(Task)
        .join(User, Task.assigned_to == User.id)
        .filter(
            Task.due_date >= now,
            Task.due_date <= now + REMINDER_WINDOW,
            Task.status.notin_(CLOSED_STATUSES),
            Task.archived_at.is_(None),
            User.is_active.is_(True),
        )
        .order_by(Task.due_date.asc())
        .all()
    )

    sent = 0
    for task in tasks:
        assignee = task.assignee
        if _reminder_exists(db, task.id, assignee.id, now - REMINDER_WINDOW):
            logger.debug(f"Reminder for task {task.id} already sent to user {assignee.id}")
            continue

        notifications.notify_user(
            db,
            assignee,
            task_id=task.id,
            notification_type=NotificationType.due_date_reminder,
            title=f"Task Due Soon: {task.title}",
            message=f'Your task "{task.title}" is due within 24 hours',
            email=mailer.due_date_reminder_email(task, assignee),
            created_at=now,
        )
        sent += 1

    db.commit()
    logger.info(f"✅ Sent {sent} due date reminders")
    return sent


# ============== Daily digest ==============

@dataclass
class DigestSummary:
    due_today: int
    completed: int
    overdue: int
    in_progress: int
    tasks: List[Task] = field(default_factory=list)


def build_digest(db: Session, user: User, now: Optional[datetime] = None) -> DigestSummary:
    """Summarize a user's assigned, non-archived tasks for the day containing ``now``."""
    now = as_utc(now) if now else utc_now()
    start, end = day_bounds(now)

    assigned = db.query(Task).filter(Task.assigned_to == user.id, Task.archived_at.is_(None))

    due_today = assigned.filter(Task.due_date >= start, Task.due_date < end)
    completed = assigned.filter(
        Task.status == TaskStatus.completed,
        Task.completed_date >= start,
        Task.completed_date < end,
    ).count()
    overdue = assigned.filter(Task.due_date < now, Task.status.notin_(CLOSED_STATUSES)).count()
    in_progress = assigned.filter(Task.status == TaskStatus.in_progress).count()

    due_tasks = due_today.all()
    due_tasks.sort(key=lambda t: (PRIORITY_RANK.get(_priority_value(t), 99), as_utc(t.due_date)))

    return DigestSummary(
        due_today=len(due_tasks),
        completed=completed,
        overdue=overdue,
        in_progress=in_progress,
        tasks=due_tasks[:DIGEST_TASK_LIMIT],
    )


def send_daily_digest(db: Session, now: Optional[datetime] = None) -> int:
    """Email every active user who opted into the daily digest a summary of their tasks."""
    now = as_utc(now) if now else utc_now()
    logger.info("📧 Running daily digest job...")

    if not mailer.email_enabled():
        logger.info("Email notifications disabled; skipping daily digest")
        return 0

    users = (
        db.query(User)
        .outerjoin(UserSettings, UserSettings.user_id == User.id)
        .filter(User.is_active.is_(True))
        .order_by(User.id)
        .all()
    )

    sent = 0
    for user in users:
        if user.settings is not None and not user.settings.wants_email("daily_digest"):
            continue
        summary = build_digest(db, user, now)
        content = mailer.daily_digest_email(user, summary, now)
        if notifications.deliver_email(user, content):
            sent += 1

    logger.info(f"✅ Sent {sent} daily digest emails")
    return sent


# ============== Auto-archive ==============

def archive_completed_tasks(db: Session, now: Optional[datetime] = None) -> int:
    """Archive tasks that were completed more than 30 days ago."""
    now = as_utc(now) if now else utc_now()
    logger.info("🗄️ Running auto-archive job...")

    tasks = (
        db.query(Task)
        .filter(
            Task.status == TaskStatus.completed,
            Task.completed_date < now - ARCHIVE_AFTER,
            Task.archived_at.is_(None),
        )
        .all()
    )

    for task in tasks:
        task.archived_at = now
        db.add(TaskHistory(
            task_id=task.id,
            user_id=None,
            action=HistoryAction.auto_archived.value,
            field_changed="archived_at",
            new_value=now.isoformat(),
            timestamp=now,
        ))

    db.commit()
    logger.info(f"✅ Archived {len(tasks)} completed tasks")
    return len(tasks)


# ============== Recurring tasks ==============

def parse_recurrence(pattern) -> Optional[tuple]:
    """
    Validate a stored recurrence pattern.

    Returns:
        (frequency, interval) or None if the pattern is unusable
    """
    if not isinstance(pattern, dict):
        return None
    frequency = pattern.get("frequency")
    if frequency not in RECURRENCE_FREQUENCIES:
        return None
    try:
        interval = int(pattern.get("interval") or 1)
    except (TypeError, ValueError):
        return None
    if interval < 1:
        return None
    return frequency, interval


def process_recurring_tasks(db: Session, now: Optional[datetime] = None) -> int:
    """
    Create the next occurrence of each completed recurring task.

    The completed task stops being recurring once its successor exists, so
    every completion spawns exactly one new task.
    """
    now = as_utc(now) if now else utc_now()
    logger.info("🔄 Processing recurring tasks...")

    tasks = (
        db.query(Task)
        .filter(
            Task.is_recurring.is_(True),
            Task.status == TaskStatus.completed,
            Task.archived_at.is_(None),
        )
        .order_by(Task.id)
        .all()
    )

    created = 0
    for task in tasks:
        recurrence = parse_recurrence(task.recurrence_pattern)
        if recurrence is None:
            logger.warning(f"⚠️  Task {task.id} has an invalid recurrence pattern: {task.recurrence_pattern}")
            continue
        frequency, interval = recurrence

        base = as_utc(task.due_date or task.completed_date) or now
        successor = Task(
            title=task.title,
            description=task.description,
            task_type=task.task_type,
            priority=task.priority,
            status=TaskStatus.not_started,
            category_id=task.category_id,
            tags=list(task.tags or []),
            created_by=task.created_by,
            assigned_to=task.assigned_to,
            due_date=next_occurrence(base, frequency, interval),
            start_date=now,
            is_recurring=True,
            recurrence_pattern=dict(task.recurrence_pattern),
        )
        db.add(successor)
        task.is_recurring = False
        db.flush()

        db.add(TaskHistory(
            task_id=successor.id,
            user_id=None,
            action=HistoryAction.recurred.value,
            field_changed="recurred_from",
            old_value=str(task.id),
            new_value=str(successor.id),
            timestamp=now,
        ))

        assignee = successor.assignee
        if assignee is not None and assignee.is_active:
            notifications.notify_user(
                db,
                assignee,
                task_id=successor.id,
                notification_type=NotificationType.task_assignment,
                title="New Task Assigned",
                message=f'Recurring task "{successor.title}" is due again',
                email=mailer.task_assignment_email(successor, task.creator, assignee),
                created_at=now,
            )
        created += 1

    db.commit()
    logger.info(f"✅ Created {created} recurring tasks")
    return created


# ============== Scheduling ==============

@dataclass(frozen=True)
class JobSchedule:
    """
    A cron-like schedule evaluated in UTC at minute resolution.

    ``None`` fields match any value. ``weekday`` follows cron numbering
    (0 = Sunday). ``every_minutes`` matches minutes divisible by it.
    """
    minute: Optional[int] = None
    hour: Optional[int] = None
    weekday: Optional[int] = None
    every_minutes: Optional[int] = None

    def matches(self, moment: datetime) -> bool:
        moment = as_utc(moment)
        if self.every_minutes and moment.minute % self.every_minutes != 0:
            return False
        if self.minute is not None and moment.minute != self.minute:
            return False
        if self.hour is not None and moment.hour != self.hour:
            return False
        if self.weekday is not None and (moment.weekday() + 1) % 7 != self.weekday:
            return False
        return True


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    schedule: JobSchedule
    func: Callable[..., int]


JOBS = (
    ScheduledJob("daily_digest", JobSchedule(minute=0, hour=9), send_daily_digest),  # 0 9 * * *
    ScheduledJob("due_date_reminders", JobSchedule(every_minutes=30), send_due_date_reminders),  # */30 * * * *
    ScheduledJob("auto_archive", JobSchedule(minute=0, hour=0, weekday=0), archive_completed_tasks),  # 0 0 * * 0
    ScheduledJob("recurring_tasks", JobSchedule(minute=0, hour=1), process_recurring_tasks),  # 0 1 * * *
)


def run_job(session_factory: Callable[[], Session], job: ScheduledJob) -> Optional[int]:
    """Run one job with its own session. Failures are logged, never raised or retried."""
    db = session_factory()
    try:
        return job.func(db)
    except Exception:
        logger.exception(f"❌ Error in {job.name} job")
        db.rollback()
        return None
    finally:
        db.close()


def due_jobs(moment: datetime, jobs=JOBS) -> List[ScheduledJob]:
    return [job for job in jobs if job.schedule.matches(moment)]


def clamp_poll_seconds(value) -> float:
    """Keep the poll interval within 1-60 seconds so no minute is slept through."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️  Invalid scheduler poll interval {value!r}. Using default of {DEFAULT_POLL_SECONDS:.0f}s.")
        return DEFAULT_POLL_SECONDS
    if seconds < MIN_POLL_SECONDS or seconds > MAX_POLL_SECONDS:
        clamped = min(max(seconds, MIN_POLL_SECONDS), MAX_POLL_SECONDS)
        logger.warning(
            f"⚠️  Scheduler poll interval {seconds}s is outside safe range "
            f"({MIN_POLL_SECONDS:.0f}-{MAX_POLL_SECONDS:.0f}). Using {clamped:.0f}s."
        )
        return clamped
    return seconds


def minutes_to_evaluate(last_minute: Optional[datetime], current_minute: datetime) -> List[datetime]:
    """
    Minute boundaries not yet evaluated, oldest first.

    Everything after ``last_minute`` up to and including ``current_minute`` is
    returned, limited to the most recent MAX_CATCH_UP.
    """
    if last_minute is None:
        return [current_minute]
    if current_minute <= last_minute:
        return []

    first = last_minute + timedelta(minutes=1)
    if current_minute - first > MAX_CATCH_UP:
        skipped_until = current_minute - MAX_CATCH_UP
        logger.warning(
            f"⚠️  Scheduler fell behind by {current_minute - last_minute}; "
            f"skipping minutes before {skipped_until.isoformat()}"
        )
        first = skipped_until

    minutes = []
    moment = first
    while moment <= current_minute:
        minutes.append(moment)
        moment += timedelta(minutes=1)
    return minutes


async def run_scheduler(
        session_factory: Callable[[], Session],
        *,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
        jobs=JOBS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """
    Poll the clock and run due jobs.

    Every minute boundary since the previous poll is evaluated exactly once,
    so minutes that pass while a slow job runs are caught up on the next
    poll. Jobs run in a worker thread so the event loop keeps serving
    requests. A failing job is logged and the loop carries on.

    To stop the scheduler, cancel the coroutine/task.
    """
    sleep_s = clamp_poll_seconds(poll_seconds)
    last_minute: Optional[datetime] = None
    logger.info(f"✅ Scheduler started with {len(jobs)} jobs (poll every {sleep_s:.0f}s)")

    while True:
        current_minute = as_utc(clock()).replace(second=0, microsecond=0)
        for minute in minutes_to_evaluate(last_minute, current_minute):
            for job in due_jobs(minute, jobs):
                logger.debug(f"Running scheduled job {job.name} for {minute.isoformat()}")
                await asyncio.to_thread(run_job, session_factory, job)
        if last_minute is None or current_minute > last_minute:
            last_minute = current_minute

        await sleep(sleep_s)
