"""
Initial data for a fresh database.

``seed_database`` runs on every startup and is idempotent: it creates the
admin account and the default categories only when they are missing.

Command line:
    python seed.py                  # seed admin + categories
    python seed.py --sample-tasks   # also create the sample tasks
    python seed.py --reset-admin    # reset the admin password to ADMIN_PASSWORD
"""

import argparse
import logging
import os
import sys
from datetime import timedelta

from sqlalchemy.orm import Session

from auth.security import hash_password, is_production_like
from database import SessionLocal, init_db
from models import Category, Task, TaskPriority, TaskStatus, TaskType, User, UserRole, UserSettings
from time_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_PASSWORD = "admin123"

DEFAULT_CATEGORIES = [
    ("Work", "#228BE6", "💼"),
    ("Personal", "#40C057", "👤"),
    ("Urgent", "#FA5252", "🚨"),
    ("Development", "#7950F2", "💻"),
    ("Meeting", "#FD7E14", "📅"),
    ("Research", "#20C997", "🔍"),
]

SAMPLE_TASKS = [
    ("Complete project documentation", TaskPriority.high, TaskStatus.in_progress),
    ("Review pull requests", TaskPriority.medium, TaskStatus.not_started),
    ("Team meeting preparation", TaskPriority.medium, TaskStatus.not_started),
    ("Code refactoring", TaskPriority.low, TaskStatus.not_started),
]


def admin_email() -> str:
    return os.getenv("ADMIN_EMAIL", "admin@taskmanager.com").strip().lower()


def resolve_admin_password() -> str:
    """
    Read ADMIN_PASSWORD, defaulting to 'admin123' for local development.

    Raises:
        RuntimeError: in production/staging when the password is missing, the
            default, or shorter than 8 characters
    """
    password = os.getenv("ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD)
    if is_production_like():
        if not password.strip() or password == DEFAULT_ADMIN_PASSWORD:
            raise RuntimeError("A secure ADMIN_PASSWORD is required in production/staging")
        if len(password.strip()) < 8:
            raise RuntimeError("ADMIN_PASSWORD must be at least 8 characters long")
    return password


def seed_database(db: Session, sample_tasks: bool = False) -> User:
    """Create the admin user, its settings and the default categories if missing."""
    email = admin_email()
    admin = db.query(User).filter(User.email == email).first()

    if admin:
        logger.info(f"Admin user already exists (email: {email})")
    else:
        password = resolve_admin_password()
        admin = User(
            username="admin",
            email=email,
            password_hash=hash_password(password),
            full_name="Admin User",
            role=UserRole.admin,
            is_active=True,
        )
        db.add(admin)
        db.flush()

        if password == DEFAULT_ADMIN_PASSWORD:
            logger.warning(
                "=" * 80 + "\n"
                f"⚠️  SECURITY WARNING: Admin user created with DEFAULT password '{DEFAULT_ADMIN_PASSWORD}'\n"
                "⚠️  Set ADMIN_PASSWORD environment variable to use a custom password.\n"
                f"⚠️  Login: {email} / {DEFAULT_ADMIN_PASSWORD}\n" +
                "=" * 80
            )
        else:
            logger.info(f"✅ Admin user created (email: {email})")

    if admin.settings is None:
        db.add(UserSettings(user_id=admin.id))

    existing = {name for (name,) in db.query(Category.name).all()}
    created = 0
    for name, color, icon in DEFAULT_CATEGORIES:
        if name not in existing:
            db.add(Category(name=name, color=color, icon=icon, created_by=admin.id))
            created += 1
    if created:
        logger.info(f"✅ {created} default categories created")

    if sample_tasks:
        create_sample_tasks(db, admin)

    db.commit()
    db.refresh(admin)
    return admin


def create_sample_tasks(db: Session, admin: User) -> int:
    db.flush()
    work = db.query(Category).filter(Category.name == "Work").first()
    due = utc_now() + timedelta(days=7)
    for title, priority, status in SAMPLE_TASKS:
        db.add(Task(
            title=title,
            priority=priority,
            status=status,
            category_id=work.id if work else None,
            created_by=admin.id,
            assigned_to=admin.id,
            task_type=TaskType.utility,
            due_date=due,
            tags=[],
        ))
    logger.info(f"✅ {len(SAMPLE_TASKS)} sample tasks created")
    return len(SAMPLE_TASKS)


def reset_admin_password(db: Session, password: str) -> bool:
    """
    Reset the admin account's password.

    Returns:
        False if no admin account exists yet
    """
    email = admin_email()
    admin = db.query(User).filter(User.email == email).first()
    if admin is None:
        logger.warning(f"No user found with email {email}. Run seed.py to create the default admin.")
        return False

    admin.password_hash = hash_password(password)
    admin.is_active = True
    db.commit()
    logger.info(f"✅ Password for {email} has been reset")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed the TaskFlow database")
    parser.add_argument("--sample-tasks", action="store_true", help="also create sample tasks for the admin")
    parser.add_argument("--reset-admin", action="store_true", help="reset the admin password to ADMIN_PASSWORD")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    init_db()
    db = SessionLocal()
    try:
        if args.reset_admin:
            return 0 if reset_admin_password(db, resolve_admin_password()) else 1
        seed_database(db, sample_tasks=args.sample_tasks)
        logger.info("🎉 Database seeding completed successfully!")
        return 0
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
