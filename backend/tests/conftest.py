"""
Test configuration and fixtures for TaskFlow API tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users per role, categories and tasks
"""

import os
import sys
import logging
import tempfile
from datetime import timedelta
from typing import Generator, Dict

# Configure the app for tests before anything imports it
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("ENABLE_EMAIL_NOTIFICATIONS", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="taskflow-uploads-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
import rate_limit
from auth.security import hash_password, create_access_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Every test starts with a fresh request budget."""
    rate_limit.limiter.reset()
    yield
    rate_limit.limiter.reset()


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(
    db: Session,
    username: str,
    role: models.UserRole,
    password: str = "password123",
    full_name: str = None,
    is_active: bool = True,
    with_settings: bool = True,
) -> models.User:
    """Insert a user (and, by default, its settings row)."""
    user = models.User(
        username=username,
        email=f"{username}@example.com",
        password_hash=hash_password(password),
        full_name=full_name or username.replace("_", " ").title(),
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.flush()
    if with_settings:
        db.add(models.UserSettings(user_id=user.id))
    db.commit()
    db.refresh(user)
    logger.info(f"Created {role.value} user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    return make_user(test_db, "admin_user", models.UserRole.admin, "admin123", "Admin User")


@pytest.fixture(scope="function")
def manager_user(test_db: Session) -> models.User:
    return make_user(test_db, "manager_user", models.UserRole.manager, "manager123", "Manager User")


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    return make_user(test_db, "regular_user", models.UserRole.user, "user123", "Regular User")


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    return make_user(test_db, "another_user", models.UserRole.user, "another123", "Another User")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "role": user.role.value,
        "email": user.email
    }
    return create_access_token(token_data, expires_delta)


def auth_header(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def auth_headers(admin_user: models.User) -> Dict[str, str]:
    """Authorization headers for the admin user."""
    return auth_header(admin_user)


@pytest.fixture(scope="function")
def manager_auth_headers(manager_user: models.User) -> Dict[str, str]:
    return auth_header(manager_user)


@pytest.fixture(scope="function")
def user_auth_headers(regular_user: models.User) -> Dict[str, str]:
    """Authorization headers for the regular (role 'user') user."""
    return auth_header(regular_user)


@pytest.fixture(scope="function")
def another_user_auth_headers(another_user: models.User) -> Dict[str, str]:
    return auth_header(another_user)


@pytest.fixture(scope="function")
def category(test_db: Session, admin_user: models.User) -> models.Category:
    category = models.Category(name="Work", color="#228BE6", icon="💼", created_by=admin_user.id)
    test_db.add(category)
    test_db.commit()
    test_db.refresh(category)
    return category


def make_task(db: Session, creator: models.User, **fields) -> models.Task:
    """Insert a task directly, bypassing the API."""
    values = {
        "title": "Test Task",
        "task_type": models.TaskType.utility,
        "priority": models.TaskPriority.medium,
        "status": models.TaskStatus.not_started,
        "tags": [],
        "created_by": creator.id,
    }
    values.update(fields)
    task = models.Task(**values)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


@pytest.fixture(scope="function")
def task(test_db: Session, admin_user: models.User, regular_user: models.User) -> models.Task:
    """A task created by the admin and assigned to the regular user."""
    return make_task(test_db, admin_user, title="Assigned Task", assigned_to=regular_user.id)


@pytest.fixture(scope="function")
def sent_emails(monkeypatch):
    """
    Enable email and capture outgoing messages instead of talking to SMTP.

    Yields the list of (to, subject, html) tuples sent during the test.
    """
    import mailer

    outbox = []

    def fake_send_email(to, subject, html_body, text=None):
        outbox.append((to, subject, html_body))
        return True

    monkeypatch.setenv("ENABLE_EMAIL_NOTIFICATIONS", "true")
    monkeypatch.setattr(mailer, "send_email", fake_send_email)
    return outbox
