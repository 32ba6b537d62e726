"""
Database engine and session management for the TaskFlow API.

Provides the SQLAlchemy engine, the session factory and the ``get_db``
dependency used by every router.
"""

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

load_dotenv()

logger = logging.getLogger(__name__)

# Local development falls back to SQLite; production uses PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./taskflow.db")

# SQLite connections are shared with the threadpool FastAPI runs sync routes in
connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(
    DATABASE_URL,
    connect_args=connect_args,
    pool_pre_ping=not DATABASE_URL.startswith("sqlite"),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """Create all tables that don't exist yet."""
    # Import models so they are registered on Base.metadata
    import models  # noqa: F401

    logger.info("Ensuring database schema exists")
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def commit_or_rollback(db) -> None:
    """Commit, rolling the session back before re-raising any database error."""
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
