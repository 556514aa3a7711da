"""
Database Configuration Module
=============================

SQLAlchemy engine and session management for the catalog and audit stores.
SQLite by default; point ``AUTHZ_DATABASE_URL`` at another database to
change that.
"""

import os
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

# Database file location
DB_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'authz_policy.db')
DATABASE_URL = os.environ.get("AUTHZ_DATABASE_URL", f"sqlite:///{DB_PATH}")


def create_db_engine(url: str = DATABASE_URL):
    """Create an engine, adding the SQLite thread flag where needed."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Required for SQLite
    return create_engine(url, echo=False, connect_args=connect_args)


engine = create_db_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()


@contextmanager
def get_session(factory=None):
    """
    Context manager for database sessions.

    Commits on success, rolls back on failure.

    Args:
        factory: Session factory to use instead of the module default

    Usage:
        with get_session() as session:
            role = session.query(Role).first()
    """
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(bind=None):
    """
    Create all tables that don't exist yet. Safe to call repeatedly.
    """
    from . import entities  # noqa: F401 - Ensure models are loaded
    Base.metadata.create_all(bind=bind or engine)


def reset_db(bind=None):
    """
    Drop and recreate all tables.

    WARNING: This destroys all data. Use only for development/testing.
    """
    from . import entities  # noqa: F401
    Base.metadata.drop_all(bind=bind or engine)
    Base.metadata.create_all(bind=bind or engine)
