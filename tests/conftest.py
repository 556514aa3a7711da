from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.audit import AuditEvent, AuditSink
from core.catalog import RoleCatalogProvider
from core.engine import PolicyEngine
from models.database import Base
from scenarios.demo_data import build_request, demo_catalog, demo_users

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def fresh_mfa(minutes_ago: float = 1, method: str = "totp") -> Dict[str, Any]:
    return {
        "mfaPresent": True,
        "mfaTimestamp": (NOW - timedelta(minutes=minutes_ago)).isoformat(),
        "mfaMethod": method,
    }


class RecordingSink(AuditSink):
    """Collects audit events in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)


@pytest.fixture()
def users() -> Dict[str, Dict[str, Any]]:
    return demo_users(NOW)


@pytest.fixture()
def catalog_provider() -> RoleCatalogProvider:
    return RoleCatalogProvider(demo_catalog())


@pytest.fixture()
def engine(catalog_provider: RoleCatalogProvider) -> Generator[PolicyEngine, None, None]:
    policy_engine = PolicyEngine(catalog_provider, use_cache=False, clock=fixed_clock, audit_workers=0)
    yield policy_engine
    policy_engine.close()


@pytest.fixture()
def cached_engine(catalog_provider: RoleCatalogProvider) -> Generator[PolicyEngine, None, None]:
    policy_engine = PolicyEngine(catalog_provider, clock=fixed_clock, audit_workers=0)
    yield policy_engine
    policy_engine.close()


@pytest.fixture()
def request_for(users):
    def _build(role: str, region_id: str, action: str, **kwargs: Any) -> Dict[str, Any]:
        return build_request(users[role], region_id, action, **kwargs)
    return _build


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    from models import entities  # noqa: F401
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
