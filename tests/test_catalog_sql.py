import pytest

from core.catalog import CatalogSnapshot, RoleCatalogProvider, load_catalog_from_session, seed_catalog
from core.errors import CatalogUnavailableError
from core.engine import PolicyEngine
from models.database import Base
from models.entities import Region
from models.entities import Role as RoleRecord
from models.policy import Role
from scenarios.demo_data import DEMO_ROLES, MANILA, REGIONS, demo_catalog, load_demo_data

from conftest import fixed_clock


def test_seed_and_load_round_trip(db_session):
    counts = seed_catalog(db_session, DEMO_ROLES, REGIONS)
    db_session.commit()
    assert counts["roles"] == len(DEMO_ROLES)
    assert counts["regions"] == 3

    snapshot = load_catalog_from_session(db_session)
    assert set(snapshot.roles) == {r.name for r in DEMO_ROLES}
    assert snapshot.regions == frozenset(REGIONS)
    assert snapshot.version == demo_catalog().version


def test_inactive_roles_and_regions_left_out(db_session):
    seed_catalog(db_session, DEMO_ROLES, REGIONS)
    db_session.query(RoleRecord).filter(RoleRecord.name == "auditor").one().is_active = False
    db_session.query(Region).filter(Region.region_id == MANILA).one().is_active = False
    db_session.commit()

    snapshot = load_catalog_from_session(db_session)
    assert "auditor" not in snapshot.roles
    assert MANILA not in snapshot.regions


def test_reseeding_replaces_permissions(db_session):
    seed_catalog(db_session, [Role("ground_ops", 10, frozenset({"assign_driver", "view_live_map"}))])
    seed_catalog(db_session, [Role("ground_ops", 15, frozenset({"assign_driver"}))])
    db_session.commit()

    role = load_catalog_from_session(db_session).get("ground_ops")
    assert role.level == 15
    assert role.permissions == frozenset({"assign_driver"})


def test_load_demo_data(db_engine, session_factory):
    counts = load_demo_data(session_factory=session_factory, bind=db_engine)
    assert counts["roles"] == 10

    with session_factory() as session:
        snapshot = load_catalog_from_session(session)
    assert snapshot.get("support").level == 25


def test_provider_refresh(db_session):
    seed_catalog(db_session, DEMO_ROLES, REGIONS)
    db_session.commit()

    provider = RoleCatalogProvider()
    assert not provider.loaded
    provider.refresh(db_session)
    assert provider.loaded
    assert provider.snapshot().get("iam_admin").level == 80


def test_unreadable_store(db_engine, session_factory):
    Base.metadata.drop_all(bind=db_engine)
    with session_factory() as session:
        with pytest.raises(CatalogUnavailableError):
            load_catalog_from_session(session)
    Base.metadata.create_all(bind=db_engine)


def test_engine_without_catalog_is_fatal():
    engine = PolicyEngine(RoleCatalogProvider(), use_cache=False, clock=fixed_clock, audit_workers=0)
    with pytest.raises(CatalogUnavailableError):
        engine.evaluate({"user": {"id": "usr-1"}, "resource": {"regionId": MANILA}, "action": "view_live_map"})


def test_duplicate_roles_rejected():
    with pytest.raises(ValueError):
        CatalogSnapshot.build([Role("a", 1, frozenset()), Role("a", 2, frozenset())])


def test_version_tracks_content():
    base = CatalogSnapshot.build([Role("a", 1, frozenset({"x"}))])
    same = CatalogSnapshot.build([Role("a", 1, frozenset({"x"}))])
    changed = CatalogSnapshot.build([Role("a", 1, frozenset({"x", "y"}))])
    assert base.version == same.version
    assert base.version != changed.version
