"""
Role Catalog
============

Role name -> {level, permission set} lookups for the RBAC stage.

The catalog is held as an immutable ``CatalogSnapshot``. Updates build a new
snapshot and swap it in under a lock, so a reader either sees the old policy
or the new one and never a mix. The engine takes one snapshot at the start
of an evaluation and uses it for every stage of that evaluation.

The SQL helpers load a snapshot from (or write one to) the Role,
Permission and Region tables.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.entities import Permission, Region, RolePermission
from models.entities import Role as RoleRecord
from models.policy import Role
from .errors import CatalogUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogSnapshot:
    """
    Immutable view of the role catalog.

    Attributes:
        roles: Role name -> Role
        regions: Known region identifiers (empty means "not enforced")
        version: Content hash, part of every decision-cache key
    """
    roles: Mapping[str, Role]
    regions: FrozenSet[str]
    version: str

    @classmethod
    def build(cls, roles: Iterable[Role], regions: Iterable[str] = ()) -> "CatalogSnapshot":
        """
        Build a snapshot and compute its version hash.

        Args:
            roles: Role definitions; names must be unique
            regions: Known region identifiers

        Returns:
            CatalogSnapshot
        """
        table: Dict[str, Role] = {}
        for role in roles:
            if role.name in table:
                raise ValueError(f"Duplicate role in catalog: {role.name}")
            table[role.name] = Role(
                name=role.name,
                level=role.level,
                permissions=frozenset(role.permissions),
                description=role.description,
            )
        region_set = frozenset(r.lower() for r in regions)

        digest = hashlib.sha256()
        for name in sorted(table):
            role = table[name]
            digest.update(f"{name}:{role.level}:{','.join(sorted(role.permissions))};".encode())
        digest.update(",".join(sorted(region_set)).encode())

        return cls(
            roles=MappingProxyType(table),
            regions=region_set,
            version=digest.hexdigest()[:16],
        )

    def get(self, role_name: Optional[str]) -> Optional[Role]:
        if role_name is None:
            return None
        return self.roles.get(role_name)

    def defines_permission(self, permission: str) -> bool:
        """True if at least one catalog role grants ``permission``."""
        return any(permission in role.permissions for role in self.roles.values())


class RoleCatalogProvider:
    """
    Holds the current catalog snapshot and swaps it atomically.

    Args:
        snapshot: Initial snapshot, or None until the first ``swap``
    """

    def __init__(self, snapshot: Optional[CatalogSnapshot] = None):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    def snapshot(self) -> CatalogSnapshot:
        """
        Return the current snapshot.

        Raises:
            CatalogUnavailableError: If no snapshot was ever loaded
        """
        current = self._snapshot
        if current is None:
            raise CatalogUnavailableError("Role catalog has not been loaded")
        return current

    def swap(self, snapshot: CatalogSnapshot) -> Optional[CatalogSnapshot]:
        """
        Replace the current snapshot.

        Returns:
            The snapshot that was replaced
        """
        with self._lock:
            previous, self._snapshot = self._snapshot, snapshot
        logger.info(
            "Role catalog swapped to version %s (%d roles)",
            snapshot.version, len(snapshot.roles),
        )
        return previous

    def refresh(self, session: Session) -> CatalogSnapshot:
        """Reload from the SQL store and swap the result in."""
        snapshot = load_catalog_from_session(session)
        self.swap(snapshot)
        return snapshot

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None


# ============================================================================
# SQL store
# ============================================================================

def load_catalog_from_session(session: Session) -> CatalogSnapshot:
    """
    Build a snapshot from the Role/Permission/Region tables.

    Inactive roles and regions are left out.

    Args:
        session: SQLAlchemy session

    Returns:
        CatalogSnapshot

    Raises:
        CatalogUnavailableError: If the store cannot be read
    """
    try:
        records = session.query(RoleRecord).filter(RoleRecord.is_active == True).all()  # noqa: E712
        roles: List[Role] = []
        for record in records:
            permissions = frozenset(rp.permission.name for rp in record.permissions)
            roles.append(Role(
                name=record.name,
                level=record.level,
                permissions=permissions,
                description=record.description or "",
            ))
        regions = [
            r.region_id for r in
            session.query(Region).filter(Region.is_active == True).all()  # noqa: E712
        ]
    except SQLAlchemyError as exc:
        raise CatalogUnavailableError("Role catalog store is unreadable") from exc

    snapshot = CatalogSnapshot.build(roles, regions)
    logger.debug("Loaded %d roles and %d regions from catalog store", len(roles), len(regions))
    return snapshot


def seed_catalog(
    session: Session,
    roles: Iterable[Role],
    regions: Optional[Mapping[str, str]] = None
) -> Dict[str, int]:
    """
    Write role, permission and region definitions to the SQL store.

    Existing roles are updated in place; their permission links are replaced.

    Args:
        session: SQLAlchemy session
        roles: Role definitions to write
        regions: Region identifier -> display name

    Returns:
        Counts of roles, permissions and regions written
    """
    permission_records: Dict[str, Permission] = {
        p.name: p for p in session.query(Permission).all()
    }
    role_count = 0

    for role in roles:
        record = session.query(RoleRecord).filter(RoleRecord.name == role.name).first()
        if record is None:
            record = RoleRecord(name=role.name)
            session.add(record)
        record.level = role.level
        record.description = role.description
        record.is_active = True
        record.permissions.clear()
        session.flush()

        for name in sorted(role.permissions):
            permission = permission_records.get(name)
            if permission is None:
                permission = Permission(name=name)
                session.add(permission)
                permission_records[name] = permission
            record.permissions.append(RolePermission(permission=permission))
        role_count += 1

    region_count = 0
    for region_id, name in (regions or {}).items():
        existing = session.query(Region).filter(Region.region_id == region_id).first()
        if existing is None:
            session.add(Region(region_id=region_id, name=name))
        else:
            existing.name = name
            existing.is_active = True
        region_count += 1

    session.flush()
    return {
        'roles': role_count,
        'permissions': len(permission_records),
        'regions': region_count,
    }
