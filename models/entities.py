"""
Entity Models for the Policy Decision Point
===========================================

SQLAlchemy tables for the collaborators the engine ships adapters for.
The engine never reads these tables during an evaluation; they are loaded
into an immutable catalog snapshot up front, and audit rows are written
after the decision has been returned.

Role Catalog store:
- Roles: named, levelled collections of permissions (e.g. support, analyst)
- Permissions: action identifiers (e.g. case_open, export_reports)
- Regions: the registry of known region identifiers

Audit Sink store:
- AuditLog: one row per emitted audit event
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean,
    ForeignKey, Text, Enum as SQLEnum
)
from sqlalchemy.orm import relationship

from .database import Base
from .policy import Effect


def _utcnow():
    return datetime.now(timezone.utc)


# ============================================================================
# Role Catalog
# ============================================================================

class Role(Base):
    """
    Canonical role definition.

    ``level`` ranks roles for data-class floors and primary-role selection;
    a higher level means broader responsibility.
    """
    __tablename__ = 'roles'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    level = Column(Integer, nullable=False, default=0)
    description = Column(Text)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Role(id={self.id}, name='{self.name}', level={self.level})>"


class Permission(Base):
    """A single action identifier a role may be granted."""
    __tablename__ = 'permissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text)
    created_at = Column(DateTime, default=_utcnow)

    roles = relationship("RolePermission", back_populates="permission", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Permission(id={self.id}, name='{self.name}')>"


class RolePermission(Base):
    """Association between roles and permissions."""
    __tablename__ = 'role_permissions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    role_id = Column(Integer, ForeignKey('roles.id'), nullable=False)
    permission_id = Column(Integer, ForeignKey('permissions.id'), nullable=False)
    granted_at = Column(DateTime, default=_utcnow)

    role = relationship("Role", back_populates="permissions")
    permission = relationship("Permission", back_populates="roles")

    def __repr__(self):
        return f"<RolePermission(role_id={self.role_id}, permission_id={self.permission_id})>"


class Region(Base):
    """Registry entry for a known operating region."""
    __tablename__ = 'regions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    region_id = Column(String(64), unique=True, nullable=False, index=True)
    name = Column(String(255))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self):
        return f"<Region(region_id='{self.region_id}')>"


# ============================================================================
# Audit Logging
# ============================================================================

class AuditLog(Base):
    """
    Audit record for a decision that carried an audit or notify obligation.

    Only normalized identifiers and stable reason strings are stored; raw
    request payloads never are.
    """
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=_utcnow, index=True)

    # Who
    user_id = Column(String(128), index=True)

    # What
    action = Column(String(100), nullable=False)
    region_id = Column(String(64))
    data_class = Column(String(32))

    # Decision
    decision = Column(SQLEnum(Effect), nullable=False)
    reasons = Column(Text)  # JSON list
    audit_level = Column(String(32))
    obligations = Column(Text)  # JSON object

    # Context
    channel = Column(String(16))
    case_id = Column(String(64))
    client_ip = Column(String(45))
    request_id = Column(String(64))
    cache_hit = Column(Boolean, default=False)
    security_flags = Column(Text)  # JSON list

    def __repr__(self):
        return f"<AuditLog(id={self.id}, user='{self.user_id}', action='{self.action}', decision={self.decision})>"
