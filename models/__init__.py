# Policy Decision Point - Data Models
# Immutable policy value objects plus the SQL catalog and audit stores

from .database import Base, engine, get_session, init_db, reset_db
from .entities import (
    Role,
    Permission,
    RolePermission,
    Region,
    AuditLog
)
from .policy import (
    Channel,
    Context,
    DataClass,
    Decision,
    Effect,
    EvaluationRequest,
    PIIScope,
    Resource,
    User,
)

__all__ = [
    'Base',
    'engine',
    'get_session',
    'init_db',
    'reset_db',
    'Role',
    'Permission',
    'RolePermission',
    'Region',
    'AuditLog',
    'Channel',
    'Context',
    'DataClass',
    'Decision',
    'Effect',
    'EvaluationRequest',
    'PIIScope',
    'Resource',
    'User',
]
