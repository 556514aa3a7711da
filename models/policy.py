"""
Policy Value Objects
====================

Immutable value objects consumed and produced by the policy decision point.

Identity and policy data are produced by external provisioning and approval
workflows; the engine only ever sees a snapshot of them for the duration of
a single evaluation. Every object here is frozen so that no stage can alter
what a later stage (or a concurrent evaluation) observes.

Subject side:
- Role / RoleAssignment: catalog role reference plus assignment state
- TemporaryAccess: time-bounded, case-justified escalation grant
- User: authenticated identity with its assignments and PII scope

Object / environment side:
- Resource: region, data classification and PII markers
- Context: channel, MFA evidence, case reference, export/batch flags

Result:
- Decision: allow/deny, ordered reasons, obligations and metadata
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, FrozenSet, Iterable, Mapping, Optional, Tuple


class PIIScope(enum.Enum):
    """Tiered data-visibility level granted to a user."""
    NONE = "none"
    MASKED = "masked"
    FULL = "full"


class DataClass(enum.Enum):
    """Resource data classification, lowest to highest sensitivity."""
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class Channel(enum.Enum):
    """Channel through which the request reached the engine."""
    UI = "ui"
    API = "api"
    BATCH = "batch"


class Effect(enum.Enum):
    """Possible outcomes of an access control decision."""
    ALLOW = "allow"
    DENY = "deny"


class AuditLevel(enum.Enum):
    """Audit intensity, ordered; merging keeps the highest."""
    STANDARD = "standard"
    ENHANCED = "enhanced"
    MAXIMUM = "maximum"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _AUDIT_RANK[self]

    @classmethod
    def highest(cls, *levels: Optional[str]) -> Optional[str]:
        """Return the highest of the given level values, ignoring ``None``."""
        present = [cls(level) for level in levels if level is not None]
        if not present:
            return None
        return max(present, key=lambda level: level.rank).value


_AUDIT_RANK = {
    AuditLevel.STANDARD: 0,
    AuditLevel.ENHANCED: 1,
    AuditLevel.MAXIMUM: 2,
    AuditLevel.EMERGENCY: 3,
}


# ============================================================================
# Regions
# ============================================================================

class Regions(ABC):
    """
    Regional reach of a grant.

    Either ``GlobalRegions`` (unrestricted) or a ``RegionSet`` of explicit
    region identifiers. Replaces the "empty list means everywhere"
    convention with a type the stages can test for.
    """

    is_global = False

    @abstractmethod
    def contains(self, region_id: str) -> bool:
        ...

    @abstractmethod
    def union(self, other: "Regions") -> "Regions":
        ...

    @abstractmethod
    def as_list(self) -> list:
        ...


class GlobalRegions(Regions):
    """Unrestricted regional access."""

    is_global = True

    def contains(self, region_id: str) -> bool:
        return True

    def union(self, other: Regions) -> Regions:
        return self

    def as_list(self) -> list:
        return ["global"]

    def __eq__(self, other):
        return isinstance(other, GlobalRegions)

    def __hash__(self):
        return hash("global")

    def __repr__(self):
        return "GlobalRegions()"


class RegionSet(Regions):
    """A finite set of region identifiers."""

    def __init__(self, region_ids: Iterable[str] = ()):
        self._ids: FrozenSet[str] = frozenset(region_ids)

    @property
    def ids(self) -> FrozenSet[str]:
        return self._ids

    def contains(self, region_id: str) -> bool:
        return region_id in self._ids

    def union(self, other: Regions) -> Regions:
        if other.is_global:
            return other
        return RegionSet(self._ids | other.ids)

    def as_list(self) -> list:
        return sorted(self._ids)

    def __eq__(self, other):
        return isinstance(other, RegionSet) and self._ids == other._ids

    def __hash__(self):
        return hash(self._ids)

    def __repr__(self):
        return f"RegionSet({sorted(self._ids)!r})"


GLOBAL = GlobalRegions()


# ============================================================================
# Subject
# ============================================================================

@dataclass(frozen=True)
class Role:
    """Canonical role definition, as held by the Role Catalog."""
    name: str
    level: int
    permissions: FrozenSet[str]
    description: str = ""


@dataclass(frozen=True)
class RoleAssignment:
    """
    A user's assignment to a catalog role.

    Only the role *name* is carried; permissions are always re-derived from
    the catalog. ``role_name`` is ``None`` when the caller supplied an
    assignment without a usable role reference.
    """
    role_name: Optional[str]
    is_active: bool
    allowed_regions: Regions
    assigned_at: Optional[datetime] = None


@dataclass(frozen=True)
class TemporaryAccess:
    """Time-bounded, case-justified escalation grant."""
    id: str
    case_id: str
    granted_permissions: FrozenSet[str]
    granted_regions: FrozenSet[str]
    expires_at: datetime
    is_active: bool
    pii_scope_override: Optional[PIIScope] = None
    escalation_type: Optional[str] = None
    justification: str = ""
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None

    def is_valid_at(self, now: datetime) -> bool:
        """Active, independently approved and not yet expired."""
        if not self.is_active or now >= self.expires_at:
            return False
        if not self.approved_by or self.approved_by == self.requested_by:
            return False
        return True


@dataclass(frozen=True)
class User:
    """
    Authenticated identity.

    ``claimed_permissions`` keeps whatever permissions the caller attached to
    the user object; it is advisory only and never consulted for a decision.
    """
    id: str
    role_assignments: Tuple[RoleAssignment, ...]
    pii_scope: PIIScope = PIIScope.NONE
    mfa_enabled: bool = False
    temporary_access: Tuple[TemporaryAccess, ...] = ()
    claimed_permissions: FrozenSet[str] = frozenset()

    @property
    def active_assignments(self) -> Tuple[RoleAssignment, ...]:
        return tuple(a for a in self.role_assignments if a.is_active)


# ============================================================================
# Object and environment
# ============================================================================

@dataclass(frozen=True)
class Resource:
    """Target resource attributes used by the ABAC stages."""
    region_id: str
    data_class: DataClass = DataClass.INTERNAL
    contains_pii: bool = False
    data_category: Optional[str] = None
    resource_type: Optional[str] = None
    data_age_years: Optional[int] = None
    retention_years: Optional[int] = None


@dataclass(frozen=True)
class Context:
    """
    Request context with every default spelled out.

    Validated once by the Normalizer; stages read it without re-checking.
    """
    channel: Channel = Channel.UI
    mfa_present: bool = False
    mfa_timestamp: Optional[datetime] = None
    mfa_method: Optional[str] = None
    mfa_timeout_minutes: int = 30
    step_up_timeout_minutes: int = 5
    elevated_operation: bool = False
    case_id: Optional[str] = None
    legal_basis: Optional[str] = None
    court_order: bool = False
    processing_basis: Optional[str] = None
    export_format: Optional[str] = None
    includes_pii: bool = False
    fields: Tuple[str, ...] = ()
    record_count: Optional[int] = None
    original_region: Optional[str] = None
    device_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    rapid_location_change: bool = False
    ip_geo_distance_km: Optional[float] = None
    mfa_failure_count: int = 0
    emergency_justification: Optional[str] = None
    approver_signature: Optional[str] = None
    justification: Optional[str] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class EvaluationRequest:
    """Canonical, validated request handed to the evaluation pipeline."""
    user: User
    resource: Resource
    action: str
    context: Context


# ============================================================================
# Decision
# ============================================================================

def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(value))
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Decision:
    """
    Final, fully-populated authorization decision.

    ``obligations`` and ``metadata`` are read-only mappings; lists inside
    them are stored as tuples. Use ``to_dict`` for a plain JSON-ready copy.
    """
    effect: Effect
    reasons: Tuple[str, ...]
    obligations: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.reasons:
            raise ValueError("A decision must carry at least one reason")
        object.__setattr__(self, "reasons", tuple(self.reasons))
        object.__setattr__(self, "obligations", _freeze(self.obligations))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def decision(self) -> str:
        return self.effect.value

    @property
    def allowed(self) -> bool:
        return self.effect is Effect.ALLOW

    def with_metadata(self, **updates: Any) -> "Decision":
        """Return a copy with ``metadata`` entries replaced."""
        metadata = _thaw(self.metadata)
        metadata.update(updates)
        return Decision(
            effect=self.effect,
            reasons=self.reasons,
            obligations=_thaw(self.obligations),
            metadata=metadata,
        )

    def to_dict(self) -> dict:
        return {
            "decision": self.effect.value,
            "reasons": list(self.reasons),
            "obligations": _thaw(self.obligations),
            "metadata": _thaw(self.metadata),
        }
