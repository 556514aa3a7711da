"""
Role-Based Access Control (RBAC) Evaluator
==========================================

Resolves a user's effective permissions from the role catalog.

Permissions are always re-derived from the catalog by role *name*. Whatever
permission list the caller attached to the user object is ignored, so a
tampered token or a hand-built user value cannot grant itself capabilities.

Resolution rules:
- Inactive assignments are ignored.
- Zero active assignments deny with ``"No active roles found"``.
- An active assignment whose role is missing or not in the catalog denies
  with ``"Invalid role configuration"``.
- The action must be in the union of the resolved roles' permissions, or be
  granted by a valid, case-matched temporary grant and defined by some
  catalog role. Otherwise ``"Missing required permission"``.

The primary role (highest level, earliest assignment on a tie) is exposed to
the later stages for escalation eligibility and data-class floors.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from models.policy import EvaluationRequest, Role, RoleAssignment, TemporaryAccess
from .catalog import CatalogSnapshot
from .decision import StageResult

STAGE = "rbac"

NO_ACTIVE_ROLES = "No active roles found"
INVALID_ROLE_CONFIGURATION = "Invalid role configuration"
MISSING_PERMISSION = "Missing required permission"
RBAC_GRANTED = "RBAC permission granted"
TEMPORARY_PERMISSION_GRANTED = "Temporary permission granted"


@dataclass(frozen=True)
class ResolvedRoles:
    """
    Catalog-resolved view of a user's active assignments.

    Attributes:
        assignments: Active assignments, in the caller's order
        roles: Catalog roles for those assignments, same order
        permissions: Union of the roles' permission sets
        primary: Highest-level role, or None if nothing resolved
    """
    assignments: Tuple[RoleAssignment, ...] = ()
    roles: Tuple[Role, ...] = ()
    permissions: FrozenSet[str] = frozenset()
    primary: Optional[Role] = None

    @property
    def level(self) -> int:
        return self.primary.level if self.primary else 0

    @property
    def role_names(self) -> Tuple[str, ...]:
        return tuple(role.name for role in self.roles)

    @property
    def primary_assignment(self) -> Optional[RoleAssignment]:
        """First assignment that resolved to the primary role."""
        for assignment, role in zip(self.assignments, self.roles):
            if role is self.primary:
                return assignment
        return None


class RBACEvaluator:
    """
    RBAC stage of the pipeline.

    Stateless; every call works from the catalog snapshot it is given.
    """

    def resolve(self, request: EvaluationRequest, catalog: CatalogSnapshot) -> Tuple[Optional[str], ResolvedRoles]:
        """
        Resolve active assignments against the catalog.

        Args:
            request: Normalized request
            catalog: Catalog snapshot for this evaluation

        Returns:
            Tuple of (deny reason or None, ResolvedRoles)
        """
        active = request.user.active_assignments
        if not active:
            return NO_ACTIVE_ROLES, ResolvedRoles()

        roles = []
        for assignment in active:
            role = catalog.get(assignment.role_name)
            if role is None:
                return INVALID_ROLE_CONFIGURATION, ResolvedRoles()
            roles.append(role)

        permissions = frozenset().union(*(role.permissions for role in roles))

        primary = roles[0]
        for role in roles[1:]:
            if role.level > primary.level:
                primary = role

        return None, ResolvedRoles(
            assignments=active,
            roles=tuple(roles),
            permissions=permissions,
            primary=primary,
        )

    def evaluate(
        self,
        request: EvaluationRequest,
        catalog: CatalogSnapshot,
        grant: Optional[TemporaryAccess] = None
    ) -> Tuple[StageResult, ResolvedRoles]:
        """
        Check the requested action against the resolved permission set.

        Args:
            request: Normalized request
            catalog: Catalog snapshot for this evaluation
            grant: Valid temporary grant matching the request's case, if any

        Returns:
            Tuple of (StageResult, ResolvedRoles)
        """
        failure, resolved = self.resolve(request, catalog)
        if failure is not None:
            return StageResult.deny(STAGE, failure), resolved

        action = request.action
        metadata = {"roles": list(resolved.role_names)}

        if action in resolved.permissions:
            return StageResult.allow(STAGE, RBAC_GRANTED, metadata=metadata), resolved

        if (
            grant is not None
            and action in grant.granted_permissions
            and catalog.defines_permission(action)
        ):
            metadata["temporaryAccessId"] = grant.id
            return StageResult.allow(
                STAGE,
                TEMPORARY_PERMISSION_GRANTED,
                obligations={"auditLevel": "enhanced"},
                metadata=metadata,
            ), resolved

        return StageResult.deny(STAGE, MISSING_PERMISSION, metadata=metadata), resolved
