"""
Temporary Access Resolver
=========================

Looks up time-bounded, case-justified escalation grants on a user.

Grants are read lazily: there is no background expiry. A grant counts only
while all of the following hold at evaluation time:
- ``is_active`` is set
- ``now < expires_at``
- it names an approver, and the approver is not the requester

Anything else is treated exactly like an absent grant; it never contributes
regions, permissions or a PII scope override.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from models.policy import TemporaryAccess, User


class GrantStatus(enum.Enum):
    """Outcome of a case-and-region grant lookup."""
    NO_GRANTS = "no_grants"
    NO_CASE = "no_case"
    CASE_NOT_FOUND = "case_not_found"
    REGION_NOT_GRANTED = "region_not_granted"
    EXPIRED = "expired"
    ACTIVE = "active"


@dataclass(frozen=True)
class GrantLookup:
    status: GrantStatus
    grant: Optional[TemporaryAccess] = None

    @property
    def found(self) -> bool:
        return self.status is GrantStatus.ACTIVE


def _pick(grants: Tuple[TemporaryAccess, ...]) -> Optional[TemporaryAccess]:
    """Latest-expiring grant; earlier position wins a tie."""
    best = None
    for grant in grants:
        if best is None or grant.expires_at > best.expires_at:
            best = grant
    return best


class TemporaryAccessResolver:
    """Resolves the single applicable grant for a ``(user, case)`` pair."""

    def active_grants(self, user: User, now: datetime) -> Tuple[TemporaryAccess, ...]:
        return tuple(g for g in user.temporary_access if g.is_valid_at(now))

    def grant_for_case(
        self,
        user: User,
        case_id: Optional[str],
        now: datetime
    ) -> Optional[TemporaryAccess]:
        """
        The valid grant matching ``case_id``, if any.

        Args:
            user: Requesting user
            case_id: Case from the request context
            now: Evaluation time

        Returns:
            TemporaryAccess or None
        """
        if case_id is None:
            return None
        matching = tuple(
            g for g in self.active_grants(user, now) if g.case_id == case_id
        )
        return _pick(matching)

    def lookup(
        self,
        user: User,
        case_id: Optional[str],
        region_id: str,
        now: datetime
    ) -> GrantLookup:
        """
        Find a valid grant for a case that covers ``region_id``.

        The status distinguishes why nothing was found, so the regional
        stage can give one precise reason per cause.
        """
        if not user.temporary_access:
            return GrantLookup(GrantStatus.NO_GRANTS)
        if case_id is None:
            return GrantLookup(GrantStatus.NO_CASE)

        for_case = tuple(g for g in user.temporary_access if g.case_id == case_id)
        if not for_case:
            return GrantLookup(GrantStatus.CASE_NOT_FOUND)

        for_region = tuple(g for g in for_case if region_id in g.granted_regions)
        if not for_region:
            return GrantLookup(GrantStatus.REGION_NOT_GRANTED)

        valid = tuple(g for g in for_region if g.is_valid_at(now))
        if not valid:
            return GrantLookup(GrantStatus.EXPIRED)

        return GrantLookup(GrantStatus.ACTIVE, _pick(valid))

    def nearest_expiry(self, user: User, now: datetime) -> Optional[datetime]:
        """Earliest ``expires_at`` among the user's valid grants."""
        active = self.active_grants(user, now)
        if not active:
            return None
        return min(g.expires_at for g in active)
