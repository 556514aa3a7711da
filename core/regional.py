"""
Regional Access Resolver
========================

Enforces geographic boundaries and case-bound cross-region escalation.

The effective region set is the union of ``allowed_regions`` over the
user's active assignments; ``GlobalRegions`` anywhere in that union grants
every (syntactically valid) region.

Outside the effective set the request must escalate. Failures are checked
in this order, each with its own reason:

1. primary role not in the escalation table -> "Regional access denied"
2. user holds no temporary grants at all    -> "Regional access denied"
3. no case id in context                   -> "Cross-region access requires valid case ID"
4. no grant for that case                  -> "Invalid case ID for cross-region override"
5. grant for the case, not for the region  -> "Regional access denied"
6. matching grants expired or inactive     -> "Temporary access expired"

Confidential data must also lie inside the primary assignment's regions;
under a secondary assignment only, the same escalation applies. Every
escalation failure on confidential data reports "Cross-region confidential
data access denied".

Success adds "Cross-region override granted", an enhanced audit level and
the role's override path.

The break-glass action is handled first: it needs an emergency
justification and an approver other than the requester, in any region.
"""

import logging
from datetime import datetime

from models.policy import DataClass, EvaluationRequest, RegionSet, Regions
from .config import PolicyConfig
from .decision import StageResult
from .rbac_engine import ResolvedRoles
from .temporary_access import GrantStatus, TemporaryAccessResolver

logger = logging.getLogger(__name__)

STAGE = "regional"

REGIONAL_ACCESS_DENIED = "Regional access denied"
CROSS_REGION_CONFIDENTIAL_DENIED = "Cross-region confidential data access denied"
CASE_ID_REQUIRED = "Cross-region access requires valid case ID"
INVALID_CASE_FOR_OVERRIDE = "Invalid case ID for cross-region override"
TEMPORARY_ACCESS_EXPIRED = "Temporary access expired"
OVERRIDE_GRANTED = "Cross-region override granted"
EMERGENCY_GRANTED = "Emergency access granted"
EMERGENCY_DENIED = "Emergency access requires proper justification and approval"

TOKEN_REPLAY_FLAG = "token_replay_attempt"
EMERGENCY_OVERRIDE_PATH = "emergency_break_glass"


def effective_regions(resolved: ResolvedRoles) -> Regions:
    """Union of allowed regions over the resolved active assignments."""
    merged: Regions = RegionSet()
    for assignment in resolved.assignments:
        merged = merged.union(assignment.allowed_regions)
    return merged


class RegionalAccessResolver:
    """
    Regional stage of the pipeline.

    Args:
        config: Policy tables (escalation roles, emergency action)
        temporary_access: Grant resolver shared with the other stages
    """

    def __init__(self, config: PolicyConfig, temporary_access: TemporaryAccessResolver):
        self.config = config
        self.temporary_access = temporary_access

    def evaluate(
        self,
        request: EvaluationRequest,
        resolved: ResolvedRoles,
        now: datetime
    ) -> StageResult:
        """
        Decide whether the user may act in the resource's region.

        Args:
            request: Normalized request
            resolved: Output of the RBAC stage
            now: Evaluation time

        Returns:
            StageResult
        """
        region_id = request.resource.region_id
        in_region = effective_regions(resolved).contains(region_id)

        if request.action == self.config.emergency_action:
            return self._emergency(request, in_region)

        confidential = request.resource.data_class is DataClass.CONFIDENTIAL
        if in_region and not (confidential and self._outside_primary(request, resolved)):
            return StageResult.allow(STAGE)

        return self._escalate(request, resolved, now, confidential)

    # ------------------------------------------------------------------------

    def _emergency(self, request: EvaluationRequest, in_region: bool) -> StageResult:
        context = request.context
        approver = context.approver_signature
        if not context.emergency_justification or not approver or approver == request.user.id:
            return StageResult.deny(STAGE, EMERGENCY_DENIED)

        logger.warning(
            "Break-glass access by %s in region %s approved by %s",
            request.user.id, request.resource.region_id, approver,
        )
        metadata = {"emergencyApprover": approver}
        if not in_region:
            metadata["overridePath"] = EMERGENCY_OVERRIDE_PATH
        return StageResult.allow(
            STAGE,
            EMERGENCY_GRANTED,
            obligations={
                "auditLevel": "emergency",
                "requireReview": True,
                "notifyCompliance": True,
            },
            metadata=metadata,
        )

    def _outside_primary(self, request: EvaluationRequest, resolved: ResolvedRoles) -> bool:
        primary = resolved.primary_assignment
        return primary is None or not primary.allowed_regions.contains(request.resource.region_id)

    def _escalate(
        self,
        request: EvaluationRequest,
        resolved: ResolvedRoles,
        now: datetime,
        confidential: bool = False
    ) -> StageResult:
        """
        Cross-region escalation through a case-bound grant.

        Every failure on confidential data reports the confidential reason.
        """
        resource = request.resource
        context = request.context

        metadata = {}
        if context.original_region is not None and context.original_region != resource.region_id:
            metadata["securityFlag"] = TOKEN_REPLAY_FLAG
            logger.warning(
                "Possible token replay: %s presented region %s for %s",
                request.user.id, context.original_region, resource.region_id,
            )

        primary_name = resolved.primary.name if resolved.primary else None
        override_path = self.config.override_path_for(primary_name)
        if override_path is None:
            reason = REGIONAL_ACCESS_DENIED
            if confidential:
                reason = CROSS_REGION_CONFIDENTIAL_DENIED
            return StageResult.deny(STAGE, reason, metadata=metadata)

        lookup = self.temporary_access.lookup(
            request.user, context.case_id, resource.region_id, now
        )

        if lookup.status is GrantStatus.ACTIVE:
            metadata["overridePath"] = override_path
            metadata["temporaryAccessId"] = lookup.grant.id
            return StageResult.allow(
                STAGE,
                OVERRIDE_GRANTED,
                obligations={"auditLevel": "enhanced"},
                metadata=metadata,
            )

        reason = {
            GrantStatus.NO_GRANTS: REGIONAL_ACCESS_DENIED,
            GrantStatus.NO_CASE: CASE_ID_REQUIRED,
            GrantStatus.CASE_NOT_FOUND: INVALID_CASE_FOR_OVERRIDE,
            GrantStatus.REGION_NOT_GRANTED: REGIONAL_ACCESS_DENIED,
            GrantStatus.EXPIRED: TEMPORARY_ACCESS_EXPIRED,
        }[lookup.status]
        if confidential:
            reason = CROSS_REGION_CONFIDENTIAL_DENIED
        return StageResult.deny(STAGE, reason, metadata=metadata)
