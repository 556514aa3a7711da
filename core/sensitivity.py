"""
Data Sensitivity Gate
=====================

Cross-references the effective PII scope with the resource's classification
and the kind of operation. The effective scope is the user's own scope,
unless a valid temporary grant for the request's case carries a PII scope
override; that override then wins for the duration of the case.

Rules run in this order, and the first deny ends the stage:

1. Sensitive personal information needs a legal basis or court order.
2. Batch operations touching PII need a scope above ``none`` and MFA.
3. Exports: unmasked exports need ``full`` scope; PII exports need a scope
   above ``none`` and carry export restrictions.
4. Data class: role-level floors for confidential and restricted data, then
   the PII rules per class:
   - restricted: ``full`` scope and fresh MFA (the MFA gate enforces the MFA part)
   - confidential: any scope above ``none``
   - internal: any scope
   PII is masked unless the scope is ``full`` and MFA is fresh.
"""

from typing import Any, Dict, List, Optional

from models.policy import (
    Channel, DataClass, EvaluationRequest, PIIScope, TemporaryAccess,
)
from .config import (
    PERSONAL_IDENTIFIABLE_INFORMATION, SENSITIVE_PERSONAL_INFORMATION, PolicyConfig,
)
from .decision import StageResult
from .rbac_engine import ResolvedRoles

STAGE = "sensitivity"

LEGAL_BASIS_REQUIRED = "Legal basis required for sensitive personal information"
BATCH_SCOPE_REQUIRED = "Batch PII operations require elevated scope"
BATCH_MFA_REQUIRED = "MFA required for batch PII operations"
UNMASKED_EXPORT_DENIED = "Unmasked export requires full PII scope"
PII_EXPORT_DENIED = "PII export denied - insufficient scope"
INSUFFICIENT_LEVEL = "Insufficient access level for data class"
RESTRICTED_LEVEL_DENIED = "Restricted data requires specialized access"
RESTRICTED_PII_DENIED = "Restricted PII requires full scope with MFA"
PII_SCOPE_DENIED = "PII access denied - insufficient scope"


class SensitivityGate:
    """
    Data-sensitivity stage of the pipeline.

    Args:
        config: Policy tables (level floors, export and batch rules, PII fields)
    """

    def __init__(self, config: PolicyConfig):
        self.config = config

    def effective_scope(self, request: EvaluationRequest, grant: Optional[TemporaryAccess]) -> PIIScope:
        if grant is not None and grant.pii_scope_override is not None:
            return grant.pii_scope_override
        return request.user.pii_scope

    def is_batch(self, request: EvaluationRequest) -> bool:
        return (
            request.context.channel is Channel.BATCH
            or request.action.startswith(self.config.batch_action_prefix)
        )

    def is_export(self, request: EvaluationRequest) -> bool:
        return (
            request.action.startswith(self.config.export_action_prefix)
            or request.context.export_format is not None
        )

    def evaluate(
        self,
        request: EvaluationRequest,
        resolved: ResolvedRoles,
        grant: Optional[TemporaryAccess],
        mfa_fresh: bool
    ) -> StageResult:
        """
        Apply the sensitivity rules.

        Args:
            request: Normalized request
            resolved: Output of the RBAC stage (for role-level floors)
            grant: Valid temporary grant for the request's case, if any
            mfa_fresh: MFA present, with a supported method, inside the MFA window

        Returns:
            StageResult; ``requires_mfa`` asks the MFA gate to demand fresh MFA
        """
        resource = request.resource
        context = request.context
        scope = self.effective_scope(request, grant)
        touches_pii = resource.contains_pii or context.includes_pii
        unmasked = scope is PIIScope.FULL and mfa_fresh

        obligations: Dict[str, Any] = {}
        compliance: List[str] = []
        requires_mfa = False

        # 1. Sensitive personal information
        if resource.data_category == SENSITIVE_PERSONAL_INFORMATION:
            if not (context.legal_basis or context.court_order):
                return StageResult.deny(STAGE, LEGAL_BASIS_REQUIRED)
            obligations["notifyDPO"] = True
            obligations["auditLevel"] = "maximum"
            compliance.append("spi_protection")
        elif resource.data_category == PERSONAL_IDENTIFIABLE_INFORMATION:
            compliance.append("dpa_2012")

        if resource.data_age_years is not None and resource.retention_years is not None:
            if resource.data_age_years > resource.retention_years:
                compliance.append("retention_expired")
                obligations["requireReview"] = True
            else:
                compliance.append("retention_compliant")

        # 2. Batch operations
        if touches_pii and self.is_batch(request):
            if scope is PIIScope.NONE:
                return StageResult.deny(STAGE, BATCH_SCOPE_REQUIRED, obligations={"preventPIILeak": True})
            if not context.mfa_present:
                return StageResult.deny(
                    STAGE, BATCH_MFA_REQUIRED,
                    obligations={"requireMFA": True, "mfaChallenge": "totp_or_backup"},
                )
            obligations["preventPIILeak"] = True

        # 3. Exports
        if self.is_export(request):
            if request.action in self.config.unmasked_export_actions:
                if scope is not PIIScope.FULL:
                    return StageResult.deny(STAGE, UNMASKED_EXPORT_DENIED)
                requires_mfa = True
            if touches_pii:
                if scope is PIIScope.NONE:
                    return StageResult.deny(STAGE, PII_EXPORT_DENIED)
                obligations["exportRestrictions"] = list(self.config.export_restrictions)

        # 4. Data classification
        if resource.data_class is DataClass.CONFIDENTIAL and resolved.level < self.config.confidential_min_level:
            return StageResult.deny(STAGE, INSUFFICIENT_LEVEL)
        if resource.data_class is DataClass.RESTRICTED and resolved.level < self.config.restricted_min_level:
            return StageResult.deny(STAGE, RESTRICTED_LEVEL_DENIED)

        if touches_pii:
            if resource.data_class is DataClass.RESTRICTED:
                if scope is not PIIScope.FULL:
                    return StageResult.deny(STAGE, RESTRICTED_PII_DENIED)
                requires_mfa = True
            elif resource.data_class is DataClass.CONFIDENTIAL and scope is PIIScope.NONE:
                return StageResult.deny(STAGE, PII_SCOPE_DENIED)

            obligations["maskPII"] = not unmasked
            obligations["piiScope"] = scope.value
            obligations["auditLevel"] = obligations.get("auditLevel", "enhanced")
            if not unmasked:
                masked = [f for f in context.fields if f in self.config.pii_fields]
                if masked:
                    obligations["maskedFields"] = masked

        if compliance:
            obligations["complianceFlags"] = compliance

        return StageResult.allow(STAGE, obligations=obligations, requires_mfa=requires_mfa)
