"""
Policy Configuration
====================

Every policy table and default the decision point consults, in one frozen
object. A running engine holds a single ``PolicyConfig`` instance; swapping
configuration means building a new engine, never editing the tables in place.

Defaults live as module-level constants. A handful of numeric knobs can be
overridden from ``AUTHZ_*`` environment variables through
``PolicyConfig.from_env()``.
"""

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple

# ============================================================================
# Defaults
# ============================================================================

MFA_TIMEOUT_MINUTES = 30
STEP_UP_TIMEOUT_MINUTES = 5

ALLOWED_MFA_METHODS = frozenset({"totp", "backup_code", "hardware_key"})

# Reason emitted when MFA is absent for the action
SENSITIVE_ACTIONS = {
    "unmask_pii_with_mfa": "MFA required for PII unmasking",
    "approve_temp_access_region": "MFA required for temporary access approval",
    "assign_roles": "MFA required for sensitive operations",
    "set_pii_scope": "MFA required for sensitive operations",
    "set_allowed_regions": "MFA required for sensitive operations",
    "manage_users": "MFA required for sensitive operations",
    "manage_service_configs": "MFA required for sensitive operations",
    "set_service_limits": "MFA required for sensitive operations",
    "manage_feature_flags": "MFA required for sensitive operations",
    "access_restricted_evidence": "MFA required for sensitive operations",
    "export_full_profile": "MFA required for sensitive operations",
}
DEFAULT_MFA_REASON = "MFA required for sensitive operations"

ELEVATED_ACTIONS = frozenset({
    "approve_temp_access_region",
    "assign_roles",
    "set_pii_scope",
    "set_allowed_regions",
    "emergency_access",
})

# Roles allowed to use a case-bound temporary grant to cross regions
ESCALATION_ROLES = {
    "support": "support_escalation",
    "risk_investigator": "temporary_escalation",
}

EMERGENCY_ACTION = "emergency_access"

CONFIDENTIAL_MIN_LEVEL = 25
RESTRICTED_MIN_LEVEL = 30

UNMASKED_EXPORT_ACTIONS = frozenset({"export_unmasked", "export_full_profile"})
EXPORT_ACTION_PREFIX = "export_"
BATCH_ACTION_PREFIX = "batch_"

PII_FIELDS = frozenset({
    "phone",
    "email",
    "license_number",
    "national_id",
    "address",
    "date_of_birth",
    "bank_account",
})

EXPORT_RESTRICTIONS = (
    "mask_personal_data",
    "redact_sensitive_fields",
    "audit_export_access",
)

SENSITIVE_PERSONAL_INFORMATION = "sensitive_personal_information"
PERSONAL_IDENTIFIABLE_INFORMATION = "personal_identifiable_information"

GEO_VELOCITY_THRESHOLD_KM = 1000
MFA_FAILURE_THRESHOLD = 2

CACHE_TTL_SECONDS = 60
CACHE_SHARDS = 16
CACHE_MAX_ENTRIES_PER_SHARD = 1024

LATENCY_WARNING_MS = 40
LATENCY_CRITICAL_MS = 100

POLICY_VERSION = "2024.1"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class PolicyConfig:
    """
    Frozen policy tables for one engine instance.

    Attributes:
        mfa_timeout_minutes: Default MFA freshness window
        step_up_timeout_minutes: Freshness window for elevated operations
        allowed_mfa_methods: Accepted ``context.mfa_method`` values
        sensitive_actions: Action -> reason emitted when MFA is missing
        elevated_actions: Actions that require step-up MFA
        escalation_roles: Role name -> override path for cross-region escalation
        confidential_min_level / restricted_min_level: Role-level floors per data class
        cache_ttl_seconds: Upper bound on any cached decision lifetime
    """
    mfa_timeout_minutes: int = MFA_TIMEOUT_MINUTES
    step_up_timeout_minutes: int = STEP_UP_TIMEOUT_MINUTES
    allowed_mfa_methods: FrozenSet[str] = ALLOWED_MFA_METHODS
    sensitive_actions: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(SENSITIVE_ACTIONS))
    )
    default_mfa_reason: str = DEFAULT_MFA_REASON
    elevated_actions: FrozenSet[str] = ELEVATED_ACTIONS
    escalation_roles: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(ESCALATION_ROLES))
    )
    emergency_action: str = EMERGENCY_ACTION
    confidential_min_level: int = CONFIDENTIAL_MIN_LEVEL
    restricted_min_level: int = RESTRICTED_MIN_LEVEL
    unmasked_export_actions: FrozenSet[str] = UNMASKED_EXPORT_ACTIONS
    export_action_prefix: str = EXPORT_ACTION_PREFIX
    batch_action_prefix: str = BATCH_ACTION_PREFIX
    pii_fields: FrozenSet[str] = PII_FIELDS
    export_restrictions: Tuple[str, ...] = EXPORT_RESTRICTIONS
    geo_velocity_threshold_km: int = GEO_VELOCITY_THRESHOLD_KM
    mfa_failure_threshold: int = MFA_FAILURE_THRESHOLD
    cache_ttl_seconds: int = CACHE_TTL_SECONDS
    cache_shards: int = CACHE_SHARDS
    cache_max_entries_per_shard: int = CACHE_MAX_ENTRIES_PER_SHARD
    latency_warning_ms: int = LATENCY_WARNING_MS
    latency_critical_ms: int = LATENCY_CRITICAL_MS
    policy_version: str = POLICY_VERSION

    def mfa_reason_for(self, action: str) -> str:
        return self.sensitive_actions.get(action, self.default_mfa_reason)

    def override_path_for(self, role_name: Optional[str]) -> Optional[str]:
        if role_name is None:
            return None
        return self.escalation_roles.get(role_name)

    @classmethod
    def from_env(cls) -> "PolicyConfig":
        """
        Build a config with numeric knobs taken from the environment.

        Recognised variables: ``AUTHZ_MFA_TIMEOUT_MINUTES``,
        ``AUTHZ_STEP_UP_TIMEOUT_MINUTES``, ``AUTHZ_CACHE_TTL_SECONDS``,
        ``AUTHZ_CACHE_SHARDS``, ``AUTHZ_LATENCY_WARNING_MS`` and
        ``AUTHZ_LATENCY_CRITICAL_MS``.

        Returns:
            PolicyConfig instance
        """
        return cls(
            mfa_timeout_minutes=_env_int("AUTHZ_MFA_TIMEOUT_MINUTES", MFA_TIMEOUT_MINUTES),
            step_up_timeout_minutes=_env_int("AUTHZ_STEP_UP_TIMEOUT_MINUTES", STEP_UP_TIMEOUT_MINUTES),
            cache_ttl_seconds=_env_int("AUTHZ_CACHE_TTL_SECONDS", CACHE_TTL_SECONDS),
            cache_shards=_env_int("AUTHZ_CACHE_SHARDS", CACHE_SHARDS),
            latency_warning_ms=_env_int("AUTHZ_LATENCY_WARNING_MS", LATENCY_WARNING_MS),
            latency_critical_ms=_env_int("AUTHZ_LATENCY_CRITICAL_MS", LATENCY_CRITICAL_MS),
        )
