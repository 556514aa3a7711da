"""
Demo Data Loader
================

Sample policy data for an operations-management platform running in three
regions (Metro Manila, Cebu, Davao):

- 10 roles from ground operations up to application administration
- One user per role with realistic region, PII scope and MFA settings
- A support user holding a case-bound temporary grant into Manila

The same data backs the CLI demo, the scenario walkthrough and the tests.
User records are plain request-shaped dictionaries, exactly what a caller
would hand to ``PolicyEngine.evaluate``.
"""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from models.database import get_session, init_db
from models.policy import Role
from core.catalog import CatalogSnapshot, seed_catalog

MANILA = "reg-ncr-manila-001"
CEBU = "reg-cebu-002"
DAVAO = "reg-davao-003"

REGIONS = {
    MANILA: "Metro Manila",
    CEBU: "Cebu",
    DAVAO: "Davao",
}

SUPPORT_CASE = "CASE-SUPPORT-MNL-001"
FRAUD_CASE = "CASE-FRAUD-CEB-002"
INVALID_CASE = "INVALID-CASE-999"

_GROUND_OPS = {
    "assign_driver", "contact_driver_masked", "cancel_trip_ops",
    "view_live_map", "manage_queue", "view_metrics_region",
}
_OPS_MANAGER = _GROUND_OPS | {
    "manage_shift", "throttle_promos_region", "view_driver_files_masked",
    "batch_driver_update",
}

DEMO_ROLES: List[Role] = [
    Role("ground_ops", 10, frozenset(_GROUND_OPS),
         "Dispatch and live-trip operations in one region"),
    Role("ops_monitor", 20, frozenset({"view_live_map", "view_metrics_region"}),
         "Read-only monitoring of regional operations"),
    Role("support", 25, frozenset({
        "case_open", "case_close", "trip_replay_masked", "initiate_refund_request",
        "escalate_to_risk", "view_ticket_history", "view_masked_profiles",
    }), "Customer support agent"),
    Role("analyst", 25, frozenset({
        "query_curated_views", "export_reports", "process_personal_data",
        "export_unmasked",
    }), "Data analyst working on curated views"),
    Role("ops_manager", 30, frozenset(_OPS_MANAGER),
         "Regional operations manager"),
    Role("risk_investigator", 35, frozenset({
        "case_open", "case_close", "trip_replay_unmasked", "view_evidence",
        "unmask_pii_with_mfa", "device_check", "apply_account_hold",
        "close_investigation", "export_full_profile", "view_investigation_details",
        "access_restricted_evidence", "access_sensitive_data",
    }), "Fraud and risk investigator"),
    Role("regional_manager", 40, frozenset(_OPS_MANAGER | {
        "approve_temp_access_region", "export_driver_report", "emergency_access",
        "batch_user_update",
    }), "Regional manager with approval authority"),
    Role("auditor", 50, frozenset({
        "read_all_configs", "read_all_audit_logs", "read_only_everything",
        "audit_data_retention",
    }), "Internal or external auditor"),
    Role("iam_admin", 80, frozenset({
        "manage_users", "assign_roles", "set_allowed_regions", "set_pii_scope",
    }), "Identity and access administrator"),
    Role("app_admin", 90, frozenset({
        "manage_feature_flags", "manage_service_configs", "set_service_limits",
    }), "Application administrator"),
]


def demo_catalog() -> CatalogSnapshot:
    """Catalog snapshot of the demo roles and regions."""
    return CatalogSnapshot.build(DEMO_ROLES, REGIONS.keys())


def _user(
    user_id: str,
    role: str,
    regions: List[str],
    pii_scope: str,
    mfa_enabled: bool,
    temporary_access: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    return {
        "id": user_id,
        "roleAssignments": [{
            "role": {"name": role},
            "assignedAt": "2024-01-01T00:00:00Z",
            "isActive": True,
            "allowedRegions": list(regions),
        }],
        "piiScope": pii_scope,
        "mfaEnabled": mfa_enabled,
        "temporaryAccess": temporary_access or [],
    }


def demo_users(now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
    """
    One request-shaped user per demo role, keyed by role name.

    Args:
        now: Reference time for grant expiry (defaults to the current time)

    Returns:
        Role name -> user dictionary
    """
    now = now or datetime.now(timezone.utc)
    support_grant = {
        "id": "temp-access-001",
        "grantedPermissions": ["case_open", "view_masked_profiles"],
        "grantedRegions": [MANILA],
        "piiScopeOverride": "masked",
        "caseId": SUPPORT_CASE,
        "escalationType": "support",
        "justification": "Customer complaint investigation",
        "expiresAt": (now + timedelta(hours=4)).isoformat(),
        "isActive": True,
        "requestedBy": "usr-support-001",
        "approvedBy": "usr-regional-manager-001",
    }
    return {
        "ground_ops": _user("usr-ground-ops-001", "ground_ops", [MANILA], "none", False),
        "ops_monitor": _user("usr-ops-monitor-001", "ops_monitor", [CEBU], "none", False),
        "ops_manager": _user("usr-ops-manager-001", "ops_manager", [DAVAO], "masked", False),
        "regional_manager": _user("usr-regional-manager-001", "regional_manager", [MANILA], "masked", True),
        "support": _user("usr-support-001", "support", [CEBU], "masked", True, [support_grant]),
        "risk_investigator": _user("usr-risk-investigator-001", "risk_investigator", [CEBU, DAVAO], "full", True),
        "iam_admin": _user("usr-iam-admin-001", "iam_admin", [], "full", True),
        "app_admin": _user("usr-app-admin-001", "app_admin", [], "none", True),
        "analyst": _user("usr-analyst-001", "analyst", [MANILA, CEBU], "masked", False),
        "auditor": _user("usr-auditor-001", "auditor", [], "masked", True),
    }


def build_request(
    user: Dict[str, Any],
    region_id: str,
    action: str,
    data_class: str = "internal",
    contains_pii: bool = False,
    resource: Optional[Dict[str, Any]] = None,
    **context: Any
) -> Dict[str, Any]:
    """
    Assemble a request dictionary.

    The user is deep-copied so callers can tweak the request without
    touching the shared demo data.
    """
    payload = {
        "regionId": region_id,
        "dataClass": data_class,
        "containsPII": contains_pii,
    }
    payload.update(resource or {})
    ctx = {"channel": "ui", "mfaPresent": False}
    ctx.update(context)
    return {
        "user": copy.deepcopy(user),
        "resource": payload,
        "action": action,
        "context": ctx,
    }


def load_demo_data(session_factory=None, bind=None) -> Dict[str, int]:
    """
    Write the demo catalog to the SQL store.

    Args:
        session_factory: sessionmaker to use instead of the module default
        bind: Engine to create tables on instead of the module default

    Returns:
        Counts of roles, permissions and regions written
    """
    init_db(bind=bind)
    with get_session(session_factory) as session:
        return seed_catalog(session, DEMO_ROLES, REGIONS)
