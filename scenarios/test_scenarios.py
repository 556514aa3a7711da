"""
Policy Scenario Walkthrough
===========================

Predefined scenarios demonstrating how the decision point composes its
stages:

1. Regional boundaries: in-region work, missing permissions, other regions
2. MFA for PII unmasking: fresh, stale and missing verification
3. Case-bound escalation: temporary grants and their failure modes
4. Data sensitivity: PII scope, exports, batch jobs, legal basis
5. Hostile input: injection payloads rejected at the normalizer
6. Break-glass: emergency access with and without a second approver
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.catalog import RoleCatalogProvider
from core.engine import PolicyEngine
from .demo_data import (
    CEBU, DAVAO, FRAUD_CASE, INVALID_CASE, MANILA, SUPPORT_CASE,
    build_request, demo_catalog, demo_users,
)

console = Console()

# (label, request, expected decision, expected first reason or None)
TestCase = Tuple[str, Dict[str, Any], str, Optional[str]]


def _engine() -> PolicyEngine:
    return PolicyEngine(RoleCatalogProvider(demo_catalog()), use_cache=False)


def _iso(moment: datetime) -> str:
    return moment.isoformat()


def run_scenarios(scenario_name: str = "all"):
    """
    Run predefined policy scenarios.

    Args:
        scenario_name: Scenario to run, or "all"
    """
    scenarios = {
        "regional": run_regional_scenario,
        "mfa": run_mfa_scenario,
        "temporary_access": run_temporary_access_scenario,
        "sensitivity": run_sensitivity_scenario,
        "attacks": run_attack_scenario,
        "emergency": run_emergency_scenario,
    }

    if scenario_name == "all":
        for name, func in scenarios.items():
            console.print(f"\n[bold cyan]{'=' * 60}[/bold cyan]")
            func()
    elif scenario_name in scenarios:
        scenarios[scenario_name]()
    else:
        console.print(f"[red]Unknown scenario: {scenario_name}[/red]")
        console.print(f"Available: {', '.join(scenarios.keys())}, all")


def run_regional_scenario():
    """
    Scenario 1: Regional boundaries.

    A ground operations agent assigned to Metro Manila may dispatch there,
    may not manage users anywhere, and may not dispatch in Cebu.
    """
    console.print(Panel(
        "[bold]Scenario 1: Regional Boundaries[/bold]\n\n"
        "Tests role permissions combined with the user's assigned regions.\n"
        "Ground operations are limited to one region and hold no escalation path.",
        title="Regional Access",
        box=box.DOUBLE
    ))

    users = demo_users()
    ground = users["ground_ops"]
    auditor = users["auditor"]

    test_cases: List[TestCase] = [
        ("ground_ops assign_driver @ Manila", build_request(ground, MANILA, "assign_driver"),
         "allow", "RBAC permission granted"),
        ("ground_ops manage_users @ Manila", build_request(ground, MANILA, "manage_users"),
         "deny", "Missing required permission"),
        ("ground_ops assign_driver @ Cebu", build_request(ground, CEBU, "assign_driver"),
         "deny", "Regional access denied"),
        ("ground_ops confidential @ Cebu",
         build_request(ground, CEBU, "view_live_map", data_class="confidential"),
         "deny", "Cross-region confidential data access denied"),
        ("auditor read_all_configs @ Davao", build_request(auditor, DAVAO, "read_all_configs"),
         "allow", "RBAC permission granted"),
    ]

    _run_test_cases(test_cases, "Regional Access Tests")


def run_mfa_scenario():
    """
    Scenario 2: MFA for PII unmasking.

    A risk investigator with full PII scope unmasks data in their own
    region. Freshness and method of the MFA proof decide the outcome.
    """
    console.print(Panel(
        "[bold]Scenario 2: MFA Freshness and Step-Up[/bold]\n\n"
        "Sensitive actions need MFA within 30 minutes; elevated actions\n"
        "need it within 5 minutes. Unsupported methods are rejected.",
        title="Multi-Factor Authentication",
        box=box.DOUBLE
    ))

    now = datetime.now(timezone.utc)
    users = demo_users(now)
    investigator = users["risk_investigator"]
    iam = users["iam_admin"]

    test_cases: List[TestCase] = [
        ("unmask with fresh totp",
         build_request(investigator, CEBU, "unmask_pii_with_mfa", mfaPresent=True,
                       mfaTimestamp=_iso(now - timedelta(minutes=2)), mfaMethod="totp"),
         "allow", "RBAC permission granted"),
        ("unmask without MFA",
         build_request(investigator, CEBU, "unmask_pii_with_mfa"),
         "deny", "MFA required for PII unmasking"),
        ("unmask with 45 minute old MFA",
         build_request(investigator, CEBU, "unmask_pii_with_mfa", mfaPresent=True,
                       mfaTimestamp=_iso(now - timedelta(minutes=45)), mfaMethod="totp"),
         "deny", "MFA verification expired"),
        ("unmask with sms code",
         build_request(investigator, CEBU, "unmask_pii_with_mfa", mfaPresent=True,
                       mfaTimestamp=_iso(now), mfaMethod="sms"),
         "deny", "Invalid or unsupported MFA method"),
        ("assign_roles with 10 minute old MFA",
         build_request(iam, MANILA, "assign_roles", mfaPresent=True,
                       mfaTimestamp=_iso(now - timedelta(minutes=10)), mfaMethod="hardware_key"),
         "deny", "Fresh MFA required for elevated operation"),
        ("assign_roles over API without MFA",
         build_request(iam, MANILA, "assign_roles", channel="api"),
         "deny", "MFA required for sensitive operations"),
    ]

    _run_test_cases(test_cases, "MFA Gate Tests")


def run_temporary_access_scenario():
    """
    Scenario 3: Case-bound escalation.

    A Cebu support agent holds a four hour grant into Metro Manila for one
    support case.
    """
    console.print(Panel(
        "[bold]Scenario 3: Temporary Cross-Region Access[/bold]\n\n"
        "Escalation-eligible roles may cross regions only with a case ID\n"
        "that matches an active, independently approved grant.",
        title="Temporary Access",
        box=box.DOUBLE
    ))

    now = datetime.now(timezone.utc)
    users = demo_users(now)
    support = users["support"]

    expired = build_request(support, MANILA, "case_open", caseId=SUPPORT_CASE)
    expired["user"]["temporaryAccess"][0]["expiresAt"] = _iso(now - timedelta(minutes=1))

    test_cases: List[TestCase] = [
        ("case_open @ Manila with case",
         build_request(support, MANILA, "case_open", caseId=SUPPORT_CASE),
         "allow", "RBAC permission granted"),
        ("case_open @ Manila without case",
         build_request(support, MANILA, "case_open"),
         "deny", "Cross-region access requires valid case ID"),
        ("case_open @ Manila with unknown case",
         build_request(support, MANILA, "case_open", caseId=INVALID_CASE),
         "deny", "Invalid case ID for cross-region override"),
        ("case_open @ Davao with case",
         build_request(support, DAVAO, "case_open", caseId=SUPPORT_CASE),
         "deny", "Regional access denied"),
        ("case_open @ Manila, grant expired", expired,
         "deny", "Temporary access expired"),
        ("investigator @ Manila, no grants",
         build_request(users["risk_investigator"], MANILA, "view_evidence", caseId=FRAUD_CASE),
         "deny", "Regional access denied"),
    ]

    _run_test_cases(test_cases, "Temporary Access Tests")


def run_sensitivity_scenario():
    """
    Scenario 4: Data sensitivity.

    PII scope against data classification, exports, batch jobs and
    sensitive personal information.
    """
    console.print(Panel(
        "[bold]Scenario 4: Data Sensitivity[/bold]\n\n"
        "PII scope is checked against the data classification. Exports and\n"
        "batch jobs carry extra rules; sensitive personal information needs a\n"
        "legal basis.",
        title="Data Sensitivity",
        box=box.DOUBLE
    ))

    now = datetime.now(timezone.utc)
    users = demo_users(now)
    fresh = {"mfaPresent": True, "mfaTimestamp": _iso(now), "mfaMethod": "totp"}
    spi = {"dataCategory": "sensitive_personal_information"}

    test_cases: List[TestCase] = [
        ("ops_manager masked PII @ Davao",
         build_request(users["ops_manager"], DAVAO, "view_driver_files_masked", contains_pii=True),
         "allow", "RBAC permission granted"),
        ("ops_monitor confidential @ Cebu",
         build_request(users["ops_monitor"], CEBU, "view_live_map", data_class="confidential"),
         "deny", "Insufficient access level for data class"),
        ("analyst confidential PII export",
         build_request(users["analyst"], MANILA, "export_reports",
                       data_class="confidential", contains_pii=True),
         "allow", "RBAC permission granted"),
        ("analyst unmasked export",
         build_request(users["analyst"], MANILA, "export_unmasked", contains_pii=True),
         "deny", "Unmasked export requires full PII scope"),
        ("regional_manager batch PII without MFA",
         build_request(users["regional_manager"], MANILA, "batch_user_update", contains_pii=True),
         "deny", "MFA required for batch PII operations"),
        ("investigator restricted PII with MFA",
         build_request(users["risk_investigator"], CEBU, "view_evidence",
                       data_class="restricted", contains_pii=True, **fresh),
         "allow", "RBAC permission granted"),
        ("investigator SPI without legal basis",
         build_request(users["risk_investigator"], CEBU, "view_evidence", resource=spi),
         "deny", "Legal basis required for sensitive personal information"),
        ("investigator SPI under court order",
         build_request(users["risk_investigator"], CEBU, "view_evidence", resource=spi,
                       courtOrder=True),
         "allow", "RBAC permission granted"),
    ]

    _run_test_cases(test_cases, "Data Sensitivity Tests")


def run_attack_scenario():
    """
    Scenario 5: Hostile input.

    Wildcards, injection payloads, traversal tokens and tampered permission
    claims never reach the policy stages.
    """
    console.print(Panel(
        "[bold]Scenario 5: Hostile Input[/bold]\n\n"
        "Malformed identifiers are rejected at the normalizer, regardless of\n"
        "role. Permissions carried on the user object are ignored.",
        title="Attack Vectors",
        box=box.DOUBLE
    ))

    users = demo_users()
    admin = users["app_admin"]
    ground = users["ground_ops"]

    tampered = build_request(ground, MANILA, "manage_users")
    tampered["user"]["permissions"] = ["manage_users", "assign_roles"]

    test_cases: List[TestCase] = [
        ("wildcard region", build_request(admin, "*", "manage_feature_flags"),
         "deny", "Invalid region identifier"),
        ("SQL injection region",
         build_request(admin, "reg-ncr-manila-001; DROP TABLE users;", "manage_feature_flags"),
         "deny", "Invalid region identifier"),
        ("path traversal region", build_request(admin, "../reg-admin", "manage_feature_flags"),
         "deny", "Invalid region identifier"),
        ("null byte region", build_request(admin, "reg-ncr-manila-001\x00admin", "manage_feature_flags"),
         "deny", "Invalid region identifier"),
        ("unknown region", build_request(admin, "reg-invalid-001", "manage_feature_flags"),
         "deny", "Invalid region identifier"),
        ("script in case id",
         build_request(users["support"], MANILA, "case_open", caseId="<script>alert(1)</script>"),
         "deny", "Invalid case identifier"),
        ("tampered permission claims", tampered,
         "deny", "Missing required permission"),
    ]

    _run_test_cases(test_cases, "Attack Vector Tests")


def run_emergency_scenario():
    """
    Scenario 6: Break-glass.

    A regional manager invokes emergency access outside their region.
    """
    console.print(Panel(
        "[bold]Scenario 6: Break-Glass Emergency Access[/bold]\n\n"
        "Emergency access crosses regions only with a justification and a\n"
        "second approver, and always raises the audit level to emergency.",
        title="Emergency Access",
        box=box.DOUBLE
    ))

    now = datetime.now(timezone.utc)
    users = demo_users(now)
    manager = users["regional_manager"]
    fresh = {"mfaPresent": True, "mfaTimestamp": _iso(now), "mfaMethod": "hardware_key"}

    test_cases: List[TestCase] = [
        ("approved emergency @ Cebu",
         build_request(manager, CEBU, "emergency_access",
                       emergencyJustification="Flood evacuation dispatch",
                       approverSignature="usr-iam-admin-001", **fresh),
         "allow", "RBAC permission granted"),
        ("self-approved emergency @ Cebu",
         build_request(manager, CEBU, "emergency_access",
                       emergencyJustification="Flood evacuation dispatch",
                       approverSignature=manager["id"], **fresh),
         "deny", "Emergency access requires proper justification and approval"),
        ("emergency without justification",
         build_request(manager, CEBU, "emergency_access",
                       approverSignature="usr-iam-admin-001", **fresh),
         "deny", "Emergency access requires proper justification and approval"),
    ]

    _run_test_cases(test_cases, "Emergency Access Tests")


def _run_test_cases(test_cases: List[TestCase], title: str):
    """
    Execute a list of test cases and display results.

    Args:
        test_cases: List of (label, request, expected decision, expected first reason)
        title: Title for the results table
    """
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Case", style="cyan")
    table.add_column("Expected")
    table.add_column("Actual")
    table.add_column("Result")
    table.add_column("Reasons")
    table.add_column("Audit")

    passed = 0
    failed = 0

    engine = _engine()
    try:
        for label, request, expected, expected_reason in test_cases:
            decision = engine.evaluate(request)

            matched = decision.decision == expected
            if expected_reason is not None:
                matched = matched and decision.reasons[0] == expected_reason

            expected_str = _decision_label(expected)
            actual_str = _decision_label(decision.decision)

            if matched:
                result = "[green]PASS[/green]"
                passed += 1
            else:
                result = "[red]FAIL[/red]"
                failed += 1

            reasons = "; ".join(decision.reasons)
            table.add_row(
                label,
                expected_str,
                actual_str,
                result,
                reasons[:60] + "..." if len(reasons) > 60 else reasons,
                decision.obligations.get("auditLevel", "-"),
            )
    finally:
        engine.close()

    console.print(table)
    console.print(f"\nResults: [green]{passed} passed[/green], [red]{failed} failed[/red]")
    return passed, failed


def _decision_label(decision: str) -> str:
    if decision == "allow":
        return "[green]ALLOW[/green]"
    return "[red]DENY[/red]"


if __name__ == "__main__":
    run_scenarios("all")
