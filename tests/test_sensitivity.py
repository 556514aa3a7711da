import pytest

from scenarios.demo_data import CEBU, DAVAO, MANILA, SUPPORT_CASE, build_request

from conftest import fresh_mfa

SPI = {"dataCategory": "sensitive_personal_information"}


class TestRestrictedPII:
    """Restricted PII is allowed only with full scope and fresh MFA."""

    def test_full_scope_fresh_mfa(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "risk_investigator", CEBU, "view_evidence",
            data_class="restricted", contains_pii=True, **fresh_mfa()
        ))
        assert decision.decision == "allow"
        assert decision.obligations["maskPII"] is False
        assert decision.obligations["piiScope"] == "full"
        assert decision.obligations["auditMFA"] is True

    def test_full_scope_without_mfa(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "risk_investigator", CEBU, "view_evidence", data_class="restricted", contains_pii=True
        ))
        assert decision.decision == "deny"
        assert decision.obligations["requireMFA"] is True

    def test_full_scope_stale_mfa(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "risk_investigator", CEBU, "view_evidence",
            data_class="restricted", contains_pii=True, **fresh_mfa(minutes_ago=31)
        ))
        assert decision.reasons == ("MFA verification expired",)

    def test_masked_scope(self, engine, users):
        user = dict(users["regional_manager"])
        decision = engine.evaluate(build_request(
            user, MANILA, "manage_shift", data_class="restricted", contains_pii=True, **fresh_mfa()
        ))
        assert decision.reasons == ("Restricted PII requires full scope with MFA",)

    def test_level_floor(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "support", CEBU, "case_open", data_class="restricted", contains_pii=True, **fresh_mfa()
        ))
        assert decision.reasons == ("Restricted data requires specialized access",)

    @pytest.mark.parametrize("scope,mfa", [
        ("none", True), ("masked", True), ("full", False),
    ])
    def test_only_full_and_fresh_allows(self, engine, users, scope, mfa):
        user = dict(users["risk_investigator"], piiScope=scope)
        context = fresh_mfa() if mfa else {}
        decision = engine.evaluate(build_request(
            user, CEBU, "view_evidence", data_class="restricted", contains_pii=True, **context
        ))
        assert decision.decision == "deny"


class TestConfidentialPII:

    def test_masked_scope_allowed_and_masked(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "ops_manager", DAVAO, "view_driver_files_masked",
            data_class="confidential", contains_pii=True, fields=["phone", "name", "email"]
        ))
        assert decision.decision == "allow"
        assert decision.obligations["maskPII"] is True
        assert decision.obligations["piiScope"] == "masked"
        assert decision.obligations["maskedFields"] == ("phone", "email")
        assert decision.obligations["auditLevel"] == "enhanced"

    def test_none_scope_denied(self, engine, users):
        user = dict(users["ops_manager"], piiScope="none")
        decision = engine.evaluate(build_request(
            user, DAVAO, "view_driver_files_masked", data_class="confidential", contains_pii=True
        ))
        assert decision.reasons == ("PII access denied - insufficient scope",)

    def test_level_floor(self, engine, request_for):
        decision = engine.evaluate(request_for("ops_monitor", CEBU, "view_live_map", data_class="confidential"))
        assert decision.reasons == ("Insufficient access level for data class",)


class TestInternalPII:

    def test_none_scope_allowed_masked(self, engine, request_for):
        decision = engine.evaluate(request_for("ground_ops", MANILA, "contact_driver_masked", contains_pii=True))
        assert decision.decision == "allow"
        assert decision.obligations["maskPII"] is True
        assert decision.obligations["piiScope"] == "none"

    def test_full_scope_without_fresh_mfa_still_masked(self, engine, request_for):
        decision = engine.evaluate(request_for("risk_investigator", CEBU, "view_evidence", contains_pii=True))
        assert decision.obligations["maskPII"] is True

    def test_full_scope_with_fresh_mfa_unmasked(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "risk_investigator", CEBU, "view_evidence", contains_pii=True, **fresh_mfa()
        ))
        assert decision.obligations["maskPII"] is False
        assert "maskedFields" not in decision.obligations

    @pytest.mark.parametrize("method", ["sms", None])
    def test_unsupported_or_missing_method_stays_masked(self, engine, request_for, method):
        context = fresh_mfa()
        context["mfaMethod"] = method
        decision = engine.evaluate(request_for("risk_investigator", CEBU, "view_evidence", contains_pii=True, **context))
        assert decision.decision == "allow"
        assert decision.obligations["maskPII"] is True

    def test_no_pii_no_masking_obligations(self, engine, request_for):
        decision = engine.evaluate(request_for("ground_ops", MANILA, "assign_driver"))
        assert "maskPII" not in decision.obligations
        assert "piiScope" not in decision.obligations


class TestGrantScopeOverride:

    def test_override_applies_with_matching_case(self, engine, users):
        user = dict(users["support"], piiScope="none")
        decision = engine.evaluate(build_request(
            user, MANILA, "view_masked_profiles",
            data_class="confidential", contains_pii=True, caseId=SUPPORT_CASE
        ))
        assert decision.decision == "allow"
        assert decision.obligations["piiScope"] == "masked"

    def test_override_ignored_without_case(self, engine, users):
        user = dict(users["support"], piiScope="none")
        decision = engine.evaluate(build_request(
            user, CEBU, "view_masked_profiles", data_class="confidential", contains_pii=True
        ))
        assert decision.reasons == ("PII access denied - insufficient scope",)


class TestExports:

    def test_pii_export_carries_restrictions(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "analyst", MANILA, "export_reports", data_class="confidential", contains_pii=True
        ))
        assert decision.decision == "allow"
        assert decision.obligations["exportRestrictions"] == (
            "mask_personal_data", "redact_sensitive_fields", "audit_export_access",
        )

    def test_pii_export_with_none_scope(self, engine, users):
        user = dict(users["analyst"], piiScope="none")
        decision = engine.evaluate(build_request(user, MANILA, "export_reports", contains_pii=True))
        assert decision.reasons == ("PII export denied - insufficient scope",)

    def test_export_format_marks_export(self, engine, users):
        user = dict(users["analyst"], piiScope="none")
        decision = engine.evaluate(build_request(
            user, MANILA, "query_curated_views", contains_pii=True, exportFormat="CSV"
        ))
        assert decision.reasons == ("PII export denied - insufficient scope",)

    def test_unmasked_export_needs_full_scope(self, engine, request_for):
        decision = engine.evaluate(request_for("analyst", MANILA, "export_unmasked", contains_pii=True))
        assert decision.reasons == ("Unmasked export requires full PII scope",)

    def test_unmasked_export_with_full_scope_needs_mfa(self, engine, users):
        user = dict(users["analyst"], piiScope="full")
        denied = engine.evaluate(build_request(user, MANILA, "export_unmasked", contains_pii=True))
        assert denied.decision == "deny"
        assert denied.obligations["requireMFA"] is True

        allowed = engine.evaluate(build_request(
            user, MANILA, "export_unmasked", contains_pii=True, **fresh_mfa()
        ))
        assert allowed.decision == "allow"
        assert allowed.obligations["maskPII"] is False

    def test_export_without_pii(self, engine, request_for):
        decision = engine.evaluate(request_for("analyst", MANILA, "export_reports"))
        assert decision.decision == "allow"
        assert "exportRestrictions" not in decision.obligations


class TestBatch:

    @pytest.fixture()
    def batch_user(self, users):
        # regional manager holds batch permissions; scope varies per test
        return dict(users["regional_manager"])

    def test_none_scope_prevents_leak(self, engine, batch_user):
        user = dict(batch_user, piiScope="none")
        decision = engine.evaluate(build_request(user, MANILA, "batch_driver_update", contains_pii=True))
        assert decision.reasons == ("Batch PII operations require elevated scope",)
        assert decision.obligations["preventPIILeak"] is True

    def test_requires_mfa_presence(self, engine, batch_user):
        decision = engine.evaluate(build_request(batch_user, MANILA, "batch_user_update", contains_pii=True))
        assert decision.reasons == ("MFA required for batch PII operations",)
        assert decision.obligations["requireMFA"] is True

    def test_with_mfa(self, engine, batch_user):
        decision = engine.evaluate(build_request(
            batch_user, MANILA, "batch_user_update", contains_pii=True, **fresh_mfa()
        ))
        assert decision.decision == "allow"
        assert decision.obligations["preventPIILeak"] is True

    def test_batch_channel_counts_as_batch(self, engine, batch_user):
        decision = engine.evaluate(build_request(
            batch_user, MANILA, "manage_shift", contains_pii=True, channel="batch"
        ))
        assert decision.reasons == ("MFA required for batch PII operations",)

    def test_includes_pii_context_flag(self, engine, batch_user):
        decision = engine.evaluate(build_request(batch_user, MANILA, "batch_user_update", includesPII=True))
        assert decision.reasons == ("MFA required for batch PII operations",)


class TestSensitivePersonalInformation:

    def test_requires_legal_basis(self, engine, request_for):
        decision = engine.evaluate(request_for("risk_investigator", CEBU, "view_evidence", resource=SPI))
        assert decision.reasons == ("Legal basis required for sensitive personal information",)

    @pytest.mark.parametrize("context", [{"legalBasis": "fraud_prevention"}, {"courtOrder": True}])
    def test_with_basis(self, engine, request_for, context):
        decision = engine.evaluate(request_for("risk_investigator", CEBU, "view_evidence", resource=SPI, **context))
        assert decision.decision == "allow"
        assert decision.obligations["notifyDPO"] is True
        assert decision.obligations["auditLevel"] == "maximum"
        assert "spi_protection" in decision.obligations["complianceFlags"]

    def test_maximum_audit_level_survives_pii_rules(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "risk_investigator", CEBU, "view_evidence", contains_pii=True, resource=SPI,
            courtOrder=True, **fresh_mfa()
        ))
        assert decision.obligations["auditLevel"] == "maximum"


class TestComplianceFlags:

    def test_personal_information_category(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "ops_manager", DAVAO, "view_driver_files_masked", contains_pii=True,
            resource={"dataCategory": "personal_identifiable_information"},
        ))
        assert decision.obligations["complianceFlags"] == ("dpa_2012",)

    def test_retention_expired(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "auditor", MANILA, "audit_data_retention",
            resource={"dataAgeYears": 8, "retentionYears": 5},
        ))
        assert decision.decision == "allow"
        assert decision.obligations["complianceFlags"] == ("retention_expired",)
        assert decision.obligations["requireReview"] is True

    def test_retention_compliant(self, engine, request_for):
        decision = engine.evaluate(request_for(
            "auditor", MANILA, "audit_data_retention",
            resource={"dataAgeYears": 2, "retentionYears": 5},
        ))
        assert decision.obligations["complianceFlags"] == ("retention_compliant",)
        assert "requireReview" not in decision.obligations
