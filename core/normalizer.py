"""
Request Normalizer
==================

First line of defense for the decision point. Turns a raw request mapping
(``user``, ``resource``, ``action``, ``context``) into a frozen
``EvaluationRequest`` or raises ``RequestValidationError`` with a stable
reason string.

Rules applied here:
- Identifiers (regions, actions, case ids, user ids) are checked against an
  allow-list pattern. Wildcards, separators, path-traversal tokens, control
  characters and injection payloads never reach the policy stages.
- Enumerations (PII scope, data class, channel) must be one of their known
  values.
- Flags are strict booleans; ``"true"`` or ``1`` are rejected rather than
  coerced.
- Every optional context field gets an explicit default.
- Free text (justifications, device ids, user agents) is stripped of
  control characters and truncated before it can reach a log line.

Keys may be given in ``snake_case`` or ``camelCase``.
"""

import ipaddress
import re
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Mapping, Optional, Tuple

from models.policy import (
    GLOBAL, Channel, Context, DataClass, EvaluationRequest, PIIScope,
    RegionSet, Regions, Resource, RoleAssignment, TemporaryAccess, User,
)
from .errors import RequestValidationError

# ============================================================================
# Identifier patterns
# ============================================================================

REGION_PATTERN = re.compile(r"^[A-Za-z0-9]+(?:-[A-Za-z0-9]+){0,5}$")
ACTION_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
CASE_ID_PATTERN = re.compile(r"^[A-Z0-9]+(?:-[A-Z0-9]+)*$")
USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}$")
ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
MFA_METHOD_PATTERN = re.compile(r"^[a-z_]{1,32}$")
TOKEN_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
EXPORT_FORMAT_PATTERN = re.compile(r"^[a-z0-9_]{1,16}$")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

MAX_REGION_LENGTH = 64
MAX_CASE_ID_LENGTH = 64
MAX_TEXT_LENGTH = 256
GLOBAL_MARKER = "global"

# Epoch values above this are taken to be milliseconds
_EPOCH_MS_THRESHOLD = 10 ** 11

# Timestamps outside this range are rejected so window arithmetic cannot overflow
EARLIEST_TIMESTAMP = datetime(1900, 1, 1, tzinfo=timezone.utc)
LATEST_TIMESTAMP = datetime(9000, 1, 1, tzinfo=timezone.utc)

INVALID_REGION = "Invalid region identifier"
INVALID_ACTION = "Invalid action identifier"
INVALID_CASE = "Invalid case identifier"
INVALID_USER = "Invalid user identifier"
INVALID_MFA_METHOD = "Invalid or unsupported MFA method"
MALFORMED_REQUEST = "Malformed request"


# ============================================================================
# Field helpers
# ============================================================================

def _get(data: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    """Return the first present key among ``names``, else ``default``."""
    for name in names:
        if name in data:
            return data[name]
    return default


def _require_mapping(value: Any, reason: str = MALFORMED_REQUEST) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise RequestValidationError(reason)
    return value


def _strict_bool(value: Any, field: str, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return value


def _non_negative_int(value: Any, field: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return value


def _non_negative_number(value: Any, field: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return float(value)


def _positive_minutes(value: Any, field: str, ceiling: int) -> int:
    """Context may tighten an MFA window but never widen it past ``ceiling``."""
    if value is None:
        return ceiling
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return min(value, ceiling)


def sanitize_text(value: Any, limit: int = MAX_TEXT_LENGTH) -> Optional[str]:
    """
    Make free text safe for messages and log lines.

    Args:
        value: Caller-supplied text, or None
        limit: Maximum length kept

    Returns:
        Stripped text without control characters, or None if empty
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise RequestValidationError(MALFORMED_REQUEST)
    cleaned = CONTROL_CHARS.sub("", value).strip()[:limit]
    return cleaned or None


def parse_timestamp(value: Any, field: str) -> Optional[datetime]:
    """
    Parse an epoch number, ISO-8601 string or datetime into aware UTC.

    Naive datetimes are taken to be UTC. Epoch values larger than 10^11 are
    read as milliseconds. Values before 1900 or after 9000 are rejected.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise RequestValidationError(f"Invalid value for {field}", field=field)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise RequestValidationError(f"Invalid value for {field}", field=field)
    else:
        raise RequestValidationError(f"Invalid value for {field}", field=field)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except OverflowError:
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    if not EARLIEST_TIMESTAMP <= parsed <= LATEST_TIMESTAMP:
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return parsed


# ============================================================================
# Identifier validation
# ============================================================================

def normalize_region(value: Any) -> str:
    """
    Validate and canonicalize a region identifier.

    Args:
        value: Raw region identifier

    Returns:
        Lower-cased region identifier

    Raises:
        RequestValidationError: ``"Invalid region identifier"``
    """
    if not isinstance(value, str) or not value or len(value) > MAX_REGION_LENGTH:
        raise RequestValidationError(INVALID_REGION, field="region")
    if not REGION_PATTERN.fullmatch(value):
        raise RequestValidationError(INVALID_REGION, field="region")
    return value.lower()


def normalize_regions(values: Any) -> Regions:
    """Map an allowed-regions value to ``GlobalRegions`` or a ``RegionSet``."""
    if values is None:
        return RegionSet()
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise RequestValidationError(INVALID_REGION, field="allowed_regions")
    if not values:
        return GLOBAL
    region_ids = set()
    for value in values:
        if isinstance(value, str) and value.lower() == GLOBAL_MARKER:
            return GLOBAL
        region_ids.add(normalize_region(value))
    return RegionSet(region_ids)


def normalize_action(value: Any) -> str:
    if not isinstance(value, str) or not ACTION_PATTERN.fullmatch(value):
        raise RequestValidationError(INVALID_ACTION, field="action")
    return value


def normalize_case_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not value or len(value) > MAX_CASE_ID_LENGTH:
        raise RequestValidationError(INVALID_CASE, field="case_id")
    canonical = value.upper()
    if not CASE_ID_PATTERN.fullmatch(canonical):
        raise RequestValidationError(INVALID_CASE, field="case_id")
    return canonical


def normalize_user_id(value: Any) -> str:
    if not isinstance(value, str) or not USER_ID_PATTERN.fullmatch(value) or ".." in value:
        raise RequestValidationError(INVALID_USER, field="user.id")
    return value


def _normalize_optional_user_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    return normalize_user_id(value)


def _normalize_token(value: Any, reason: str, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) or not TOKEN_PATTERN.fullmatch(value):
        raise RequestValidationError(reason, field=field)
    return value


def _normalize_enum(enum_cls, value: Any, default, reason: str, field: str):
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    if not isinstance(value, str):
        raise RequestValidationError(reason, field=field)
    try:
        return enum_cls(value.lower())
    except ValueError:
        raise RequestValidationError(reason, field=field)


def _string_list(values: Any, field: str) -> List[Any]:
    if values is None:
        return []
    if isinstance(values, str) or not isinstance(values, (list, tuple, set, frozenset)):
        raise RequestValidationError(f"Invalid value for {field}", field=field)
    return list(values)


# ============================================================================
# Normalizer
# ============================================================================

class RequestNormalizer:
    """
    Validates raw request mappings into canonical ``EvaluationRequest`` values.

    Args:
        mfa_timeout_minutes: Ceiling for ``context.mfa_timeout_minutes``
        step_up_timeout_minutes: Ceiling for ``context.step_up_timeout_minutes``
    """

    def __init__(self, mfa_timeout_minutes: int = 30, step_up_timeout_minutes: int = 5):
        self.mfa_timeout_minutes = mfa_timeout_minutes
        self.step_up_timeout_minutes = step_up_timeout_minutes

    def normalize(
        self,
        raw: Mapping[str, Any],
        known_regions: Optional[FrozenSet[str]] = None
    ) -> EvaluationRequest:
        """
        Validate a raw request.

        Structural checks on the resource and action run before the user is
        parsed, so a malformed region is reported even when the identity
        would also have been rejected.

        Args:
            raw: Mapping with ``user``, ``resource``, ``action`` and optional ``context``
            known_regions: Region registry; when given, unknown regions are invalid

        Returns:
            Canonical EvaluationRequest

        Raises:
            RequestValidationError: On any structural problem
        """
        raw = _require_mapping(raw)

        resource = self._normalize_resource(raw.get("resource"), known_regions)
        action = normalize_action(raw.get("action"))
        user = self._normalize_user(raw.get("user"))
        context = self._normalize_context(raw.get("context"))

        return EvaluationRequest(user=user, resource=resource, action=action, context=context)

    # ------------------------------------------------------------------------

    def _normalize_resource(
        self,
        data: Any,
        known_regions: Optional[FrozenSet[str]]
    ) -> Resource:
        data = _require_mapping(data)
        region_id = normalize_region(_get(data, "region_id", "regionId"))
        if known_regions and region_id not in known_regions:
            raise RequestValidationError(INVALID_REGION, field="resource.region_id")

        return Resource(
            region_id=region_id,
            data_class=_normalize_enum(
                DataClass, _get(data, "data_class", "dataClass"), DataClass.INTERNAL,
                "Invalid data classification", "resource.data_class",
            ),
            contains_pii=_strict_bool(
                _get(data, "contains_pii", "containsPII", "containsPii"), "contains_pii"
            ),
            data_category=_normalize_token(
                _get(data, "data_category", "dataCategory"),
                "Invalid data category", "resource.data_category",
            ),
            resource_type=_normalize_token(
                _get(data, "resource_type", "resourceType", "type"),
                "Invalid resource type", "resource.resource_type",
            ),
            data_age_years=_non_negative_int(
                _get(data, "data_age_years", "dataAgeYears", "dataAge"), "data_age_years"
            ),
            retention_years=_non_negative_int(
                _get(data, "retention_years", "retentionYears", "retentionPeriod"),
                "retention_years",
            ),
        )

    def _normalize_user(self, data: Any) -> User:
        data = _require_mapping(data, "Missing user identity")
        user_id = normalize_user_id(data.get("id"))

        raw_assignments = _get(data, "role_assignments", "roleAssignments", "roles", default=[])
        assignments = tuple(
            self._normalize_assignment(item)
            for item in _string_list(raw_assignments, "role_assignments")
        )

        raw_grants = _get(data, "temporary_access", "temporaryAccess", default=[])
        grants = tuple(
            self._normalize_grant(item)
            for item in _string_list(raw_grants, "temporary_access")
        )

        claimed = frozenset(
            p for p in _string_list(data.get("permissions"), "permissions")
            if isinstance(p, str)
        )

        return User(
            id=user_id,
            role_assignments=assignments,
            pii_scope=_normalize_enum(
                PIIScope, _get(data, "pii_scope", "piiScope"), PIIScope.NONE,
                "Invalid PII scope", "user.pii_scope",
            ),
            mfa_enabled=_strict_bool(_get(data, "mfa_enabled", "mfaEnabled"), "mfa_enabled"),
            temporary_access=grants,
            claimed_permissions=claimed,
        )

    def _normalize_assignment(self, data: Any) -> RoleAssignment:
        data = _require_mapping(data, "Invalid role configuration")
        role_ref = _get(data, "role", "role_name", "roleName")
        if isinstance(role_ref, Mapping):
            role_ref = role_ref.get("name")

        # Unusable role references are resolved as "unknown" by the RBAC stage
        role_name = None
        if isinstance(role_ref, str) and ROLE_NAME_PATTERN.fullmatch(role_ref):
            role_name = role_ref

        return RoleAssignment(
            role_name=role_name,
            is_active=_strict_bool(_get(data, "is_active", "isActive"), "is_active"),
            allowed_regions=normalize_regions(_get(data, "allowed_regions", "allowedRegions")),
            assigned_at=parse_timestamp(_get(data, "assigned_at", "assignedAt"), "assigned_at"),
        )

    def _normalize_grant(self, data: Any) -> TemporaryAccess:
        data = _require_mapping(data, "Invalid temporary access grant")

        expires_at = parse_timestamp(_get(data, "expires_at", "expiresAt"), "expires_at")
        if expires_at is None:
            raise RequestValidationError("Invalid temporary access grant", field="expires_at")

        case_id = normalize_case_id(_get(data, "case_id", "caseId"))
        if case_id is None:
            raise RequestValidationError("Invalid temporary access grant", field="case_id")

        regions = frozenset(
            normalize_region(r)
            for r in _string_list(_get(data, "granted_regions", "grantedRegions"), "granted_regions")
        )
        permissions = frozenset(
            normalize_action(p)
            for p in _string_list(
                _get(data, "granted_permissions", "grantedPermissions"), "granted_permissions"
            )
        )

        return TemporaryAccess(
            id=sanitize_text(data.get("id"), 64) or "",
            case_id=case_id,
            granted_permissions=permissions,
            granted_regions=regions,
            expires_at=expires_at,
            is_active=_strict_bool(_get(data, "is_active", "isActive"), "is_active"),
            pii_scope_override=_normalize_enum(
                PIIScope, _get(data, "pii_scope_override", "piiScopeOverride"), None,
                "Invalid PII scope", "pii_scope_override",
            ),
            escalation_type=_normalize_token(
                _get(data, "escalation_type", "escalationType"),
                "Invalid temporary access grant", "escalation_type",
            ),
            justification=sanitize_text(data.get("justification")) or "",
            requested_by=_normalize_optional_user_id(_get(data, "requested_by", "requestedBy")),
            approved_by=_normalize_optional_user_id(_get(data, "approved_by", "approvedBy")),
        )

    def _normalize_context(self, data: Any) -> Context:
        if data is None:
            return Context(
                mfa_timeout_minutes=self.mfa_timeout_minutes,
                step_up_timeout_minutes=self.step_up_timeout_minutes,
            )
        data = _require_mapping(data)

        mfa_method = _get(data, "mfa_method", "mfaMethod")
        if mfa_method is not None:
            if not isinstance(mfa_method, str) or not MFA_METHOD_PATTERN.fullmatch(mfa_method):
                raise RequestValidationError(INVALID_MFA_METHOD, field="mfa_method")

        original_region = _get(data, "original_region", "originalRegion")
        if original_region is not None:
            original_region = normalize_region(original_region)

        ip_address = _get(data, "ip_address", "ipAddress")
        if ip_address is not None:
            if not isinstance(ip_address, str):
                raise RequestValidationError("Invalid IP address", field="ip_address")
            try:
                ip_address = str(ipaddress.ip_address(ip_address.strip()))
            except ValueError:
                raise RequestValidationError("Invalid IP address", field="ip_address")

        export_format = _get(data, "export_format", "exportFormat")
        if export_format is not None:
            if not isinstance(export_format, str) or not EXPORT_FORMAT_PATTERN.fullmatch(export_format.lower()):
                raise RequestValidationError("Invalid export format", field="export_format")
            export_format = export_format.lower()

        fields: Tuple[str, ...] = tuple(
            _normalize_token(f, "Invalid field identifier", "fields")
            for f in _string_list(data.get("fields"), "fields")
        )

        return Context(
            channel=_normalize_enum(
                Channel, data.get("channel"), Channel.UI, "Invalid channel", "channel",
            ),
            mfa_present=_strict_bool(_get(data, "mfa_present", "mfaPresent"), "mfa_present"),
            mfa_timestamp=parse_timestamp(_get(data, "mfa_timestamp", "mfaTimestamp"), "mfa_timestamp"),
            mfa_method=mfa_method,
            mfa_timeout_minutes=_positive_minutes(
                _get(data, "mfa_timeout_minutes", "mfaTimeoutMinutes"),
                "mfa_timeout_minutes", self.mfa_timeout_minutes,
            ),
            step_up_timeout_minutes=_positive_minutes(
                _get(data, "step_up_timeout_minutes", "stepUpTimeoutMinutes"),
                "step_up_timeout_minutes", self.step_up_timeout_minutes,
            ),
            elevated_operation=_strict_bool(
                _get(data, "elevated_operation", "elevatedOperation"), "elevated_operation"
            ),
            case_id=normalize_case_id(_get(data, "case_id", "caseId")),
            legal_basis=_normalize_token(
                _get(data, "legal_basis", "legalBasis"), "Invalid legal basis", "legal_basis",
            ),
            court_order=_strict_bool(_get(data, "court_order", "courtOrder"), "court_order"),
            processing_basis=_normalize_token(
                _get(data, "processing_basis", "processingBasis"),
                "Invalid processing basis", "processing_basis",
            ),
            export_format=export_format,
            includes_pii=_strict_bool(_get(data, "includes_pii", "includesPII", "includesPii"), "includes_pii"),
            fields=fields,
            record_count=_non_negative_int(_get(data, "record_count", "recordCount"), "record_count"),
            original_region=original_region,
            device_id=sanitize_text(_get(data, "device_id", "deviceId"), 128),
            ip_address=ip_address,
            user_agent=sanitize_text(_get(data, "user_agent", "userAgent")),
            rapid_location_change=_strict_bool(
                _get(data, "rapid_location_change", "rapidLocationChange"), "rapid_location_change"
            ),
            ip_geo_distance_km=_non_negative_number(
                _get(data, "ip_geo_distance_km", "ipGeoDistanceKm", "ipGeoDistance"),
                "ip_geo_distance_km",
            ),
            mfa_failure_count=_non_negative_int(
                _get(data, "mfa_failure_count", "mfaFailureCount", "failedMfaAttempts"),
                "mfa_failure_count",
            ) or 0,
            emergency_justification=sanitize_text(
                _get(data, "emergency_justification", "emergencyJustification")
            ),
            approver_signature=_normalize_optional_user_id(
                _get(data, "approver_signature", "approverSignature")
            ),
            justification=sanitize_text(data.get("justification")),
            request_id=sanitize_text(_get(data, "request_id", "requestId"), 64),
        )
