"""
MFA Gate
========

Enforces multi-factor authentication for sensitive and elevated actions.

MFA is required when any of these hold:
- the action is in the configured sensitive-action table
- the action is elevated (configured, or ``context.elevated_operation``)
- an earlier stage asked for it (restricted PII at full scope, unmasked export)

Checks, in order, each a deny with ``requireMFA``:
1. no MFA presented          -> action-specific reason, ``mfaChallenge``
2. missing or unsupported method
                             -> "Invalid or unsupported MFA method"
3. older than the MFA window -> "MFA verification expired" (``session_timeout``)
4. elevated, older than the step-up window
                             -> "Fresh MFA required for elevated operation" (``step_up_required``)

The rules are the same on every channel. An API or batch request that
skips MFA on a sensitive action is additionally flagged.

When the context says MFA is present but gives no timestamp, an injected
``SessionStore`` is asked for the verification time. Without a store the
context's claim is taken at face value.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from models.policy import Channel, EvaluationRequest
from .config import PolicyConfig
from .decision import StageResult

logger = logging.getLogger(__name__)

STAGE = "mfa"

MFA_INVALID_METHOD = "Invalid or unsupported MFA method"
MFA_EXPIRED = "MFA verification expired"
MFA_STEP_UP_REQUIRED = "Fresh MFA required for elevated operation"

MFA_CHALLENGE = "totp_or_backup"
API_BYPASS_FLAG = "api_mfa_bypass_attempt"
REPEATED_FAILURES_FLAG = "repeated_mfa_failures"
SUSPICIOUS_LOCATION_FLAG = "suspicious_location_change"

# Verification times further in the future than this are not trusted
MAX_CLOCK_SKEW = timedelta(seconds=60)


# ============================================================================
# Session / MFA oracle
# ============================================================================

@dataclass(frozen=True)
class MFASession:
    """MFA verification recorded for a user (and optionally a device)."""
    verified_at: datetime
    method: Optional[str] = None


class SessionStore(ABC):
    """
    Interface to the external session/MFA-validity oracle.

    Implementations must be safe to call from many threads.
    """

    @abstractmethod
    def get(self, user_id: str, device_id: Optional[str] = None) -> Optional[MFASession]:
        ...

    @abstractmethod
    def set(self, user_id: str, session: MFASession, device_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def expire(self, user_id: str, device_id: Optional[str] = None) -> None:
        ...


class InMemorySessionStore(SessionStore):
    """
    Thread-safe in-memory session store.

    Sessions are keyed by ``(user_id, device_id)``; ``expire`` without a
    device drops every session of the user.
    """

    def __init__(self):
        self._sessions: Dict[Tuple[str, Optional[str]], MFASession] = {}
        self.lock = threading.Lock()

    def get(self, user_id: str, device_id: Optional[str] = None) -> Optional[MFASession]:
        with self.lock:
            return self._sessions.get((user_id, device_id))

    def set(self, user_id: str, session: MFASession, device_id: Optional[str] = None) -> None:
        with self.lock:
            self._sessions[(user_id, device_id)] = session

    def expire(self, user_id: str, device_id: Optional[str] = None) -> None:
        with self.lock:
            if device_id is not None:
                self._sessions.pop((user_id, device_id), None)
                return
            for key in [k for k in self._sessions if k[0] == user_id]:
                del self._sessions[key]


# ============================================================================
# Evidence
# ============================================================================

@dataclass(frozen=True)
class MFAEvidence:
    """
    MFA facts for one evaluation.

    ``verified_at`` is None when MFA was claimed but the session store has
    no record of it, which counts as expired.
    """
    present: bool
    verified_at: Optional[datetime]
    method: Optional[str]

    def age(self, now: datetime) -> Optional[timedelta]:
        if self.verified_at is None:
            return None
        return now - self.verified_at

    def fresh_within(self, minutes: int, now: datetime) -> bool:
        age = self.age(now)
        if age is None or age < -MAX_CLOCK_SKEW:
            return False
        return age <= timedelta(minutes=minutes)


class MFAGate:
    """
    MFA stage of the pipeline.

    Args:
        config: Policy tables (sensitive and elevated actions, methods, thresholds)
        session_store: Optional oracle for MFA verification times
    """

    def __init__(self, config: PolicyConfig, session_store: Optional[SessionStore] = None):
        self.config = config
        self.session_store = session_store

    def evidence(self, request: EvaluationRequest, now: datetime) -> MFAEvidence:
        """Collect MFA facts from the context, falling back to the session store."""
        context = request.context
        if not context.mfa_present:
            return MFAEvidence(False, context.mfa_timestamp, context.mfa_method)

        if context.mfa_timestamp is not None:
            return MFAEvidence(True, context.mfa_timestamp, context.mfa_method)

        if self.session_store is None:
            return MFAEvidence(True, now, context.mfa_method)

        session = self.session_store.get(request.user.id, context.device_id)
        if session is None and context.device_id is not None:
            session = self.session_store.get(request.user.id)
        if session is None:
            return MFAEvidence(True, None, context.mfa_method)
        return MFAEvidence(True, session.verified_at, context.mfa_method or session.method)

    def method_allowed(self, evidence: MFAEvidence) -> bool:
        return evidence.method is not None and evidence.method in self.config.allowed_mfa_methods

    def is_fresh(self, request: EvaluationRequest, now: datetime) -> bool:
        """True if MFA is present, used a supported method and is within the MFA window."""
        evidence = self.evidence(request, now)
        return (
            evidence.present
            and self.method_allowed(evidence)
            and evidence.fresh_within(request.context.mfa_timeout_minutes, now)
        )

    def is_elevated(self, request: EvaluationRequest) -> bool:
        return request.action in self.config.elevated_actions or request.context.elevated_operation

    def is_required(self, request: EvaluationRequest, requested_by_stage: bool = False) -> bool:
        return (
            request.action in self.config.sensitive_actions
            or self.is_elevated(request)
            or requested_by_stage
        )

    def evaluate(
        self,
        request: EvaluationRequest,
        now: datetime,
        requested_by_stage: bool = False
    ) -> StageResult:
        """
        Apply the MFA rules.

        Args:
            request: Normalized request
            now: Evaluation time
            requested_by_stage: An earlier stage needs fresh MFA

        Returns:
            StageResult
        """
        if not self.is_required(request, requested_by_stage):
            return StageResult.allow(STAGE)

        context = request.context
        evidence = self.evidence(request, now)
        metadata: Dict[str, object] = {}
        flags = []

        if context.mfa_failure_count:
            metadata["riskScore"] = self._risk_score(request)
            if context.mfa_failure_count >= self.config.mfa_failure_threshold:
                flags.append(REPEATED_FAILURES_FLAG)

        def deny(reason: str, **extra) -> StageResult:
            obligations = {"requireMFA": True}
            obligations.update(extra)
            if flags:
                obligations["securityFlags"] = list(flags)
            return StageResult.deny(STAGE, reason, obligations=obligations, metadata=metadata)

        timeout = context.mfa_timeout_minutes

        if not evidence.present:
            if evidence.verified_at is not None and not evidence.fresh_within(timeout, now):
                return deny(MFA_EXPIRED, mfaReason="session_timeout", mfaChallenge=MFA_CHALLENGE)
            if context.channel in (Channel.API, Channel.BATCH):
                metadata["securityFlag"] = API_BYPASS_FLAG
                logger.warning(
                    "MFA missing on %s channel for %s by %s",
                    context.channel.value, request.action, request.user.id,
                )
            return deny(self.config.mfa_reason_for(request.action), mfaChallenge=MFA_CHALLENGE)

        if not self.method_allowed(evidence):
            return deny(MFA_INVALID_METHOD, mfaChallenge=MFA_CHALLENGE)

        if not evidence.fresh_within(timeout, now):
            return deny(MFA_EXPIRED, mfaReason="session_timeout", mfaChallenge=MFA_CHALLENGE)

        if self.is_elevated(request) and not evidence.fresh_within(context.step_up_timeout_minutes, now):
            return deny(MFA_STEP_UP_REQUIRED, mfaReason="step_up_required", mfaChallenge=MFA_CHALLENGE)

        obligations: Dict[str, object] = {"auditMFA": True, "auditLevel": "enhanced"}
        if evidence.method == "backup_code":
            obligations["flagBackupCodeUsage"] = True

        if self._suspicious_location(request):
            flags.append(SUSPICIOUS_LOCATION_FLAG)
            obligations["requireSecurityReview"] = True
            obligations["notifySecurityTeam"] = True
        if flags:
            obligations["securityFlags"] = flags

        metadata["mfaMethod"] = evidence.method
        metadata["auditFields"] = {
            "mfaMethod": evidence.method,
            "mfaTimestamp": int(evidence.verified_at.timestamp()),
            "deviceId": context.device_id,
            "ipAddress": context.ip_address,
            "userAgent": context.user_agent,
        }
        return StageResult.allow(STAGE, obligations=obligations, metadata=metadata)

    # ------------------------------------------------------------------------

    def _suspicious_location(self, request: EvaluationRequest) -> bool:
        context = request.context
        if context.rapid_location_change:
            return True
        distance = context.ip_geo_distance_km
        return distance is not None and distance > self.config.geo_velocity_threshold_km

    def _risk_score(self, request: EvaluationRequest) -> int:
        """0-10 score: 3 per recent MFA failure, 4 for an implausible location change."""
        score = 3 * request.context.mfa_failure_count
        if self._suspicious_location(request):
            score += 4
        return min(score, 10)
