"""
Audit Logging Module
====================

Audit emission and querying for authorization decisions.

Emission:
- A decision is audited when any ``audit*`` or ``notify*`` obligation fires.
- ``AuditDispatcher`` hands the event to an ``AuditSink`` fire-and-forget on
  a small worker pool, retrying failed deliveries (at-least-once). A sink
  failure is logged and never touches the already-returned decision.

Sinks:
- ``DatabaseAuditSink``: one ``AuditLog`` row per event via SQLAlchemy
- ``LoggingAuditSink``: structured log line per event

Querying (``AuditLogger``):
- Filtered log retrieval and recent denials
- Per-user activity and overall statistics
- JSON / CSV export for SIEM ingestion
"""

import csv
import io
import json
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.orm import Session

from models.database import get_session
from models.entities import AuditLog
from models.policy import Decision, Effect, EvaluationRequest

logger = logging.getLogger(__name__)

AUDIT_PREFIXES = ("audit", "notify")


# ============================================================================
# Events
# ============================================================================

@dataclass(frozen=True)
class AuditEvent:
    """Sanitized record of one audited decision."""
    timestamp: datetime
    user_id: str
    action: str
    region_id: str
    data_class: str
    decision: Effect
    reasons: Tuple[str, ...]
    obligations: Dict[str, Any] = field(default_factory=dict)
    channel: Optional[str] = None
    case_id: Optional[str] = None
    client_ip: Optional[str] = None
    request_id: Optional[str] = None
    cache_hit: bool = False
    security_flags: Tuple[str, ...] = ()

    @property
    def audit_level(self) -> Optional[str]:
        return self.obligations.get("auditLevel")

    @classmethod
    def from_decision(
        cls,
        request: EvaluationRequest,
        decision: Decision,
        timestamp: datetime
    ) -> "AuditEvent":
        """Build an event from a normalized request and its decision."""
        payload = decision.to_dict()
        obligations = payload["obligations"]
        metadata = payload["metadata"]

        flags = list(obligations.get("securityFlags", []))
        if metadata.get("securityFlag"):
            flags.append(metadata["securityFlag"])

        return cls(
            timestamp=timestamp,
            user_id=request.user.id,
            action=request.action,
            region_id=request.resource.region_id,
            data_class=request.resource.data_class.value,
            decision=decision.effect,
            reasons=decision.reasons,
            obligations=obligations,
            channel=request.context.channel.value,
            case_id=request.context.case_id,
            client_ip=request.context.ip_address,
            request_id=request.context.request_id,
            cache_hit=bool(metadata.get("cacheHit")),
            security_flags=tuple(flags),
        )


def should_audit(decision: Decision) -> bool:
    """True if any ``audit*`` / ``notify*`` obligation is set."""
    for key, value in decision.obligations.items():
        if key.startswith(AUDIT_PREFIXES) and value:
            return True
    return False


# ============================================================================
# Sinks
# ============================================================================

class AuditSink(ABC):
    """Destination for audit events. ``record`` may raise; callers handle it."""

    @abstractmethod
    def record(self, event: AuditEvent) -> None:
        ...


class LoggingAuditSink(AuditSink):
    """Writes each event as one log line on the ``authz.audit`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("authz.audit")

    def record(self, event: AuditEvent) -> None:
        self.log.info(
            "audit decision=%s user=%s action=%s region=%s level=%s reason=%s",
            event.decision.value,
            event.user_id,
            event.action,
            event.region_id,
            event.audit_level,
            event.reasons[0],
        )


class DatabaseAuditSink(AuditSink):
    """
    Persists events as ``AuditLog`` rows.

    Args:
        session_factory: sessionmaker to open a short-lived session per event
    """

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self.session_factory = session_factory

    def record(self, event: AuditEvent) -> None:
        with get_session(self.session_factory) as session:
            AuditLogger(session).log_event(event)


class AuditDispatcher:
    """
    Fire-and-forget delivery of audit events.

    Args:
        sink: Destination sink
        max_workers: Worker threads; 0 delivers inline on the caller's thread
        max_attempts: Delivery attempts per event before giving up
    """

    def __init__(self, sink: AuditSink, max_workers: int = 2, max_attempts: int = 3):
        self.sink = sink
        self.max_attempts = max(1, max_attempts)
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="authz-audit")
            if max_workers > 0 else None
        )

    def dispatch(self, event: AuditEvent) -> Optional[Future]:
        """Queue an event. Never raises on sink failure."""
        if self._executor is None:
            self._deliver(event)
            return None
        return self._executor.submit(self._deliver, event)

    def _deliver(self, event: AuditEvent) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.sink.record(event)
                return True
            except Exception:
                logger.exception(
                    "Audit delivery failed (attempt %d/%d) for user=%s action=%s",
                    attempt, self.max_attempts, event.user_id, event.action,
                )
        return False

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


# ============================================================================
# Querying
# ============================================================================

def _cutoff(hours: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AuditLogger:
    """
    Audit log service over the ``audit_logs`` table.

    Provides:
    - Row creation for audit events
    - Query capabilities for security investigations
    - Export for external SIEM systems
    - Statistical analysis of decisions
    """

    def __init__(self, session: Session):
        """
        Initialize audit logger with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def log_event(self, event: AuditEvent) -> AuditLog:
        """
        Persist one audit event.

        Args:
            event: Event to store

        Returns:
            Created AuditLog entry
        """
        entry = AuditLog(
            timestamp=event.timestamp,
            user_id=event.user_id,
            action=event.action,
            region_id=event.region_id,
            data_class=event.data_class,
            decision=event.decision,
            reasons=json.dumps(list(event.reasons)),
            audit_level=event.audit_level,
            obligations=json.dumps(event.obligations, sort_keys=True, default=str),
            channel=event.channel,
            case_id=event.case_id,
            client_ip=event.client_ip,
            request_id=event.request_id,
            cache_hit=event.cache_hit,
            security_flags=json.dumps(list(event.security_flags)) if event.security_flags else None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        decision: Optional[Effect] = None,
        region_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[AuditLog]:
        """
        Query audit logs with various filters.

        Args:
            user_id: Filter by user
            action: Filter by action
            decision: Filter by decision outcome
            region_id: Filter by resource region
            start_time: Filter by start time
            end_time: Filter by end time
            limit: Maximum results to return
            offset: Pagination offset

        Returns:
            List of matching AuditLog entries, newest first
        """
        query = self.session.query(AuditLog)

        if user_id is not None:
            query = query.filter(AuditLog.user_id == user_id)
        if action is not None:
            query = query.filter(AuditLog.action == action)
        if decision is not None:
            query = query.filter(AuditLog.decision == decision)
        if region_id is not None:
            query = query.filter(AuditLog.region_id == region_id)
        if start_time is not None:
            query = query.filter(AuditLog.timestamp >= start_time)
        if end_time is not None:
            query = query.filter(AuditLog.timestamp <= end_time)

        return query.order_by(desc(AuditLog.timestamp)).limit(limit).offset(offset).all()

    def get_recent_denials(self, hours: int = 24, limit: int = 50) -> List[AuditLog]:
        """
        Recent audited denials, for security monitoring.

        Args:
            hours: Look back period in hours
            limit: Maximum results

        Returns:
            List of deny audit logs
        """
        return self.session.query(AuditLog).filter(
            AuditLog.decision == Effect.DENY,
            AuditLog.timestamp >= _cutoff(hours)
        ).order_by(desc(AuditLog.timestamp)).limit(limit).all()

    def get_user_activity(self, user_id: str, hours: int = 24) -> Dict[str, Any]:
        """
        Activity summary for one user.

        Args:
            user_id: User to analyze
            hours: Look back period

        Returns:
            Activity summary dictionary
        """
        logs = self.session.query(AuditLog).filter(
            AuditLog.user_id == user_id,
            AuditLog.timestamp >= _cutoff(hours)
        ).all()

        total = len(logs)
        allows = sum(1 for l in logs if l.decision == Effect.ALLOW)
        denials = sum(1 for l in logs if l.decision == Effect.DENY)

        actions: Dict[str, int] = {}
        regions: Dict[str, int] = {}
        for log in logs:
            actions[log.action] = actions.get(log.action, 0) + 1
            if log.region_id:
                regions[log.region_id] = regions.get(log.region_id, 0) + 1

        return {
            'user_id': user_id,
            'period_hours': hours,
            'total_requests': total,
            'allows': allows,
            'denials': denials,
            'denial_rate': denials / total if total > 0 else 0,
            'actions': actions,
            'regions': regions,
            'first_activity': _iso(min(l.timestamp for l in logs)) if logs else None,
            'last_activity': _iso(max(l.timestamp for l in logs)) if logs else None
        }

    def export_logs(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        format: str = 'json'
    ) -> str:
        """
        Export audit logs for external SIEM integration.

        Args:
            start_time: Export start time
            end_time: Export end time
            format: Output format ('json' or 'csv')

        Returns:
            Formatted log data as string
        """
        logs = self.get_logs(start_time=start_time, end_time=end_time, limit=10000)

        rows = [
            {
                'timestamp': _iso(log.timestamp),
                'user_id': log.user_id,
                'action': log.action,
                'region_id': log.region_id,
                'data_class': log.data_class,
                'decision': log.decision.value,
                'reasons': json.loads(log.reasons) if log.reasons else [],
                'audit_level': log.audit_level,
                'channel': log.channel,
                'case_id': log.case_id,
                'client_ip': log.client_ip,
                'request_id': log.request_id,
                'cache_hit': bool(log.cache_hit),
            }
            for log in logs
        ]

        if format == 'json':
            return json.dumps(rows, indent=2)

        elif format == 'csv':
            columns = ['timestamp', 'user_id', 'action', 'region_id', 'decision', 'audit_level', 'reasons']
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction='ignore', lineterminator='\n')
            writer.writeheader()
            for row in rows:
                writer.writerow(dict(row, reasons='; '.join(row['reasons'])))
            return buffer.getvalue()

        else:
            raise ValueError(f"Unsupported format: {format}")

    def get_statistics(self, hours: int = 24) -> Dict[str, Any]:
        """
        Overall decision statistics for dashboards.

        Args:
            hours: Analysis period

        Returns:
            Statistics dictionary
        """
        logs = self.session.query(AuditLog).filter(
            AuditLog.timestamp >= _cutoff(hours)
        ).all()

        total = len(logs)
        allows = sum(1 for l in logs if l.decision == Effect.ALLOW)
        denials = sum(1 for l in logs if l.decision == Effect.DENY)

        by_audit_level: Dict[str, int] = {}
        top_denial_reasons: Dict[str, int] = {}
        for log in logs:
            level = log.audit_level or 'none'
            by_audit_level[level] = by_audit_level.get(level, 0) + 1
            if log.decision == Effect.DENY and log.reasons:
                reason = json.loads(log.reasons)[0]
                top_denial_reasons[reason] = top_denial_reasons.get(reason, 0) + 1

        return {
            'period_hours': hours,
            'total_decisions': total,
            'allows': allows,
            'denials': denials,
            'allow_rate': allows / total if total > 0 else 0,
            'denial_rate': denials / total if total > 0 else 0,
            'by_audit_level': by_audit_level,
            'top_denial_reasons': top_denial_reasons,
            'unique_users': len(set(l.user_id for l in logs if l.user_id)),
            'cache_hits': sum(1 for l in logs if l.cache_hit)
        }
