"""
Policy Engine
=============

The policy decision point: ``PolicyEngine.evaluate(request) -> Decision``.

Pipeline:

    Normalizer -> RBAC -> Regional -> Sensitivity -> MFA -> Assembler -> Cache

- The catalog snapshot is taken once per call, so a concurrent catalog swap
  never splits an evaluation across two policies.
- Malformed requests deny at the normalizer and are never cached.
- Any stage may deny; the first deny short-circuits the rest.
- Only two side effects exist: cache population and fire-and-forget audit
  emission. Neither can change a returned decision.

Fatal conditions (no catalog, cache failure) raise ``PolicyConfigurationError``
subclasses instead of returning a decision.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional

from models.policy import Decision, EvaluationRequest
from .audit import AuditDispatcher, AuditEvent, AuditSink, should_audit
from .cache import DecisionCache, cache_key
from .catalog import CatalogSnapshot, RoleCatalogProvider
from .config import PolicyConfig
from .decision import DecisionAssembler, StageResult
from .errors import RequestValidationError
from .mfa import MAX_CLOCK_SKEW, MFAGate, SessionStore
from .normalizer import RequestNormalizer
from .rbac_engine import RBACEvaluator
from .regional import RegionalAccessResolver
from .sensitivity import SensitivityGate
from .temporary_access import TemporaryAccessResolver

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PolicyEngine:
    """
    Authorization policy decision point.

    Safe to share between threads: all per-call state lives on the stack,
    the catalog is an immutable snapshot, and the cache is sharded.

    Args:
        catalog: Provider holding the current role catalog snapshot
        config: Policy tables; defaults to ``PolicyConfig()``
        session_store: Optional MFA session oracle
        audit_sink: Optional audit destination
        cache: Decision cache; pass ``None`` with ``use_cache=False`` to disable
        clock: Returns the current aware UTC datetime
        audit_workers: Worker threads for audit delivery (0 = inline)
    """

    def __init__(
        self,
        catalog: RoleCatalogProvider,
        config: Optional[PolicyConfig] = None,
        session_store: Optional[SessionStore] = None,
        audit_sink: Optional[AuditSink] = None,
        cache: Optional[DecisionCache] = None,
        use_cache: bool = True,
        clock: Callable[[], datetime] = utc_now,
        audit_workers: int = 2
    ):
        self.config = config or PolicyConfig()
        self.catalog = catalog
        self.clock = clock

        self.normalizer = RequestNormalizer(
            mfa_timeout_minutes=self.config.mfa_timeout_minutes,
            step_up_timeout_minutes=self.config.step_up_timeout_minutes,
        )
        self.temporary_access = TemporaryAccessResolver()
        self.rbac = RBACEvaluator()
        self.regional = RegionalAccessResolver(self.config, self.temporary_access)
        self.sensitivity = SensitivityGate(self.config)
        self.mfa = MFAGate(self.config, session_store)
        self.assembler = DecisionAssembler(self.config.policy_version)

        if use_cache and cache is None:
            cache = DecisionCache(
                ttl_seconds=self.config.cache_ttl_seconds,
                shards=self.config.cache_shards,
                max_entries_per_shard=self.config.cache_max_entries_per_shard,
            )
        self.cache = cache if use_cache else None

        self.audit = AuditDispatcher(audit_sink, max_workers=audit_workers) if audit_sink else None

    # ========================================================================
    # Public surface
    # ========================================================================

    def evaluate(self, request: Mapping[str, Any]) -> Decision:
        """
        Decide a single request.

        Args:
            request: Mapping with ``user``, ``resource``, ``action`` and ``context``

        Returns:
            Decision (never mutated after return)

        Raises:
            CatalogUnavailableError: No catalog snapshot is loaded
            CacheError: The decision cache failed
        """
        started = time.perf_counter()
        catalog = self.catalog.snapshot()
        now = self.clock()

        try:
            normalized = self.normalizer.normalize(request, known_regions=catalog.regions)
        except RequestValidationError as exc:
            logger.info("Request rejected at normalizer: %s", exc.reason)
            decision = self.assembler.deny(exc.reason, stages=["normalizer"])
            self._record_latency(started, "normalizer")
            return decision

        key = None
        if self.cache is not None:
            key = cache_key(normalized, catalog.version)
            cached = self.cache.get(key, now)
            if cached is not None:
                decision = cached.with_metadata(cacheHit=True)
                self._emit_audit(normalized, decision, now)
                self._record_latency(started, normalized.action)
                return decision

        decision = self._run_pipeline(normalized, catalog, now)

        if self.cache is not None:
            ttl = self._cache_ttl(normalized, now)
            if ttl is not None:
                self.cache.put(key, decision, now, ttl)

        self._emit_audit(normalized, decision, now)
        self._record_latency(started, normalized.action)
        return decision

    def evaluate_many(self, requests: List[Mapping[str, Any]]) -> List[Decision]:
        """Evaluate requests one after another, in order."""
        return [self.evaluate(request) for request in requests]

    def close(self) -> None:
        """Flush pending audit deliveries."""
        if self.audit is not None:
            self.audit.shutdown(wait=True)

    # ========================================================================
    # Pipeline
    # ========================================================================

    def _run_pipeline(
        self,
        request: EvaluationRequest,
        catalog: CatalogSnapshot,
        now: datetime
    ) -> Decision:
        results: List[StageResult] = []
        grant = self.temporary_access.grant_for_case(request.user, request.context.case_id, now)

        rbac_result, resolved = self.rbac.evaluate(request, catalog, grant)
        results.append(rbac_result)
        if rbac_result.denied:
            return self._finish(results, request)

        regional_result = self.regional.evaluate(request, resolved, now)
        results.append(regional_result)
        if regional_result.denied:
            return self._finish(results, request)

        sensitivity_result = self.sensitivity.evaluate(
            request, resolved, grant, self.mfa.is_fresh(request, now)
        )
        results.append(sensitivity_result)
        if sensitivity_result.denied:
            return self._finish(results, request)

        results.append(self.mfa.evaluate(request, now, sensitivity_result.requires_mfa))
        return self._finish(results, request)

    def _finish(self, results: List[StageResult], request: EvaluationRequest) -> Decision:
        decision = self.assembler.assemble(results)
        if not decision.allowed:
            logger.info(
                "Denied %s for %s in %s: %s",
                request.action, request.user.id, request.resource.region_id, decision.reasons[0],
            )
        return decision

    def _cache_ttl(self, request: EvaluationRequest, now: datetime) -> Optional[float]:
        """
        Seconds a decision on ``request`` may be reused, or None to skip caching.

        Bounded by the configured ceiling and by every time boundary the
        decision depended on: the end of the MFA and step-up windows (or the
        moment a future-dated verification becomes acceptable) and the
        nearest grant expiry.
        """
        context = request.context
        if context.mfa_present and context.mfa_timestamp is None and self.mfa.session_store is not None:
            # Verification time lives in the external store; not part of the key
            return None

        ttl = float(self.config.cache_ttl_seconds)
        boundaries = []

        verified_at = context.mfa_timestamp
        if verified_at is not None:
            boundaries.append(verified_at + timedelta(minutes=context.mfa_timeout_minutes))
            boundaries.append(verified_at + timedelta(minutes=context.step_up_timeout_minutes))
            boundaries.append(verified_at - MAX_CLOCK_SKEW)

        expiry = self.temporary_access.nearest_expiry(request.user, now)
        if expiry is not None:
            boundaries.append(expiry)

        for boundary in boundaries:
            if boundary > now:
                ttl = min(ttl, (boundary - now).total_seconds())
        return ttl if ttl > 0 else None

    # ========================================================================
    # Side effects
    # ========================================================================

    def _emit_audit(self, request: EvaluationRequest, decision: Decision, now: datetime) -> None:
        if self.audit is None or not should_audit(decision):
            return
        self.audit.dispatch(AuditEvent.from_decision(request, decision, now))

    def _record_latency(self, started: float, action: str) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms >= self.config.latency_critical_ms:
            logger.error("Evaluation of %s took %.1f ms (critical)", action, elapsed_ms)
        elif elapsed_ms >= self.config.latency_warning_ms:
            logger.warning("Evaluation of %s took %.1f ms", action, elapsed_ms)
