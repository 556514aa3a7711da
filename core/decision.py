"""
Decision Assembler
==================

Merges per-stage results into the final ``Decision``.

Combining algorithm is deny-overrides with short-circuit:
- The first denying stage is authoritative. Its reason (and only its
  reason) becomes the decision's reason list, and its obligations are the
  decision's obligations. Later stages never run.
- On allow, reasons from every executed stage are concatenated in stage
  order (duplicates dropped) and obligations are merged.

Obligation merge rules:
- ``auditLevel`` keeps the highest level (standard < enhanced < maximum < emergency)
- list values form an ordered union
- boolean values are OR-ed, so an explicit ``False`` survives only if no
  stage set ``True``
- ``riskScore`` keeps the maximum
- anything else: the later stage wins
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from models.policy import AuditLevel, Decision, Effect

AUDIT_LEVEL_KEY = "auditLevel"
RISK_SCORE_KEY = "riskScore"


@dataclass
class StageResult:
    """
    Output of one pipeline stage.

    Attributes:
        stage: Stage name, recorded in ``metadata.evaluatedStages``
        denied: True if this stage denies the request
        reasons: Reasons contributed (a deny carries exactly one)
        obligations: Obligations contributed
        metadata: Metadata contributed
        requires_mfa: Set by the sensitivity gate to ask the MFA gate for fresh MFA
    """
    stage: str
    denied: bool = False
    reasons: List[str] = field(default_factory=list)
    obligations: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    requires_mfa: bool = False

    @classmethod
    def allow(
        cls,
        stage: str,
        *reasons: str,
        obligations: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        requires_mfa: bool = False
    ) -> "StageResult":
        return cls(
            stage=stage,
            reasons=list(reasons),
            obligations=dict(obligations or {}),
            metadata=dict(metadata or {}),
            requires_mfa=requires_mfa,
        )

    @classmethod
    def deny(
        cls,
        stage: str,
        reason: str,
        obligations: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> "StageResult":
        return cls(
            stage=stage,
            denied=True,
            reasons=[reason],
            obligations=dict(obligations or {}),
            metadata=dict(metadata or {}),
        )


def _merge_value(key: str, current: Any, incoming: Any) -> Any:
    if current is None:
        return incoming
    if key == AUDIT_LEVEL_KEY:
        return AuditLevel.highest(current, incoming)
    if key == RISK_SCORE_KEY:
        return max(current, incoming)
    if isinstance(current, bool) and isinstance(incoming, bool):
        return current or incoming
    if isinstance(current, (list, tuple)) and isinstance(incoming, (list, tuple)):
        merged = list(current)
        merged.extend(item for item in incoming if item not in merged)
        return merged
    return incoming


def merge_maps(maps: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Merge obligation or metadata maps with the rules above."""
    merged: Dict[str, Any] = {}
    for item in maps:
        for key, value in item.items():
            merged[key] = _merge_value(key, merged.get(key), value)
    return merged


class DecisionAssembler:
    """
    Builds the final Decision from executed stage results.

    Args:
        policy_version: Stamped into ``metadata.policyVersion``
    """

    def __init__(self, policy_version: str):
        self.policy_version = policy_version

    def deny(
        self,
        reason: str,
        stages: Iterable[str] = (),
        obligations: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Decision:
        """Shortcut for a deny that did not come from a stage (normalizer failures)."""
        meta = dict(metadata or {})
        meta.update(self._base_metadata(list(stages)))
        return Decision(
            effect=Effect.DENY,
            reasons=(reason,),
            obligations=obligations or {},
            metadata=meta,
        )

    def assemble(self, results: List[StageResult]) -> Decision:
        """
        Combine stage results.

        Args:
            results: Results in execution order; at most the last one denies

        Returns:
            Decision with ``cacheHit`` still False
        """
        if not results:
            raise ValueError("At least one stage result is required")

        stages = [r.stage for r in results]
        metadata = merge_maps(r.metadata for r in results)
        metadata.update(self._base_metadata(stages))

        denial = next((r for r in results if r.denied), None)
        if denial is not None:
            return Decision(
                effect=Effect.DENY,
                reasons=tuple(denial.reasons),
                obligations=denial.obligations,
                metadata=metadata,
            )

        reasons: List[str] = []
        for result in results:
            for reason in result.reasons:
                if reason not in reasons:
                    reasons.append(reason)

        return Decision(
            effect=Effect.ALLOW,
            reasons=tuple(reasons),
            obligations=merge_maps(r.obligations for r in results),
            metadata=metadata,
        )

    def _base_metadata(self, stages: List[str]) -> Dict[str, Any]:
        return {
            "cacheHit": False,
            "policyVersion": self.policy_version,
            "evaluatedStages": stages,
        }
