"""
OpsGuard - Guard Policy Resolution

Merges the stored global policy, the playbook-scope policy, the guards
embedded in the playbook spec and the action catalog hints into one
effective policy, and evaluates that policy against a run:

- Blast radius: entity count and percentage caps (pure, deterministic)
- Concurrency: running runs per tenant
- Cooldown: minimum spacing between live runs of one playbook
- Canary and dual control requirements

Absence of a stored policy is never an error; resolution falls back to
the configured defaults.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.config import Config
from ..core.policy import (
    GLOBAL_SCOPE,
    BlastRadiusLimits,
    CanaryPolicy,
    EffectivePolicy,
    RollbackPolicy,
)
from ..core.run import BlastRadiusEvaluation, utcnow

logger = logging.getLogger(__name__)

_NESTED_FIELDS = ("blast_radius", "canary", "rollback_policy")

# playbook spec guard key -> policy field
_SPEC_GUARD_FIELDS = {
    "maxConcurrent": "max_concurrent",
    "blastRadius": "blast_radius",
    "requiresDualControl": "requires_dual_control",
    "canary": "canary",
    "rollbackPolicy": "rollback_policy",
    "timeoutSec": "timeout_sec",
    "cooldownSec": "cooldown_sec",
    "postChecks": "post_checks",
}


@dataclass
class ConcurrencyCheck:
    """Result of a concurrency check."""
    allowed: bool
    current_running: int
    max_concurrent: int
    reason: Optional[str] = None


@dataclass
class CooldownCheck:
    """Result of a cooldown check."""
    allowed: bool
    remaining_sec: float = 0.0
    reason: Optional[str] = None


@dataclass
class CanaryEvaluation:
    """Whether a run must be narrowed to a canary sample."""
    required: bool
    sample_percent: Optional[float] = None
    min_entities: Optional[int] = None
    reason: Optional[str] = None


class GuardPolicyResolver:
    """
    Resolves and evaluates guard policies.

    The store must provide ``guard_policies.get(company_id, scope)`` and
    ``count_running(company_id)``.
    """

    def __init__(self, store, config: Optional[Config] = None):
        self._store = store
        self._config = config or Config()

    def resolve(
        self,
        company_id: str,
        scope: str,
        spec_guards: Optional[Dict[str, Any]] = None,
        action_hints: Optional[List[Dict[str, Any]]] = None,
    ) -> EffectivePolicy:
        """
        Resolve the effective policy for a company and policy scope.

        Args:
            company_id: Tenant
            scope: Policy scope, "global" or "playbook:<code>"
            spec_guards: Guards embedded in the playbook spec
            action_hints: Default guard hints of the actions the playbook
                uses; these can only tighten the policy

        Returns:
            EffectivePolicy
        """
        merged = self._defaults()
        sources = ["defaults"]

        scopes = [GLOBAL_SCOPE] if scope == GLOBAL_SCOPE else [GLOBAL_SCOPE, scope]
        for key in scopes:
            stored = self._store.guard_policies.get(company_id, key)
            if stored is not None:
                self._overlay(merged, stored.overrides())
                sources.append(key)

        if spec_guards:
            overrides = {
                field_name: spec_guards[spec_key]
                for spec_key, field_name in _SPEC_GUARD_FIELDS.items()
                if spec_guards.get(spec_key) is not None
            }
            self._overlay(merged, overrides)
            sources.append("spec")

        if action_hints:
            if self._tighten(merged, action_hints):
                sources.append("action_hints")

        policy = self._build(merged, sources)
        logger.debug(f"Resolved policy for {company_id}/{scope}: {policy.to_dict()}")
        return policy

    def _defaults(self) -> Dict[str, Any]:
        d = self._config.guards
        return {
            "max_concurrent": d.max_concurrent,
            "blast_radius": {"maxEntities": d.max_entities, "maxPercent": d.max_percent},
            "requires_dual_control": d.requires_dual_control,
            "canary": None,
            "rollback_policy": {"type": "inverse_action"},
            "timeout_sec": d.timeout_sec,
            "cooldown_sec": d.cooldown_sec,
            "post_checks": [],
        }

    @staticmethod
    def _overlay(merged: Dict[str, Any], overrides: Dict[str, Any]) -> None:
        """Overlay set fields; nested objects merge one level deep."""
        for key, value in overrides.items():
            if value is None:
                continue
            if key in _NESTED_FIELDS and isinstance(value, dict):
                base = dict(merged.get(key) or {})
                base.update({k: v for k, v in value.items() if v is not None})
                merged[key] = base
            else:
                merged[key] = value

    def _tighten(self, merged: Dict[str, Any], hints: List[Dict[str, Any]]) -> bool:
        changed = False
        blast = dict(merged.get("blast_radius") or {})
        for hint in hints:
            for spec_key in ("maxEntities", "maxPercent"):
                limit = hint.get(spec_key)
                if limit is None:
                    continue
                current = blast.get(spec_key)
                if current is None or limit < current:
                    blast[spec_key] = limit
                    changed = True
            if hint.get("requiresDualControl") and not merged.get("requires_dual_control"):
                merged["requires_dual_control"] = True
                changed = True
            if hint.get("canaryRequired"):
                canary = dict(merged.get("canary") or {})
                if not canary or canary.get("enabled") is False:
                    canary["enabled"] = True
                    merged["canary"] = canary
                    changed = True
        merged["blast_radius"] = blast
        return changed

    def _build(self, merged: Dict[str, Any], sources: List[str]) -> EffectivePolicy:
        d = self._config.guards
        canary = None
        canary_data = merged.get("canary")
        if canary_data and canary_data.get("enabled", True):
            canary = CanaryPolicy(
                sample_percent=canary_data.get("samplePercent", d.canary_sample_percent),
                min_entities=canary_data.get("minEntities", d.canary_min_entities),
            )
        return EffectivePolicy(
            max_concurrent=int(merged["max_concurrent"]),
            blast_radius=BlastRadiusLimits.from_dict(merged.get("blast_radius") or {}),
            requires_dual_control=bool(merged["requires_dual_control"]),
            timeout_sec=int(merged["timeout_sec"]),
            cooldown_sec=int(merged["cooldown_sec"]),
            canary=canary,
            rollback_policy=RollbackPolicy.from_dict(merged.get("rollback_policy") or {}),
            post_checks=list(merged.get("post_checks") or []),
            sources=sources,
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def entity_list_key(self, scope: Optional[Dict[str, Any]]) -> Optional[str]:
        """First configured id-list key present in the scope."""
        if not isinstance(scope, dict):
            return None
        for key in self._config.blast_radius.entity_list_keys:
            if isinstance(scope.get(key), list):
                return key
        return None

    def count_entities(self, scope: Optional[Dict[str, Any]]) -> int:
        """Entities referenced by a scope: id-list length, 0 if empty, else 1."""
        if not scope:
            return 0
        key = self.entity_list_key(scope)
        if key is not None:
            return len(scope[key])
        return 1

    def evaluate_blast_radius(
        self,
        scope: Optional[Dict[str, Any]],
        policy: EffectivePolicy,
    ) -> BlastRadiusEvaluation:
        """
        Evaluate a scope against the blast radius limits.

        Same scope and policy always yield the same verdict.
        """
        entity_count = self.count_entities(scope)
        population = self._config.blast_radius.default_population
        if isinstance(scope, dict) and scope.get("population"):
            population = scope["population"]
        percentage = round(min(100.0, entity_count / population * 100), 4)

        limits = policy.blast_radius
        reasons = []
        if limits.max_entities is not None and entity_count > limits.max_entities:
            reasons.append(
                f"Entity count {entity_count} exceeds maximum {limits.max_entities}"
            )
        if limits.max_percent is not None and percentage > limits.max_percent:
            reasons.append(
                f"Percentage {percentage:.2f}% exceeds maximum {limits.max_percent}%"
            )

        return BlastRadiusEvaluation(
            allowed=not reasons,
            entity_count=entity_count,
            percentage=percentage,
            reason="; ".join(reasons) if reasons else None,
        )

    def check_concurrency(self, company_id: str, policy: EffectivePolicy) -> ConcurrencyCheck:
        """
        Advisory concurrency check.

        The executor reserves the slot atomically; this check only reports.
        """
        current = self._store.count_running(company_id)
        allowed = current < policy.max_concurrent
        return ConcurrencyCheck(
            allowed=allowed,
            current_running=current,
            max_concurrent=policy.max_concurrent,
            reason=None if allowed else (
                f"Concurrency limit reached: {current}/{policy.max_concurrent} runs running"
            ),
        )

    def check_cooldown(
        self,
        last_run_time: Optional[datetime],
        policy: EffectivePolicy,
        now: Optional[datetime] = None,
    ) -> CooldownCheck:
        """Deny while less than cooldown_sec has elapsed since the last run."""
        if last_run_time is None or policy.cooldown_sec <= 0:
            return CooldownCheck(allowed=True)

        now = now or utcnow()
        elapsed = (now - last_run_time).total_seconds()
        remaining = policy.cooldown_sec - elapsed
        if remaining > 0:
            return CooldownCheck(
                allowed=False,
                remaining_sec=remaining,
                reason=f"Cooldown active: {int(remaining)}s remaining",
            )
        return CooldownCheck(allowed=True)

    def evaluate_canary(self, policy: EffectivePolicy) -> CanaryEvaluation:
        if policy.canary is None:
            return CanaryEvaluation(required=False)
        return CanaryEvaluation(
            required=True,
            sample_percent=policy.canary.sample_percent,
            min_entities=policy.canary.min_entities,
            reason=(
                f"Canary sampling {policy.canary.sample_percent}% "
                f"(min {policy.canary.min_entities} entities)"
            ),
        )

    @staticmethod
    def requires_dual_control(policy: EffectivePolicy) -> bool:
        return policy.requires_dual_control
