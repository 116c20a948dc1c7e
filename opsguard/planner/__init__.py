"""
OpsGuard - Run Planner

Turns a playbook version and a target scope into a run plan:
- Resolves the requested (or latest) playbook version
- Resolves the effective guard policy
- Evaluates blast radius (a rejection is a hard failure)
- Checks cooldown for live runs
- Computes the canary sub-scope when canary sampling applies
- Decides whether approval (and dual control) is required
- Resolves {{scope.field}} placeholders in step inputs

Planning persists nothing. Planning the same version and scope twice
yields the same steps and the same canary sample.
"""

import copy
import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..core.config import Config
from ..core.exceptions import (
    BlastRadiusExceededError,
    CooldownActiveError,
    NotFoundError,
    PolicyViolationError,
)
from ..core.playbook import PlaybookVersion
from ..core.policy import EffectivePolicy, playbook_scope
from ..core.run import BlastRadiusEvaluation, RunTrigger
from ..guards import CanaryEvaluation, GuardPolicyResolver
from ..registry import ActionRegistry

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*scope\.([A-Za-z0-9_.\-]+)\s*\}\}")

_MISSING = object()


def _lookup(scope: Dict[str, Any], path: str) -> Any:
    value: Any = scope
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def resolve_template(value: Any, scope: Dict[str, Any]) -> Any:
    """
    Substitute {{scope.field}} placeholders in a step input.

    A string that is exactly one placeholder takes the raw scope value.
    Unresolved placeholders are left as written.
    """
    if isinstance(value, dict):
        return {k: resolve_template(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_template(v, scope) for v in value]
    if not isinstance(value, str):
        return value

    whole = PLACEHOLDER.fullmatch(value.strip())
    if whole:
        found = _lookup(scope, whole.group(1))
        return value if found is _MISSING else copy.deepcopy(found)

    def substitute(match: "re.Match") -> str:
        found = _lookup(scope, match.group(1))
        if found is _MISSING:
            return match.group(0)
        if isinstance(found, (dict, list)):
            return json.dumps(found, sort_keys=True)
        return str(found)

    return PLACEHOLDER.sub(substitute, value)


def compute_scope_hash(playbook_code: str, scope: Dict[str, Any], dry_run: bool) -> str:
    canonical = json.dumps(
        {"playbook": playbook_code, "scope": scope, "dry_run": dry_run},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass
class RunRequest:
    """Inbound request to plan a run."""
    playbook_code: str
    scope: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = True
    version: Optional[int] = None
    trigger: RunTrigger = RunTrigger.MANUAL


@dataclass
class PlannedStep:
    """A resolved step, pending execution."""
    idx: int
    step_id: str
    action_code: str
    input: Dict[str, Any]
    outcome_checks: List[Dict[str, Any]] = field(default_factory=list)
    rollback: Optional[Dict[str, Any]] = None
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idx": self.idx,
            "step_id": self.step_id,
            "action_code": self.action_code,
            "input": self.input,
            "outcome_checks": self.outcome_checks,
            "rollback": self.rollback,
            "status": self.status,
        }


@dataclass
class Plan:
    """Output of run planning."""
    playbook_version: PlaybookVersion
    effective_policy: EffectivePolicy
    scope: Dict[str, Any]
    execution_scope: Dict[str, Any]
    blast_radius: BlastRadiusEvaluation
    canary: CanaryEvaluation
    steps: List[PlannedStep]
    requires_approval: bool
    approval_reason: str
    dual_control: bool
    dry_run: bool
    trigger: RunTrigger
    scope_hash: str

    @property
    def is_canary(self) -> bool:
        return self.canary.required

    def to_dict(self) -> Dict[str, Any]:
        return {
            "playbook_code": self.playbook_version.playbook_code,
            "playbook_version_id": self.playbook_version.id,
            "version": self.playbook_version.version,
            "effective_policy": self.effective_policy.to_dict(),
            "scope": self.scope,
            "canary_scope": self.execution_scope if self.is_canary else None,
            "blast_radius": self.blast_radius.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
            "requires_approval": self.requires_approval,
            "approval_reason": self.approval_reason,
            "dual_control": self.dual_control,
            "dry_run": self.dry_run,
            "trigger": self.trigger.value,
            "scope_hash": self.scope_hash,
        }


class RunPlanner:
    """
    Plans runs from published playbook versions.

    The store must provide ``get_version`` and ``last_run_started_at``.
    """

    def __init__(
        self,
        store,
        resolver: GuardPolicyResolver,
        registry: ActionRegistry,
        config: Optional[Config] = None,
    ):
        self._store = store
        self._resolver = resolver
        self._registry = registry
        self._config = config or Config()

    def resolve_policy(self, company_id: str, version: PlaybookVersion) -> EffectivePolicy:
        """Effective policy for a version, including its actions' hints."""
        hints = []
        for step in version.steps:
            descriptor = self._registry.get_action(step.action)
            if descriptor.default_guards:
                hints.append(descriptor.default_guards)
        return self._resolver.resolve(
            company_id,
            playbook_scope(version.playbook_code),
            spec_guards=version.guards,
            action_hints=hints,
        )

    def plan_run(self, company_id: str, user_id: str, request: RunRequest) -> Plan:
        """
        Plan a run.

        Raises:
            NotFoundError: unknown playbook, version or action
            BlastRadiusExceededError: scope exceeds the blast radius limits
            CooldownActiveError: a live run is inside the cooldown window
            PolicyViolationError: a dry-run-only action in a live run
        """
        version = self._store.get_version(company_id, request.playbook_code, request.version)
        if version is None:
            ref = request.playbook_code
            if request.version is not None:
                ref = f"{ref}@v{request.version}"
            raise NotFoundError("playbook", ref)

        policy = self.resolve_policy(company_id, version)
        scope = request.scope or {}

        blast = self._resolver.evaluate_blast_radius(scope, policy)
        if not blast.allowed:
            logger.warning(
                f"Plan rejected for {request.playbook_code}: {blast.reason}",
                extra={"company_id": company_id, "playbook_code": request.playbook_code},
            )
            raise BlastRadiusExceededError(
                blast.reason or "Blast radius exceeded",
                entity_count=blast.entity_count,
                percentage=blast.percentage,
                max_entities=policy.blast_radius.max_entities,
                max_percent=policy.blast_radius.max_percent,
            )

        if not request.dry_run:
            self._check_live_actions(version)
            if self._config.execution.enforce_cooldown:
                last = self._store.last_run_started_at(company_id, request.playbook_code)
                cooldown = self._resolver.check_cooldown(last, policy)
                if not cooldown.allowed:
                    raise CooldownActiveError(
                        cooldown.reason or "Cooldown active",
                        remaining_sec=cooldown.remaining_sec,
                    )

        scope_hash = compute_scope_hash(request.playbook_code, scope, request.dry_run)

        canary = self._resolver.evaluate_canary(policy)
        execution_scope = scope
        if canary.required:
            execution_scope = self.compute_canary_scope(scope, canary, seed=scope_hash)

        steps = [
            PlannedStep(
                idx=i,
                step_id=step.id,
                action_code=step.action,
                input=resolve_template(step.input, execution_scope),
                outcome_checks=list(step.outcome_checks),
                rollback=(
                    {
                        "action": step.rollback["action"],
                        "input": step.rollback.get("input") or {},
                    }
                    if step.rollback else None
                ),
            )
            for i, step in enumerate(version.steps)
        ]

        dual_control = self._resolver.requires_dual_control(policy)
        requires_approval, reason = self._approval_requirement(dual_control, request.dry_run)

        logger.info(
            f"Planned {request.playbook_code} v{version.version}: "
            f"{len(steps)} steps, entities={blast.entity_count}, "
            f"canary={canary.required}, approval={requires_approval}"
        )

        return Plan(
            playbook_version=version,
            effective_policy=policy,
            scope=scope,
            execution_scope=execution_scope,
            blast_radius=blast,
            canary=canary,
            steps=steps,
            requires_approval=requires_approval,
            approval_reason=reason,
            dual_control=dual_control,
            dry_run=request.dry_run,
            trigger=request.trigger,
            scope_hash=scope_hash,
        )

    def _check_live_actions(self, version: PlaybookVersion) -> None:
        dry_only = [
            step.action for step in version.steps
            if self._registry.get_action(step.action).dry_run_only
        ]
        if dry_only:
            raise PolicyViolationError(
                f"Actions may only run as dry runs: {', '.join(dry_only)}",
                guard="dry_run_only",
                violations=dry_only,
            )

    @staticmethod
    def _approval_requirement(dual_control: bool, dry_run: bool) -> Tuple[bool, str]:
        if dual_control:
            return True, "Dual control required by guard policy"
        if not dry_run:
            return True, "Live execution requires approval"
        return False, "Dry run without dual control"

    def compute_canary_scope(
        self,
        scope: Dict[str, Any],
        canary: CanaryEvaluation,
        seed: str,
    ) -> Dict[str, Any]:
        """
        Narrow a scope to its canary sample.

        Sample size is max(min_entities, ceil(total * percent / 100)),
        capped at the total. Members are chosen by hash rank so the same
        scope always yields the same sample; input order is preserved.
        """
        result = dict(scope)
        result["canary"] = True

        key = self._resolver.entity_list_key(scope)
        if key is None:
            return result

        ids = list(scope[key])
        total = len(ids)
        count = min(
            total,
            max(canary.min_entities or 0, math.ceil(total * (canary.sample_percent or 0) / 100)),
        )
        ranked = sorted(
            range(total),
            key=lambda i: hashlib.sha256(f"{seed}:{ids[i]}".encode()).hexdigest(),
        )
        chosen = sorted(ranked[:count])
        result[key] = [ids[i] for i in chosen]
        result["canary_total"] = total
        return result
