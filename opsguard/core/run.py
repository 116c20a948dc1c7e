"""
OpsGuard Run Definition

Run, step and rollback state management and lifecycle.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by the store."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RunStatus(Enum):
    """Run lifecycle states."""
    QUEUED = "queued"
    APPROVED = "approved"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "RunStatus") -> bool:
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


TERMINAL_STATUSES = frozenset({
    RunStatus.SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.ROLLED_BACK,
    RunStatus.CANCELLED,
})

IN_FLIGHT_STATUSES = frozenset({
    RunStatus.QUEUED,
    RunStatus.APPROVED,
    RunStatus.RUNNING,
})

ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.QUEUED: frozenset({RunStatus.APPROVED, RunStatus.CANCELLED}),
    RunStatus.APPROVED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.ROLLED_BACK,
        RunStatus.CANCELLED,
    }),
}


class RunTrigger(Enum):
    """What started a run."""
    MANUAL = "manual"
    RULE = "rule"


class StepStatus(Enum):
    """Forward step states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RollbackStatus(Enum):
    """Rollback step states."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ApprovalDecision(Enum):
    """Approver decisions."""
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class BlastRadiusEvaluation:
    """Blast radius verdict for a scope under a policy."""
    allowed: bool
    entity_count: int
    percentage: float
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "entity_count": self.entity_count,
            "percentage": self.percentage,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BlastRadiusEvaluation":
        return cls(
            allowed=data.get("allowed", False),
            entity_count=data.get("entity_count", 0),
            percentage=data.get("percentage", 0.0),
            reason=data.get("reason"),
        )


@dataclass
class ApprovalRecord:
    """Approval state of a run."""
    required: bool
    requested_by: str
    requested_at: datetime = field(default_factory=utcnow)
    dual_control: bool = False
    reason: Optional[str] = None
    approved_by: Optional[str] = None
    decision: Optional[ApprovalDecision] = None
    decision_reason: Optional[str] = None
    decided_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "required": self.required,
            "requested_by": self.requested_by,
            "requested_at": _iso(self.requested_at),
            "dual_control": self.dual_control,
            "reason": self.reason,
            "approved_by": self.approved_by,
            "decision": self.decision.value if self.decision else None,
            "decision_reason": self.decision_reason,
            "decided_at": _iso(self.decided_at),
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
            "cancelled_at": _iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApprovalRecord":
        decision = data.get("decision")
        return cls(
            required=data.get("required", True),
            requested_by=data["requested_by"],
            requested_at=parse_timestamp(data.get("requested_at")) or utcnow(),
            dual_control=data.get("dual_control", False),
            reason=data.get("reason"),
            approved_by=data.get("approved_by"),
            decision=ApprovalDecision(decision) if decision else None,
            decision_reason=data.get("decision_reason"),
            decided_at=parse_timestamp(data.get("decided_at")),
            cancelled_by=data.get("cancelled_by"),
            cancel_reason=data.get("cancel_reason"),
            cancelled_at=parse_timestamp(data.get("cancelled_at")),
        )


@dataclass
class RunStep:
    """A forward step of a run."""
    run_id: str
    idx: int
    action_code: str
    input: Dict[str, Any] = field(default_factory=dict)
    step_id: Optional[str] = None
    outcome_checks: List[Dict[str, Any]] = field(default_factory=list)
    rollback: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: StepStatus = StepStatus.PENDING
    output: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    rolled_back: bool = False
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "idx": self.idx,
            "step_id": self.step_id,
            "action_code": self.action_code,
            "input": self.input,
            "outcome_checks": self.outcome_checks,
            "rollback": self.rollback,
            "status": self.status.value,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "rolled_back": self.rolled_back,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
        }


@dataclass
class RollbackStep:
    """Inverse action replayed for a succeeded forward step."""
    run_id: str
    run_step_id: str
    action_code: str
    input: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: RollbackStatus = RollbackStatus.PENDING
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "run_step_id": self.run_step_id,
            "action_code": self.action_code,
            "input": self.input,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "ended_at": _iso(self.ended_at),
        }


@dataclass
class Run:
    """
    Run definition and state.

    Represents one execution of a playbook version from planning through
    a terminal status.
    """
    company_id: str
    playbook_code: str
    playbook_version_id: str
    approval: ApprovalRecord
    id: str = field(default_factory=lambda: str(uuid4()))
    trigger: RunTrigger = RunTrigger.MANUAL
    status: RunStatus = RunStatus.QUEUED
    scope: Dict[str, Any] = field(default_factory=dict)
    scope_hash: str = ""
    canary: bool = False
    dry_run: bool = True
    blast_radius: Optional[BlastRadiusEvaluation] = None
    policy: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    created_by: str = ""
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    # Populated on load
    steps: List[RunStep] = field(default_factory=list)
    rollback_steps: List[RollbackStep] = field(default_factory=list)

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.ended_at:
            return int((self.ended_at - self.started_at).total_seconds() * 1000)
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary."""
        return {
            "id": self.id,
            "company_id": self.company_id,
            "playbook_code": self.playbook_code,
            "playbook_version_id": self.playbook_version_id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "scope": self.scope,
            "scope_hash": self.scope_hash,
            "canary": self.canary,
            "dry_run": self.dry_run,
            "blast_radius": self.blast_radius.to_dict() if self.blast_radius else None,
            "approval": self.approval.to_dict(),
            "policy": self.policy,
            "metrics": self.metrics,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "steps": [s.to_dict() for s in self.steps],
            "rollback_steps": [r.to_dict() for r in self.rollback_steps],
        }


@dataclass
class RunPage:
    """One page of a run listing."""
    runs: List[Run]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runs": [r.to_dict() for r in self.runs],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass
class RunFilter:
    """Filter for run listings."""
    status: Optional[RunStatus] = None
    playbook_code: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
