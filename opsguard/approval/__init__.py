"""
OpsGuard - Approval Workflow

Persists planned runs and moves them among queued, approved and
cancelled. Enforces dual control: when the effective policy requires it,
the approver must not be the requester.

Every transition is a compare-and-set in the store and emits exactly one
outbox event.
"""

import logging
from typing import Any, Callable, Dict, Optional

from ..core.config import Config
from ..core.exceptions import (
    DualControlViolationError,
    InvalidTransitionError,
    NotFoundError,
)
from ..core.run import (
    ApprovalDecision,
    ApprovalRecord,
    Run,
    RunStatus,
    RunStep,
    utcnow,
)
from ..events import EventSink, Topics
from ..planner import Plan

logger = logging.getLogger(__name__)

_CANCELLABLE = frozenset(s for s in RunStatus if s.can_transition_to(RunStatus.CANCELLED))


class ApprovalWorkflow:
    """
    Approval state machine for runs.

    Args:
        store: OpsStore
        events: Outbox sink
        config: Runtime configuration
        on_cancel: Called with the run id when a running run is cancelled
    """

    def __init__(
        self,
        store,
        events: EventSink,
        config: Optional[Config] = None,
        on_cancel: Optional[Callable[[str], None]] = None,
    ):
        self._store = store
        self._events = events
        self._config = config or Config()
        self._on_cancel = on_cancel

    def request_approval(self, company_id: str, user_id: str, plan: Plan) -> Run:
        """
        Persist a planned run as queued.

        Runs that need no approval (dry runs without dual control) are
        approved immediately on behalf of the requester.

        Raises:
            DuplicateRunError: an identical run is in flight and the
                duplicate policy is "reject"
        """
        run = Run(
            company_id=company_id,
            playbook_code=plan.playbook_version.playbook_code,
            playbook_version_id=plan.playbook_version.id,
            approval=ApprovalRecord(
                required=plan.requires_approval,
                requested_by=user_id,
                dual_control=plan.dual_control,
                reason=plan.approval_reason,
            ),
            trigger=plan.trigger,
            status=RunStatus.QUEUED,
            scope=plan.execution_scope,
            scope_hash=plan.scope_hash,
            canary=plan.is_canary,
            dry_run=plan.dry_run,
            blast_radius=plan.blast_radius,
            policy=plan.effective_policy.to_dict(),
            created_by=user_id,
        )
        steps = [
            RunStep(
                run_id=run.id,
                idx=s.idx,
                step_id=s.step_id,
                action_code=s.action_code,
                input=s.input,
                outcome_checks=s.outcome_checks,
                rollback=s.rollback,
            )
            for s in plan.steps
        ]

        run, created = self._store.create_run(
            run, steps, duplicate_policy=self._config.execution.duplicate_policy
        )
        if not created:
            return run

        self._emit(Topics.RUN_QUEUED, run, user_id, {
            "requires_approval": plan.requires_approval,
            "reason": plan.approval_reason,
            "canary": run.canary,
            "dry_run": run.dry_run,
            "entity_count": plan.blast_radius.entity_count,
        })
        logger.info(
            f"Run {run.id} queued for {run.playbook_code} by {user_id}",
            extra={"run_id": run.id, "company_id": company_id},
        )

        if not plan.requires_approval:
            run = self._approve(run, user_id, "Auto-approved: " + plan.approval_reason)

        return run

    def approve_run(
        self,
        company_id: str,
        user_id: str,
        run_id: str,
        decision: ApprovalDecision = ApprovalDecision.APPROVE,
        reason: Optional[str] = None,
    ) -> Run:
        """
        Record an approval decision on a queued run.

        Raises:
            NotFoundError: unknown run
            InvalidTransitionError: run is not queued
            DualControlViolationError: requester approving their own
                dual-control run
        """
        run = self._load(company_id, run_id)
        if run.status != RunStatus.QUEUED:
            target = RunStatus.APPROVED if decision == ApprovalDecision.APPROVE else RunStatus.CANCELLED
            raise InvalidTransitionError(run.id, run.status.value, target.value)

        if decision == ApprovalDecision.REJECT:
            return self._reject(run, user_id, reason)

        if run.approval.dual_control and user_id == run.approval.requested_by:
            logger.warning(
                f"Dual control violation on run {run.id}: {user_id} requested and approved",
                extra={"run_id": run.id, "company_id": company_id},
            )
            raise DualControlViolationError(
                "Dual control requires an approver other than the requester",
                run_id=run.id,
                actor=user_id,
            )

        return self._approve(run, user_id, reason)

    def cancel_run(
        self,
        company_id: str,
        user_id: str,
        run_id: str,
        reason: Optional[str] = None,
    ) -> Run:
        """
        Cancel a queued, approved or running run.

        A running run is marked cancelled here; the executor observes the
        status, stops forward progress and rolls back.
        """
        run = self._load(company_id, run_id)

        while run.status in _CANCELLABLE:
            previous = run.status
            now = utcnow()
            run.approval.cancelled_by = user_id
            run.approval.cancel_reason = reason
            run.approval.cancelled_at = now
            ended_at = now if previous != RunStatus.RUNNING else None
            if self._store.transition_run(
                run.id,
                [previous],
                RunStatus.CANCELLED,
                approval=run.approval,
                ended_at=ended_at,
            ):
                run.status = RunStatus.CANCELLED
                self._emit(Topics.RUN_CANCELLED, run, user_id, {
                    "reason": reason,
                    "previous_status": previous.value,
                })
                logger.info(
                    f"Run {run.id} cancelled by {user_id} from {previous.value}",
                    extra={"run_id": run.id, "company_id": company_id},
                )
                if previous == RunStatus.RUNNING and self._on_cancel is not None:
                    self._on_cancel(run.id)
                return self._load(company_id, run_id)
            run = self._load(company_id, run_id)

        raise InvalidTransitionError(run.id, run.status.value, RunStatus.CANCELLED.value)

    def _approve(self, run: Run, user_id: str, reason: Optional[str]) -> Run:
        run.approval.approved_by = user_id
        run.approval.decision = ApprovalDecision.APPROVE
        run.approval.decision_reason = reason
        run.approval.decided_at = utcnow()
        self._transition(run, RunStatus.APPROVED)
        self._emit(Topics.RUN_APPROVED, run, user_id, {"reason": reason})
        logger.info(
            f"Run {run.id} approved by {user_id}",
            extra={"run_id": run.id, "company_id": run.company_id},
        )
        return run

    def _reject(self, run: Run, user_id: str, reason: Optional[str]) -> Run:
        now = utcnow()
        run.approval.decision = ApprovalDecision.REJECT
        run.approval.decision_reason = reason
        run.approval.decided_at = now
        run.approval.cancelled_by = user_id
        run.approval.cancel_reason = reason
        run.approval.cancelled_at = now
        self._transition(run, RunStatus.CANCELLED, ended_at=now)
        self._emit(Topics.RUN_REJECTED, run, user_id, {"reason": reason})
        logger.info(
            f"Run {run.id} rejected by {user_id}",
            extra={"run_id": run.id, "company_id": run.company_id},
        )
        return run

    def _transition(self, run: Run, target: RunStatus, ended_at=None) -> None:
        if not self._store.transition_run(
            run.id, [run.status], target, approval=run.approval, ended_at=ended_at
        ):
            current = self._store.get_run_status(run.id)
            raise InvalidTransitionError(
                run.id,
                current.value if current else None,
                target.value,
            )
        run.status = target
        if ended_at is not None:
            run.ended_at = ended_at

    def _load(self, company_id: str, run_id: str) -> Run:
        run = self._store.get_run(company_id, run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    def _emit(self, topic: str, run: Run, actor: str, extra: Dict[str, Any]) -> None:
        payload = {
            "run_id": run.id,
            "company_id": run.company_id,
            "playbook_code": run.playbook_code,
            "status": run.status.value,
            "actor": actor,
        }
        payload.update(extra)
        self._events.emit(topic, run.id, payload)
