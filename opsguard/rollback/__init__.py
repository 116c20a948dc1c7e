"""
OpsGuard - Rollback Engine

Replays inverse actions for already-succeeded forward steps, in strict
reverse order. Steps without an inverse are skipped. Each rollback step is
persisted with its own status; a failing rollback step is logged and never
retried, and later rollback steps still run.
"""

import asyncio
import dataclasses
import logging
from typing import List, Optional

from ..core.exceptions import ActionTimeoutError, RollbackPartialFailure
from ..core.policy import EffectivePolicy, RollbackType
from ..core.run import RollbackStatus, RollbackStep, Run, RunStep, StepStatus, utcnow
from ..planner import resolve_template
from ..registry import ActionContext, ActionRegistry, InverseAction

logger = logging.getLogger(__name__)


class RollbackEngine:
    """Best-effort rollback of a halted run."""

    def __init__(self, store, registry: ActionRegistry):
        self._store = store
        self._registry = registry

    def inverse_for(
        self,
        run: Run,
        step: RunStep,
        policy: EffectivePolicy,
    ) -> Optional[InverseAction]:
        """The inverse invocation for a forward step, or None."""
        if policy.rollback_policy.type == RollbackType.CUSTOM and step.rollback:
            return InverseAction(
                action_code=step.rollback["action"],
                input=resolve_template(step.rollback.get("input") or {}, run.scope),
            )
        return self._registry.get_inverse(step.action_code, step.output)

    async def rollback(
        self,
        run: Run,
        executed_steps: List[RunStep],
        policy: EffectivePolicy,
        context: ActionContext,
    ) -> List[RollbackStep]:
        """
        Roll back succeeded steps in reverse order.

        Args:
            run: The halted run
            executed_steps: Forward steps in execution order
            policy: Effective policy of the run
            context: Context of the forward run; rollback ignores its
                cancellation and deadline

        Returns:
            Rollback steps created, in execution order
        """
        if policy.rollback_policy.type == RollbackType.NONE:
            logger.info(f"Rollback disabled by policy for run {run.id}", extra={"run_id": run.id})
            return []

        timeout = policy.rollback_policy.timeout_sec
        rollback_context = dataclasses.replace(context, cancel_event=None, deadline=None)
        created: List[RollbackStep] = []

        for step in reversed(executed_steps):
            if step.status != StepStatus.SUCCEEDED:
                continue

            inverse = self.inverse_for(run, step, policy)
            if inverse is None:
                logger.info(
                    f"No inverse for step {step.idx} ({step.action_code}); skipping",
                    extra={"run_id": run.id, "step_id": step.id},
                )
                continue

            rollback_step = RollbackStep(
                run_id=run.id,
                run_step_id=step.id,
                action_code=inverse.action_code,
                input=inverse.input,
            )
            self._store.insert_rollback_step(rollback_step)
            created.append(rollback_step)

            rollback_step.status = RollbackStatus.RUNNING
            self._store.update_rollback_step(rollback_step)

            try:
                call = self._registry.execute(
                    inverse.action_code,
                    inverse.input,
                    dataclasses.replace(rollback_context, step_id=step.id),
                )
                if timeout:
                    try:
                        result = await asyncio.wait_for(call, timeout=timeout)
                    except asyncio.TimeoutError:
                        raise ActionTimeoutError(
                            f"Rollback {inverse.action_code} timed out after {timeout}s",
                            action_code=inverse.action_code,
                            timeout_sec=timeout,
                        )
                else:
                    result = await call
                rollback_step.status = RollbackStatus.SUCCEEDED
                rollback_step.output = result.output
                step.rolled_back = True
                self._store.update_step(step)
                logger.info(
                    f"Rolled back step {step.idx} of run {run.id} via {inverse.action_code}",
                    extra={"run_id": run.id, "step_id": step.id, "action_code": inverse.action_code},
                )
            except Exception as e:
                rollback_step.status = RollbackStatus.FAILED
                rollback_step.error = str(e)
                failure = RollbackPartialFailure(
                    f"Rollback of step {step.idx} of run {run.id} failed: {e}",
                    rollback_step_id=rollback_step.id,
                    action_code=inverse.action_code,
                )
                logger.error(
                    failure.message,
                    extra={"run_id": run.id, "step_id": step.id, "action_code": inverse.action_code},
                )
            finally:
                rollback_step.ended_at = utcnow()
                self._store.update_rollback_step(rollback_step)

        return created
