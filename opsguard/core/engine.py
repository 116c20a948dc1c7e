"""
OpsGuard Core Engine

Run executor and the runtime facade that wires all subsystems together.

Execution path for a run:
1. Re-resolve guards and re-check cooldown
2. Atomically reserve a running slot (concurrency)
3. Execute steps strictly in order; actions and outcome checks share the
   run deadline
4. Consult the outcome manager after every step
5. On a failed step, failed check or cancellation, roll back the
   succeeded steps in reverse order
6. Finalize status and metrics, emit completion and attestation facts
"""

import asyncio
import dataclasses
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .config import Config
from .exceptions import (
    ActionTimeoutError,
    ConcurrencyLimitError,
    CooldownActiveError,
    InvalidTransitionError,
    NotFoundError,
    OpsGuardError,
    PlaybookSpecError,
    RunCancelledError,
)
from .playbook import PlaybookVersion, validate_playbook_spec
from .policy import GLOBAL_SCOPE, EffectivePolicy, GuardPolicy, playbook_scope
from .run import (
    ApprovalDecision,
    RollbackStep,
    Run,
    RunFilter,
    RunPage,
    RunStatus,
    RunStep,
    StepStatus,
    utcnow,
)
from ..approval import ApprovalWorkflow
from ..events import EventSink, OutboxEventSink, Topics
from ..guards import ConcurrencyCheck, GuardPolicyResolver
from ..observability import MetricsCollector, log_context
from ..outcomes import (
    AttestationSigner,
    HttpMetricsSource,
    MetricsSource,
    OutcomeManager,
    StaticMetricsSource,
)
from ..planner import Plan, RunPlanner, RunRequest
from ..registry import (
    ActionContext,
    ActionRegistry,
    ActionResult,
    register_default_actions,
)
from ..rollback import RollbackEngine
from ..store import OpsStore

logger = logging.getLogger(__name__)


class RunExecutor:
    """
    Drives an approved run to a terminal status.

    Action failures never escape execute_run(); they show up as step and
    run status. Guard denials before the run starts are raised.
    """

    def __init__(
        self,
        store: OpsStore,
        registry: ActionRegistry,
        resolver: GuardPolicyResolver,
        planner: RunPlanner,
        outcomes: OutcomeManager,
        rollback: RollbackEngine,
        events: EventSink,
        config: Optional[Config] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self._registry = registry
        self._resolver = resolver
        self._planner = planner
        self._outcomes = outcomes
        self._rollback = rollback
        self._events = events
        self._config = config or Config()
        self._metrics = metrics or MetricsCollector()
        self._cancel_events: Dict[str, asyncio.Event] = {}

    def signal_cancel(self, run_id: str) -> None:
        """Wake a running run so it observes its cancellation."""
        event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()

    async def execute_run(self, company_id: str, run_id: str) -> Run:
        """
        Execute an approved run.

        Raises:
            NotFoundError: unknown run or playbook version
            InvalidTransitionError: run is not approved
            ConcurrencyLimitError: no running slot is free
            CooldownActiveError: the playbook is cooling down
        """
        run = self._store.get_run(company_id, run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        if run.status != RunStatus.APPROVED:
            raise InvalidTransitionError(run.id, run.status.value, RunStatus.RUNNING.value)

        version = self._store.get_version_by_id(run.playbook_version_id)
        if version is None:
            raise NotFoundError("playbook_version", run.playbook_version_id)

        # Guards may have changed since approval
        policy = self._planner.resolve_policy(company_id, version)

        if not run.dry_run and self._config.execution.enforce_cooldown:
            last = self._store.last_run_started_at(company_id, run.playbook_code, exclude_run_id=run.id)
            cooldown = self._resolver.check_cooldown(last, policy)
            if not cooldown.allowed:
                raise CooldownActiveError(cooldown.reason or "Cooldown active", remaining_sec=cooldown.remaining_sec)

        started_at = utcnow()
        if not self._store.try_start_run(company_id, run.id, policy.max_concurrent, started_at):
            status = self._store.get_run_status(run.id)
            if status != RunStatus.APPROVED:
                raise InvalidTransitionError(
                    run.id, status.value if status else None, RunStatus.RUNNING.value
                )
            check = self._resolver.check_concurrency(company_id, policy)
            logger.warning(
                f"Run {run.id} denied: {check.current_running}/{check.max_concurrent} running",
                extra={"run_id": run.id, "company_id": company_id},
            )
            raise ConcurrencyLimitError(
                check.reason or "Concurrency limit reached",
                current_running=check.current_running,
                max_concurrent=check.max_concurrent,
            )

        run.status = RunStatus.RUNNING
        run.started_at = started_at
        self._update_running_gauge(company_id)
        logger.info(
            f"Run {run.id} started: {run.playbook_code} ({len(run.steps)} steps, dry_run={run.dry_run})",
            extra={"run_id": run.id, "company_id": company_id, "playbook_code": run.playbook_code},
        )

        cancel_event = asyncio.Event()
        self._cancel_events[run.id] = cancel_event
        context = ActionContext(
            company_id=company_id,
            actor_id=run.approval.approved_by or self._config.execution.system_actor,
            dry_run=run.dry_run,
            run_id=run.id,
            deadline=asyncio.get_running_loop().time() + policy.timeout_sec,
            cancel_event=cancel_event,
        )

        try:
            with log_context(run_id=run.id, company_id=company_id, playbook_code=run.playbook_code):
                return await self._drive(run, policy, context)
        except Exception as e:
            logger.exception(
                f"Run {run.id} failed with unhandled error: {e}",
                extra={"run_id": run.id, "company_id": company_id},
            )
            return self._fail_unhandled(run, e)
        except asyncio.CancelledError:
            logger.warning(
                f"Run {run.id} interrupted by task cancellation",
                extra={"run_id": run.id, "company_id": company_id},
            )
            try:
                await asyncio.shield(self._abandon(run, policy, context))
            except Exception as e:
                logger.exception(f"Cleanup of interrupted run {run.id} failed: {e}")
            raise
        finally:
            self._cancel_events.pop(run.id, None)
            self._update_running_gauge(company_id)

    def _update_running_gauge(self, company_id: str) -> None:
        self._metrics.gauge_set(
            "opsguard_runs_running",
            self._store.count_running(company_id),
            labels={"company": company_id},
        )

    def _record_completion(self, run: Run, status: RunStatus, metrics: Dict[str, Any]) -> None:
        self._metrics.counter_inc(
            "opsguard_runs_total",
            labels={"playbook": run.playbook_code, "status": status.value},
        )
        if "duration_ms" in metrics:
            self._metrics.histogram_observe(
                "opsguard_run_duration_ms",
                metrics["duration_ms"],
                labels={"playbook": run.playbook_code},
            )

    async def _drive(self, run: Run, policy: EffectivePolicy, context: ActionContext) -> Run:
        executed: List[RunStep] = []
        halt_reason: Optional[str] = None

        for step in run.steps:
            if self._is_cancelled(run.id, context):
                halt_reason = "Run cancelled"
                break

            await self._execute_step(run, step, policy, context)
            executed.append(step)

            outcome = await self._outcomes.check_outcome(
                run.company_id, step, timeout=context.remaining_sec(),
            )
            self._outcomes.record_verification(run.id, step.id, {
                "step_idx": step.idx,
                "action_code": step.action_code,
                **outcome.to_dict(),
            })
            if not outcome.passed:
                halt_reason = outcome.reason or f"Step {step.idx} failed"
                logger.warning(
                    f"Run {run.id} halted at step {step.idx} ({step.action_code}): {halt_reason}",
                    extra={"run_id": run.id, "step_id": step.id, "action_code": step.action_code},
                )
                break

        if halt_reason is None and self._is_cancelled(run.id, context):
            halt_reason = "Run cancelled"

        if halt_reason is None and policy.post_checks:
            post = await self._outcomes.run_post_checks(
                run.company_id, policy.post_checks, timeout=context.remaining_sec(),
            )
            self._outcomes.record_verification(run.id, None, {"post_checks": True, **post.to_dict()})
            if not post.passed:
                halt_reason = f"Post checks failed: {post.reason}"

        if halt_reason is None:
            metrics = self._run_metrics(run, [])
            ended_at = utcnow()
            if self._store.transition_run(
                run.id, [RunStatus.RUNNING], RunStatus.SUCCEEDED, metrics=metrics, ended_at=ended_at
            ):
                return self._finalize(run, RunStatus.SUCCEEDED, metrics)
            halt_reason = "Run cancelled"

        return await self._halt(run, executed, policy, context, halt_reason)

    def _is_cancelled(self, run_id: str, context: ActionContext) -> bool:
        if context.cancelled:
            return True
        return self._store.get_run_status(run_id) == RunStatus.CANCELLED

    async def _execute_step(
        self,
        run: Run,
        step: RunStep,
        policy: EffectivePolicy,
        context: ActionContext,
    ) -> None:
        step.status = StepStatus.RUNNING
        step.started_at = utcnow()
        self._store.update_step(step)

        start = time.perf_counter()
        try:
            result = await self._invoke(step, policy, context)
            step.output = result.output
            step.status = StepStatus.SUCCEEDED
        except OpsGuardError as e:
            step.status = StepStatus.FAILED
            step.error = e.message
            step.output = {"error": e.message, "code": e.code}
            logger.warning(
                f"Step {step.idx} ({step.action_code}) of run {run.id} failed: {e.message}",
                extra={"run_id": run.id, "step_id": step.id, "action_code": step.action_code},
            )
        finally:
            step.duration_ms = int((time.perf_counter() - start) * 1000)
            step.ended_at = utcnow()
            self._store.update_step(step)

    async def _invoke(
        self,
        step: RunStep,
        policy: EffectivePolicy,
        context: ActionContext,
    ) -> ActionResult:
        """Run one action under the run deadline and, optionally, cancellation."""
        remaining = context.remaining_sec()
        if remaining is not None and remaining <= 0:
            raise ActionTimeoutError(
                f"Run deadline of {policy.timeout_sec}s passed before {step.action_code}",
                action_code=step.action_code,
                timeout_sec=policy.timeout_sec,
            )

        task = asyncio.ensure_future(self._registry.execute(
            step.action_code,
            step.input,
            dataclasses.replace(context, step_id=step.id),
        ))
        waiters = {task}
        cancel_waiter = None
        if self._config.execution.interrupt_on_cancel and context.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(context.cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        if cancel_waiter is not None and cancel_waiter in done:
            raise RunCancelledError(
                f"{step.action_code} interrupted by run cancellation",
                action_code=step.action_code,
                run_id=context.run_id,
            )
        raise ActionTimeoutError(
            f"{step.action_code} exceeded run timeout of {policy.timeout_sec}s",
            action_code=step.action_code,
            timeout_sec=policy.timeout_sec,
        )

    async def _halt(
        self,
        run: Run,
        executed: List[RunStep],
        policy: EffectivePolicy,
        context: ActionContext,
        reason: str,
    ) -> Run:
        rollback_steps = await self._rollback.rollback(run, executed, policy, context)
        metrics = self._run_metrics(run, rollback_steps)
        metrics["halt_reason"] = reason
        failed = [s.idx for s in executed if s.status == StepStatus.FAILED]
        if failed:
            metrics["failed_step"] = failed[0]
        ended_at = utcnow()

        target = RunStatus.ROLLED_BACK if rollback_steps else RunStatus.FAILED
        if self._store.transition_run(
            run.id, [RunStatus.RUNNING], target, metrics=metrics, ended_at=ended_at
        ):
            return self._finalize(run, target, metrics)

        # Cancelled while running: status stays cancelled
        self._store.update_run_outcome(run.id, metrics, ended_at)
        self._record_completion(run, RunStatus.CANCELLED, metrics)
        logger.info(
            f"Run {run.id} cancelled; {len(rollback_steps)} rollback steps attempted",
            extra={"run_id": run.id, "company_id": run.company_id},
        )
        return self._attest(run.company_id, run.id)

    async def _abandon(self, run: Run, policy: EffectivePolicy, context: ActionContext) -> Run:
        """Close out a run whose executing task was cancelled."""
        reason = "Run execution interrupted"
        for step in run.steps:
            if step.status == StepStatus.RUNNING:
                step.status = StepStatus.FAILED
                step.error = reason
                step.ended_at = step.ended_at or utcnow()
                self._store.update_step(step)
        executed = [s for s in run.steps if s.status != StepStatus.PENDING]
        return await self._halt(run, executed, policy, context, reason)

    def _finalize(self, run: Run, status: RunStatus, metrics: Dict[str, Any]) -> Run:
        self._record_completion(run, status, metrics)
        self._events.emit(Topics.RUN_COMPLETED, run.id, {
            "run_id": run.id,
            "company_id": run.company_id,
            "playbook_code": run.playbook_code,
            "status": status.value,
            "metrics": metrics,
        })
        logger.info(
            f"Run {run.id} finished: {status.value}",
            extra={"run_id": run.id, "company_id": run.company_id},
        )
        return self._attest(run.company_id, run.id)

    def _attest(self, company_id: str, run_id: str) -> Run:
        final = self._store.get_run(company_id, run_id)
        self._outcomes.record_attestation(run_id, {
            "status": final.status.value,
            "playbook_code": final.playbook_code,
            "playbook_version_id": final.playbook_version_id,
            "scope_hash": final.scope_hash,
            "dry_run": final.dry_run,
            "metrics": final.metrics,
            "steps": [
                {
                    "idx": s.idx,
                    "action_code": s.action_code,
                    "status": s.status.value,
                    "rolled_back": s.rolled_back,
                }
                for s in final.steps
            ],
        })
        return final

    def _run_metrics(self, run: Run, rollback_steps: List[RollbackStep]) -> Dict[str, Any]:
        metrics = self._outcomes.calculate_run_metrics(run.steps, rollback_steps)
        if run.started_at:
            metrics["duration_ms"] = int((utcnow() - run.started_at).total_seconds() * 1000)
        return metrics

    def _fail_unhandled(self, run: Run, error: Exception) -> Run:
        metrics = {"error": str(error), "error_type": type(error).__name__}
        ended_at = utcnow()
        if self._store.transition_run(
            run.id, [RunStatus.RUNNING], RunStatus.FAILED, metrics=metrics, ended_at=ended_at
        ):
            self._record_completion(run, RunStatus.FAILED, metrics)
            self._events.emit(Topics.RUN_COMPLETED, run.id, {
                "run_id": run.id,
                "company_id": run.company_id,
                "playbook_code": run.playbook_code,
                "status": RunStatus.FAILED.value,
                "metrics": metrics,
            })
        else:
            self._store.update_run_outcome(run.id, metrics, ended_at)
        return self._store.get_run(run.company_id, run.id)


class RuntimeState(Enum):
    """Runtime operational states."""
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class OpsGuardRuntime:
    """
    Main OpsGuard runtime.

    Constructs and owns the subsystems:
    - Guard Policy Resolver
    - Run Planner
    - Approval Workflow
    - Run Executor
    - Rollback Engine
    - Outcome Manager

    Collaborators (store, action registry, metrics source, event sink,
    attestation signer) may be injected; otherwise they are built from
    the configuration.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[OpsStore] = None,
        registry: Optional[ActionRegistry] = None,
        metrics_source: Optional[MetricsSource] = None,
        events: Optional[EventSink] = None,
        signer: Optional[AttestationSigner] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the runtime.

        Args:
            config: Configuration object. Uses defaults if not provided.
        """
        self.config = config or Config()
        self.state = RuntimeState.INITIALIZING

        self.store = store or OpsStore(self.config.store.db_path)
        self.metrics = metrics or MetricsCollector()
        self.registry = registry or register_default_actions(ActionRegistry(self.metrics))
        self.events = events or OutboxEventSink(self.store)

        if metrics_source is None:
            if self.config.outcomes.metrics_url:
                metrics_source = HttpMetricsSource(
                    self.config.outcomes.metrics_url,
                    timeout=self.config.outcomes.request_timeout_sec,
                )
            else:
                metrics_source = StaticMetricsSource()
        self.metrics_source = metrics_source

        if signer is None and self.config.attestation.signing_key_path:
            signer = AttestationSigner.from_file(
                self.config.attestation.signing_key_path,
                signer_id=self.config.attestation.signer_id,
            )

        self.resolver = GuardPolicyResolver(self.store, self.config)
        self.planner = RunPlanner(self.store, self.resolver, self.registry, self.config)
        self.outcomes = OutcomeManager(
            self.metrics_source, self.events, self.config, signer=signer, store=self.store
        )
        self.rollback = RollbackEngine(self.store, self.registry)
        self.executor = RunExecutor(
            self.store,
            self.registry,
            self.resolver,
            self.planner,
            self.outcomes,
            self.rollback,
            self.events,
            self.config,
            self.metrics,
        )
        self.approvals = ApprovalWorkflow(
            self.store, self.events, self.config, on_cancel=self.executor.signal_cancel
        )

        logger.info("OpsGuard runtime initialized")

    async def start(self) -> None:
        """Validate configuration and start collaborators."""
        errors = self.config.validate()
        if errors:
            raise OpsGuardError(
                f"Invalid configuration: {'; '.join(errors)}",
                code="CONFIG_INVALID",
                details={"errors": errors},
            )
        start = getattr(self.metrics_source, "start", None)
        if start is not None:
            await start()
        self.state = RuntimeState.READY
        logger.info("OpsGuard runtime started")

    async def stop(self) -> None:
        """Stop collaborators."""
        self.state = RuntimeState.SHUTTING_DOWN
        stop = getattr(self.metrics_source, "stop", None)
        if stop is not None:
            await stop()
        self.state = RuntimeState.STOPPED
        logger.info("OpsGuard runtime stopped")

    # ------------------------------------------------------------------
    # Administrative surface
    # ------------------------------------------------------------------

    def set_guard_policy(self, policy: GuardPolicy) -> GuardPolicy:
        return self.store.upsert_guard_policy(policy)

    def publish_playbook(
        self,
        company_id: str,
        user_id: str,
        playbook_code: str,
        spec: Dict[str, Any],
    ) -> PlaybookVersion:
        """
        Publish a playbook spec as a new immutable version.

        Raises:
            PlaybookSpecError: spec is invalid or uses unknown actions
        """
        errors = validate_playbook_spec(spec)
        for i, step in enumerate(spec.get("steps") or []):
            action = step.get("action") if isinstance(step, dict) else None
            if action and not self.registry.has_action(action):
                errors.append(f"steps.{i}.action: unknown action {action}")
            rollback = step.get("rollback") if isinstance(step, dict) else None
            if isinstance(rollback, dict) and rollback.get("action") and not self.registry.has_action(rollback["action"]):
                errors.append(f"steps.{i}.rollback.action: unknown action {rollback['action']}")
        if errors:
            raise PlaybookSpecError(f"Playbook spec for {playbook_code} is invalid", errors=errors)
        return self.store.publish_version(company_id, playbook_code, spec, user_id)

    def list_playbook_versions(
        self,
        company_id: str,
        playbook_code: str,
        limit: int = 20,
        offset: int = 0,
    ) -> List[PlaybookVersion]:
        """
        Published versions of a playbook, newest first.

        Raises:
            NotFoundError: the playbook was never published
        """
        versions = self.store.list_versions(company_id, playbook_code, limit=limit, offset=offset)
        if not versions and self.store.get_version(company_id, playbook_code) is None:
            raise NotFoundError("playbook", playbook_code)
        return versions

    def get_effective_policy(
        self,
        company_id: str,
        playbook_code: Optional[str] = None,
    ) -> EffectivePolicy:
        """Effective policy for a playbook (latest version) or the global scope."""
        if playbook_code is None:
            return self.resolver.resolve(company_id, GLOBAL_SCOPE)
        version = self.store.get_version(company_id, playbook_code)
        if version is None:
            return self.resolver.resolve(company_id, playbook_scope(playbook_code))
        return self.planner.resolve_policy(company_id, version)

    def check_concurrency(self, company_id: str, playbook_code: Optional[str] = None) -> ConcurrencyCheck:
        policy = self.get_effective_policy(company_id, playbook_code)
        return self.resolver.check_concurrency(company_id, policy)

    # ------------------------------------------------------------------
    # Inbound API
    # ------------------------------------------------------------------

    async def plan_run(self, company_id: str, user_id: str, request: RunRequest) -> Plan:
        with self.metrics.timer("opsguard_plan_duration_ms", labels={"playbook": request.playbook_code}):
            return self.planner.plan_run(company_id, user_id, request)

    async def request_approval(self, company_id: str, user_id: str, plan: Plan) -> Run:
        return self.approvals.request_approval(company_id, user_id, plan)

    async def submit_run(self, company_id: str, user_id: str, request: RunRequest) -> Run:
        """Plan a run and queue it for approval."""
        plan = self.planner.plan_run(company_id, user_id, request)
        return self.approvals.request_approval(company_id, user_id, plan)

    async def approve_run(
        self,
        company_id: str,
        user_id: str,
        run_id: str,
        decision: Union[ApprovalDecision, str] = ApprovalDecision.APPROVE,
        reason: Optional[str] = None,
    ) -> Run:
        return self.approvals.approve_run(
            company_id, user_id, run_id, ApprovalDecision(decision), reason
        )

    async def cancel_run(
        self,
        company_id: str,
        user_id: str,
        run_id: str,
        reason: Optional[str] = None,
    ) -> Run:
        return self.approvals.cancel_run(company_id, user_id, run_id, reason)

    async def execute_run(self, company_id: str, run_id: str) -> Run:
        return await self.executor.execute_run(company_id, run_id)

    async def list_runs(
        self,
        company_id: str,
        run_filter: Optional[RunFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> RunPage:
        return self.store.list_runs(company_id, run_filter, limit=limit, offset=offset)

    async def get_run(self, company_id: str, run_id: str) -> Run:
        run = self.store.get_run(company_id, run_id)
        if run is None:
            raise NotFoundError("run", run_id)
        return run

    async def get_aggregated_metrics(
        self,
        company_id: str,
        run_filter: Optional[RunFilter] = None,
    ) -> Dict[str, Any]:
        run_filter = run_filter or RunFilter()
        return self.outcomes.get_aggregated_metrics(
            company_id,
            since=run_filter.since,
            until=run_filter.until,
            playbook_code=run_filter.playbook_code,
        )
