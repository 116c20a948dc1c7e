"""
Tests for OpsGuard rollback engine.
"""

import asyncio

import pytest

from opsguard.core.policy import (
    BlastRadiusLimits,
    EffectivePolicy,
    RollbackPolicy,
    RollbackType,
)
from opsguard.core.run import (
    ApprovalRecord,
    RollbackStatus,
    Run,
    RunStep,
    StepStatus,
)
from opsguard.registry import ActionContext, InverseAction
from opsguard.rollback import RollbackEngine

from conftest import COMPANY, REQUESTER, ScriptedHandler


def make_policy(rollback_type=RollbackType.INVERSE_ACTION, timeout_sec=None) -> EffectivePolicy:
    return EffectivePolicy(
        max_concurrent=1,
        blast_radius=BlastRadiusLimits(),
        requires_dual_control=False,
        timeout_sec=60,
        cooldown_sec=0,
        rollback_policy=RollbackPolicy(rollback_type, timeout_sec=timeout_sec),
    )


def make_run(store, scope=None, steps=()):
    run = Run(
        company_id=COMPANY,
        playbook_code="pb.test",
        playbook_version_id="v1",
        approval=ApprovalRecord(required=False, requested_by=REQUESTER),
        scope=scope or {},
    )
    run_steps = []
    for idx, (action, status, output) in enumerate(steps):
        step = RunStep(run_id=run.id, idx=idx, action_code=action, output=output)
        step.status = status
        run_steps.append(step)
    store.create_run(run, run_steps)
    return run, run_steps


def context(run, cancel_event=None):
    return ActionContext(
        company_id=COMPANY,
        actor_id=REQUESTER,
        dry_run=True,
        run_id=run.id,
        cancel_event=cancel_event,
    )


def succeeded(action, *ids):
    return (action, StepStatus.SUCCEEDED, {"ids": list(ids), "count": len(ids)})


@pytest.fixture
def engine(store, registry):
    return RollbackEngine(store, registry)


class TestRollbackOrder:
    """Tests for which steps are undone, and in what order."""

    @pytest.mark.asyncio
    async def test_reverse_order(self, engine, store, call_log):
        run, steps = make_run(store, steps=[
            succeeded("test.step", "1"),
            succeeded("test.step", "2"),
            succeeded("test.step", "3"),
        ])

        created = await engine.rollback(run, steps, make_policy(), context(run))

        assert [r.input for r in created] == [{"ids": ["3"]}, {"ids": ["2"]}, {"ids": ["1"]}]
        assert [r.run_step_id for r in created] == [steps[2].id, steps[1].id, steps[0].id]
        assert call_log == ["test.undo"] * 3
        assert all(s.rolled_back for s in steps)
        assert [r.id for r in store.get_rollback_steps(run.id)] == [r.id for r in created]

    @pytest.mark.asyncio
    async def test_skips_steps_without_inverse(self, engine, store, call_log):
        run, steps = make_run(store, steps=[
            succeeded("test.step", "1"),
            ("test.noop", StepStatus.SUCCEEDED, {"count": 0}),
            ("test.step", StepStatus.FAILED, {"error": "boom"}),
            ("test.step", StepStatus.PENDING, None),
        ])

        created = await engine.rollback(run, steps, make_policy(), context(run))

        assert len(created) == 1
        assert created[0].run_step_id == steps[0].id
        assert not steps[1].rolled_back
        assert call_log == ["test.undo"]

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, engine, store):
        run, steps = make_run(store, steps=[("test.noop", StepStatus.SUCCEEDED, {})])

        assert await engine.rollback(run, steps, make_policy(), context(run)) == []


class TestRollbackFailures:
    """Tests for failing rollback steps."""

    @pytest.mark.asyncio
    async def test_partial_failure_continues(self, engine, store, registry, call_log):
        async def undo(input, ctx):
            call_log.append(f"undo:{input['ids'][0]}")
            if input["ids"] == ["2"]:
                raise RuntimeError("ledger locked")
            return {"count": 1}

        registry.bind_handler("test.undo", undo)
        run, steps = make_run(store, steps=[
            succeeded("test.step", "1"),
            succeeded("test.step", "2"),
            succeeded("test.step", "3"),
        ])

        created = await engine.rollback(run, steps, make_policy(), context(run))

        assert call_log == ["undo:3", "undo:2", "undo:1"]
        assert [r.status for r in created] == [
            RollbackStatus.SUCCEEDED,
            RollbackStatus.FAILED,
            RollbackStatus.SUCCEEDED,
        ]
        assert "ledger locked" in created[1].error
        assert [s.rolled_back for s in steps] == [True, False, True]
        assert all(r.ended_at is not None for r in created)
        stored = store.get_rollback_steps(run.id)
        assert stored[1].status == RollbackStatus.FAILED

    @pytest.mark.asyncio
    async def test_rollback_timeout(self, engine, store, registry, call_log):
        registry.bind_handler("test.undo", ScriptedHandler("test.undo", call_log, delay=5))
        run, steps = make_run(store, steps=[succeeded("test.step", "1")])

        created = await asyncio.wait_for(
            engine.rollback(run, steps, make_policy(timeout_sec=1), context(run)),
            timeout=4,
        )

        assert created[0].status == RollbackStatus.FAILED
        assert "timed out" in created[0].error
        assert not steps[0].rolled_back

    @pytest.mark.asyncio
    async def test_rollback_ignores_cancellation(self, engine, store, call_log):
        event = asyncio.Event()
        event.set()
        run, steps = make_run(store, steps=[succeeded("test.step", "1")])

        created = await engine.rollback(run, steps, make_policy(), context(run, cancel_event=event))

        assert created[0].status == RollbackStatus.SUCCEEDED
        assert call_log == ["test.undo"]


class TestRollbackPolicies:
    """Tests for rollback policy types."""

    @pytest.mark.asyncio
    async def test_none_policy(self, engine, store, call_log):
        run, steps = make_run(store, steps=[succeeded("test.step", "1")])

        created = await engine.rollback(run, steps, make_policy(RollbackType.NONE), context(run))

        assert created == []
        assert call_log == []

    @pytest.mark.asyncio
    async def test_custom_policy_uses_step_override(self, engine, store, registry, call_log):
        run, steps = make_run(
            store,
            scope={"payment_ids": [9, 10]},
            steps=[succeeded("test.step", "1"), succeeded("test.step", "2")],
        )
        steps[1].rollback = {"action": "test.undo", "input": {"ids": "{{scope.payment_ids}}", "reason": "manual"}}

        created = await engine.rollback(run, steps, make_policy(RollbackType.CUSTOM), context(run))

        assert created[0].input == {"ids": [9, 10], "reason": "manual"}
        # Steps without an override fall back to the registered inverse
        assert created[1].input == {"ids": ["1"]}

    def test_inverse_for_uses_handler_first(self, engine, store, registry, call_log):
        class ReversingHandler(ScriptedHandler):
            def inverse(self, output):
                return InverseAction("test.noop", {"from": output["ids"]})

        registry.bind_handler("test.step", ReversingHandler("test.step", call_log))
        run, steps = make_run(store, steps=[succeeded("test.step", "1")])

        inverse = engine.inverse_for(run, steps[0], make_policy())

        assert inverse.action_code == "test.noop"
        assert inverse.input == {"from": ["1"]}
