"""
OpsGuard - Test Configuration

Shared fixtures: in-memory store, scripted action handlers and a runtime
wired from injected collaborators.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from opsguard.core.config import Config
from opsguard.core.engine import OpsGuardRuntime
from opsguard.events import InMemoryEventSink
from opsguard.outcomes import StaticMetricsSource
from opsguard.registry import (
    ActionDescriptor,
    ActionHandler,
    ActionRegistry,
    InverseDescriptor,
    register_default_actions,
    write_effect,
)
from opsguard.store import OpsStore

COMPANY = "acme"
REQUESTER = "alice"
APPROVER = "bob"


class ScriptedHandler(ActionHandler):
    """Handler returning a fixed output, optionally failing or stalling."""

    def __init__(
        self,
        code: str,
        call_log: List[str],
        output: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.code = code
        self.call_log = call_log
        self.output = output if output is not None else {"count": 1}
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.contexts = []

    async def execute(self, input, context):
        self.call_log.append(self.code)
        self.calls.append(input)
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.output)


@pytest.fixture
def call_log() -> List[str]:
    """Action codes in invocation order, forward and rollback."""
    return []


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def store():
    db = OpsStore(":memory:")
    yield db
    db.close()


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def metrics_source() -> StaticMetricsSource:
    return StaticMetricsSource()


@pytest.fixture
def registry(call_log) -> ActionRegistry:
    """
    Default catalog plus test actions:
    - test.step: write action, inverse test.undo({"ids": output.ids})
    - test.undo: inverse of test.step
    - test.noop: read action without inverse
    """
    reg = register_default_actions(ActionRegistry())
    reg.register(
        ActionDescriptor(
            code="test.step",
            input_schema={"type": "object"},
            effect=write_effect("test"),
            inverse=InverseDescriptor(
                action_code="test.undo",
                derive_input=lambda output: {"ids": output.get("ids", [])},
            ),
        ),
        ScriptedHandler("test.step", call_log, output={"ids": ["a"], "count": 1}),
    )
    reg.register(
        ActionDescriptor(code="test.undo", effect=write_effect("test")),
        ScriptedHandler("test.undo", call_log, output={"count": 1}),
    )
    reg.register(
        ActionDescriptor(code="test.noop"),
        ScriptedHandler("test.noop", call_log, output={"count": 0}),
    )
    return reg


@pytest.fixture
def runtime(config, store, registry, metrics_source, events) -> OpsGuardRuntime:
    return OpsGuardRuntime(
        config=config,
        store=store,
        registry=registry,
        metrics_source=metrics_source,
        events=events,
    )


@pytest.fixture
def publish(runtime):
    """Publish a playbook built from action codes or step dicts."""

    def _publish(code: str = "pb.test", steps=None, guards: Optional[Dict[str, Any]] = None):
        steps = steps or ["test.step"]
        spec = {
            "code": code,
            "guards": guards or {},
            "steps": [
                {"id": f"s{i + 1}", "action": s} if isinstance(s, str) else s
                for i, s in enumerate(steps)
            ],
        }
        return runtime.publish_playbook(COMPANY, REQUESTER, code, spec)

    return _publish
