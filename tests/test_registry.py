"""
Tests for OpsGuard action registry.
"""

import pytest

from opsguard.core.exceptions import (
    ActionExecutionError,
    InputValidationError,
    NotFoundError,
)
from opsguard.registry import (
    ActionContext,
    ActionDescriptor,
    ActionHandler,
    ActionRegistry,
    ActionResult,
    default_action_descriptors,
    register_default_actions,
)

from conftest import COMPANY, REQUESTER


def ctx(dry_run=True):
    return ActionContext(company_id=COMPANY, actor_id=REQUESTER, dry_run=dry_run)


@pytest.fixture
def catalog():
    return register_default_actions(ActionRegistry())


class TestCatalog:
    """Tests for action registration."""

    def test_default_catalog(self, catalog):
        codes = [a.code for a in catalog.list_actions()]

        assert codes == sorted(codes)
        assert len(codes) == len(default_action_descriptors())
        assert "payments.run.dispatch" in codes
        assert "payments.run.reverse" in codes

    def test_unknown_action(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.get_action("nope.run")
        assert not catalog.has_action("nope.run")

    def test_unknown_handler_code(self):
        async def handler(input, context):
            return {}

        with pytest.raises(NotFoundError):
            register_default_actions(ActionRegistry(), {"nope.run": handler})

    def test_bind_handler_requires_descriptor(self, catalog):
        with pytest.raises(NotFoundError):
            catalog.bind_handler("nope.run", lambda i, c: None)

    def test_write_effects(self, catalog):
        assert catalog.get_action("payments.run.dispatch").is_write
        assert not catalog.get_action("payments.run.select").is_write
        assert catalog.get_action("fx.revalue.run").dry_run_only


class TestValidation:
    """Tests for input contracts."""

    def test_schema_errors(self, catalog):
        result = catalog.validate_input("fx.revalue.run", {"company_id": "c1", "year": 2026, "month": 13})

        assert not result.valid
        assert any(e.startswith("month:") for e in result.errors)

    def test_missing_required(self, catalog):
        result = catalog.validate_input("payments.run.approve", {})

        assert not result.valid
        assert "payment_ids" in result.errors[0]

    def test_handler_rules(self, catalog):
        class PeriodHandler(ActionHandler):
            def validate(self, input):
                return [] if input["period"][:4].isdigit() else ["period: must start with a year"]

            async def execute(self, input, context):
                return {}

        catalog.bind_handler("alloc.run", PeriodHandler())

        result = catalog.validate_input("alloc.run", {"allocation_rule_id": "r1", "period": "Q3"})

        assert result.errors == ["period: must start with a year"]

    def test_unknown_action_is_invalid(self, catalog):
        assert not catalog.validate_input("nope.run", {}).valid


class TestExecute:
    """Tests for action dispatch."""

    @pytest.mark.asyncio
    async def test_simulated_dry_run(self, catalog):
        result = await catalog.execute("payments.run.dispatch", {"run_id": "pr-1"}, ctx())

        assert result.output == {"dispatched_payments": [], "count": 0, "simulated": True}
        assert result.metrics["dry_run"] is True

    @pytest.mark.asyncio
    async def test_simulated_output_is_a_copy(self, catalog):
        first = await catalog.execute("payments.run.select", {}, ctx())
        first.output["payment_ids"].append("x")

        second = await catalog.execute("payments.run.select", {}, ctx())

        assert second.output["payment_ids"] == []

    @pytest.mark.asyncio
    async def test_live_without_handler(self, catalog):
        with pytest.raises(ActionExecutionError) as exc_info:
            await catalog.execute("payments.run.dispatch", {"run_id": "pr-1"}, ctx(dry_run=False))

        assert exc_info.value.action_code == "payments.run.dispatch"

    @pytest.mark.asyncio
    async def test_dry_run_only_action_live(self, catalog):
        async def revalue(input, context):
            return {"count": 1}

        catalog.bind_handler("fx.revalue.run", revalue)

        with pytest.raises(ActionExecutionError):
            await catalog.execute(
                "fx.revalue.run", {"company_id": "c1", "year": 2026, "month": 9}, ctx(dry_run=False),
            )

    @pytest.mark.asyncio
    async def test_invalid_input(self, catalog):
        with pytest.raises(InputValidationError) as exc_info:
            await catalog.execute("payments.run.approve", {"payment_ids": "all"}, ctx())

        assert exc_info.value.errors
        assert catalog.get_action_metrics("payments.run.approve")["invalid"] == 1

    @pytest.mark.asyncio
    async def test_function_handler(self, catalog):
        seen = []

        async def approve(input, context):
            seen.append((input["payment_ids"], context.dry_run))
            return {"approved_payments": input["payment_ids"], "count": len(input["payment_ids"])}

        catalog.bind_handler("payments.run.approve", approve)

        result = await catalog.execute("payments.run.approve", {"payment_ids": [1, 2]}, ctx(dry_run=False))

        assert result.output["count"] == 2
        assert seen == [([1, 2], False)]
        metrics = catalog.get_action_metrics("payments.run.approve")
        assert metrics["succeeded"] == 1
        assert metrics["avg_duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_handler_returning_action_result(self):
        registry = ActionRegistry()

        async def handler(input, context):
            return ActionResult(output={"count": 4})

        registry.register(ActionDescriptor(code="x.run"), handler)

        result = await registry.execute("x.run", {}, ctx())

        assert result.output == {"count": 4}

    @pytest.mark.asyncio
    async def test_handler_error_is_wrapped(self, catalog):
        async def dispatch(input, context):
            raise ConnectionError("bank unreachable")

        catalog.bind_handler("payments.run.dispatch", dispatch)

        with pytest.raises(ActionExecutionError) as exc_info:
            await catalog.execute("payments.run.dispatch", {"run_id": "pr-1"}, ctx(dry_run=False))

        assert "bank unreachable" in exc_info.value.message
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert catalog.get_action_metrics("payments.run.dispatch")["failed"] == 1


class TestInverse:
    """Tests for inverse derivation."""

    def test_dispatch_inverse(self, catalog):
        inverse = catalog.get_inverse("payments.run.dispatch", {"dispatched_payments": ["p1", "p2"]})

        assert inverse.action_code == "payments.run.reverse"
        assert inverse.input == {"payment_ids": ["p1", "p2"]}

    def test_missing_output(self, catalog):
        inverse = catalog.get_inverse("payments.run.dispatch", None)

        assert inverse.input == {"payment_ids": []}

    def test_no_inverse(self, catalog):
        assert catalog.get_inverse("payments.run.select", {}) is None
        assert catalog.get_inverse("nope.run", {}) is None

    def test_unregistered_inverse(self):
        registry = ActionRegistry()
        registry.register(next(d for d in default_action_descriptors() if d.code == "payments.run.dispatch"))

        assert registry.get_action("payments.run.dispatch").inverse is not None
        assert registry.get_inverse("payments.run.dispatch", {}) is None
