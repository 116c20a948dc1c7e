"""
Tests for OpsGuard outcome verification, attestation and metrics sources.
"""

import asyncio
import base64
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web
from aiohttp import test_utils
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from opsguard.core.exceptions import MetricsUnavailableError
from opsguard.core.run import (
    RollbackStatus,
    RollbackStep,
    RunStatus,
    RunStep,
    StepStatus,
    utcnow,
)
from opsguard.events import InMemoryEventSink, Topics
from opsguard.outcomes import (
    AttestationSigner,
    HttpMetricsSource,
    OutcomeManager,
    StaticMetricsSource,
    evaluate_threshold,
    percentile,
)
from opsguard.planner import RunRequest
from opsguard.registry import ActionDescriptor

from conftest import COMPANY, REQUESTER, ScriptedHandler


@pytest.fixture
def ed25519_key():
    """Generate an Ed25519 key for attestation signing."""
    return Ed25519PrivateKey.generate()


@pytest.fixture
def outcomes(metrics_source, events, config):
    return OutcomeManager(metrics_source, events, config)


def step(status=StepStatus.SUCCEEDED, output=None, checks=None, error=None, duration_ms=None):
    s = RunStep(run_id="r1", idx=0, action_code="test.step", outcome_checks=checks or [])
    s.status = status
    s.output = output
    s.error = error
    s.duration_ms = duration_ms
    return s


class TestThresholds:
    """Tests for threshold expressions."""

    @pytest.mark.parametrize("value,check,expected", [
        (0.5, {"op": "lt", "value": 1}, True),
        (1.0, {"op": "lt", "value": 1}, False),
        (2.0, {"op": "gt", "value": 1}, True),
        (3.0, {"op": "eq", "value": 3}, True),
        (3.1, {"op": "eq", "value": 3}, False),
        (5.0, {"op": "between", "value": [1, 5]}, True),
        (6.0, {"op": "between", "value": [1, 5]}, False),
        (0.0, {"value": 0}, True),
        (0.1, {"value": 0}, False),
    ])
    def test_operators(self, value, check, expected):
        passed, _ = evaluate_threshold(value, check)

        assert passed is expected

    def test_unknown_operator_fails(self):
        passed, description = evaluate_threshold(1.0, {"op": "approx", "value": 1})

        assert not passed
        assert "Unknown operator" in description

    def test_malformed_range_fails(self):
        assert not evaluate_threshold(1.0, {"op": "between", "value": 3})[0]


class TestPercentile:
    """Tests for nearest-rank percentiles."""

    def test_empty(self):
        assert percentile([], 95) == 0.0

    def test_nearest_rank(self):
        values = [15, 20, 35, 40, 50]

        assert percentile(values, 50) == 35
        assert percentile(values, 95) == 50
        assert percentile(values, 0) == 15

    def test_single_value(self):
        assert percentile([7], 50) == 7.0


class TestStaticMetricsSource:
    """Tests for the in-memory metrics source."""

    @pytest.mark.asyncio
    async def test_time_indexed_lookup(self):
        source = StaticMetricsSource()
        now = utcnow()
        source.set_value(COMPANY, "bva.variance", 10, at=now - timedelta(hours=2))
        source.set_value(COMPANY, "bva.variance", 4, at=now)

        assert await source.get_metric_value(COMPANY, "bva.variance") == 4
        assert await source.get_metric_value(COMPANY, "bva.variance", now - timedelta(hours=1)) == 10
        assert await source.get_metric_value(COMPANY, "bva.variance", now - timedelta(hours=3)) == 0

    @pytest.mark.asyncio
    async def test_missing_metric_is_zero(self):
        assert await StaticMetricsSource().get_metric_value(COMPANY, "nope") == 0.0


class TestCheckOutcome:
    """Tests for per-step outcome checks."""

    @pytest.mark.asyncio
    async def test_failed_step(self, outcomes):
        result = await outcomes.check_outcome(COMPANY, step(StepStatus.FAILED, error="boom"))

        assert not result.passed
        assert "boom" in result.reason

    @pytest.mark.asyncio
    async def test_output_error(self, outcomes):
        result = await outcomes.check_outcome(COMPANY, step(output={"error": "partial"}))

        assert not result.passed

    @pytest.mark.asyncio
    async def test_no_checks_passes(self, outcomes):
        result = await outcomes.check_outcome(COMPANY, step(output={"count": 3}))

        assert result.passed
        assert result.observations == []

    @pytest.mark.asyncio
    async def test_missing_data_counts_as_zero(self, outcomes):
        result = await outcomes.check_outcome(
            COMPANY, step(output={}, checks=[{"metric": "errors.sync", "value": 0}]),
        )

        assert result.passed
        assert result.observations[0].observed == 0.0

    @pytest.mark.asyncio
    async def test_output_metrics(self, outcomes):
        result = await outcomes.check_outcome(COMPANY, step(
            output={"approved_payments": [1, 2, 3], "count": 3},
            checks=[
                {"metric": "output.approved_payments", "op": "eq", "value": 3},
                {"metric": "output.count", "op": "gt", "value": 5},
            ],
        ))

        assert not result.passed
        assert [o.passed for o in result.observations] == [True, False]
        assert "output.count" in result.reason

    @pytest.mark.asyncio
    async def test_unreachable_source_fails_closed(self, events, config):
        source = MagicMock()
        source.get_metric_value = AsyncMock(
            side_effect=MetricsUnavailableError("down", metric_name="errors.sync")
        )
        manager = OutcomeManager(source, events, config)

        result = await manager.check_outcome(
            COMPANY, step(output={}, checks=[{"metric": "errors.sync", "value": 0}]),
        )

        assert not result.passed
        assert result.reason == "down"

    @pytest.mark.asyncio
    async def test_any_source_error_fails_closed(self, events, config):
        source = MagicMock()
        source.get_metric_value = AsyncMock(side_effect=ConnectionError("connection refused"))
        manager = OutcomeManager(source, events, config)

        result = await manager.check_outcome(
            COMPANY, step(output={}, checks=[{"metric": "errors.sync", "value": 0}]),
        )

        assert not result.passed
        assert "ConnectionError" in result.reason
        assert "connection refused" in result.reason

    @pytest.mark.asyncio
    async def test_checks_bounded_by_timeout(self, events, config):
        async def stall(*args):
            await asyncio.sleep(5)

        source = MagicMock()
        source.get_metric_value = AsyncMock(side_effect=stall)
        manager = OutcomeManager(source, events, config)

        result = await asyncio.wait_for(manager.check_outcome(
            COMPANY, step(output={}, checks=[{"metric": "errors.sync", "value": 0}]), timeout=0.1,
        ), timeout=2)

        assert not result.passed
        assert result.reason == "Run deadline exceeded during outcome checks"


class TestPostChecks:
    """Tests for run-level post checks."""

    @pytest.mark.asyncio
    async def test_breaches_zero(self, outcomes, metrics_source):
        metrics_source.set_value(COMPANY, "breaches.credit", 1)

        result = await outcomes.check_breaches_zero(COMPANY, "credit")

        assert not result.passed
        assert result.observed == 1.0

    @pytest.mark.asyncio
    async def test_error_count_below(self, outcomes, metrics_source):
        metrics_source.set_value(COMPANY, "errors.sync", 2)

        assert (await outcomes.check_error_count_below(COMPANY, "sync", 3)).passed
        assert not (await outcomes.check_error_count_below(COMPANY, "sync", 2)).passed

    @pytest.mark.asyncio
    async def test_metric_improvement(self, outcomes, metrics_source):
        now = utcnow()
        metrics_source.set_value(COMPANY, "bva.variance", 10, at=now - timedelta(minutes=90))
        metrics_source.set_value(COMPANY, "bva.variance", 4, at=now)

        improved = await outcomes.check_metric_improvement(COMPANY, "bva.variance", as_of=now)
        not_enough = await outcomes.check_metric_improvement(
            COMPANY, "bva.variance", threshold=8, as_of=now,
        )

        assert improved.passed
        assert improved.expected["baseline"] == 10
        assert not not_enough.passed

    @pytest.mark.asyncio
    async def test_run_post_checks(self, outcomes, metrics_source):
        metrics_source.set_value(COMPANY, "errors.total", 5)

        result = await outcomes.run_post_checks(COMPANY, [
            {"check": "breachesZero"},
            {"check": "errCountBelow", "params": {"threshold": 3}},
            {"check": "somethingElse"},
        ])

        assert not result.passed
        assert [o.passed for o in result.observations] == [True, False, False]
        assert "Unknown post check" in result.reason

    @pytest.mark.asyncio
    async def test_post_check_source_errors(self, events, config):
        async def stall(*args):
            await asyncio.sleep(5)

        source = MagicMock()
        source.get_metric_value = AsyncMock(side_effect=RuntimeError("bad payload"))
        failing = OutcomeManager(source, events, config)
        slow_source = MagicMock()
        slow_source.get_metric_value = AsyncMock(side_effect=stall)
        slow = OutcomeManager(slow_source, events, config)

        failed = await failing.run_post_checks(COMPANY, [{"check": "breachesZero"}])
        expired = await asyncio.wait_for(
            slow.run_post_checks(COMPANY, [{"check": "breachesZero"}], timeout=0.1), timeout=2,
        )

        assert not failed.passed
        assert "bad payload" in failed.reason
        assert not expired.passed
        assert expired.reason == "Run deadline exceeded during outcome checks"


class TestRecording:
    """Tests for verification and attestation facts."""

    def test_record_verification(self, outcomes, events):
        event = outcomes.record_verification("r1", "s1", {"passed": True})

        assert event.topic == Topics.VERIFICATION_COMPLETED
        assert event.payload["step_id"] == "s1"
        assert events.events == [event]

    def test_recording_never_raises(self, metrics_source, config):
        sink = MagicMock()
        sink.emit.side_effect = RuntimeError("outbox full")
        manager = OutcomeManager(metrics_source, sink, config)

        assert manager.record_verification("r1", None, {}) is None
        assert manager.record_attestation("r1", {}) is None

    def test_unsigned_attestation(self, outcomes):
        event = outcomes.record_attestation("r1", {"status": "succeeded"})

        assert event.topic == Topics.ATTESTATION_RECORDED
        assert "signature" not in event.payload

    def test_signed_attestation(self, metrics_source, config, ed25519_key):
        sink = InMemoryEventSink()
        signer = AttestationSigner(ed25519_key, signer_id="ops-test")
        manager = OutcomeManager(metrics_source, sink, config, signer=signer)

        event = manager.record_attestation("r1", {"status": "succeeded"})

        payload = dict(event.payload)
        signature = payload.pop("signature")
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()
        assert signature["signer_id"] == "ops-test"
        assert signature["algorithm"] == "ed25519"
        # Raises InvalidSignature on mismatch
        ed25519_key.public_key().verify(base64.b64decode(signature["signature"]), canonical)

    def test_signer_from_file(self, tmp_path, ed25519_key):
        path = tmp_path / "attest.pem"
        path.write_bytes(ed25519_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))

        signer = AttestationSigner.from_file(str(path))

        assert signer.public_key_b64() == AttestationSigner(ed25519_key).public_key_b64()


class TestRunMetrics:
    """Tests for run metric calculation and aggregation."""

    def test_calculate_run_metrics(self):
        steps = [
            step(output={"count": 3}, duration_ms=10),
            step(output={"count": 2}, duration_ms=30),
            step(StepStatus.FAILED, output={"count": 9}, duration_ms=20),
            step(StepStatus.PENDING),
        ]
        rollbacks = [
            RollbackStep(run_id="r1", run_step_id="s1", action_code="test.undo", status=RollbackStatus.SUCCEEDED),
            RollbackStep(run_id="r1", run_step_id="s2", action_code="test.undo", status=RollbackStatus.FAILED),
        ]

        metrics = OutcomeManager.calculate_run_metrics(steps, rollbacks)

        assert metrics["entity_count"] == 5
        assert metrics["checks_pass"] == 2
        assert metrics["checks_failed"] == 1
        assert metrics["rollback_count"] == 2
        assert metrics["rollback_failures"] == 1
        assert metrics["p50_duration_ms"] == 20
        assert metrics["p95_duration_ms"] == 30

    @pytest.mark.asyncio
    async def test_aggregated_metrics(self, runtime, publish, registry, call_log):
        registry.register(
            ActionDescriptor(code="test.fail"),
            ScriptedHandler("test.fail", call_log, error=RuntimeError("nope")),
        )
        publish(code="pb.ok")
        publish(code="pb.bad", steps=["test.step", "test.fail"])
        for code in ("pb.ok", "pb.bad"):
            run = await runtime.submit_run(COMPANY, REQUESTER, RunRequest(code))
            await runtime.execute_run(COMPANY, run.id)
        await runtime.submit_run(COMPANY, REQUESTER, RunRequest("pb.ok", dry_run=False))

        overall = await runtime.get_aggregated_metrics(COMPANY)

        assert overall["total_runs"] == 3
        assert overall["by_status"][RunStatus.SUCCEEDED.value] == 1
        assert overall["by_status"][RunStatus.ROLLED_BACK.value] == 1
        assert overall["by_status"][RunStatus.QUEUED.value] == 1
        assert overall["success_rate"] == 0.5
        assert overall["total_rollbacks"] == 1


def metrics_app() -> web.Application:
    async def handle(request):
        metric = request.match_info["metric"]
        if metric == "missing":
            return web.json_response({}, status=404)
        if metric == "broken":
            return web.json_response({"error": "db down"}, status=500)
        if metric == "slow":
            await asyncio.sleep(1)
        if metric == "garbled":
            return web.Response(text="<html>maintenance</html>", content_type="text/html")
        if metric == "unparsable":
            return web.json_response({"value": "n/a"})
        return web.json_response({
            "value": 3.5,
            "company": request.match_info["company"],
            "as_of": request.query.get("as_of"),
        })

    app = web.Application()
    app.router.add_get("/metrics/{company}/{metric}", handle)
    return app


class TestHttpMetricsSource:
    """Tests for the HTTP metrics source."""

    @pytest.mark.asyncio
    async def test_lookups(self):
        async with test_utils.TestServer(metrics_app()) as server:
            source = HttpMetricsSource(str(server.make_url("/")), timeout=2)
            await source.start()
            try:
                assert await source.get_metric_value(COMPANY, "errors.sync", utcnow()) == 3.5
                assert await source.get_metric_value(COMPANY, "missing") == 0.0
                with pytest.raises(MetricsUnavailableError):
                    await source.get_metric_value(COMPANY, "broken")
            finally:
                await source.stop()

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(MetricsUnavailableError):
            await HttpMetricsSource("http://127.0.0.1:1").get_metric_value(COMPANY, "x")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        source = HttpMetricsSource("http://127.0.0.1:1", timeout=2)
        await source.start()
        try:
            with pytest.raises(MetricsUnavailableError):
                await source.get_metric_value(COMPANY, "errors.sync")
        finally:
            await source.stop()

    @pytest.mark.asyncio
    async def test_bad_responses_are_unavailable(self):
        async with test_utils.TestServer(metrics_app()) as server:
            source = HttpMetricsSource(str(server.make_url("/")), timeout=0.2)
            await source.start()
            try:
                with pytest.raises(MetricsUnavailableError, match="timed out"):
                    await source.get_metric_value(COMPANY, "slow")
                with pytest.raises(MetricsUnavailableError):
                    await source.get_metric_value(COMPANY, "garbled")
                with pytest.raises(MetricsUnavailableError, match="Non-numeric"):
                    await source.get_metric_value(COMPANY, "unparsable")
            finally:
                await source.stop()
