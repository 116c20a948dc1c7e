"""
Tests for OpsGuard logging and metrics.
"""

import asyncio
import json
import logging
import sys

import pytest

from opsguard.observability import (
    ContextFormatter,
    JSONFormatter,
    MetricsCollector,
    RunContextFilter,
    current_log_context,
    log_context,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg="Run started", **fields):
    return logging.makeLogRecord({
        "name": "opsguard.core.engine",
        "levelname": "INFO",
        "msg": msg,
        **fields,
    })


class TestLogContext:
    """Tests for run context propagation."""

    def test_nesting(self):
        with log_context(run_id="r1", company_id="acme"):
            with log_context(step_id="s1", action_code=None):
                assert current_log_context() == {"run_id": "r1", "company_id": "acme", "step_id": "s1"}
            assert current_log_context() == {"run_id": "r1", "company_id": "acme"}
        assert current_log_context() == {}

    def test_filter_fills_missing_fields(self):
        record = make_record(step_id="explicit")

        with log_context(run_id="r1", step_id="from-context"):
            assert RunContextFilter().filter(record)

        assert record.run_id == "r1"
        assert record.step_id == "explicit"

    @pytest.mark.asyncio
    async def test_tasks_inherit_context(self):
        async def read():
            return current_log_context().get("run_id")

        with log_context(run_id="r9"):
            task = asyncio.ensure_future(read())
        assert await task == "r9"


class TestFormatters:
    """Tests for log formatting."""

    def test_json_formatter_includes_run_context(self):
        record = make_record("Run %s started", args=("r1",), run_id="r1", company_id="acme")

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Run r1 started"
        assert data["level"] == "INFO"
        assert data["run_id"] == "r1"
        assert data["company_id"] == "acme"
        assert "step_id" not in data

    def test_json_formatter_exception(self):
        try:
            raise ValueError("bad input")
        except ValueError:
            record = logging.getLogger("t").makeRecord(
                "t", logging.ERROR, __file__, 1, "failed", (), exc_info=sys.exc_info(),
            )

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad input" in data["exception"]

    def test_context_formatter(self):
        plain = ContextFormatter().format(make_record())
        tagged = ContextFormatter().format(make_record(run_id="r1", action_code="payments.run.dispatch"))

        assert plain.endswith("opsguard.core.engine: Run started")
        assert tagged.endswith("Run started [run_id=r1 action_code=payments.run.dispatch]")

    def test_setup_logging(self, restore_root_logger, tmp_path):
        log_file = tmp_path / "opsguard.log"

        setup_logging("debug", json_format=True, log_file=str(log_file))
        with log_context(run_id="r7"):
            logging.getLogger("opsguard.test").info("hello")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in restore_root_logger.handlers)
        for handler in restore_root_logger.handlers:
            handler.flush()
        entry = json.loads(log_file.read_text().splitlines()[-1])
        assert entry["message"] == "hello"
        assert entry["run_id"] == "r7"


class TestMetricsCollector:
    """Tests for the in-process metrics collector."""

    def test_counters_and_gauges(self):
        metrics = MetricsCollector()
        metrics.counter_inc("runs_total", labels={"status": "ok", "playbook": "pb"})
        metrics.counter_inc("runs_total", 2, labels={"playbook": "pb", "status": "ok"})
        metrics.gauge_set("running", 3)

        data = metrics.get_metrics()

        assert data["counters"] == {"runs_total{playbook=pb,status=ok}": 3}
        assert data["gauges"] == {"running": 3}
        assert metrics.counter_value("runs_total", {"status": "ok", "playbook": "pb"}) == 3
        assert metrics.counter_value("missing") == 0.0
        assert metrics.gauge_value("running") == 3
        assert metrics.gauge_value("missing") is None

    def test_counter_cannot_decrease(self):
        with pytest.raises(ValueError):
            MetricsCollector().counter_inc("runs_total", -1)

    def test_histogram_summary(self):
        metrics = MetricsCollector()
        for value in (10, 20, 30):
            metrics.histogram_observe("duration_ms", value)

        summary = metrics.get_metrics()["histograms"]["duration_ms"]

        assert summary == {"count": 3, "sum": 60, "avg": 20, "min": 10, "max": 30}
        assert metrics.histogram_values("duration_ms") == [10, 20, 30]

    def test_timer_records_on_error(self):
        metrics = MetricsCollector()

        with pytest.raises(RuntimeError):
            with metrics.timer("plan_ms", labels={"playbook": "pb"}):
                raise RuntimeError("boom")

        values = metrics.histogram_values("plan_ms", {"playbook": "pb"})
        assert len(values) == 1
        assert values[0] >= 0

    def test_export_prometheus(self):
        metrics = MetricsCollector(buckets=(10, 100))
        metrics.counter_inc("runs_total", labels={"status": "ok"})
        metrics.counter_inc("runs_total", labels={"status": "failed"})
        metrics.gauge_set("running", 1, labels={"company": 'a"b'})
        metrics.histogram_observe("duration_ms", 5)
        metrics.histogram_observe("duration_ms", 50)

        lines = metrics.export_prometheus().splitlines()

        assert lines.count("# TYPE runs_total counter") == 1
        assert 'runs_total{status="ok"} 1.0' in lines
        assert 'running{company="a\\"b"} 1.0' in lines
        assert 'duration_ms_bucket{le="10"} 1' in lines
        assert 'duration_ms_bucket{le="100"} 2' in lines
        assert 'duration_ms_bucket{le="+Inf"} 2' in lines
        assert "duration_ms_count 2" in lines
        assert "duration_ms_sum 55" in lines
