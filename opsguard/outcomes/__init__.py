"""
OpsGuard - Outcome Manager

Evaluates post-step outcome checks and run-level post checks against a
metrics source, records verification and attestation facts, and computes
run metrics.

Threshold expressions:
- {"metric": m, "op": "lt"|"gt"|"eq", "value": n}
- {"metric": m, "op": "between", "value": [lo, hi]} (inclusive)
- {"metric": m, "value": n} bare ceiling, passes when observed <= n

Metrics named "output.<key>" are read from the step output instead of
the metrics source. Missing data counts as zero; an unreachable metrics
source fails the check.
"""

import asyncio
import base64
import hashlib
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from ..core.config import Config
from ..core.exceptions import MetricsUnavailableError
from ..core.run import (
    RollbackStatus,
    RollbackStep,
    Run,
    RunFilter,
    RunStatus,
    RunStep,
    StepStatus,
    utcnow,
)
from ..events import EventSink, OutboxEvent, Topics

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "output."
DEADLINE_EXCEEDED = "Run deadline exceeded during outcome checks"


class MetricsSource:
    """Interface for tenant metric lookups."""

    async def get_metric_value(
        self,
        company_id: str,
        metric_name: str,
        as_of: Optional[datetime] = None,
    ) -> float:
        raise NotImplementedError


class StaticMetricsSource(MetricsSource):
    """In-memory, time-indexed metric values."""

    def __init__(self):
        self._series: Dict[Tuple[str, str], List[Tuple[datetime, float]]] = {}

    def set_value(
        self,
        company_id: str,
        metric_name: str,
        value: float,
        at: Optional[datetime] = None,
    ) -> None:
        series = self._series.setdefault((company_id, metric_name), [])
        series.append((at or utcnow(), float(value)))
        series.sort(key=lambda point: point[0])

    async def get_metric_value(
        self,
        company_id: str,
        metric_name: str,
        as_of: Optional[datetime] = None,
    ) -> float:
        series = self._series.get((company_id, metric_name), [])
        value = 0.0
        for at, point in series:
            if as_of is not None and at > as_of:
                break
            value = point
        return value


class HttpMetricsSource(MetricsSource):
    """
    Metrics source backed by an HTTP metrics service.

    GET {base_url}/metrics/{company_id}/{metric_name}?as_of=<iso>
    returns {"value": <number>}. A 404 means no data (zero).
    """

    def __init__(self, base_url: str, timeout: float = 5.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self._timeout)
        )

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def get_metric_value(
        self,
        company_id: str,
        metric_name: str,
        as_of: Optional[datetime] = None,
    ) -> float:
        if not self._session:
            raise MetricsUnavailableError("Metrics source not started", metric_name=metric_name)

        url = f"{self._base_url}/metrics/{company_id}/{metric_name}"
        params = {"as_of": as_of.isoformat()} if as_of else {}
        try:
            async with self._session.get(url, params=params) as resp:
                if resp.status == 404:
                    return 0.0
                if resp.status != 200:
                    raise MetricsUnavailableError(
                        f"Metrics service returned {resp.status} for {metric_name}",
                        metric_name=metric_name,
                    )
                body = await resp.json()
        except asyncio.TimeoutError as e:
            raise MetricsUnavailableError(
                f"Metrics service timed out after {self._timeout}s for {metric_name}",
                metric_name=metric_name,
            ) from e
        except (aiohttp.ClientError, ValueError) as e:
            raise MetricsUnavailableError(
                f"Metrics service unreachable: {e}",
                metric_name=metric_name,
            ) from e

        if not isinstance(body, dict):
            raise MetricsUnavailableError(
                f"Malformed metrics response for {metric_name}",
                metric_name=metric_name,
            )
        value = body.get("value")
        if value is None:
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise MetricsUnavailableError(
                f"Non-numeric value for {metric_name}: {value!r}",
                metric_name=metric_name,
            ) from e


class AttestationSigner:
    """Signs attestation payloads with an Ed25519 key."""

    def __init__(self, private_key: Ed25519PrivateKey, signer_id: str = "opsguard"):
        self._key = private_key
        self.signer_id = signer_id

    @classmethod
    def from_file(cls, key_path: str, signer_id: str = "opsguard") -> "AttestationSigner":
        """Load a PEM-encoded Ed25519 private key."""
        data = Path(key_path).read_bytes()
        key = serialization.load_pem_private_key(data, password=None)
        if not isinstance(key, Ed25519PrivateKey):
            raise ValueError(f"Key at {key_path} is not an Ed25519 private key")
        return cls(key, signer_id)

    def public_key_b64(self) -> str:
        raw = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw).decode()

    def sign(self, payload: Dict[str, Any]) -> Dict[str, str]:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode()
        return {
            "signer_id": self.signer_id,
            "algorithm": "ed25519",
            "hash": f"sha256:{hashlib.sha256(canonical).hexdigest()}",
            "signature": base64.b64encode(self._key.sign(canonical)).decode(),
        }


@dataclass
class CheckResult:
    """Result of one threshold or post check."""
    name: str
    passed: bool
    observed: Optional[float] = None
    expected: Any = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "observed": self.observed,
            "expected": self.expected,
            "reason": self.reason,
        }


@dataclass
class OutcomeResult:
    """Aggregate verdict of a set of checks."""
    passed: bool
    reason: Optional[str] = None
    observations: List[CheckResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "reason": self.reason,
            "observations": [o.to_dict() for o in self.observations],
        }


def percentile(values: List[float], p: float) -> float:
    """Nearest-rank percentile; 0 for an empty list."""
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(0, math.ceil(p / 100 * len(ordered)) - 1)
    return float(ordered[min(index, len(ordered) - 1)])


def evaluate_threshold(value: float, check: Dict[str, Any]) -> Tuple[bool, str]:
    """
    Evaluate an observed value against a threshold expression.

    Returns:
        Tuple of (passed, description)
    """
    op = check.get("op")
    expected = check.get("value")

    if op is None:
        if not isinstance(expected, (int, float)):
            return False, f"Invalid bare threshold: {expected!r}"
        return value <= expected, f"{value} <= {expected}"

    if op == "lt":
        return value < expected, f"{value} < {expected}"
    if op == "gt":
        return value > expected, f"{value} > {expected}"
    if op == "eq":
        return math.isclose(value, expected, abs_tol=1e-9), f"{value} == {expected}"
    if op == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False, f"Invalid between range: {expected!r}"
        low, high = expected
        return low <= value <= high, f"{low} <= {value} <= {high}"

    return False, f"Unknown operator: {op}"


def _source_failure(name: str, error: Exception) -> str:
    if isinstance(error, MetricsUnavailableError):
        return error.message
    return f"Metrics lookup for {name} failed: {type(error).__name__}: {error}"


def _verdict(observations: List[CheckResult]) -> OutcomeResult:
    failed = [o for o in observations if not o.passed]
    return OutcomeResult(
        passed=not failed,
        reason="; ".join(o.reason for o in failed if o.reason) or None,
        observations=observations,
    )


class OutcomeManager:
    """
    Outcome verification for runs.

    Args:
        metrics_source: Tenant metric lookups
        events: Outbox sink for verification and attestation facts
        config: Runtime configuration
        signer: Optional attestation signer
        store: Optional store, needed for aggregated metrics
    """

    def __init__(
        self,
        metrics_source: MetricsSource,
        events: EventSink,
        config: Optional[Config] = None,
        signer: Optional[AttestationSigner] = None,
        store=None,
    ):
        self._source = metrics_source
        self._events = events
        self._config = config or Config()
        self._signer = signer
        self._store = store

    async def _metric(
        self,
        company_id: str,
        metric: str,
        as_of: Optional[datetime],
        output: Optional[Dict[str, Any]] = None,
    ) -> float:
        if metric.startswith(OUTPUT_PREFIX):
            raw = (output or {}).get(metric[len(OUTPUT_PREFIX):], 0)
            if isinstance(raw, (list, tuple)):
                return float(len(raw))
            try:
                return float(raw or 0)
            except (TypeError, ValueError):
                return 0.0
        return await self._source.get_metric_value(company_id, metric, as_of)

    async def check_outcome(
        self,
        company_id: str,
        step: RunStep,
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> OutcomeResult:
        """
        Decide whether a run may proceed past a step.

        Args:
            company_id: Tenant of the run
            step: The step just executed
            as_of: Point in time for metric lookups
            timeout: Seconds the checks may take; expiry fails the step
        """
        if step.status == StepStatus.FAILED:
            return OutcomeResult(passed=False, reason=f"Step failed: {step.error or 'unknown error'}")
        if step.output and step.output.get("error"):
            return OutcomeResult(passed=False, reason=f"Step reported error: {step.output['error']}")
        if not step.outcome_checks:
            return OutcomeResult(passed=True)

        try:
            observations = await asyncio.wait_for(
                self._observe_step(company_id, step, as_of), timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Outcome checks of step {step.idx} exceeded {timeout:.1f}s")
            return OutcomeResult(passed=False, reason=DEADLINE_EXCEEDED)
        return _verdict(observations)

    async def _observe_step(
        self,
        company_id: str,
        step: RunStep,
        as_of: Optional[datetime],
    ) -> List[CheckResult]:
        observations = []
        for check in step.outcome_checks:
            metric = check.get("metric", "")
            try:
                value = await self._metric(company_id, metric, as_of, step.output)
            except Exception as e:
                reason = _source_failure(metric, e)
                logger.warning(f"Outcome check {metric} failed closed: {reason}")
                observations.append(CheckResult(
                    name=metric, passed=False, expected=check.get("value"), reason=reason,
                ))
                continue
            passed, description = evaluate_threshold(value, check)
            observations.append(CheckResult(
                name=metric,
                passed=passed,
                observed=value,
                expected=check.get("value"),
                reason=None if passed else f"Check failed: {metric} {description}",
            ))
        return observations

    async def check_breaches_zero(
        self,
        company_id: str,
        breach_type: str,
        threshold: float = 0,
        as_of: Optional[datetime] = None,
    ) -> CheckResult:
        metric = f"breaches.{breach_type}"
        value = await self._metric(company_id, metric, as_of)
        passed = value <= threshold
        return CheckResult(
            name=metric, passed=passed, observed=value, expected=threshold,
            reason=None if passed else f"{metric} = {value} exceeds {threshold}",
        )

    async def check_error_count_below(
        self,
        company_id: str,
        error_type: str,
        threshold: float,
        as_of: Optional[datetime] = None,
    ) -> CheckResult:
        metric = f"errors.{error_type}"
        value = await self._metric(company_id, metric, as_of)
        passed = value < threshold
        return CheckResult(
            name=metric, passed=passed, observed=value, expected=threshold,
            reason=None if passed else f"{metric} = {value} not below {threshold}",
        )

    async def check_metric_improvement(
        self,
        company_id: str,
        metric: str,
        window_minutes: Optional[int] = None,
        threshold: Optional[float] = None,
        as_of: Optional[datetime] = None,
    ) -> CheckResult:
        """
        Compare a metric now with its value one window earlier.

        Lower is better. With a threshold the drop must be at least that
        large; without one any strict decrease passes.
        """
        as_of = as_of or utcnow()
        window = window_minutes or self._config.outcomes.improvement_window_minutes
        current = await self._metric(company_id, metric, as_of)
        baseline = await self._metric(company_id, metric, as_of - timedelta(minutes=window))
        improvement = baseline - current
        passed = improvement >= threshold if threshold is not None else improvement > 0
        return CheckResult(
            name=metric,
            passed=passed,
            observed=current,
            expected={"baseline": baseline, "threshold": threshold},
            reason=None if passed else f"{metric} did not improve ({baseline} -> {current})",
        )

    async def run_post_checks(
        self,
        company_id: str,
        post_checks: List[Dict[str, Any]],
        as_of: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> OutcomeResult:
        """Evaluate run-level post checks declared in the playbook guards."""
        try:
            observations = await asyncio.wait_for(
                self._observe_post_checks(company_id, post_checks, as_of), timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Post checks exceeded {timeout:.1f}s")
            return OutcomeResult(passed=False, reason=DEADLINE_EXCEEDED)
        return _verdict(observations)

    async def _observe_post_checks(
        self,
        company_id: str,
        post_checks: List[Dict[str, Any]],
        as_of: Optional[datetime],
    ) -> List[CheckResult]:
        observations = []
        for post_check in post_checks:
            kind = post_check.get("check")
            params = post_check.get("params") or {}
            try:
                if kind == "breachesZero":
                    result = await self.check_breaches_zero(
                        company_id, params.get("type", "total"), params.get("threshold", 0), as_of,
                    )
                elif kind == "errCountBelow":
                    result = await self.check_error_count_below(
                        company_id, params.get("type", "total"), params.get("threshold", 1), as_of,
                    )
                elif kind == "bvaImproves":
                    result = await self.check_metric_improvement(
                        company_id,
                        params.get("metric", "bva.variance"),
                        params.get("windowMinutes"),
                        params.get("threshold"),
                        as_of,
                    )
                else:
                    result = CheckResult(name=str(kind), passed=False, reason=f"Unknown post check: {kind}")
            except Exception as e:
                reason = _source_failure(str(kind), e)
                logger.warning(f"Post check {kind} failed closed: {reason}")
                result = CheckResult(name=str(kind), passed=False, reason=reason)
            observations.append(result)
        return observations

    def record_verification(
        self,
        run_id: str,
        step_id: Optional[str],
        verification: Dict[str, Any],
    ) -> Optional[OutboxEvent]:
        """Append a verification fact. Never raises."""
        try:
            return self._events.emit(
                Topics.VERIFICATION_COMPLETED,
                run_id,
                {"run_id": run_id, "step_id": step_id, "recorded_at": utcnow().isoformat(), **verification},
            )
        except Exception as e:
            logger.error(f"Failed to record verification for run {run_id}: {e}")
            return None

    def record_attestation(self, run_id: str, attestation: Dict[str, Any]) -> Optional[OutboxEvent]:
        """Append an attestation fact, signed when a signer is configured. Never raises."""
        try:
            payload = {"run_id": run_id, "recorded_at": utcnow().isoformat(), **attestation}
            if self._signer is not None:
                payload["signature"] = self._signer.sign(payload)
            return self._events.emit(Topics.ATTESTATION_RECORDED, run_id, payload)
        except Exception as e:
            logger.error(f"Failed to record attestation for run {run_id}: {e}")
            return None

    @staticmethod
    def calculate_run_metrics(
        steps: List[RunStep],
        rollback_steps: List[RollbackStep],
    ) -> Dict[str, Any]:
        """Entity count, pass/fail counts, rollback counts and step duration percentiles."""
        entity_count = 0
        for step in steps:
            if step.status == StepStatus.SUCCEEDED and step.output:
                count = step.output.get("count")
                if isinstance(count, (int, float)):
                    entity_count += int(count)

        durations = [float(s.duration_ms) for s in steps if s.duration_ms is not None]
        return {
            "entity_count": entity_count,
            "checks_pass": sum(1 for s in steps if s.status == StepStatus.SUCCEEDED),
            "checks_failed": sum(1 for s in steps if s.status == StepStatus.FAILED),
            "rollback_count": len(rollback_steps),
            "rollback_failures": sum(1 for r in rollback_steps if r.status == RollbackStatus.FAILED),
            "p50_duration_ms": percentile(durations, 50),
            "p95_duration_ms": percentile(durations, 95),
        }

    def get_aggregated_metrics(
        self,
        company_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        playbook_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run totals, success rate and duration percentiles over a window."""
        if self._store is None:
            raise RuntimeError("Aggregated metrics require a store")

        runs: List[Run] = []
        offset = 0
        page_size = 500
        while True:
            page = self._store.list_runs(
                company_id,
                RunFilter(playbook_code=playbook_code, since=since, until=until),
                limit=page_size,
                offset=offset,
            )
            runs.extend(page.runs)
            offset += page_size
            if offset >= page.total:
                break

        by_status = {status.value: 0 for status in RunStatus}
        for run in runs:
            by_status[run.status.value] += 1

        terminal = [r for r in runs if r.status.is_terminal]
        durations = [float(r.duration_ms) for r in runs if r.duration_ms is not None]
        succeeded = by_status[RunStatus.SUCCEEDED.value]
        return {
            "company_id": company_id,
            "playbook_code": playbook_code,
            "total_runs": len(runs),
            "by_status": by_status,
            "success_rate": succeeded / len(terminal) if terminal else 0.0,
            "total_rollbacks": sum(int(r.metrics.get("rollback_count", 0)) for r in runs),
            "avg_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "p50_duration_ms": percentile(durations, 50),
            "p95_duration_ms": percentile(durations, 95),
        }
