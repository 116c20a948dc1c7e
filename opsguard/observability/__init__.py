"""
OpsGuard Observability

Structured logging carrying run context, and the in-process metrics
collector shared by the action registry and the run executor.
"""

import contextvars
import json
import logging
import logging.handlers
import math
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

CONTEXT_FIELDS = ("company_id", "playbook_code", "run_id", "step_id", "action_code")

DEFAULT_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000, 60000)

_log_context: contextvars.ContextVar[Dict[str, str]] = contextvars.ContextVar(
    "opsguard_log_context", default={}
)

MetricKey = Tuple[str, Tuple[Tuple[str, str], ...]]


@contextmanager
def log_context(**fields: Any) -> Generator[None, None, None]:
    """
    Attach run fields to every record logged inside the block.

    Nested blocks add to the outer context. Tasks started inside the
    block inherit it.
    """
    merged = dict(_log_context.get())
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, str]:
    return dict(_log_context.get())


class RunContextFilter(logging.Filter):
    """Copy the active log context onto records that lack those fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _log_context.get().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with run context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update({
            name: getattr(record, name)
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        })
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ContextFormatter(logging.Formatter):
    """Plain text formatter that appends run context as key=value pairs."""

    def __init__(self):
        super().__init__(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]
        if not pairs:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(pairs)}]{sep}{tail}"


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure root logging for the runtime.

    Args:
        level: Log level name
        json_format: Emit one JSON object per line
        log_file: Optional path of a rotating log file
        max_bytes: Rotation size of the log file
        backup_count: Rotated files kept
    """
    formatter: logging.Formatter = JSONFormatter() if json_format else ContextFormatter()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count,
        ))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(RunContextFilter())
        root.addHandler(handler)


def _label_items(labels: Optional[Dict[str, str]]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def _flat_key(key: MetricKey) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def _prom_labels(labels: Sequence[Tuple[str, str]]) -> str:
    if not labels:
        return ""
    escaped = (
        f'{k}="' + v.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n") + '"'
        for k, v in labels
    )
    return "{" + ",".join(escaped) + "}"


class MetricsCollector:
    """
    Counters, gauges and histograms keyed by name and label set.

    One collector is owned by the host application and handed to the
    components that record into it. Histogram observations are kept raw
    and bucketed only on export.
    """

    def __init__(self, buckets: Sequence[float] = DEFAULT_BUCKETS_MS):
        self._lock = threading.Lock()
        self._buckets = tuple(sorted(buckets))
        self._counters: Dict[MetricKey, float] = {}
        self._gauges: Dict[MetricKey, float] = {}
        self._histograms: Dict[MetricKey, List[float]] = {}

    def counter_inc(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        if value < 0:
            raise ValueError(f"Counter {name} cannot decrease")
        key = (name, _label_items(labels))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def gauge_set(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        with self._lock:
            self._gauges[(name, _label_items(labels))] = float(value)

    def histogram_observe(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        with self._lock:
            self._histograms.setdefault((name, _label_items(labels)), []).append(value)

    @contextmanager
    def timer(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> Generator[None, None, None]:
        """Observe the duration of the block in milliseconds, also on error."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.histogram_observe(name, (time.perf_counter() - start) * 1000, labels)

    def counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get((name, _label_items(labels)), 0.0)

    def gauge_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        with self._lock:
            return self._gauges.get((name, _label_items(labels)))

    def histogram_values(self, name: str, labels: Optional[Dict[str, str]] = None) -> List[float]:
        with self._lock:
            return list(self._histograms.get((name, _label_items(labels)), []))

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot keyed by ``name{label=value,...}``."""
        with self._lock:
            counters = {_flat_key(k): v for k, v in self._counters.items()}
            gauges = {_flat_key(k): v for k, v in self._gauges.items()}
            histograms = {_flat_key(k): list(v) for k, v in self._histograms.items()}
        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": {
                key: {
                    "count": len(values),
                    "sum": sum(values),
                    "avg": sum(values) / len(values) if values else 0,
                    "min": min(values) if values else 0,
                    "max": max(values) if values else 0,
                }
                for key, values in histograms.items()
            },
        }

    def export_prometheus(self) -> str:
        """Render all series in the Prometheus text exposition format."""
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            histograms = sorted((k, list(v)) for k, v in self._histograms.items())

        lines: List[str] = []
        typed = set()

        def declare(name: str, kind: str) -> None:
            if name not in typed:
                typed.add(name)
                lines.append(f"# TYPE {name} {kind}")

        for (name, labels), value in counters:
            declare(name, "counter")
            lines.append(f"{name}{_prom_labels(labels)} {value}")

        for (name, labels), value in gauges:
            declare(name, "gauge")
            lines.append(f"{name}{_prom_labels(labels)} {value}")

        for (name, labels), values in histograms:
            declare(name, "histogram")
            for bound in self._buckets + (math.inf,):
                le = "+Inf" if bound == math.inf else f"{bound:g}"
                count = sum(1 for v in values if v <= bound)
                lines.append(f"{name}_bucket{_prom_labels(labels + (('le', le),))} {count}")
            lines.append(f"{name}_count{_prom_labels(labels)} {len(values)}")
            lines.append(f"{name}_sum{_prom_labels(labels)} {sum(values)}")

        return "\n".join(lines)
