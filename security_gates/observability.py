"""
Security Gates Observability

Structured logging and in-process metrics for gate executions.
"""

import json
import logging
import logging.handlers
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

import numpy as np


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    EXTRA_FIELDS = ("gate_name", "run_id", "environment", "attempt", "policy")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level
        json_format: Use JSON formatting
        log_file: Optional log file path
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


class MetricsCollector:
    """
    Metrics collector for Prometheus-style metrics.
    """

    def __init__(self):
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, List[float]] = {}

    def counter_inc(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Increment a counter."""
        key = self._make_key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + value

    def gauge_set(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Set a gauge value."""
        self._gauges[self._make_key(name, labels)] = value

    def histogram_observe(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Observe a histogram value."""
        self._histograms.setdefault(self._make_key(name, labels), []).append(value)

    @contextmanager
    def timer(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> Generator[None, None, None]:
        """Context manager for timing operations."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.histogram_observe(name, time.perf_counter() - start, labels)

    def counter_value(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> float:
        return self._counters.get(self._make_key(name, labels), 0.0)

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()

    def _make_key(
        self,
        name: str,
        labels: Optional[Dict[str, str]],
    ) -> str:
        """Create metric key with labels."""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_metrics(self) -> Dict[str, Any]:
        """Get all metrics as dictionary."""
        histograms = {}
        for key, values in self._histograms.items():
            data = np.asarray(values, dtype=float)
            histograms[key] = {
                "count": int(data.size),
                "sum": float(data.sum()),
                "avg": float(data.mean()) if data.size else 0.0,
                "min": float(data.min()) if data.size else 0.0,
                "max": float(data.max()) if data.size else 0.0,
                "p95": float(np.percentile(data, 95)) if data.size else 0.0,
            }
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": histograms,
        }

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus format."""
        lines = []

        for key, value in self._counters.items():
            lines.append(f"# TYPE {key.split('{')[0]} counter")
            lines.append(f"{key} {value}")

        for key, value in self._gauges.items():
            lines.append(f"# TYPE {key.split('{')[0]} gauge")
            lines.append(f"{key} {value}")

        for key, values in self._histograms.items():
            lines.append(f"# TYPE {key.split('{')[0]} histogram")
            lines.append(f"{key}_count {len(values)}")
            lines.append(f"{key}_sum {sum(values)}")

        return "\n".join(lines)


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get global metrics collector."""
    return _metrics


class GateMetrics:
    """Pre-defined metrics for gate executions."""

    @staticmethod
    def gate_executed(gate_name: str, passed: bool) -> None:
        _metrics.counter_inc(
            "security_gate_executions_total",
            labels={"gate": gate_name, "status": "passed" if passed else "failed"},
        )

    @staticmethod
    def gate_duration(gate_name: str, duration_seconds: float) -> None:
        _metrics.histogram_observe(
            "security_gate_duration_seconds",
            duration_seconds,
            labels={"gate": gate_name},
        )

    @staticmethod
    def gate_retry(gate_name: str) -> None:
        _metrics.counter_inc(
            "security_gate_retries_total",
            labels={"gate": gate_name},
        )

    @staticmethod
    def gate_timeout(gate_name: str) -> None:
        _metrics.counter_inc(
            "security_gate_timeouts_total",
            labels={"gate": gate_name},
        )

    @staticmethod
    def registered_gates(count: int) -> None:
        _metrics.gauge_set("security_gates_registered", count)
