"""
Security Gates - Gate Runner

Registry of named gates with timeout, retry, fail-fast and aggregation
semantics shared by every gate.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

from ..observability import GateMetrics
from .config import RunnerConfig
from .exceptions import (
    ConfigurationError,
    GateFailureError,
    GateNotFoundError,
    GateTimeoutError,
    SecurityGateError,
)
from .gate import GateExecutionContext, GateResult, SecurityGate, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Aggregate counts over a set of gate results."""
    total: int = 0
    passed: int = 0
    failed: int = 0
    total_errors: int = 0
    total_warnings: int = 0

    @classmethod
    def from_results(cls, results: Iterable[GateResult]) -> "RunSummary":
        summary = cls()
        for result in results:
            summary.total += 1
            if result.valid:
                summary.passed += 1
            else:
                summary.failed += 1
            summary.total_errors += len(result.errors)
            summary.total_warnings += len(result.warnings)
        return summary

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "total_errors": self.total_errors,
            "total_warnings": self.total_warnings,
        }


@dataclass
class RunReport:
    """Results of executing several gates, keyed by gate name in run order."""
    results: Dict[str, GateResult] = field(default_factory=dict)
    summary: RunSummary = field(default_factory=RunSummary)
    run_id: str = ""

    @property
    def passed(self) -> bool:
        return self.summary.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "passed": self.passed,
            "summary": self.summary.to_dict(),
            "results": {name: r.to_dict() for name, r in self.results.items()},
        }


class GateRunner:
    """
    Gate Runner.

    Executes registered gates one at a time, as a selected sequence, or
    all together. Per gate:
    - a wall-clock deadline of ``timeout`` milliseconds
    - up to ``retries`` extra attempts on exceptions, with exponential backoff
    - metadata enrichment (gate name, attempt, timestamp, environment)

    Validation failures are returned as data and never retried.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        history_size: int = 100,
    ):
        self.config = config or RunnerConfig()
        self._gates: Dict[str, SecurityGate] = {}
        self._history: Dict[str, Deque[GateResult]] = {}
        self._history_size = history_size

    def register_gate(self, gate: SecurityGate) -> None:
        """Register a gate under its name, replacing any previous one."""
        if not gate.name:
            raise ConfigurationError("Security gate must define a name")
        if gate.name in self._gates:
            logger.warning(f"Replacing registered security gate: {gate.name}")
        self._gates[gate.name] = gate
        GateMetrics.registered_gates(len(self._gates))
        logger.info(f"Registered security gate: {gate.name} v{gate.version}")

    def unregister_gate(self, name: str) -> bool:
        """Remove a gate. Returns False if it was not registered."""
        if self._gates.pop(name, None) is None:
            return False
        GateMetrics.registered_gates(len(self._gates))
        logger.info(f"Unregistered security gate: {name}")
        return True

    @property
    def gate_names(self) -> List[str]:
        return list(self._gates)

    async def execute_gate(
        self,
        name: str,
        input_data: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> GateResult:
        """
        Execute a single gate by name.

        Never raises for missing gates, timeouts or gate exceptions; those
        are reported as failed results.
        """
        gate = self._gates.get(name)
        if gate is None:
            error = GateNotFoundError(name)
            logger.warning(error.message)
            return GateResult.failure(
                error.message,
                metadata={"gate_name": name, "error_code": error.code},
            )

        try:
            execution_context = GateExecutionContext.create(self.config.environment, context)
        except (TypeError, ValueError) as e:
            message = f"Invalid execution context: {e}"
            logger.error(f"Security gate '{name}': {message}")
            return GateResult.failure(
                message,
                metadata={"gate_name": name, "error_type": type(e).__name__},
            )

        start = time.perf_counter()

        try:
            # wait_for cancels the retry loop at the deadline
            result = await asyncio.wait_for(
                self._execute_with_retries(gate, input_data, execution_context),
                timeout=self.config.timeout / 1000,
            )
        except asyncio.TimeoutError:
            error = GateTimeoutError(gate.name, self.config.timeout)
            logger.error(error.message)
            GateMetrics.gate_timeout(gate.name)
            result = GateResult.failure(
                error.message,
                metadata={
                    "gate_name": gate.name,
                    "timestamp": utcnow(),
                    "environment": execution_context.environment.value,
                    "error_code": error.code,
                },
            )

        duration = time.perf_counter() - start
        result.execution_time = duration * 1000
        GateMetrics.gate_executed(gate.name, result.valid)
        GateMetrics.gate_duration(gate.name, duration)
        self._store_result(gate.name, result)
        return result

    async def _execute_with_retries(
        self,
        gate: SecurityGate,
        input_data: Any,
        context: GateExecutionContext,
    ) -> GateResult:
        attempts = self.config.retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            try:
                result = await gate.execute(input_data, context)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Security gate '{gate.name}' attempt {attempt + 1}/{attempts} "
                    f"raised {type(e).__name__}: {e}"
                )
                if attempt < self.config.retries:
                    GateMetrics.gate_retry(gate.name)
                    await asyncio.sleep(self.config.backoff_base * 2 ** attempt)
                continue

            if not isinstance(result, GateResult):
                message = f"Security gate '{gate.name}' returned {type(result).__name__}"
                logger.error(message)
                return GateResult.failure(
                    message,
                    metadata={
                        "gate_name": gate.name,
                        "attempt": attempt + 1,
                        "timestamp": utcnow(),
                        "environment": context.environment.value,
                        "error_type": "TypeError",
                    },
                )

            result.metadata.update({
                "gate_name": gate.name,
                "attempt": attempt + 1,
                "timestamp": utcnow(),
                "environment": context.environment.value,
            })
            return result

        metadata = {
            "gate_name": gate.name,
            "attempts": attempts,
            "timestamp": utcnow(),
            "environment": context.environment.value,
            "error_type": type(last_error).__name__,
        }
        if isinstance(last_error, SecurityGateError):
            metadata["error_code"] = last_error.code

        logger.error(f"Security gate '{gate.name}' failed after {attempts} attempts")
        return GateResult.failure(
            str(last_error) or type(last_error).__name__,
            details=f"Security gate '{gate.name}' failed after {attempts} attempts",
            metadata=metadata,
        )

    async def execute_all(
        self,
        input_data: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> RunReport:
        """
        Execute every registered gate.

        In parallel mode every gate runs to completion before fail-fast is
        checked; the first failing gate in registration order then raises
        GateFailureError carrying the full report. In sequential mode
        fail-fast stops before later gates start.
        """
        names = list(self._gates)
        if self.config.parallel:
            return await self._execute_parallel(names, input_data, context)
        return await self._execute_sequential(names, input_data, context)

    async def execute_selected(
        self,
        names: Iterable[str],
        input_data: Any,
        context: Optional[Mapping[str, Any]] = None,
    ) -> RunReport:
        """Execute the named gates sequentially, in the order given."""
        return await self._execute_sequential(list(names), input_data, context)

    async def _execute_parallel(
        self,
        names: List[str],
        input_data: Any,
        context: Optional[Mapping[str, Any]],
    ) -> RunReport:
        run_id = str(uuid4())
        logger.info(
            f"Executing {len(names)} security gates in parallel",
            extra={"run_id": run_id},
        )

        outcomes = await asyncio.gather(*(
            self.execute_gate(name, input_data, context) for name in names
        ))
        results = dict(zip(names, outcomes))
        report = RunReport(
            results=results,
            summary=RunSummary.from_results(results.values()),
            run_id=run_id,
        )
        self._log_report(report)

        if self.config.fail_fast:
            for name, result in results.items():
                if not result.valid:
                    raise GateFailureError(
                        f"Security gate '{name}' failed: {', '.join(result.errors)}",
                        gate_name=name,
                        results=results,
                        summary=report.summary,
                    )

        return report

    async def _execute_sequential(
        self,
        names: List[str],
        input_data: Any,
        context: Optional[Mapping[str, Any]],
    ) -> RunReport:
        run_id = str(uuid4())
        logger.info(
            f"Executing {len(names)} security gates sequentially",
            extra={"run_id": run_id},
        )

        results: Dict[str, GateResult] = {}
        for name in names:
            result = await self.execute_gate(name, input_data, context)
            results[name] = result
            if self.config.fail_fast and not result.valid:
                logger.info(f"Fail-fast: stopping after failed gate {name}")
                break

        report = RunReport(
            results=results,
            summary=RunSummary.from_results(results.values()),
            run_id=run_id,
        )
        self._log_report(report)
        return report

    def _log_report(self, report: RunReport) -> None:
        s = report.summary
        logger.info(
            f"Security gate run complete: {s.passed}/{s.total} passed, "
            f"{s.total_errors} errors, {s.total_warnings} warnings",
            extra={"run_id": report.run_id},
        )

    def _store_result(self, gate_name: str, result: GateResult) -> None:
        history = self._history.setdefault(
            gate_name, deque(maxlen=self._history_size)
        )
        history.append(result)

        status = "PASSED" if result.valid else "FAILED"
        logger.info(f"Gate {gate_name}: {status}", extra={"gate_name": gate_name})
        for error in result.errors:
            logger.warning(f"  Gate {gate_name} error: {error}")

    def get_gate_history(self, gate_name: str) -> List[GateResult]:
        """Past results for a gate, oldest first."""
        return list(self._history.get(gate_name, ()))

    def list_gates(self) -> List[Dict[str, str]]:
        return [gate.describe() for gate in self._gates.values()]

    def get_gate_config(self, name: str) -> Optional[Dict[str, Any]]:
        gate = self._gates.get(name)
        if gate is None:
            return None
        return gate.get_config()

    def validate_gate_config(
        self,
        name: str,
        config: Dict[str, Any],
    ) -> Optional[GateResult]:
        gate = self._gates.get(name)
        if gate is None:
            return None
        return gate.validate_config(config)
