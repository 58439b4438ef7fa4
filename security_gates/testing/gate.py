"""
Security Gates - Testing Gate

Runs the framework self-test suites as gates of an inner GateRunner, so
suites get the same timeout, parallelism and fail-fast handling as any
other gate.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.config import RunnerConfig, TestingGateConfig
from ..core.exceptions import GateFailureError
from ..core.gate import Environment, GateExecutionContext, GateResult, SecurityGate, utcnow
from ..core.runner import GateRunner
from .suites import (
    ChaosEngineeringSuite,
    FuzzTestingSuite,
    LoadTestingSuite,
    PropertyTestingSuite,
    SuiteResult,
    TestSuite,
)

logger = logging.getLogger(__name__)


class SuiteGate(SecurityGate):
    """Adapts a TestSuite to the gate contract."""

    def __init__(self, suite: TestSuite):
        self.suite = suite
        self.name = suite.name
        self.description = f"{suite.name} security test suite"

    async def execute(
        self,
        input_data: Any,
        context: Optional[GateExecutionContext] = None,
    ) -> GateResult:
        result = await self.suite.run()
        return GateResult(
            valid=result.passed,
            errors=list(result.critical_issues),
            details=(
                f"{result.suite_name}: {result.tests_executed} tests, "
                f"{result.tests_failed} failed"
            ),
            metadata={"suite_result": result.to_dict()},
        )

    def get_config(self) -> Dict[str, Any]:
        return {"suite": self.suite.name}

    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        return GateResult(valid=True, details="Suite gates take no configuration")


def _suite_result(name: str, gate_result: GateResult) -> SuiteResult:
    """Recover a SuiteResult, or describe a suite the runner had to fail."""
    data = gate_result.metadata.get("suite_result")
    if data is not None:
        return SuiteResult(**data)

    message = gate_result.errors[0] if gate_result.errors else "Unknown error"
    return SuiteResult(
        suite_name=name,
        passed=False,
        duration=gate_result.execution_time,
        tests_failed=1,
        critical_issues=[f"Suite failed: {message}"],
        details={"error": message},
    )


class TestingGate(SecurityGate):
    """
    Testing Gate.

    Enabled suites share ``max_testing_time`` evenly as their per-suite
    deadline. The gate passes only when every suite that ran passed with
    no critical issues.
    """

    __test__ = False

    name = "testing"
    description = "Property, fuzz, chaos and load testing of the security gates"
    version = "1.0.0"

    def __init__(
        self,
        config: Optional[TestingGateConfig] = None,
        suites: Optional[Sequence[TestSuite]] = None,
    ):
        self.config = config or TestingGateConfig()
        self._suites = list(suites) if suites is not None else None

    def enabled_suites(self) -> List[TestSuite]:
        if self._suites is not None:
            return list(self._suites)

        config = self.config
        suites: List[TestSuite] = []
        if config.enable_property_testing:
            suites.append(PropertyTestingSuite(config.property_examples, config.seed))
        if config.enable_fuzz_testing:
            suites.append(FuzzTestingSuite(config.fuzz_iterations, config.seed))
        if config.enable_chaos_engineering:
            suites.append(ChaosEngineeringSuite())
        if config.enable_load_testing:
            suites.append(LoadTestingSuite(config.load_requests, config.load_concurrency))
        return suites

    def _runner(self, suite_count: int, environment: Environment) -> GateRunner:
        per_suite_ms = self.config.max_testing_time * 60 * 1000 / suite_count
        return GateRunner(RunnerConfig(
            fail_fast=self.config.fail_fast,
            parallel=self.config.parallel_execution,
            timeout=per_suite_ms,
            retries=0,
            environment=environment,
        ))

    async def execute(
        self,
        input_data: Any = None,
        context: Optional[GateExecutionContext] = None,
    ) -> GateResult:
        suites = self.enabled_suites()
        if not suites:
            return GateResult(
                valid=True,
                warnings=["No testing suites enabled"],
                details="Testing gate skipped - no suites enabled",
                metadata={"config": self.config.to_dict(), "suite_results": []},
            )

        environment = context.environment if context else Environment.DEVELOPMENT
        runner = self._runner(len(suites), environment)
        for suite in suites:
            runner.register_gate(SuiteGate(suite))

        mode = "parallel" if self.config.parallel_execution else "sequentially"
        logger.info(f"Running {len(suites)} testing suites {mode}")

        try:
            report = await runner.execute_all(input_data)
            gate_results = report.results
        except GateFailureError as e:
            logger.info(f"Fail-fast triggered by suite {e.gate_name}")
            gate_results = e.results

        suite_results = [_suite_result(name, r) for name, r in gate_results.items()]
        critical = [issue for r in suite_results for issue in r.critical_issues]
        passed = all(r.passed for r in suite_results) and not critical
        total_duration = sum(r.duration for r in suite_results)

        if passed:
            logger.info("All security testing suites passed")
        else:
            logger.error(f"Security testing gate failed: {len(critical)} critical issues")

        metadata = {
            "config": self.config.to_dict(),
            "suite_results": [r.to_dict() for r in suite_results],
            "critical_issues_found": critical,
            "total_duration": total_duration,
            "suites_skipped": [s.name for s in suites if s.name not in gate_results],
        }

        if self.config.output_directory:
            metadata["results_file"] = str(self.write_results(metadata, passed))

        return GateResult(
            valid=passed,
            errors=critical,
            details=(
                f"Testing gate {'passed' if passed else 'failed'}: "
                f"{sum(r.passed for r in suite_results)}/{len(suite_results)} suites passed"
            ),
            metadata=metadata,
        )

    def write_results(self, metadata: Dict[str, Any], passed: bool) -> Path:
        """Write a JSON results file into the output directory."""
        directory = Path(self.config.output_directory)
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = utcnow()
        path = directory / f"testing-results-{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}.json"

        with open(path, "w") as f:
            json.dump(
                {"timestamp": timestamp.isoformat(), "passed": passed, **metadata},
                f,
                indent=2,
                default=str,
            )

        logger.info(f"Wrote testing results to {path}")
        return path

    def get_config(self) -> Dict[str, Any]:
        return self.config.to_dict()

    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        errors = []
        warnings = []

        max_time = config.get("max_testing_time")
        if isinstance(max_time, bool) or not isinstance(max_time, (int, float)) or max_time <= 0:
            errors.append("max_testing_time must be a positive number")

        output = config.get("output_directory")
        if not isinstance(output, str) or not output.strip():
            warnings.append("output_directory should be a non-empty string")

        return GateResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            details=(
                "Testing gate configuration is valid"
                if not errors
                else "Testing gate configuration validation failed"
            ),
        )
