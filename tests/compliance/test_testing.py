"""
Testing gate tests.

Runs the property, fuzz, chaos and load suites with small budgets, and
checks how the testing gate aggregates suite outcomes.
"""

import asyncio
import json

import pytest

from security_gates.core.config import TestingGateConfig
from security_gates.core.gate import GateResult
from security_gates.testing import (
    ChaosEngineeringSuite,
    FuzzTestingSuite,
    LoadTestingSuite,
    PropertyTestingSuite,
    SuiteResult,
    TestingGate,
    TestSuite,
    build_envelope,
)
from security_gates.crypto import CryptoGate


class StaticSuite(TestSuite):
    """Suite with a fixed outcome."""

    def __init__(self, name, passed=True, issues=(), delay=0.0):
        self.name = name
        self.outcome = passed
        self.issues = list(issues)
        self.delay = delay
        self.runs = 0

    async def _run(self):
        self.runs += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return SuiteResult(
            suite_name=self.name,
            passed=self.outcome,
            tests_executed=1,
            tests_failed=0 if self.outcome else 1,
            critical_issues=list(self.issues),
        )


class CrashingSuite(TestSuite):
    name = "Crashing"

    async def _run(self):
        raise RuntimeError("fixture missing")


def quiet_config(tmp_path=None, **overrides):
    settings = dict(
        property_examples=10,
        fuzz_iterations=20,
        load_requests=20,
        load_concurrency=4,
        seed=3,
        output_directory=str(tmp_path) if tmp_path else None,
    )
    settings.update(overrides)
    return TestingGateConfig(**settings)


class TestSuiteBase:
    """Tests for the shared suite wrapper."""

    @pytest.mark.asyncio
    async def test_crash_becomes_failed_result(self):
        """Crash becomes failed result."""
        result = await CrashingSuite().run()
        assert not result.passed
        assert result.critical_issues == ["Crashing suite failed: fixture missing"]
        assert result.duration >= 0

    def test_compliant_envelope_builder(self):
        """Compliant envelope builder."""
        envelope = build_envelope(keyId="v2_20240101_def456")
        result = CryptoGate().validate_crypto_envelope(envelope)
        assert result.valid
        assert result.warnings == []
        assert envelope["keyId"] == "v2_20240101_def456"


class TestPropertyTestingSuite:
    """Tests for hypothesis-driven properties."""

    @pytest.mark.asyncio
    async def test_properties_hold(self):
        """Properties hold."""
        result = await PropertyTestingSuite(max_examples=20, seed=11).run()

        assert result.passed, result.critical_issues
        assert result.tests_executed == 6
        assert "nonce-table-exactness" in result.details["properties"]

    @pytest.mark.asyncio
    async def test_falsified_property_is_critical(self, monkeypatch):
        """Falsified property is critical."""
        suite = PropertyTestingSuite(max_examples=5)

        def falsified():
            raise AssertionError("counterexample found")

        monkeypatch.setattr(suite, "properties", lambda: [("always-false", falsified)])
        result = await suite.run()

        assert not result.passed
        assert result.critical_issues == [
            "Property test failed: always-false - counterexample found"
        ]


class TestFuzzTestingSuite:
    """Tests for seeded mutation fuzzing."""

    @pytest.mark.asyncio
    async def test_no_crashes_or_accepted_insecure_envelopes(self):
        """No crashes or accepted insecure envelopes."""
        result = await FuzzTestingSuite(iterations=100, seed=7).run()

        assert result.passed, result.critical_issues[:5]
        assert result.tests_executed == 200
        assert result.details["targets"]["crypto-envelope-validation"]["cases"] == 100

    @pytest.mark.asyncio
    async def test_seed_reproducible(self):
        """Seed reproducible."""
        first = await FuzzTestingSuite(iterations=30, seed=5).run()
        second = await FuzzTestingSuite(iterations=30, seed=5).run()
        assert first.details == second.details

    @pytest.mark.asyncio
    async def test_permissive_validator_is_caught(self, monkeypatch):
        """Permissive validator is caught."""
        suite = FuzzTestingSuite(iterations=20, seed=1)
        monkeypatch.setattr(
            suite.gate, "validate_crypto_envelope", lambda envelope: GateResult(valid=True)
        )

        result = await suite.run()

        assert not result.passed
        assert any(i.startswith("Insecure envelope accepted after") for i in result.critical_issues)


class TestChaosEngineeringSuite:
    """Tests for runner fault injection."""

    @pytest.mark.asyncio
    async def test_all_experiments_succeed(self):
        """All experiments succeed."""
        result = await ChaosEngineeringSuite().run()

        assert result.passed, result.critical_issues
        experiments = result.details["experiments"]
        assert [e["name"] for e in experiments] == [
            "dependency-outage",
            "gate-hang",
            "transient-failure",
            "malformed-input",
            "partial-outage",
        ]
        assert all(e["behavior_checks_passed"] == e["behavior_checks_total"] for e in experiments)

    @pytest.mark.asyncio
    async def test_crashed_experiment_reported(self, monkeypatch):
        """Crashed experiment reported."""
        suite = ChaosEngineeringSuite()

        async def boom():
            raise RuntimeError("harness broke")

        monkeypatch.setattr(suite, "partial_outage", boom)
        result = await suite.run()

        assert not result.passed
        assert "Chaos experiment failed: partial-outage" in result.critical_issues
        assert "partial-outage: completed (harness broke) violated" in result.critical_issues


class TestLoadTestingSuite:
    """Tests for load with security constraints."""

    @pytest.mark.asyncio
    async def test_constraints_hold(self):
        """Constraints hold."""
        suite = LoadTestingSuite(requests=40, concurrency=8)
        scenario = await suite.run_crypto_scenario()

        assert scenario.passed, [c.to_dict() for c in scenario.constraints]
        assert scenario.metrics["security_violations"] == 0
        assert scenario.metrics["total_requests"] == 40

    @pytest.mark.asyncio
    async def test_accepting_insecure_envelopes_fails(self, scripted_gate):
        """Accepting insecure envelopes fails."""
        suite = LoadTestingSuite(requests=40, concurrency=8)
        suite.gate = scripted_gate("accept-all")

        result = await suite.run()

        assert not result.passed
        assert result.critical_issues[0] == (
            "Load test scenario failed: crypto-envelope-validation-load"
        )
        assert (
            "Security constraint violated: insecure-envelopes-rejected - "
            "10 insecure envelopes accepted"
        ) in result.critical_issues


class TestTestingGate:
    """Tests for suite aggregation."""

    @pytest.mark.asyncio
    async def test_no_suites_enabled(self):
        """No suites enabled."""
        config = quiet_config(
            enable_property_testing=False,
            enable_fuzz_testing=False,
            enable_chaos_engineering=False,
            enable_load_testing=False,
        )
        result = await TestingGate(config).execute({})

        assert result.passed
        assert result.warnings == ["No testing suites enabled"]

    def test_enabled_suites_follow_config(self):
        """Enabled suites follow config."""
        gate = TestingGate(quiet_config(enable_fuzz_testing=False, enable_load_testing=False))
        assert [s.name for s in gate.enabled_suites()] == ["PropertyTesting", "ChaosEngineering"]

    @pytest.mark.asyncio
    async def test_all_suites_pass(self, tmp_path):
        """All suites pass."""
        result = await TestingGate(quiet_config(tmp_path)).execute({})

        assert result.passed, result.errors
        names = [r["suite_name"] for r in result.metadata["suite_results"]]
        assert names == ["PropertyTesting", "FuzzTesting", "ChaosEngineering", "LoadTesting"]

        written = json.loads(open(result.metadata["results_file"]).read())
        assert written["passed"] is True
        assert len(written["suite_results"]) == 4

    @pytest.mark.asyncio
    async def test_critical_issues_fail_the_gate(self):
        """Critical issues fail the gate."""
        gate = TestingGate(
            quiet_config(fail_fast=False),
            suites=[
                StaticSuite("Healthy"),
                StaticSuite("Leaky", passed=True, issues=["Plaintext health data not flagged"]),
            ],
        )

        result = await gate.execute({})

        assert not result.passed
        assert result.errors == ["Plaintext health data not flagged"]
        assert result.metadata["critical_issues_found"] == result.errors

    @pytest.mark.asyncio
    async def test_fail_fast_parallel_keeps_every_result(self):
        """Fail fast parallel keeps every result."""
        healthy = StaticSuite("Healthy", delay=0.02)
        gate = TestingGate(
            quiet_config(fail_fast=True, parallel_execution=True),
            suites=[StaticSuite("Broken", passed=False, issues=["broken"]), healthy],
        )

        result = await gate.execute({})

        assert not result.passed
        assert healthy.runs == 1
        assert len(result.metadata["suite_results"]) == 2
        assert result.metadata["suites_skipped"] == []

    @pytest.mark.asyncio
    async def test_fail_fast_sequential_skips_later_suites(self):
        """Fail fast sequential skips later suites."""
        later = StaticSuite("Later")
        gate = TestingGate(
            quiet_config(fail_fast=True, parallel_execution=False),
            suites=[StaticSuite("Broken", passed=False, issues=["broken"]), later],
        )

        result = await gate.execute({})

        assert later.runs == 0
        assert result.metadata["suites_skipped"] == ["Later"]

    @pytest.mark.asyncio
    async def test_suite_deadline(self):
        """Suite deadline."""
        # 0.001 minutes shared by one suite
        gate = TestingGate(
            quiet_config(max_testing_time=0.001),
            suites=[StaticSuite("Hanging", delay=5.0)],
        )

        result = await gate.execute({})

        assert not result.passed
        issue = result.errors[0]
        assert issue.startswith("Suite failed: ")
        assert "timed out" in issue

    def test_validate_config(self):
        """Validate config."""
        gate = TestingGate(quiet_config())
        result = gate.validate_config(gate.get_config())
        assert result.valid
        assert result.warnings == ["output_directory should be a non-empty string"]

        bad = gate.validate_config({"max_testing_time": 0, "output_directory": "out"})
        assert not bad.valid
        assert bad.errors == ["max_testing_time must be a positive number"]
