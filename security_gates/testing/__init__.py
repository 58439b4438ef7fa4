"""
Security Gates - Testing

Self-test suites for the gate framework and the gate that runs them.
"""

from .gate import SuiteGate, TestingGate
from .suites import (
    ChaosEngineeringSuite,
    FuzzTestingSuite,
    LoadTestingSuite,
    PropertyTestingSuite,
    SuiteResult,
    TestSuite,
    build_envelope,
)

__all__ = [
    "ChaosEngineeringSuite",
    "FuzzTestingSuite",
    "LoadTestingSuite",
    "PropertyTestingSuite",
    "SuiteGate",
    "SuiteResult",
    "TestSuite",
    "TestingGate",
    "build_envelope",
]
