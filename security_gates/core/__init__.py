"""
Security Gates Core Module

Gate contract, runner, configuration and exceptions.
"""

from .config import Config, RunnerConfig
from .exceptions import (
    ConfigurationError,
    GateFailureError,
    GateNotFoundError,
    GateTimeoutError,
    MigrationBlockedError,
    MigrationValidationError,
    SecurityGateError,
    UnknownPolicyError,
)
from .gate import (
    Environment,
    GateExecutionContext,
    GateResult,
    SecurityGate,
    ValidationResult,
)
from .runner import GateRunner, RunReport, RunSummary

__all__ = [
    "Config",
    "RunnerConfig",
    "ConfigurationError",
    "GateFailureError",
    "GateNotFoundError",
    "GateTimeoutError",
    "MigrationBlockedError",
    "MigrationValidationError",
    "SecurityGateError",
    "UnknownPolicyError",
    "Environment",
    "GateExecutionContext",
    "GateResult",
    "SecurityGate",
    "ValidationResult",
    "GateRunner",
    "RunReport",
    "RunSummary",
]
