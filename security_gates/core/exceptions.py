"""
Security Gates Exception Hierarchy

Operational faults raised by the runner and the gates. Validation
failures are never raised; they are returned as result data.
"""

from typing import Any, Dict, List, Optional


class SecurityGateError(Exception):
    """Base exception for all security gate errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SECURITY_GATE_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


def _format_ms(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class GateNotFoundError(SecurityGateError):
    """Raised when a gate name is not registered."""

    def __init__(self, gate_name: str):
        super().__init__(
            f"Security gate '{gate_name}' not found",
            code="GATE_NOT_FOUND",
            details={"gate_name": gate_name},
        )
        self.gate_name = gate_name


class GateTimeoutError(SecurityGateError):
    """Raised when a gate exceeds its execution deadline."""

    def __init__(self, gate_name: str, timeout_ms: float):
        super().__init__(
            f"Security gate '{gate_name}' timed out after {_format_ms(timeout_ms)}ms",
            code="GATE_TIMEOUT",
            details={"gate_name": gate_name, "timeout_ms": timeout_ms},
        )
        self.gate_name = gate_name
        self.timeout_ms = timeout_ms


class GateFailureError(SecurityGateError):
    """
    Raised by fail-fast parallel runs after every gate has completed.

    Carries the complete result map and summary so callers can still
    report on every gate.
    """

    def __init__(
        self,
        message: str,
        gate_name: str,
        results: Optional[Dict[str, Any]] = None,
        summary: Optional[Any] = None,
    ):
        super().__init__(
            message,
            code="GATE_FAILED",
            details={
                "gate_name": gate_name,
                "failed_gates": [
                    name for name, result in (results or {}).items()
                    if not result.valid
                ],
            },
        )
        self.gate_name = gate_name
        self.results = results or {}
        self.summary = summary


class ConfigurationError(SecurityGateError):
    """Raised when gate or runner configuration is invalid."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        code: str = "INVALID_CONFIG",
    ):
        super().__init__(
            message,
            code=code,
            details={"errors": errors or []},
        )
        self.errors = errors or []


class UnknownPolicyError(ConfigurationError):
    """Raised when a named security policy does not exist."""

    def __init__(self, policy_name: str):
        super().__init__(
            f"Unknown security policy: {policy_name}",
            code="UNKNOWN_POLICY",
        )
        self.details["policy_name"] = policy_name
        self.policy_name = policy_name


class MigrationBlockedError(SecurityGateError):
    """Raised when a migration matches a prohibited pattern."""

    def __init__(self, pattern: str):
        super().__init__(
            f'Migration blocked: Contains prohibited pattern "{pattern}"',
            code="MIGRATION_BLOCKED",
            details={"pattern": pattern},
        )
        self.pattern = pattern


class MigrationValidationError(SecurityGateError):
    """Raised when a migration fails while being trial-applied."""

    def __init__(self, message: str, migration_sql: Optional[str] = None):
        super().__init__(
            message,
            code="MIGRATION_VALIDATION_FAILED",
            details={"migration_sql": migration_sql},
        )
        self.migration_sql = migration_sql
