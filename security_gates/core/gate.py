"""
Security Gates - Gate Contract

Result types, execution context, and the SecurityGate interface every
gate implements.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


@dataclass
class ValidationResult:
    """Outcome of a single validation concern."""
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """Fold another result into this one, skipping repeated messages."""
        for error in other.errors:
            if error not in self.errors:
                self.errors.append(error)
        for warning in other.warnings:
            if warning not in self.warnings:
                self.warnings.append(warning)
        if not other.valid:
            self.valid = False
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class GateResult:
    """Outcome of one gate execution."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    details: str = ""
    execution_time: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return self.valid

    @classmethod
    def failure(
        cls,
        error: str,
        details: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "GateResult":
        """Build a failed result carrying a single error."""
        return cls(
            valid=False,
            errors=[error],
            details=details or error,
            metadata=metadata or {},
        )

    @classmethod
    def from_validation(
        cls,
        result: ValidationResult,
        details: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "GateResult":
        return cls(
            valid=result.valid,
            errors=list(result.errors),
            warnings=list(result.warnings),
            details=details,
            metadata=metadata or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "passed": self.passed,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "details": self.details,
            "execution_time": self.execution_time,
            "metadata": _jsonable(self.metadata),
        }


def _jsonable(value: Any) -> Any:
    """Render metadata values for JSON output."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


@dataclass(frozen=True)
class GateExecutionContext:
    """
    Per-invocation execution context.

    Created fresh for every gate execution and never mutated afterwards.
    """
    environment: Environment
    timestamp: datetime
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @classmethod
    def create(
        cls,
        environment: Environment,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> "GateExecutionContext":
        """
        Build a context from configured defaults plus caller overrides.

        Known fields in ``overrides`` replace the defaults; anything else
        lands in ``extra``. The timestamp is always the creation time.
        """
        overrides = dict(overrides or {})
        env = overrides.pop("environment", environment)
        if isinstance(env, str):
            env = Environment(env)
        overrides.pop("timestamp", None)
        return cls(
            environment=env,
            timestamp=utcnow(),
            request_id=overrides.pop("request_id", None),
            user_id=overrides.pop("user_id", None),
            extra=overrides,
        )


class SecurityGate(ABC):
    """
    Uniform contract for every security gate.

    Subclasses set ``name`` (the registry key), ``description`` and
    ``version``.
    """

    name: str = ""
    description: str = ""
    version: str = "1.0.0"

    @abstractmethod
    async def execute(
        self,
        input_data: Any,
        context: Optional[GateExecutionContext] = None,
    ) -> GateResult:
        """Run the gate against ``input_data``."""

    @abstractmethod
    def get_config(self) -> Dict[str, Any]:
        """Return the gate's effective configuration."""

    @abstractmethod
    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        """Check a candidate configuration without applying it."""

    def describe(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
        }
