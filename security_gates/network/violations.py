"""
Shared finding types for the network analyzers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class Severity(Enum):
    """Finding severity levels."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def weight(self) -> int:
        return _SEVERITY_WEIGHTS[self]


_SEVERITY_WEIGHTS = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
}


@dataclass
class NetworkViolation:
    """A single network security finding."""
    type: str
    severity: Severity
    description: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "context": dict(self.context),
        }
