"""
Security Gates

Release gating framework: a runner that executes pluggable security
gates under timeout, retry and fail-fast rules, with gates for crypto
envelopes, network traffic, row-level security and framework self-tests.
"""

__version__ = "1.0.0"

from .core import (
    Config,
    GateExecutionContext,
    GateResult,
    GateRunner,
    RunReport,
    SecurityGate,
    SecurityGateError,
    ValidationResult,
)
from .crypto import CryptoGate
from .network import NetworkGate
from .rls import RLSGate
from .testing import TestingGate

__all__ = [
    "__version__",
    "Config",
    "CryptoGate",
    "GateExecutionContext",
    "GateResult",
    "GateRunner",
    "NetworkGate",
    "RLSGate",
    "RunReport",
    "SecurityGate",
    "SecurityGateError",
    "TestingGate",
    "ValidationResult",
]
