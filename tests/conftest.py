"""
Security Gates - Test Configuration

Shared envelope and gate fixtures.
"""

import asyncio
import base64
from datetime import timedelta
from typing import Any, Callable, Dict, Optional

import pytest

from security_gates.core.config import RunnerConfig
from security_gates.core.gate import GateResult, SecurityGate, utcnow


def b64(size: int) -> str:
    """Base64 of ``size`` bytes."""
    return base64.b64encode(b"\x5a" * size).decode("ascii")


def make_envelope(**overrides: Any) -> Dict[str, Any]:
    """Compliant XChaCha20Poly1305 / Argon2id envelope."""
    envelope = {
        "version": 1,
        "algorithm": "XChaCha20Poly1305",
        "kdfParams": {
            "algorithm": "Argon2id",
            "memory": 131072,
            "iterations": 3,
            "parallelism": 2,
        },
        "salt": b64(32),
        "nonce": b64(24),
        "keyId": "v1_20231201_abc123",
        "aad": {
            "userId": "550e8400-e29b-41d4-a716-446655440000",
            "recordId": "rec-001",
            "tableName": "encrypted_cycle_data",
            "version": 1,
            "timestamp": (utcnow() - timedelta(minutes=5)).isoformat(),
        },
    }
    envelope.update(overrides)
    return envelope


class ScriptedGate(SecurityGate):
    """Gate returning a fixed result, optionally after a delay or error."""

    def __init__(
        self,
        name: str,
        result: Optional[GateResult] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        fail_times: int = 0,
    ):
        self.name = name
        self.description = f"Scripted gate {name}"
        self.result = result or GateResult(valid=True, details="ok")
        self.delay = delay
        self.error = error
        self.fail_times = fail_times
        self.calls = 0
        self.inputs = []
        self.contexts = []

    async def execute(self, input_data, context=None) -> GateResult:
        self.calls += 1
        self.inputs.append(input_data)
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None and (self.fail_times == 0 or self.calls <= self.fail_times):
            raise self.error
        return GateResult(
            valid=self.result.valid,
            errors=list(self.result.errors),
            warnings=list(self.result.warnings),
            details=self.result.details,
        )

    def get_config(self) -> Dict[str, Any]:
        return {"delay": self.delay}

    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        return GateResult(valid=True)


@pytest.fixture
def envelope() -> Dict[str, Any]:
    """A compliant envelope."""
    return make_envelope()


@pytest.fixture
def envelope_factory() -> Callable[..., Dict[str, Any]]:
    return make_envelope


@pytest.fixture
def fast_runner_config() -> RunnerConfig:
    """Runner settings with short timeouts and no backoff delay."""
    return RunnerConfig(timeout=500, retries=0, backoff_base=0.0)


@pytest.fixture
def scripted_gate() -> Callable[..., ScriptedGate]:
    return ScriptedGate
