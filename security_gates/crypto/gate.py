"""
Security Gates - Crypto Envelope Gate

Staged validation of encryption envelopes under named security policies.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

import jsonschema

from ..core.config import (
    SECURITY_POLICY_NAMES,
    CryptoGateConfig,
    security_policy,
)
from ..core.exceptions import UnknownPolicyError
from ..core.gate import (
    GateExecutionContext,
    GateResult,
    SecurityGate,
    ValidationResult,
)
from .algorithm import AlgorithmValidator
from .envelope import EnvelopeValidator
from .kdf import KdfValidator

logger = logging.getLogger(__name__)

SECURITY_POLICIES: Mapping[str, Mapping[str, bool]] = MappingProxyType({
    name: MappingProxyType(security_policy(name).to_dict())
    for name in SECURITY_POLICY_NAMES
})

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "strict_mode": {"type": "boolean"},
        "allow_warnings": {"type": "boolean"},
        "quantum_resistance_check": {"type": "boolean"},
        "timing_attack_check": {"type": "boolean"},
    },
    "additionalProperties": False,
}


@dataclass
class BatchValidationReport:
    """Per-envelope results plus aggregate counts."""
    results: List[ValidationResult] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": len(self.results),
            "valid": sum(1 for r in self.results if r.valid),
            "invalid": sum(1 for r in self.results if not r.valid),
            "total_errors": sum(len(r.errors) for r in self.results),
            "total_warnings": sum(len(r.warnings) for r in self.results),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "summary": self.summary,
        }


def _get_policy(name: str) -> CryptoGateConfig:
    policy = security_policy(name)
    if policy is None:
        raise UnknownPolicyError(name)
    return policy


class CryptoGate(SecurityGate):
    """
    Crypto Envelope Gate.

    Pipeline, stopping after the first stage that fails:
    1. schema and structure
    2. KDF parameters
    3. algorithm, mode, salt, nonce, key id
    4. timing-attack estimate (optional)
    5. quantum-resistance advisory (optional)
    6. strict mode rejects any remaining warnings
    """

    name = "crypto-envelope"
    description = "Validates encryption envelopes against algorithm and KDF policy"
    version = "1.0.0"

    def __init__(self, config: Optional[CryptoGateConfig] = None):
        self.config = config or CryptoGateConfig()
        self.algorithm_validator = AlgorithmValidator()
        self.kdf_validator = KdfValidator()
        self.envelope_validator = EnvelopeValidator(self.algorithm_validator)

    @classmethod
    def for_policy(cls, policy_name: str) -> "CryptoGate":
        """Build a gate configured from a named security policy."""
        return cls(_get_policy(policy_name))

    def validate_crypto_envelope(self, envelope: Any) -> ValidationResult:
        result = self.envelope_validator.validate_complete(envelope)
        if not result.valid:
            return result

        result.merge(self.kdf_validator.validate_kdf_params(envelope["kdfParams"]))
        result.merge(self.algorithm_validator.validate_crypto_parameters(
            algorithm=envelope["algorithm"],
            salt=envelope["salt"],
            nonce=envelope["nonce"],
            key_id=envelope["keyId"],
        ))

        if self.config.timing_attack_check:
            timing = self.kdf_validator.validate_timing_attack_resistance(
                envelope["kdfParams"]
            )
            self._apply_advisory(result, timing)

        if self.config.quantum_resistance_check:
            quantum = self.algorithm_validator.validate_quantum_resistance(
                envelope["algorithm"]
            )
            self._apply_advisory(result, quantum)

        if (
            self.config.strict_mode
            and not self.config.allow_warnings
            and result.warnings
        ):
            result.add_error("Strict mode: warnings not allowed")

        return result

    def _apply_advisory(self, result: ValidationResult, advisory: ValidationResult) -> None:
        # Advisory warnings become errors in strict mode
        result.merge(advisory)
        if self.config.strict_mode:
            for warning in advisory.warnings:
                result.add_error(warning)

    def validate_batch(self, envelopes: Sequence[Any]) -> BatchValidationReport:
        """Validate each envelope independently."""
        report = BatchValidationReport(
            results=[self.validate_crypto_envelope(e) for e in envelopes]
        )
        summary = report.summary
        logger.info(
            f"Batch validation: {summary['valid']}/{summary['total']} valid, "
            f"{summary['total_errors']} errors, {summary['total_warnings']} warnings"
        )
        return report

    def validate_security_policy(self, envelope: Any, policy_name: str) -> ValidationResult:
        """
        Validate an envelope under a named policy.

        Raises:
            UnknownPolicyError: If the policy name is not recognised
        """
        gate = CryptoGate(_get_policy(policy_name))
        logger.debug(f"Validating envelope under policy {policy_name}",
                     extra={"policy": policy_name})
        return gate.validate_crypto_envelope(envelope)

    @staticmethod
    def generate_report(
        result: ValidationResult,
        envelope: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Render a validation result as a Markdown report."""
        report = "# Crypto Envelope Validation Report\n\n"
        report += f"## Status: {'✅ VALID' if result.valid else '❌ INVALID'}\n\n"

        if result.errors:
            report += "## Errors\n"
            for index, error in enumerate(result.errors, 1):
                report += f"{index}. {error}\n"
            report += "\n"

        if result.warnings:
            report += "## Warnings\n"
            for index, warning in enumerate(result.warnings, 1):
                report += f"{index}. {warning}\n"
            report += "\n"

        if envelope:
            kdf = envelope.get("kdfParams", {})
            aad = envelope.get("aad", {})
            report += "## Envelope Details\n"
            report += f"- Algorithm: {envelope.get('algorithm')}\n"
            report += (
                f"- KDF: {kdf.get('algorithm')} "
                f"({kdf.get('memory')}KB, {kdf.get('iterations')} iterations)\n"
            )
            report += f"- Version: {envelope.get('version')}\n"
            report += f"- Key ID: {envelope.get('keyId')}\n"
            report += f"- Table: {aad.get('tableName')}\n"

        return report

    async def execute(
        self,
        input_data: Any,
        context: Optional[GateExecutionContext] = None,
    ) -> GateResult:
        """
        Validate one envelope or a batch.

        Accepted inputs:
        - a bare envelope
        - {"envelope": ..., "policy": "<name>"}
        - {"envelopes": [...], "policy": "<name>"}

        An unknown policy raises UnknownPolicyError.
        """
        policy_name = None
        if isinstance(input_data, Mapping) and (
            "envelope" in input_data or "envelopes" in input_data
        ):
            policy_name = input_data.get("policy")

        gate = CryptoGate(_get_policy(policy_name)) if policy_name else self
        metadata: Dict[str, Any] = {"policy": policy_name or "custom"}

        if isinstance(input_data, Mapping) and "envelopes" in input_data:
            batch = gate.validate_batch(input_data["envelopes"])
            summary = batch.summary
            result = ValidationResult()
            for index, item in enumerate(batch.results):
                for error in item.errors:
                    result.add_error(f"envelope[{index}]: {error}")
                for warning in item.warnings:
                    result.add_warning(f"envelope[{index}]: {warning}")
            metadata["batch_summary"] = summary
            return GateResult.from_validation(
                result,
                details=(
                    f"Validated {summary['total']} envelopes: "
                    f"{summary['valid']} valid, {summary['invalid']} invalid"
                ),
                metadata=metadata,
            )

        envelope = input_data
        if isinstance(input_data, Mapping) and "envelope" in input_data:
            envelope = input_data["envelope"]

        result = gate.validate_crypto_envelope(envelope)
        status = "valid" if result.valid else "invalid"
        return GateResult.from_validation(
            result,
            details=(
                f"Crypto envelope {status}: {len(result.errors)} errors, "
                f"{len(result.warnings)} warnings"
            ),
            metadata=metadata,
        )

    def get_config(self) -> Dict[str, Any]:
        return self.config.to_dict()

    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        validator = jsonschema.Draft7Validator(CONFIG_SCHEMA)
        errors = [
            f"{'.'.join(map(str, e.absolute_path)) or 'config'}: {e.message}"
            for e in validator.iter_errors(config)
        ]
        warnings = []
        if (
            isinstance(config, Mapping)
            and config.get("strict_mode") is False
            and config.get("allow_warnings") is False
        ):
            warnings.append("allow_warnings has no effect unless strict_mode is enabled")

        return GateResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            details="Configuration valid" if not errors else "Configuration invalid",
        )
