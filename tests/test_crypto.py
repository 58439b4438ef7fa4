"""
Crypto envelope gate tests.

Covers schema/structure checks, KDF bounds, algorithm policy and the
named security policies.
"""

import base64
from datetime import timedelta

import pytest

from security_gates.core.config import CryptoGateConfig
from security_gates.core.exceptions import UnknownPolicyError
from security_gates.core.gate import utcnow
from security_gates.crypto import (
    SECURITY_POLICIES,
    AlgorithmValidator,
    CryptoGate,
    KdfValidator,
    base64_byte_length,
)
from security_gates.crypto.envelope import EnvelopeValidator, parse_timestamp


def b64(size):
    return base64.b64encode(b"\x01" * size).decode("ascii")


@pytest.fixture
def gate():
    return CryptoGate()


@pytest.fixture
def production_gate():
    return CryptoGate.for_policy("production")


def gcm_envelope(factory):
    return factory(algorithm="AES-256-GCM", nonce=b64(12))


class TestBase64Length:
    """Decoded length arithmetic."""

    @pytest.mark.parametrize("size", [0, 1, 2, 3, 12, 16, 24, 31, 32])
    def test_matches_decoded_size(self, size):
        """Matches decoded size."""
        assert base64_byte_length(b64(size)) == size


class TestEnvelopeValidation:
    """Tests for schema and structure checks."""

    def test_compliant_envelope_is_clean(self, gate, envelope):
        """Compliant envelope is clean."""
        result = gate.validate_crypto_envelope(envelope)
        assert result.valid
        assert result.errors == []
        assert result.warnings == []

    def test_missing_field(self, gate, envelope):
        """Missing field."""
        del envelope["salt"]
        result = gate.validate_crypto_envelope(envelope)
        assert not result.valid
        assert "Missing required field: salt" in result.errors

    def test_missing_aad_field(self, gate, envelope):
        """Missing AAD field."""
        del envelope["aad"]["recordId"]
        result = gate.validate_crypto_envelope(envelope)
        assert "Missing required field: aad.recordId" in result.errors

    def test_non_object_rejected(self, gate):
        """Non object rejected."""
        result = gate.validate_crypto_envelope(["not", "an", "envelope"])
        assert not result.valid

    def test_invalid_base64_salt(self, gate, envelope):
        """Invalid base64 salt."""
        envelope["salt"] = "not base64!!"
        result = gate.validate_crypto_envelope(envelope)
        assert "salt must be valid base64" in result.errors

    def test_invalid_user_id(self, gate, envelope):
        """Invalid user ID."""
        envelope["aad"]["userId"] = "user-123"
        result = gate.validate_crypto_envelope(envelope)
        assert "aad.userId must be a valid UUID" in result.errors

    def test_short_salt(self, gate, envelope):
        """Short salt."""
        envelope["salt"] = b64(16)
        result = gate.validate_crypto_envelope(envelope)
        assert not result.valid
        assert "Salt too short: 16 bytes, minimum 32 bytes required" in result.errors

    def test_nonce_mismatch(self, gate, envelope):
        """Nonce mismatch."""
        envelope["nonce"] = b64(12)
        result = gate.validate_crypto_envelope(envelope)
        assert (
            "Nonce length mismatch for XChaCha20Poly1305: got 12 bytes, expected 24 bytes"
            in result.errors
        )

    def test_empty_aad_table(self, gate, envelope):
        """Empty AAD table."""
        envelope["aad"]["tableName"] = "  "
        result = gate.validate_crypto_envelope(envelope)
        assert "AAD tableName must not be empty" in result.errors

    def test_stale_aad_timestamp_warns(self, gate, envelope):
        """Stale AAD timestamp warns."""
        envelope["aad"]["timestamp"] = (utcnow() - timedelta(hours=48)).isoformat()
        result = gate.validate_crypto_envelope(envelope)
        assert result.valid
        assert "AAD timestamp is 48 hours old" in result.warnings

    def test_structure_uses_reference_time(self, envelope):
        """Structure uses reference time."""
        validator = EnvelopeValidator()
        later = utcnow() + timedelta(days=3)
        result = validator.validate_complete(envelope, now=later)
        assert any("hours old" in w for w in result.warnings)

    def test_envelope_not_mutated(self, gate, envelope, envelope_factory):
        """Envelope not mutated."""
        snapshot = envelope_factory()
        snapshot["aad"]["timestamp"] = envelope["aad"]["timestamp"]
        gate.validate_crypto_envelope(envelope)
        assert envelope == snapshot

    def test_parse_timestamp_accepts_zulu(self):
        """Parse timestamp accepts zulu."""
        parsed = parse_timestamp("2024-01-01T00:00:00Z")
        assert parsed.utcoffset() == timedelta(0)

    @pytest.mark.parametrize("field, value", [
        ("nonce", b64(23) + "\n"),
        ("salt", b64(31) + "\n"),
    ])
    def test_trailing_newline_in_base64_rejected(self, gate, envelope, field, value):
        """Trailing newline in base64 rejected."""
        envelope[field] = value
        result = gate.validate_crypto_envelope(envelope)
        assert not result.valid
        assert result.errors == [f"{field} must be valid base64"]

    def test_trailing_newline_in_user_id_rejected(self, gate, envelope):
        """Trailing newline in user ID rejected."""
        envelope["aad"]["userId"] += "\n"
        result = gate.validate_crypto_envelope(envelope)
        assert "aad.userId must be a valid UUID" in result.errors

    def test_schema_failure_skips_structure_checks(self, gate, envelope):
        """Schema failure skips structure checks."""
        envelope["salt"] = "not base64!!"
        envelope["nonce"] = b64(12)
        result = gate.validate_crypto_envelope(envelope)
        assert result.errors == ["salt must be valid base64"]


class TestAlgorithmPolicy:
    """Tests for cipher policy."""

    def test_deprecated_mode_rejected(self, gate, envelope):
        """Deprecated mode rejected."""
        envelope["algorithm"] = "AES-256-CBC"
        result = gate.validate_crypto_envelope(envelope)
        assert not result.valid
        assert any("not allowed" in e for e in result.errors)
        assert any("does not provide authenticated encryption" in e for e in result.errors)
        assert any("deprecated or insecure" in e for e in result.errors)

    def test_gcm_warnings(self, gate, envelope_factory):
        """GCM warnings."""
        result = gate.validate_crypto_envelope(gcm_envelope(envelope_factory))
        assert result.valid
        assert len(result.warnings) == 3
        assert "Ensure GCM nonces are never reused with the same key" in result.warnings

    def test_gcm_rejected_in_production(self, production_gate, envelope_factory):
        """GCM rejected in production."""
        result = production_gate.validate_crypto_envelope(gcm_envelope(envelope_factory))
        assert not result.valid
        assert "Strict mode: warnings not allowed" in result.errors

    def test_key_id_rules(self):
        """Key ID rules."""
        validator = AlgorithmValidator()
        short = validator.validate_key_id("k1")
        assert not short.valid
        assert "KeyId too short: 2 characters, minimum 8 required" in short.errors

        loose = validator.validate_key_id("my-long-key-id")
        assert loose.valid
        assert loose.warnings == [
            "KeyId format does not follow recommended key rotation pattern"
        ]

    def test_unknown_nonce_requirement_warns(self):
        """Unknown nonce requirement warns."""
        result = AlgorithmValidator().validate_nonce("Serpent", b64(16))
        assert result.valid
        assert result.warnings

    def test_nonce_with_trailing_newline(self):
        """Nonce with trailing newline."""
        result = AlgorithmValidator().validate_nonce("XChaCha20Poly1305", b64(23) + "\n")
        assert result.errors == ["nonce must be valid base64"]


class TestKdfValidation:
    """Tests for Argon2 bounds and timing estimates."""

    @pytest.mark.parametrize("field, accepted, rejected, message", [
        ("memory", 65536, 65535, "KDF memory too low"),
        ("memory", 2097152, 2097153, "KDF memory too high"),
        ("iterations", 3, 2, "KDF iterations too low"),
        ("iterations", 100, 101, "KDF iterations too high"),
        ("parallelism", 1, 0, "KDF parallelism too low"),
        ("parallelism", 32, 33, "KDF parallelism too high"),
    ])
    def test_exact_bounds(self, field, accepted, rejected, message):
        """Exact bounds."""
        params = {"algorithm": "Argon2id", "memory": 131072, "iterations": 3, "parallelism": 2}
        validator = KdfValidator()

        assert validator.validate_kdf_params({**params, field: accepted}).valid

        result = validator.validate_kdf_params({**params, field: rejected})
        assert not result.valid
        assert [e for e in result.errors if e.startswith(message)]

    def test_memory_too_low(self, gate, envelope):
        """Memory too low."""
        envelope["kdfParams"]["memory"] = 1024
        result = gate.validate_crypto_envelope(envelope)
        assert (
            "KDF memory too low: 1024KB, minimum 65536KB required for security"
            in result.errors
        )

    def test_bounds(self):
        """Every out-of-range parameter is an error."""
        result = KdfValidator().validate_kdf_params({
            "algorithm": "scrypt",
            "memory": 4194304,
            "iterations": 1000,
            "parallelism": 0,
        })
        assert not result.valid
        assert len(result.errors) == 4

    def test_argon2i_warns(self):
        """Argon2i warns."""
        result = KdfValidator().validate_kdf_params({
            "algorithm": "Argon2i",
            "memory": 131072,
            "iterations": 3,
            "parallelism": 2,
        })
        assert result.valid
        assert "Consider using Argon2id instead of Argon2i for better security" in result.warnings

    def test_derivation_estimate(self):
        """Derivation estimate."""
        params = {"memory": 65536, "iterations": 3, "parallelism": 1}
        assert KdfValidator.estimate_derivation_ms(params) == 300
        params["parallelism"] = 4
        assert KdfValidator.estimate_derivation_ms(params) == 150

    def test_timing_advisory_strict(self, envelope):
        """Timing advisory strict."""
        envelope["kdfParams"].update({"memory": 65536, "iterations": 3, "parallelism": 32})
        # 3 * 100 * 1 * 0.5 = 150ms, inside the window
        gate = CryptoGate(CryptoGateConfig(strict_mode=True, timing_attack_check=True))
        assert gate.validate_crypto_envelope(envelope).valid


class TestSecurityPolicies:
    """Tests for named policies."""

    def test_policy_table(self):
        """Policy table."""
        assert set(SECURITY_POLICIES) == {
            "production", "staging", "development", "future-proof",
        }
        assert SECURITY_POLICIES["development"]["timing_attack_check"] is False

    @pytest.mark.parametrize("policy", ["production", "staging", "development"])
    def test_compliant_envelope_passes_policy(self, gate, envelope, policy):
        """Compliant envelope passes policy."""
        result = gate.validate_security_policy(envelope, policy)
        assert result.valid
        assert result.errors == []

    def test_unknown_policy_raises(self, gate, envelope):
        """Unknown policy raises."""
        with pytest.raises(UnknownPolicyError):
            gate.validate_security_policy(envelope, "lenient")
        with pytest.raises(UnknownPolicyError):
            CryptoGate.for_policy("lenient")

    def test_future_proof_flags_quantum(self, gate, envelope):
        """Future proof flags quantum."""
        result = gate.validate_security_policy(envelope, "future-proof")
        assert not result.valid
        assert any("not quantum-resistant" in e for e in result.errors)

    def test_development_accepts_gcm(self, gate, envelope_factory):
        """Development accepts GCM."""
        result = gate.validate_security_policy(gcm_envelope(envelope_factory), "development")
        assert result.valid


class TestBatchAndReport:
    """Tests for batch validation and reporting."""

    def test_batch_summary(self, gate, envelope_factory):
        """Batch summary."""
        envelopes = [envelope_factory(), envelope_factory(salt=b64(8)), envelope_factory()]
        report = gate.validate_batch(envelopes)
        assert report.summary["total"] == 3
        assert report.summary["valid"] == 2
        assert report.summary["invalid"] == 1
        assert report.to_dict()["results"][1]["valid"] is False

    def test_batch_summary_order_independent(self, gate, envelope_factory):
        """Batch summary order independent."""
        envelopes = [envelope_factory(), envelope_factory(nonce=b64(12))]
        forward = gate.validate_batch(envelopes).summary
        backward = gate.validate_batch(list(reversed(envelopes))).summary
        assert forward == backward
        assert (forward["total"], forward["valid"], forward["invalid"]) == (2, 1, 1)

    def test_report_is_deterministic(self, gate, envelope):
        """Report is deterministic."""
        result = gate.validate_crypto_envelope(envelope)
        first = CryptoGate.generate_report(result, envelope)
        assert first == CryptoGate.generate_report(result, envelope)
        assert "VALID" in first
        assert "INVALID" not in first

    def test_report_rendering(self, gate, envelope):
        """Report rendering."""
        envelope["salt"] = b64(8)
        result = gate.validate_crypto_envelope(envelope)
        report = CryptoGate.generate_report(result, envelope)

        assert report.startswith("# Crypto Envelope Validation Report")
        assert "## Status: ❌ INVALID" in report
        assert "1. Salt too short" in report
        assert "- KDF: Argon2id (131072KB, 3 iterations)" in report
        assert "- Table: encrypted_cycle_data" in report


class TestCryptoGateExecute:
    """Tests for the gate entry point."""

    @pytest.mark.asyncio
    async def test_bare_envelope(self, gate, envelope):
        """Bare envelope."""
        result = await gate.execute(envelope)
        assert result.passed
        assert result.metadata["policy"] == "custom"

    @pytest.mark.asyncio
    async def test_policy_input(self, gate, envelope_factory):
        """Policy input."""
        result = await gate.execute({
            "envelope": gcm_envelope(envelope_factory),
            "policy": "production",
        })
        assert not result.passed
        assert result.metadata["policy"] == "production"

    @pytest.mark.asyncio
    async def test_batch_input_prefixes_messages(self, gate, envelope_factory):
        """Batch input prefixes messages."""
        result = await gate.execute({
            "envelopes": [envelope_factory(), envelope_factory(salt=b64(8))],
        })
        assert not result.passed
        assert result.errors[0].startswith("envelope[1]: Salt too short")
        assert result.metadata["batch_summary"]["invalid"] == 1

    @pytest.mark.asyncio
    async def test_unknown_policy_raises(self, gate, envelope):
        """Unknown policy raises."""
        with pytest.raises(UnknownPolicyError):
            await gate.execute({"envelope": envelope, "policy": "lenient"})

    def test_validate_config(self, gate):
        """Validate config."""
        assert gate.validate_config(gate.get_config()).valid

        bad = gate.validate_config({"strict_mode": "yes", "extra": 1})
        assert not bad.valid
        assert len(bad.errors) == 2

        odd = gate.validate_config({"strict_mode": False, "allow_warnings": False})
        assert odd.valid
        assert odd.warnings
