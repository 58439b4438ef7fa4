"""
Encryption algorithm, salt, nonce and key identifier validation.
"""

import re
from typing import Dict, Iterable, Mapping, Optional

from ..core.gate import ValidationResult

ALLOWED_ALGORITHMS = (
    "XChaCha20Poly1305",
    "ChaCha20Poly1305",
    "AES-256-GCM",
    "AES-256-GCM-96",
    "AES-256-GCM-128",
)

AUTHENTICATED_ALGORITHMS = frozenset(ALLOWED_ALGORITHMS)

# Required nonce size in bytes per cipher
NONCE_LENGTHS: Dict[str, int] = {
    "XChaCha20Poly1305": 24,
    "ChaCha20Poly1305": 12,
    "AES-256-GCM": 12,
    "AES-256-GCM-96": 12,
    "AES-256-GCM-128": 16,
}

DEPRECATED_MODES = ("AES-256-CBC", "AES-256-ECB", "DES", "3DES")

# None of the allowed symmetric AEAD ciphers is post-quantum
QUANTUM_RESISTANT_ALGORITHMS: frozenset = frozenset()

MIN_SALT_LENGTH = 32
MIN_KEY_ID_LENGTH = 8

KEY_ID_PATTERN = re.compile(r"v\d+_\d{8}_[a-fA-F0-9]{6,}")
BASE64_PATTERN = re.compile(r"[A-Za-z0-9+/]*={0,2}")


def base64_byte_length(value: str) -> int:
    """Decoded size of a base64 string, without decoding it."""
    padding = len(value) - len(value.rstrip("="))
    return (len(value) * 3) // 4 - padding


class AlgorithmValidator:
    """Validates the cipher and its per-message parameters."""

    def __init__(
        self,
        allowed_algorithms: Optional[Iterable[str]] = None,
        nonce_lengths: Optional[Mapping[str, int]] = None,
        min_salt_length: int = MIN_SALT_LENGTH,
        min_key_id_length: int = MIN_KEY_ID_LENGTH,
    ):
        self.allowed_algorithms = tuple(allowed_algorithms or ALLOWED_ALGORITHMS)
        self.nonce_lengths = dict(nonce_lengths or NONCE_LENGTHS)
        self.min_salt_length = min_salt_length
        self.min_key_id_length = min_key_id_length

    def validate_algorithm(self, algorithm: str) -> ValidationResult:
        result = ValidationResult()

        if algorithm not in self.allowed_algorithms:
            result.add_error(
                f"Encryption algorithm '{algorithm}' not allowed. "
                f"Allowed: {', '.join(self.allowed_algorithms)}"
            )
            return result

        if algorithm != "XChaCha20Poly1305":
            result.add_warning(
                "Consider XChaCha20Poly1305 for optimal performance and large nonce space"
            )
        if algorithm.startswith("AES-256"):
            result.add_warning(
                "AES-256 performance depends on hardware acceleration availability"
            )
        if "GCM" in algorithm:
            result.add_warning("Ensure GCM nonces are never reused with the same key")

        return result

    def validate_encryption_mode(self, algorithm: str) -> ValidationResult:
        """Require AEAD and reject deprecated block modes."""
        result = ValidationResult()

        if algorithm not in AUTHENTICATED_ALGORITHMS:
            result.add_error(
                f"Algorithm '{algorithm}' does not provide authenticated encryption"
            )

        if any(mode in algorithm for mode in DEPRECATED_MODES):
            result.add_error(
                f"Algorithm '{algorithm}' uses deprecated or insecure encryption mode"
            )

        return result

    def validate_salt(self, salt: str) -> ValidationResult:
        result = ValidationResult()
        if not BASE64_PATTERN.fullmatch(salt):
            result.add_error("salt must be valid base64")
            return result

        salt_bytes = base64_byte_length(salt)
        if salt_bytes < self.min_salt_length:
            result.add_error(
                f"Salt too short: {salt_bytes} bytes, "
                f"minimum {self.min_salt_length} bytes required"
            )
        return result

    def validate_nonce(self, algorithm: str, nonce: str) -> ValidationResult:
        """
        Check the nonce matches the cipher's required size.

        An algorithm with no known size only produces a warning here; the
        algorithm check reports whether it is allowed at all.
        """
        result = ValidationResult()
        expected = self.nonce_lengths.get(algorithm)

        if expected is None:
            result.add_warning(
                f"Unknown nonce length requirement for algorithm '{algorithm}'"
            )
            return result

        if not BASE64_PATTERN.fullmatch(nonce):
            result.add_error("nonce must be valid base64")
            return result

        nonce_bytes = base64_byte_length(nonce)
        if nonce_bytes != expected:
            result.add_error(
                f"Nonce length mismatch for {algorithm}: "
                f"got {nonce_bytes} bytes, expected {expected} bytes"
            )
        return result

    def validate_key_id(self, key_id: str) -> ValidationResult:
        result = ValidationResult()

        if len(key_id) < self.min_key_id_length:
            result.add_error(
                f"KeyId too short: {len(key_id)} characters, "
                f"minimum {self.min_key_id_length} required"
            )

        if not KEY_ID_PATTERN.fullmatch(key_id):
            result.add_warning(
                "KeyId format does not follow recommended key rotation pattern"
            )

        return result

    def validate_crypto_parameters(
        self,
        algorithm: str,
        salt: str,
        nonce: str,
        key_id: str,
    ) -> ValidationResult:
        """Run every per-parameter check and combine the results."""
        result = ValidationResult()
        result.merge(self.validate_algorithm(algorithm))
        result.merge(self.validate_encryption_mode(algorithm))
        result.merge(self.validate_salt(salt))
        result.merge(self.validate_nonce(algorithm, nonce))
        result.merge(self.validate_key_id(key_id))
        return result

    def validate_quantum_resistance(self, algorithm: str) -> ValidationResult:
        result = ValidationResult()
        if algorithm not in QUANTUM_RESISTANT_ALGORITHMS:
            result.add_warning(
                f"Algorithm '{algorithm}' is not quantum-resistant. "
                "Consider post-quantum alternatives when available."
            )
        return result
