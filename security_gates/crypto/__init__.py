"""
Security Gates - Crypto

Envelope, algorithm and KDF validation.
"""

from .algorithm import AlgorithmValidator, base64_byte_length
from .envelope import EnvelopeValidator
from .gate import SECURITY_POLICIES, BatchValidationReport, CryptoGate
from .kdf import KdfValidator

__all__ = [
    "AlgorithmValidator",
    "BatchValidationReport",
    "CryptoGate",
    "EnvelopeValidator",
    "KdfValidator",
    "SECURITY_POLICIES",
    "base64_byte_length",
]
