"""
Security Gates - TLS Inspector

Live TLS handshake inspection and certificate checks: protocol version,
cipher suite, certificate validity and pinning.
"""

import asyncio
import logging
import math
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa

from ..core.gate import GateResult, utcnow
from .violations import NetworkViolation, Severity

logger = logging.getLogger(__name__)

SECURE_PROTOCOLS = ("TLSv1.3", "TLSv1.2", "TLS 1.3", "TLS 1.2")

SECURE_CIPHER_SUITES = (
    "TLS_AES_256_GCM_SHA384",
    "TLS_CHACHA20_POLY1305_SHA256",
    "TLS_AES_128_GCM_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384",
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256",
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256",
    # OpenSSL names for the TLS 1.2 suites above
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-RSA-AES128-GCM-SHA256",
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-ECDSA-AES128-GCM-SHA256",
)

MIN_RSA_KEY_SIZE = 2048
WEAK_SIGNATURE_HASHES = ("md5", "sha1")
EXPIRY_WARNING_DAYS = 30


@dataclass
class CertificateDetails:
    """Fields of an X.509 certificate relevant to inspection."""
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    serial_number: str
    fingerprint: str
    key_algorithm: str
    key_size: int
    signature_algorithm: str
    san: List[str] = field(default_factory=list)

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "CertificateDetails":
        public_key = cert.public_key()
        if isinstance(public_key, rsa.RSAPublicKey):
            key_algorithm, key_size = "RSA", public_key.key_size
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            key_algorithm, key_size = "EC", public_key.key_size
        elif isinstance(public_key, ed25519.Ed25519PublicKey):
            key_algorithm, key_size = "Ed25519", 256
        elif isinstance(public_key, ed448.Ed448PublicKey):
            key_algorithm, key_size = "Ed448", 456
        else:
            key_algorithm, key_size = type(public_key).__name__, 0

        signature_hash = cert.signature_hash_algorithm
        signature_algorithm = signature_hash.name if signature_hash else key_algorithm.lower()

        san: List[str] = []
        try:
            san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
            san = list(san_ext.value.get_values_for_type(x509.DNSName))
            san += [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
        except x509.ExtensionNotFound:
            pass

        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            serial_number=format(cert.serial_number, "X"),
            fingerprint=f"SHA256:{cert.fingerprint(hashes.SHA256()).hex().upper()}",
            key_algorithm=key_algorithm,
            key_size=key_size,
            signature_algorithm=signature_algorithm,
            san=san,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if not self.not_before <= now <= self.not_after:
            return False
        if self.key_algorithm == "RSA" and self.key_size < MIN_RSA_KEY_SIZE:
            return False
        signature = self.signature_algorithm.lower()
        return not any(weak in signature for weak in WEAK_SIGNATURE_HASHES)

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        remaining = self.not_after - (now or utcnow())
        return math.ceil(remaining.total_seconds() / 86400)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "not_before": self.not_before.isoformat(),
            "not_after": self.not_after.isoformat(),
            "serial_number": self.serial_number,
            "fingerprint": self.fingerprint,
            "key_algorithm": self.key_algorithm,
            "key_size": self.key_size,
            "signature_algorithm": self.signature_algorithm,
            "san": list(self.san),
        }


@dataclass
class TlsConnectionInfo:
    """What a handshake revealed about an endpoint."""
    tls_version: str
    cipher_suite: str
    certificate: CertificateDetails
    certificate_valid: bool
    certificate_pinned: bool
    cipher_suite_secure: bool
    tls_version_secure: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tls_version": self.tls_version,
            "cipher_suite": self.cipher_suite,
            "certificate_valid": self.certificate_valid,
            "certificate_pinned": self.certificate_pinned,
            "cipher_suite_secure": self.cipher_suite_secure,
            "tls_version_secure": self.tls_version_secure,
            "certificate": self.certificate.to_dict(),
        }


def _failed_connection_metadata() -> Dict[str, Any]:
    return {
        "certificate_valid": False,
        "certificate_pinned": False,
        "cipher_suite_secure": False,
        "tls_version_secure": False,
        "vulnerabilities": [],
    }


class TlsInspector:
    """
    TLS endpoint inspector.

    Certificates are validated here rather than by the ssl module, so a
    handshake completes even for endpoints with bad certificates.
    """

    def __init__(
        self,
        pinned_certificates: Optional[Dict[str, List[str]]] = None,
        timeout: float = 10.0,
    ):
        self.timeout = timeout
        self._pinned: Dict[str, List[str]] = {
            host: list(fingerprints)
            for host, fingerprints in (pinned_certificates or {}).items()
        }

    def add_pinned_certificate(self, hostname: str, fingerprint: str) -> None:
        self._pinned.setdefault(hostname, []).append(fingerprint)

    def remove_pinned_certificate(self, hostname: str, fingerprint: str) -> None:
        remaining = [fp for fp in self._pinned.get(hostname, []) if fp != fingerprint]
        if remaining:
            self._pinned[hostname] = remaining
        else:
            self._pinned.pop(hostname, None)

    def get_pinned_certificates(self, hostname: str) -> List[str]:
        return list(self._pinned.get(hostname, []))

    def is_certificate_pinned(self, hostname: str, fingerprint: str) -> bool:
        return fingerprint.upper() in (fp.upper() for fp in self._pinned.get(hostname, []))

    @staticmethod
    def is_cipher_suite_secure(cipher_suite: str) -> bool:
        return cipher_suite in SECURE_CIPHER_SUITES

    @staticmethod
    def is_tls_version_secure(tls_version: str) -> bool:
        return tls_version in SECURE_PROTOCOLS

    async def _handshake(self, hostname: str, port: int) -> Tuple[bytes, str, str]:
        """Connect and return (DER certificate, protocol version, cipher name)."""
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(hostname, port, ssl=context, server_hostname=hostname),
            timeout=self.timeout,
        )
        try:
            ssl_object = writer.get_extra_info("ssl_object")
            der = ssl_object.getpeercert(binary_form=True)
            version = ssl_object.version() or ""
            cipher = ssl_object.cipher()
            return der, version, cipher[0] if cipher else ""
        finally:
            writer.close()
            await writer.wait_closed()

    async def analyze_connection(self, hostname: str, port: int = 443) -> TlsConnectionInfo:
        der, version, cipher = await self._handshake(hostname, port)
        if not der:
            raise ValueError("Server presented no certificate")

        certificate = CertificateDetails.from_x509(x509.load_der_x509_certificate(der))
        return TlsConnectionInfo(
            tls_version=version,
            cipher_suite=cipher,
            certificate=certificate,
            certificate_valid=certificate.is_valid(),
            certificate_pinned=self.is_certificate_pinned(hostname, certificate.fingerprint),
            cipher_suite_secure=self.is_cipher_suite_secure(cipher),
            tls_version_secure=self.is_tls_version_secure(version),
        )

    def identify_violations(
        self,
        info: TlsConnectionInfo,
        now: Optional[datetime] = None,
    ) -> List[NetworkViolation]:
        violations = []

        if not info.certificate_valid:
            violations.append(NetworkViolation(
                "CERTIFICATE_INVALID", Severity.HIGH, "Certificate validation failed",
            ))
        if not info.certificate_pinned:
            violations.append(NetworkViolation(
                "CERTIFICATE_NOT_PINNED", Severity.MEDIUM,
                "Certificate is not pinned for additional security",
            ))
        if not info.cipher_suite_secure:
            violations.append(NetworkViolation(
                "WEAK_CIPHER", Severity.HIGH, "Insecure cipher suite detected",
                {"cipher_suite": info.cipher_suite},
            ))
        if not info.tls_version_secure:
            violations.append(NetworkViolation(
                "WEAK_TLS_VERSION", Severity.HIGH, "Insecure TLS version detected",
                {"tls_version": info.tls_version},
            ))

        days = info.certificate.days_until_expiry(now)
        if days <= 0:
            violations.append(NetworkViolation(
                "CERTIFICATE_EXPIRED", Severity.HIGH, "Certificate has expired",
            ))
        elif days < EXPIRY_WARNING_DAYS:
            violations.append(NetworkViolation(
                "CERTIFICATE_EXPIRED", Severity.MEDIUM, f"Certificate expires in {days} days",
            ))

        return violations

    def build_result(
        self,
        info: TlsConnectionInfo,
        hostname: str,
        port: int,
        now: Optional[datetime] = None,
    ) -> GateResult:
        violations = self.identify_violations(info, now)
        high = [v for v in violations if v.severity is Severity.HIGH]
        passed = (
            info.certificate_valid
            and info.certificate_pinned
            and info.cipher_suite_secure
            and info.tls_version_secure
            and not high
        )

        metadata = info.to_dict()
        metadata["violations"] = [v.to_dict() for v in violations]
        metadata["vulnerabilities"] = []

        return GateResult(
            valid=passed,
            errors=[v.description for v in high],
            warnings=[v.description for v in violations if v.severity is not Severity.HIGH],
            details=(
                f"TLS inspection passed for {hostname}:{port}"
                if passed
                else f"TLS inspection failed for {hostname}:{port} - "
                     f"{len(violations)} violations found"
            ),
            metadata=metadata,
        )

    async def inspect_connection(self, hostname: str, port: int = 443) -> GateResult:
        """Handshake with an endpoint and evaluate what it presented."""
        try:
            info = await self.analyze_connection(hostname, port)
        except (OSError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"TLS inspection failed for {hostname}:{port}: {e}")
            return GateResult(
                valid=False,
                errors=[
                    f"TLS inspection failed for {hostname}:{port}: {e or type(e).__name__}",
                    "Failed to establish TLS connection",
                ],
                details="TLS inspection failed due to connection error",
                metadata=_failed_connection_metadata(),
            )

        logger.info(
            f"TLS {hostname}:{port}: {info.tls_version} {info.cipher_suite}, "
            f"certificate {info.certificate.fingerprint}"
        )
        return self.build_result(info, hostname, port)

    def inspect_certificate_file(self, certificate_path: str) -> GateResult:
        """Validate a PEM certificate on disk. Pinning cannot be checked here."""
        try:
            pem_data = Path(certificate_path).read_bytes()
            certificate = CertificateDetails.from_x509(
                x509.load_pem_x509_certificate(pem_data)
            )
        except (OSError, ValueError) as e:
            return GateResult(
                valid=False,
                errors=[
                    f"Certificate inspection failed for {certificate_path}: {e}",
                    "Failed to parse certificate file",
                ],
                details="Certificate inspection failed due to parsing error",
                metadata=_failed_connection_metadata(),
            )

        valid = certificate.is_valid()
        errors = [] if valid else ["Certificate validation failed"]
        return GateResult(
            valid=valid,
            errors=errors,
            details=(
                f"Certificate validation passed for {certificate_path}"
                if valid
                else f"Certificate validation failed for {certificate_path} - "
                     f"{len(errors)} violations found"
            ),
            metadata={
                "certificate_valid": valid,
                "certificate_pinned": False,
                "cipher_suite_secure": True,
                "tls_version_secure": True,
                "certificate": certificate.to_dict(),
                "vulnerabilities": [],
            },
        )
