"""
Security Gates - Packet Capture Analyzer

Checks captured traffic for plaintext health data, PII and payloads
that are not encrypted.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..core.gate import GateResult
from .violations import NetworkViolation, Severity

logger = logging.getLogger(__name__)

PII_PATTERNS = [
    # Health data
    re.compile(r"menstrual|period|cycle|ovulation|pregnancy", re.IGNORECASE),
    re.compile(r"contraceptive|birth\s*control|pill", re.IGNORECASE),
    re.compile(r"symptom|pain|cramp|mood", re.IGNORECASE),
    re.compile(r"temperature|weight|blood\s*pressure", re.IGNORECASE),
    re.compile(r"medical|health|doctor|physician", re.IGNORECASE),
    # Personal identifiers
    re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
    re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    re.compile(r"\b\d{3}-?\d{3}-?\d{4}\b"),
    # Device identifiers must only travel as salted hashes
    re.compile(r"device[_-]?id|unique[_-]?id|identifier", re.IGNORECASE),
]

HEALTH_PATTERNS = [
    re.compile(r"menstrual|period|cycle|ovulation", re.IGNORECASE),
    re.compile(r"pregnancy|contraceptive|fertility", re.IGNORECASE),
    re.compile(r"symptom|pain|cramp|mood|energy", re.IGNORECASE),
    re.compile(r"temperature|basal|bbt", re.IGNORECASE),
    re.compile(r"flow|heavy|light|spotting", re.IGNORECASE),
]

ENCRYPTED_INDICATORS = [
    "application/x-encrypted",
    "application/octet-stream",
    "content-encoding: gzip",
    "content-type: application/json",
]

SUSPICIOUS_HEADERS = [
    "x-real-ip",
    "x-forwarded-for",
    "user-agent",
    "x-device-id",
    "authorization",
]

_BASE64_LINE = re.compile(r"^[A-Za-z0-9+/]+=*$")
_ENCRYPTED_KEY_MARKERS = ("encrypted", "cipher", "envelope")


def is_payload_encrypted(payload: str) -> bool:
    lowered = payload.lower()
    if any(indicator in lowered for indicator in ENCRYPTED_INDICATORS):
        return True

    for line in payload.split("\n"):
        if len(line) > 20 and _BASE64_LINE.match(line.strip()):
            return True

    try:
        document = json.loads(payload)
    except ValueError:
        return False

    if isinstance(document, dict):
        return any(
            marker in key
            for key in document
            for marker in _ENCRYPTED_KEY_MARKERS
        )
    return False


def contains_pii(payload: str) -> bool:
    return any(pattern.search(payload) for pattern in PII_PATTERNS)


def contains_health_data(payload: str) -> bool:
    return any(pattern.search(payload) for pattern in HEALTH_PATTERNS)


@dataclass
class PcapPacket:
    """One captured packet."""
    timestamp: float
    source_ip: str
    destination_ip: str
    payload: str
    protocol: str = "TCP"
    is_encrypted: bool = False
    contains_pii: bool = False
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(
        cls,
        source_ip: str,
        destination_ip: str,
        payload: str,
        is_encrypted: Optional[bool] = None,
        timestamp: Optional[float] = None,
    ) -> "PcapPacket":
        """Build a packet, classifying the payload unless told otherwise."""
        return cls(
            timestamp=time.time() if timestamp is None else timestamp,
            source_ip=source_ip,
            destination_ip=destination_ip,
            payload=payload,
            is_encrypted=is_payload_encrypted(payload) if is_encrypted is None else is_encrypted,
            contains_pii=contains_pii(payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "source_ip": self.source_ip,
            "destination_ip": self.destination_ip,
            "protocol": self.protocol,
            "payload_length": len(self.payload),
            "is_encrypted": self.is_encrypted,
            "contains_pii": self.contains_pii,
            "warnings": list(self.warnings),
        }


@dataclass
class PcapAnalysis:
    """Aggregate view of a packet set."""
    encrypted_payloads_only: bool
    pii_exposure_detected: bool
    suspicious_packets: List[PcapPacket]
    total_packets: int
    encrypted_packets: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encrypted_payloads_only": self.encrypted_payloads_only,
            "pii_exposure_detected": self.pii_exposure_detected,
            "suspicious_packets": [p.to_dict() for p in self.suspicious_packets],
            "total_packets": self.total_packets,
            "encrypted_packets": self.encrypted_packets,
        }


def _failed_analysis() -> Dict[str, Any]:
    return PcapAnalysis(
        encrypted_payloads_only=False,
        pii_exposure_detected=True,
        suspicious_packets=[],
        total_packets=0,
        encrypted_packets=0,
    ).to_dict()


class PcapAnalyzer:
    """
    Packet capture analyzer.

    Reads a line-oriented capture export, one packet per line:
    ``<timestamp> <source>-><destination> <payload>``
    """

    def analyze_file(self, file_path: str) -> GateResult:
        path = Path(file_path)
        if not path.exists():
            logger.warning(f"PCAP file not found: {file_path}")
            return GateResult.failure(
                f"PCAP file not found: {file_path}",
                details="PCAP analysis failed - file not found",
                metadata=_failed_analysis(),
            )

        try:
            packets = self.parse_capture(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"PCAP analysis failed for {file_path}: {e}")
            return GateResult.failure(
                f"PCAP analysis failed: {e}",
                details="PCAP analysis failed due to an error",
                metadata=_failed_analysis(),
            )

        logger.info(f"Parsed {len(packets)} packets from {file_path}")
        return self.analyze_packets(packets)

    def parse_capture(self, data: str) -> List[PcapPacket]:
        packets = []
        for line in data.splitlines():
            line = line.strip()
            if "->" not in line:
                continue
            packet = self._parse_line(line)
            if packet is not None:
                packets.append(packet)
        return packets

    def _parse_line(self, line: str) -> Optional[PcapPacket]:
        parts = line.split(" ")
        if len(parts) < 3:
            return None

        timestamp_text, connection, *payload_parts = parts
        source, _, destination = connection.partition("->")
        try:
            timestamp = float(timestamp_text)
        except ValueError:
            timestamp = time.time()

        return PcapPacket.from_payload(
            source_ip=source.strip() or "unknown",
            destination_ip=destination.strip() or "unknown",
            payload=" ".join(payload_parts),
            timestamp=timestamp,
        )

    def analyze_packets(self, packets: Iterable[PcapPacket]) -> GateResult:
        """Analyze packets already in memory."""
        packets = list(packets)
        analysis = self.summarize(packets)
        violations = self.identify_violations(packets)

        passed = (
            analysis.encrypted_payloads_only
            and not analysis.pii_exposure_detected
            and not violations
        )

        errors = [v.description for v in violations if v.severity is Severity.HIGH]
        warnings = [v.description for v in violations if v.severity is not Severity.HIGH]

        metadata = analysis.to_dict()
        metadata["violations"] = [v.to_dict() for v in violations]

        return GateResult(
            valid=passed,
            errors=errors,
            warnings=warnings,
            details=(
                "Network traffic analysis passed - all payloads encrypted, "
                "no PII exposure detected"
                if passed
                else f"Network traffic analysis failed - {len(violations)} violations found"
            ),
            metadata=metadata,
        )

    def summarize(self, packets: List[PcapPacket]) -> PcapAnalysis:
        encrypted = 0
        pii_detected = False
        suspicious: List[PcapPacket] = []

        for packet in packets:
            if packet.is_encrypted:
                encrypted += 1

            if packet.contains_pii:
                pii_detected = True
                suspicious.append(self._flag(packet, "PII detected in payload"))

            if contains_health_data(packet.payload) and not packet.is_encrypted:
                suspicious.append(self._flag(packet, "Unencrypted health data detected"))

        return PcapAnalysis(
            encrypted_payloads_only=not packets or encrypted == len(packets),
            pii_exposure_detected=pii_detected,
            suspicious_packets=suspicious,
            total_packets=len(packets),
            encrypted_packets=encrypted,
        )

    @staticmethod
    def _flag(packet: PcapPacket, warning: str) -> PcapPacket:
        return PcapPacket(
            timestamp=packet.timestamp,
            source_ip=packet.source_ip,
            destination_ip=packet.destination_ip,
            payload=packet.payload,
            protocol=packet.protocol,
            is_encrypted=packet.is_encrypted,
            contains_pii=packet.contains_pii,
            warnings=packet.warnings + [warning],
        )

    def identify_violations(self, packets: List[PcapPacket]) -> List[NetworkViolation]:
        violations = []

        for packet in packets:
            where = {"source_ip": packet.source_ip, "destination_ip": packet.destination_ip}

            if contains_health_data(packet.payload) and not packet.is_encrypted:
                violations.append(NetworkViolation(
                    "PLAINTEXT_HEALTH_DATA",
                    Severity.HIGH,
                    "Health data transmitted in plaintext violates zero-knowledge architecture",
                    where,
                ))

            if not packet.is_encrypted and packet.payload:
                violations.append(NetworkViolation(
                    "UNENCRYPTED_PAYLOAD",
                    Severity.MEDIUM,
                    "Unencrypted payload detected in network traffic",
                    where,
                ))

            if packet.contains_pii:
                violations.append(NetworkViolation(
                    "PII_IN_HEADERS",
                    Severity.HIGH,
                    "Personally Identifiable Information detected in network traffic",
                    where,
                ))

            if self._has_suspicious_metadata(packet):
                violations.append(NetworkViolation(
                    "SUSPICIOUS_METADATA",
                    Severity.LOW,
                    "Suspicious metadata patterns that could enable tracking",
                    where,
                ))

        return violations

    @staticmethod
    def _has_suspicious_metadata(packet: PcapPacket) -> bool:
        size = len(packet.payload)
        if 0 < size < 10 or size > 50000:
            return True
        lowered = packet.payload.lower()
        return any(header in lowered for header in SUSPICIOUS_HEADERS)
