"""
Security Gates - Network

Packet capture, TLS and request-metadata analysis.
"""

from .gate import NetworkGate
from .metadata import MetadataDetector, RequestMetadata, RequestMetadataCollector
from .pcap import PcapAnalyzer, PcapPacket
from .tls import CertificateDetails, TlsInspector
from .violations import NetworkViolation, Severity

__all__ = [
    "CertificateDetails",
    "MetadataDetector",
    "NetworkGate",
    "NetworkViolation",
    "PcapAnalyzer",
    "PcapPacket",
    "RequestMetadata",
    "RequestMetadataCollector",
    "Severity",
    "TlsInspector",
]
