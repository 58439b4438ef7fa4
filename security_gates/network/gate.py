"""
Security Gates - Network Gate

Aggregates packet capture, TLS and metadata analysis into a single
0-100 risk score.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.config import NetworkGateConfig
from ..core.gate import GateExecutionContext, GateResult, SecurityGate
from .metadata import MetadataDetector, RequestMetadata, RequestMetadataCollector
from .pcap import PcapAnalyzer, PcapPacket
from .tls import TlsInspector
from .violations import Severity

logger = logging.getLogger(__name__)

# Per-endpoint TLS risk contributions
TLS_RISK_WEIGHTS = {
    "certificate_valid": 30,
    "certificate_pinned": 10,
    "cipher_suite_secure": 25,
    "tls_version_secure": 25,
}
TLS_VULNERABILITY_RISK = 5


def pcap_risk(analysis: Mapping[str, Any]) -> float:
    score = 50 if analysis["pii_exposure_detected"] else 0
    score += 0 if analysis["encrypted_payloads_only"] else 30
    score += min(len(analysis["suspicious_packets"]) * 5, 20)
    return score


def tls_risk(inspections: List[Mapping[str, Any]]) -> float:
    total = 0
    for inspection in inspections:
        for flag, weight in TLS_RISK_WEIGHTS.items():
            if not inspection.get(flag, False):
                total += weight
        total += len(inspection.get("vulnerabilities", [])) * TLS_VULNERABILITY_RISK
    return total / len(inspections)


def _as_packet(value: Any) -> PcapPacket:
    if isinstance(value, PcapPacket):
        return value
    return PcapPacket.from_payload(
        source_ip=value.get("source_ip", "unknown"),
        destination_ip=value.get("destination_ip", "unknown"),
        payload=value.get("payload", ""),
        is_encrypted=value.get("is_encrypted"),
        timestamp=value.get("timestamp"),
    )


def _as_request(value: Any) -> RequestMetadata:
    if isinstance(value, RequestMetadata):
        return value
    return RequestMetadata.from_dict(value)


class NetworkGate(SecurityGate):
    """
    Network Security Gate.

    Components run only when enabled and given something to analyze:
    - pcap: capture files and/or in-memory packets
    - tls: live handshakes with configured endpoints
    - metadata: supplied request records, or samples of metadata endpoints

    Overall risk is the average of the component risks that ran.
    """

    name = "network"
    description = "Network traffic analysis and security validation"
    version = "1.0.0"

    def __init__(
        self,
        config: Optional[NetworkGateConfig] = None,
        pcap_analyzer: Optional[PcapAnalyzer] = None,
        tls_inspector: Optional[TlsInspector] = None,
        metadata_detector: Optional[MetadataDetector] = None,
        collector: Optional[RequestMetadataCollector] = None,
    ):
        self.config = config or NetworkGateConfig()
        self.pcap_analyzer = pcap_analyzer or PcapAnalyzer()
        self.tls_inspector = tls_inspector or TlsInspector(
            pinned_certificates=self.config.pinned_certificates,
            timeout=self.config.tls_timeout,
        )
        self.metadata_detector = metadata_detector or MetadataDetector()
        self.collector = collector or RequestMetadataCollector(timeout=self.config.tls_timeout)

    def _effective_config(self, input_data: Any) -> Tuple[NetworkGateConfig, Mapping[str, Any]]:
        overrides = input_data if isinstance(input_data, Mapping) else {}
        known = {
            key: overrides[key]
            for key in NetworkGateConfig.__dataclass_fields__
            if key in overrides
        }
        return replace(self.config, **known), overrides

    async def execute(
        self,
        input_data: Any,
        context: Optional[GateExecutionContext] = None,
    ) -> GateResult:
        config, overrides = self._effective_config(input_data)

        errors: List[str] = []
        warnings: List[str] = []
        component_risks: Dict[str, float] = {}
        metadata: Dict[str, Any] = {}
        components_passed = True

        if config.enable_pcap_analysis:
            packets = [_as_packet(p) for p in overrides.get("packets", [])]
            if config.pcap_file_paths or packets:
                result, analysis = self.analyze_pcap(config.pcap_file_paths, packets)
                components_passed &= result.valid
                errors.extend(result.errors)
                warnings.extend(result.warnings)
                metadata["pcap_results"] = analysis
                component_risks["pcap"] = pcap_risk(analysis)

        if config.enable_tls_inspection and config.tls_endpoints:
            results = await self.inspect_tls(config.tls_endpoints)
            components_passed &= all(r.valid for r in results)
            for result in results:
                errors.extend(result.errors)
                warnings.extend(result.warnings)
            inspections = [r.metadata for r in results]
            metadata["tls_results"] = inspections
            component_risks["tls"] = tls_risk(inspections)

        if config.enable_metadata_detection:
            requests = [_as_request(r) for r in overrides.get("requests", [])]
            if not requests and config.metadata_endpoints:
                requests = await self.collector.collect(config.metadata_endpoints)
            if requests:
                analysis = self.metadata_detector.analyze_request_batch(
                    requests, config.metadata_time_window
                )
                components_passed &= analysis.passed
                for violation in analysis.violations:
                    if violation.severity is Severity.HIGH:
                        errors.append(violation.description)
                    else:
                        warnings.append(violation.description)
                metadata["metadata_results"] = analysis.to_dict()
                component_risks["metadata"] = analysis.risk_score

        risk = min(100, sum(component_risks.values()) / len(component_risks)) if component_risks else 0
        risk = round(risk, 2)
        high_count = len(errors)
        total_violations = len(errors) + len(warnings)

        passed = components_passed
        if config.fail_on_high_severity and high_count > 0:
            passed = False
        if risk > config.max_risk_score:
            passed = False

        metadata.update({
            "overall_risk_score": risk,
            "component_risk_scores": component_risks,
            "total_violations": total_violations,
            "high_severity_violations": high_count,
        })

        logger.info(
            f"Network gate: {len(component_risks)} components, risk {risk}, "
            f"{high_count} high severity findings"
        )

        return GateResult(
            valid=passed,
            errors=errors,
            warnings=warnings,
            details=(
                f"Network security gate passed - {total_violations} total violations, "
                f"risk score: {risk}"
                if passed
                else f"Network security gate failed - {high_count} high severity "
                     f"violations, risk score: {risk}"
            ),
            metadata=metadata,
        )

    def analyze_pcap(
        self,
        file_paths: List[str],
        packets: List[PcapPacket],
    ) -> Tuple[GateResult, Dict[str, Any]]:
        """Analyze every capture source and merge them into one result."""
        results = [self.pcap_analyzer.analyze_file(path) for path in file_paths]
        if packets:
            results.append(self.pcap_analyzer.analyze_packets(packets))

        analyses = [r.metadata for r in results]
        merged = {
            "encrypted_payloads_only": all(a["encrypted_payloads_only"] for a in analyses),
            "pii_exposure_detected": any(a["pii_exposure_detected"] for a in analyses),
            "suspicious_packets": [p for a in analyses for p in a["suspicious_packets"]],
            "total_packets": sum(a["total_packets"] for a in analyses),
            "encrypted_packets": sum(a["encrypted_packets"] for a in analyses),
        }
        passed = all(r.valid for r in results)
        combined = GateResult(
            valid=passed,
            errors=[e for r in results for e in r.errors],
            warnings=[w for r in results for w in r.warnings],
            details=(
                f"Aggregated PCAP analysis {'passed' if passed else 'failed'} "
                f"for {len(results)} sources"
            ),
            metadata=merged,
        )
        return combined, merged

    async def inspect_tls(self, endpoints: List[Mapping[str, Any]]) -> List[GateResult]:
        return list(await asyncio.gather(*(
            self.tls_inspector.inspect_connection(
                endpoint["hostname"], int(endpoint.get("port", 443))
            )
            for endpoint in endpoints
        )))

    def get_config(self) -> Dict[str, Any]:
        return self.config.to_dict()

    def validate_config(self, config: Dict[str, Any]) -> GateResult:
        errors = []

        paths = config.get("pcap_file_paths")
        if isinstance(paths, list):
            for index, path in enumerate(paths):
                if not isinstance(path, str):
                    errors.append(f"pcap_file_paths[{index}] must be a string")
        elif paths is not None:
            errors.append("pcap_file_paths must be a list")

        endpoints = config.get("tls_endpoints")
        if isinstance(endpoints, list):
            for index, endpoint in enumerate(endpoints):
                if not isinstance(endpoint, Mapping) or not isinstance(
                    endpoint.get("hostname"), str
                ):
                    errors.append(f"tls_endpoints[{index}] must have a hostname")

        max_risk = config.get("max_risk_score")
        if max_risk is not None and (
            isinstance(max_risk, bool)
            or not isinstance(max_risk, (int, float))
            or max_risk < 0
        ):
            errors.append("max_risk_score must be a non-negative number")

        return GateResult(
            valid=not errors,
            errors=errors,
            details=(
                "Network gate configuration validation failed"
                if errors
                else "Configuration is valid"
            ),
        )
