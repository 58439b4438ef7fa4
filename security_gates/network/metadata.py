"""
Security Gates - Metadata Leakage Detector

Looks for side channels in request metadata that can reveal what a user
is doing even when payloads are encrypted: timing, sizes, headers,
access sequences and fingerprinting.
"""

import asyncio
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import parse_qsl, urlsplit

import aiohttp
import numpy as np

from .violations import NetworkViolation, Severity

logger = logging.getLogger(__name__)

SUSPICIOUS_HEADERS = (
    "x-real-ip",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-client-ip",
    "cf-connecting-ip",
    "x-device-id",
    "x-session-id",
    "x-user-id",
    "x-tracking-id",
    "x-correlation-id",
)

TRACKING_PATTERNS = [
    re.compile(r"utm_[a-z]+", re.IGNORECASE),
    re.compile(r"fbclid", re.IGNORECASE),
    re.compile(r"gclid", re.IGNORECASE),
    re.compile(r"_ga|_gid", re.IGNORECASE),
    re.compile(r"session[_-]?id", re.IGNORECASE),
    re.compile(r"device[_-]?id", re.IGNORECASE),
    re.compile(r"user[_-]?id", re.IGNORECASE),
    re.compile(r"track[_-]?id", re.IGNORECASE),
]

SENSITIVE_PATH_PATTERNS = [
    re.compile(r"/api/health", re.IGNORECASE),
    re.compile(r"/api/cycle", re.IGNORECASE),
    re.compile(r"/api/symptoms", re.IGNORECASE),
    re.compile(r"/api/fertility", re.IGNORECASE),
    re.compile(r"/api/pregnancy", re.IGNORECASE),
    re.compile(r"/api/contraception", re.IGNORECASE),
]

FINGERPRINTING_ENDPOINTS = (
    "/api/fingerprint",
    "/api/device",
    "/api/browser",
    "/api/capabilities",
)

_UUID_SEGMENT = re.compile(
    r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_NUMERIC_SEGMENT = re.compile(r"/\d+")

SEQUENCE_WINDOW_MS = 5000
MAX_PASSING_RISK = 70

_TYPE_WEIGHTS = {"TIMING": 2, "SIZE": 2}

_VIOLATION_TYPES = {
    "TIMING": "TIMING_LEAK",
    "SIZE": "SIZE_LEAK",
    "HEADER": "HEADER_LEAK",
    "SEQUENCE": "TRACKING_SIGNAL",
    "FINGERPRINT": "TRACKING_SIGNAL",
}


def is_sensitive_path(path: str) -> bool:
    return any(pattern.search(path) for pattern in SENSITIVE_PATH_PATTERNS)


def _matches_tracking(value: str) -> bool:
    return any(pattern.search(value) for pattern in TRACKING_PATTERNS)


def normalize_path(path: str) -> str:
    """Collapse ids in a path so requests to the same endpoint group together."""
    base = path.split("?", 1)[0]
    base = _UUID_SEGMENT.sub("/{uuid}", base)
    return _NUMERIC_SEGMENT.sub("/{id}", base)


@dataclass
class RequestMetadata:
    """Observable metadata of one request. Times are in milliseconds."""
    timestamp: float
    path: str
    size: int = 1024
    duration: float = 100.0
    headers: Dict[str, str] = field(default_factory=lambda: {
        "Content-Type": "application/json",
        "User-Agent": "Mozilla/5.0 (compatible; Aura-App)",
    })
    method: str = "GET"
    status_code: int = 200
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestMetadata":
        return cls(
            timestamp=data["timestamp"],
            path=data["path"],
            size=data.get("size", 0),
            duration=data.get("duration", 0.0),
            headers=dict(data.get("headers", {})),
            method=data.get("method", "GET"),
            status_code=data.get("status_code", 200),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
        )

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


@dataclass
class MetadataPattern:
    """A detected leakage pattern."""
    type: str
    severity: Severity
    description: str
    occurrences: int
    examples: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "occurrences": self.occurrences,
            "examples": list(self.examples),
        }


@dataclass
class MetadataAnalysis:
    """Outcome of analyzing a set of requests."""
    passed: bool
    message: str
    risk_score: float = 0
    patterns: List[MetadataPattern] = field(default_factory=list)
    violations: List[NetworkViolation] = field(default_factory=list)
    tracking_signals_found: List[str] = field(default_factory=list)

    @property
    def timing_patterns_detected(self) -> bool:
        return any(p.type == "TIMING" for p in self.patterns)

    @property
    def size_patterns_detected(self) -> bool:
        return any(p.type == "SIZE" for p in self.patterns)

    @property
    def header_leakage_detected(self) -> bool:
        return any(p.type == "HEADER" for p in self.patterns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "message": self.message,
            "risk_score": self.risk_score,
            "timing_patterns_detected": self.timing_patterns_detected,
            "size_patterns_detected": self.size_patterns_detected,
            "header_leakage_detected": self.header_leakage_detected,
            "tracking_signals_found": list(self.tracking_signals_found),
            "patterns": [p.to_dict() for p in self.patterns],
            "violations": [v.to_dict() for v in self.violations],
        }


class MetadataDetector:
    """Detects metadata leakage patterns in request logs."""

    def analyze_metadata(self, requests: List[RequestMetadata]) -> MetadataAnalysis:
        if not requests:
            return MetadataAnalysis(passed=True, message="No requests to analyze")

        patterns = self.detect_patterns(requests)
        return self._evaluate(
            requests,
            patterns,
            passed_message="Metadata analysis passed - no significant leakage patterns detected",
            failed_prefix="Metadata analysis failed",
        )

    def analyze_request_batch(
        self,
        requests: List[RequestMetadata],
        time_window: float = 60000,
    ) -> MetadataAnalysis:
        """Analyze requests window by window, then score the union of patterns."""
        if not requests:
            return MetadataAnalysis(passed=True, message="No requests to analyze")

        patterns: List[MetadataPattern] = []
        for group in self.group_by_time(requests, time_window):
            patterns.extend(self.detect_patterns(group))

        return self._evaluate(
            requests,
            patterns,
            passed_message="Batch metadata analysis passed",
            failed_prefix="Batch metadata analysis failed",
        )

    def _evaluate(
        self,
        requests: List[RequestMetadata],
        patterns: List[MetadataPattern],
        passed_message: str,
        failed_prefix: str,
    ) -> MetadataAnalysis:
        violations = [
            NetworkViolation(
                _VIOLATION_TYPES[p.type],
                p.severity,
                p.description,
                {"pattern": p.type, "occurrences": p.occurrences},
            )
            for p in patterns
        ]
        risk_score = self.calculate_risk_score(patterns)
        has_high = any(v.severity is Severity.HIGH for v in violations)
        passed = not has_high and risk_score < MAX_PASSING_RISK

        return MetadataAnalysis(
            passed=passed,
            message=(
                passed_message
                if passed
                else f"{failed_prefix} - {len(violations)} violations found "
                     f"with risk score {risk_score}"
            ),
            risk_score=risk_score,
            patterns=patterns,
            violations=violations,
            tracking_signals_found=self.extract_tracking_signals(requests),
        )

    def detect_patterns(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        patterns = []
        patterns.extend(self.detect_timing_patterns(requests))
        patterns.extend(self.detect_size_patterns(requests))
        patterns.extend(self.detect_header_leakage(requests))
        patterns.extend(self.detect_sequence_patterns(requests))
        patterns.extend(self.detect_fingerprinting(requests))
        return patterns

    def detect_timing_patterns(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        patterns = []
        ordered = sorted(requests, key=lambda r: r.timestamp)
        intervals = np.diff([r.timestamp for r in ordered])

        if intervals.size > 5:
            average = float(intervals.mean())
            consistent = int(np.sum(np.abs(intervals - average) < average * 0.1))
            if consistent > intervals.size * 0.8:
                patterns.append(MetadataPattern(
                    "TIMING",
                    Severity.MEDIUM,
                    f"Regular polling pattern detected ({round(average)}ms intervals)",
                    consistent,
                    [f"Average interval: {round(average)}ms"],
                ))

        sensitive = [r.duration for r in requests if is_sensitive_path(r.path)]
        normal = [r.duration for r in requests if not is_sensitive_path(r.path)]
        if sensitive and normal:
            sensitive_avg = float(np.mean(sensitive))
            normal_avg = float(np.mean(normal))
            if abs(sensitive_avg - normal_avg) > 100:
                patterns.append(MetadataPattern(
                    "TIMING",
                    Severity.HIGH,
                    "Timing differences between sensitive and normal requests detected",
                    len(sensitive),
                    [
                        f"Sensitive requests: {round(sensitive_avg)}ms avg",
                        f"Normal requests: {round(normal_avg)}ms avg",
                    ],
                ))

        return patterns

    def detect_size_patterns(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        patterns = []
        groups: Dict[str, List[int]] = defaultdict(list)
        for request in requests:
            groups[normalize_path(request.path)].append(request.size)

        for path, sizes in groups.items():
            if len(sizes) < 5:
                continue

            data = np.asarray(sizes, dtype=float)
            average = float(data.mean())
            variance = float(data.var())

            if variance < average * 0.01 and average > 100:
                patterns.append(MetadataPattern(
                    "SIZE",
                    Severity.MEDIUM,
                    f"Consistent response sizes detected for {path}",
                    len(sizes),
                    [f"Average size: {round(average)} bytes", f"Variance: {round(variance)}"],
                ))

            if is_sensitive_path(path):
                distinct = len(set(sizes))
                if distinct < len(sizes) * 0.5:
                    patterns.append(MetadataPattern(
                        "SIZE",
                        Severity.HIGH,
                        f"Limited response size variation for sensitive endpoint {path}",
                        distinct,
                        [f"Distinct sizes: {distinct}/{len(sizes)}"],
                    ))

        return patterns

    def detect_header_leakage(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        patterns = []
        counts: Dict[str, int] = defaultdict(int)
        examples: Dict[str, List[str]] = defaultdict(list)

        for request in requests:
            for name, value in request.headers.items():
                lowered = name.lower()
                if lowered in SUSPICIOUS_HEADERS:
                    counts[lowered] += 1
                    example = f"{name}: {value[:50]}"
                    if example not in examples[lowered]:
                        examples[lowered].append(example)

                if _matches_tracking(value):
                    patterns.append(MetadataPattern(
                        "HEADER",
                        Severity.MEDIUM,
                        f"Tracking pattern detected in header {name}",
                        1,
                        [f"{name}: {value[:50]}"],
                    ))

        user_agents = {r.user_agent or r.header("User-Agent") for r in requests} - {None}
        if len(user_agents) == 1 and len(requests) > 10:
            patterns.append(MetadataPattern(
                "FINGERPRINT",
                Severity.LOW,
                "Consistent User-Agent across all requests (potential bot)",
                len(requests),
                [next(iter(user_agents))[:100]],
            ))

        for name, count in counts.items():
            patterns.append(MetadataPattern(
                "HEADER",
                Severity.HIGH,
                f"Suspicious header {name} detected",
                count,
                examples[name][:3],
            ))

        return patterns

    def detect_sequence_patterns(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        """Bursts of requests, each within the window of the one before it."""
        ordered = sorted(requests, key=lambda r: r.timestamp)
        sequences: List[List[str]] = []
        current: List[RequestMetadata] = []

        for request in ordered:
            if current and request.timestamp - current[-1].timestamp >= SEQUENCE_WINDOW_MS:
                if len(current) > 3:
                    sequences.append([r.path for r in current])
                current = []
            current.append(request)
        if len(current) > 3:
            sequences.append([r.path for r in current])

        patterns = []
        for sequence in sequences:
            sensitive = [path for path in sequence if is_sensitive_path(path)]
            if len(sensitive) > 1:
                patterns.append(MetadataPattern(
                    "SEQUENCE",
                    Severity.MEDIUM,
                    "Sequential access to sensitive endpoints detected",
                    len(sensitive),
                    sensitive[:3],
                ))
        return patterns

    def detect_fingerprinting(self, requests: List[RequestMetadata]) -> List[MetadataPattern]:
        patterns = []

        probing = [
            r.path for r in requests
            if any(endpoint in r.path for endpoint in FINGERPRINTING_ENDPOINTS)
        ]
        if probing:
            patterns.append(MetadataPattern(
                "FINGERPRINT",
                Severity.MEDIUM,
                "Browser fingerprinting attempts detected",
                len(probing),
                probing[:3],
            ))

        canvas = [
            r.path for r in requests
            if "image/" in (r.header("Content-Type") or "")
            or "canvas" in r.path
            or "webgl" in r.path
        ]
        if len(canvas) > 5:
            patterns.append(MetadataPattern(
                "FINGERPRINT",
                Severity.HIGH,
                "Potential canvas fingerprinting detected",
                len(canvas),
                canvas[:3],
            ))

        return patterns

    @staticmethod
    def group_by_time(
        requests: List[RequestMetadata],
        window: float,
    ) -> List[List[RequestMetadata]]:
        ordered = sorted(requests, key=lambda r: r.timestamp)
        groups: List[List[RequestMetadata]] = []
        current: List[RequestMetadata] = []
        window_start = ordered[0].timestamp if ordered else 0

        for request in ordered:
            if request.timestamp - window_start > window:
                groups.append(current)
                current = []
                window_start = request.timestamp
            current.append(request)

        if current:
            groups.append(current)
        return groups

    @staticmethod
    def extract_tracking_signals(requests: Iterable[RequestMetadata]) -> List[str]:
        signals: List[str] = []

        def add(signal: str) -> None:
            if signal not in signals:
                signals.append(signal)

        for request in requests:
            for param, value in parse_qsl(urlsplit(request.path).query):
                if _matches_tracking(param) or _matches_tracking(value):
                    add(f"{param}={value}")
            for name, value in request.headers.items():
                if _matches_tracking(name) or _matches_tracking(value):
                    add(f"{name}: {value}")

        return signals

    @staticmethod
    def calculate_risk_score(patterns: Iterable[MetadataPattern]) -> float:
        score = sum(
            p.occurrences * p.severity.weight * _TYPE_WEIGHTS.get(p.type, 1)
            for p in patterns
        )
        return min(100, score)


class RequestMetadataCollector:
    """
    Samples live endpoints and records their request metadata.

    Each URL is requested ``samples`` times; the recorded headers are the
    response headers the endpoint exposed.
    """

    def __init__(self, timeout: float = 10.0, user_agent: str = "aura-security-gates"):
        self.timeout = timeout
        self.user_agent = user_agent

    async def collect(self, urls: List[str], samples: int = 1) -> List[RequestMetadata]:
        records: List[RequestMetadata] = []
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={"User-Agent": self.user_agent},
        ) as session:
            for _ in range(samples):
                for url in urls:
                    record = await self._sample(session, url)
                    if record is not None:
                        records.append(record)
        logger.info(f"Collected metadata for {len(records)} requests from {len(urls)} endpoints")
        return records

    async def _sample(
        self,
        session: aiohttp.ClientSession,
        url: str,
    ) -> Optional[RequestMetadata]:
        parts = urlsplit(url)
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"

        started = time.time()
        start = time.perf_counter()
        try:
            async with session.get(url) as response:
                body = await response.read()
                duration = (time.perf_counter() - start) * 1000
                return RequestMetadata(
                    timestamp=started * 1000,
                    path=path,
                    size=len(body),
                    duration=duration,
                    headers=dict(response.headers),
                    method="GET",
                    status_code=response.status,
                    user_agent=self.user_agent,
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Metadata sample failed for {url}: {e}")
            return None
