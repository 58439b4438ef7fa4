"""
Security Gates Configuration Management

Centralized configuration for the runner and every gate.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .gate import Environment


PROTECTED_TABLES = [
    "encrypted_user_prefs",
    "encrypted_cycle_data",
    "healthcare_share",
    "device_key",
]

_RLS_POLICY_NAMES = {
    "encrypted_user_prefs": "user_prefs_rls_policy",
    "encrypted_cycle_data": "cycle_data_rls_policy",
    "healthcare_share": "healthcare_share_rls_policy",
    "device_key": "device_key_rls_policy",
}


def _default_rls_policies() -> List[Dict[str, Any]]:
    """Owner-only policies on every protected table."""
    return [
        {
            "table_name": table,
            "policy_name": policy,
            "expected_condition": "((auth.uid())::text = user_id)",
            "authorized_queries": [
                f"SELECT * FROM {table} WHERE user_id = auth.uid()::text",
            ],
            "unauthorized_queries": [
                f"SELECT * FROM {table} WHERE user_id != auth.uid()::text",
                f"SELECT * FROM {table}",
            ],
        }
        for table, policy in _RLS_POLICY_NAMES.items()
    ]


@dataclass
class RunnerConfig:
    """Gate runner execution policy."""
    fail_fast: bool = True
    parallel: bool = True
    timeout: float = 30000.0  # milliseconds per gate
    retries: int = 0
    environment: Environment = Environment.DEVELOPMENT
    backoff_base: float = 1.0  # seconds; delay before retry n is base * 2**n


@dataclass
class CryptoGateConfig:
    """Crypto envelope gate strictness toggles."""
    strict_mode: bool = False
    allow_warnings: bool = True
    quantum_resistance_check: bool = False
    timing_attack_check: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return {
            "strict_mode": self.strict_mode,
            "allow_warnings": self.allow_warnings,
            "quantum_resistance_check": self.quantum_resistance_check,
            "timing_attack_check": self.timing_attack_check,
        }


_SECURITY_POLICIES: Dict[str, Dict[str, bool]] = {
    "production": {
        "strict_mode": True,
        "allow_warnings": False,
        "quantum_resistance_check": False,
        "timing_attack_check": True,
    },
    "staging": {
        "strict_mode": False,
        "allow_warnings": True,
        "quantum_resistance_check": False,
        "timing_attack_check": True,
    },
    "development": {
        "strict_mode": False,
        "allow_warnings": True,
        "quantum_resistance_check": False,
        "timing_attack_check": False,
    },
    "future-proof": {
        "strict_mode": True,
        "allow_warnings": False,
        "quantum_resistance_check": True,
        "timing_attack_check": True,
    },
}

SECURITY_POLICY_NAMES = tuple(_SECURITY_POLICIES)


def security_policy(name: str) -> Optional[CryptoGateConfig]:
    """Return a fresh copy of a named policy preset, or None."""
    preset = _SECURITY_POLICIES.get(name)
    if preset is None:
        return None
    return CryptoGateConfig(**preset)


@dataclass
class NetworkGateConfig:
    """Network traffic gate configuration."""
    enable_pcap_analysis: bool = True
    enable_tls_inspection: bool = True
    enable_metadata_detection: bool = True
    pcap_file_paths: List[str] = field(default_factory=list)
    tls_endpoints: List[Dict[str, Any]] = field(default_factory=list)
    metadata_endpoints: List[str] = field(default_factory=list)
    metadata_time_window: int = 3600000  # milliseconds
    fail_on_high_severity: bool = True
    max_risk_score: float = 100.0
    tls_timeout: float = 10.0  # seconds
    pinned_certificates: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enable_pcap_analysis": self.enable_pcap_analysis,
            "enable_tls_inspection": self.enable_tls_inspection,
            "enable_metadata_detection": self.enable_metadata_detection,
            "pcap_file_paths": list(self.pcap_file_paths),
            "tls_endpoints": list(self.tls_endpoints),
            "metadata_endpoints": list(self.metadata_endpoints),
            "metadata_time_window": self.metadata_time_window,
            "fail_on_high_severity": self.fail_on_high_severity,
            "max_risk_score": self.max_risk_score,
            "tls_timeout": self.tls_timeout,
            "pinned_certificates": dict(self.pinned_certificates),
        }


@dataclass
class RLSGateConfig:
    """Row-level security and access-control gate configuration."""
    enabled: bool = True
    test_users: Dict[str, str] = field(default_factory=lambda: {
        "valid_user": "test-user-a-uuid",
        "other_user": "test-user-b-uuid",
    })
    policies: List[Dict[str, Any]] = field(default_factory=_default_rls_policies)
    scenarios: List[Dict[str, Any]] = field(default_factory=list)
    isolation_tests: List[Dict[str, Any]] = field(default_factory=list)
    service_accounts: List[str] = field(default_factory=lambda: [
        "service_backup",
        "service_analytics",
        "service_migration",
    ])
    escalation_tests: List[Dict[str, Any]] = field(default_factory=list)
    protected_tables: List[str] = field(default_factory=lambda: list(PROTECTED_TABLES))
    required_policies: List[str] = field(default_factory=lambda: [
        f"{table}.{policy}" for table, policy in _RLS_POLICY_NAMES.items()
    ])
    blocked_migration_patterns: List[str] = field(default_factory=lambda: [
        "DROP POLICY",
        "DISABLE ROW LEVEL SECURITY",
        "ALTER TABLE .* DISABLE ROW LEVEL SECURITY",
        "GRANT ALL PRIVILEGES",
        "CREATE USER .* SUPERUSER",
        "ALTER USER .* SUPERUSER",
    ])
    max_test_duration_ms: int = 300000
    max_policy_validation_ms: int = 30000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "test_users": dict(self.test_users),
            "policies": list(self.policies),
            "scenarios": list(self.scenarios),
            "isolation_tests": list(self.isolation_tests),
            "service_accounts": list(self.service_accounts),
            "escalation_tests": list(self.escalation_tests),
            "protected_tables": list(self.protected_tables),
            "required_policies": list(self.required_policies),
            "blocked_migration_patterns": list(self.blocked_migration_patterns),
            "max_test_duration_ms": self.max_test_duration_ms,
            "max_policy_validation_ms": self.max_policy_validation_ms,
        }


@dataclass
class TestingGateConfig:
    """Security testing gate configuration."""
    __test__ = False

    enable_property_testing: bool = True
    enable_fuzz_testing: bool = True
    enable_chaos_engineering: bool = True
    enable_load_testing: bool = True
    max_testing_time: float = 30.0  # minutes
    parallel_execution: bool = True
    fail_fast: bool = True
    output_directory: Optional[str] = "./testing-results"
    property_examples: int = 200
    fuzz_iterations: int = 500
    load_requests: int = 200
    load_concurrency: int = 20
    seed: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enable_property_testing": self.enable_property_testing,
            "enable_fuzz_testing": self.enable_fuzz_testing,
            "enable_chaos_engineering": self.enable_chaos_engineering,
            "enable_load_testing": self.enable_load_testing,
            "max_testing_time": self.max_testing_time,
            "parallel_execution": self.parallel_execution,
            "fail_fast": self.fail_fast,
            "output_directory": self.output_directory,
            "property_examples": self.property_examples,
            "fuzz_iterations": self.fuzz_iterations,
            "load_requests": self.load_requests,
            "load_concurrency": self.load_concurrency,
            "seed": self.seed,
        }


@dataclass
class Config:
    """
    Main configuration class for the security gates.

    Aggregates runner and gate configurations.
    """
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    crypto: CryptoGateConfig = field(default_factory=CryptoGateConfig)
    crypto_policy: Optional[str] = None
    network: NetworkGateConfig = field(default_factory=NetworkGateConfig)
    rls: RLSGateConfig = field(default_factory=RLSGateConfig)
    testing: TestingGateConfig = field(default_factory=TestingGateConfig)

    # Operational settings
    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None
    metrics_enabled: bool = True

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        if "runner" in data:
            runner_data = dict(data["runner"])
            if "environment" in runner_data:
                runner_data["environment"] = Environment(runner_data["environment"])
            config.runner = RunnerConfig(**runner_data)
        if "crypto" in data:
            config.crypto = CryptoGateConfig(**data["crypto"])
        if "crypto_policy" in data:
            config.crypto_policy = data["crypto_policy"]
        if "network" in data:
            config.network = NetworkGateConfig(**data["network"])
        if "rls" in data:
            config.rls = RLSGateConfig(**data["rls"])
        if "testing" in data:
            config.testing = TestingGateConfig(**data["testing"])

        if "log_level" in data:
            config.log_level = data["log_level"]
        if "json_logs" in data:
            config.json_logs = data["json_logs"]
        if "log_file" in data:
            config.log_file = data["log_file"]
        if "metrics_enabled" in data:
            config.metrics_enabled = data["metrics_enabled"]

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "runner": {
                "fail_fast": self.runner.fail_fast,
                "parallel": self.runner.parallel,
                "timeout": self.runner.timeout,
                "retries": self.runner.retries,
                "environment": self.runner.environment.value,
                "backoff_base": self.runner.backoff_base,
            },
            "crypto": self.crypto.to_dict(),
            "crypto_policy": self.crypto_policy,
            "network": self.network.to_dict(),
            "rls": self.rls.to_dict(),
            "testing": self.testing.to_dict(),
            "log_level": self.log_level,
            "json_logs": self.json_logs,
            "log_file": self.log_file,
            "metrics_enabled": self.metrics_enabled,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.crypto_policy is not None and self.crypto_policy not in SECURITY_POLICY_NAMES:
            errors.append(f"Unknown security policy: {self.crypto_policy}")

        if self.runner.timeout <= 0:
            errors.append("Runner timeout must be positive")

        if self.runner.retries < 0:
            errors.append("Runner retries must be non-negative")

        if self.runner.backoff_base < 0:
            errors.append("Runner backoff base must be non-negative")

        if self.network.max_risk_score < 0:
            errors.append("Network max risk score must be non-negative")

        if self.network.metadata_time_window <= 0:
            errors.append("Network metadata time window must be positive")

        if self.testing.max_testing_time <= 0:
            errors.append("Testing max testing time must be positive")

        for pattern in self.rls.blocked_migration_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                errors.append(f"Invalid blocked migration pattern '{pattern}': {e}")

        for entry in self.rls.required_policies:
            if entry.count(".") != 1:
                errors.append(
                    f"Required policy '{entry}' must have the form table.policy"
                )

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"Unknown log level: {self.log_level}")

        return errors
