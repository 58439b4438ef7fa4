"""
Security Gates CLI

Command-line interface for running security gates in CI.

Exit codes: 0 when everything passed, 1 on validation failure, 2 on
configuration or usage faults.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Any, List, Optional

import yaml

from . import __version__
from .core import Config, GateRunner, SecurityGateError
from .core.exceptions import ConfigurationError, GateFailureError, UnknownPolicyError
from .crypto import CryptoGate
from .network import NetworkGate, TlsInspector
from .observability import get_metrics, setup_logging
from .testing import TestingGate

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

DATABASE_URL_ENV = "SECURITY_GATES_DATABASE_URL"


def load_config(config_path: Optional[str]) -> Config:
    """Load configuration from file or use defaults."""
    if config_path:
        return Config.from_file(config_path)
    return Config()


def load_document(path: str) -> Any:
    """Read a JSON or YAML document."""
    with open(path) as f:
        if path.endswith((".yaml", ".yml")):
            return yaml.safe_load(f)
        return json.load(f)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="security-gates",
        description="Release security gates: crypto envelopes, network, RLS and self-tests",
    )

    parser.add_argument(
        "-c", "--config",
        help="Path to configuration file",
        default=None,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (overrides config)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON logs",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    envelope_parser = subparsers.add_parser(
        "validate-envelope",
        help="Validate a crypto envelope file",
    )
    envelope_parser.add_argument("file", help="Envelope JSON file (object or list)")
    envelope_parser.add_argument(
        "--policy",
        help="Named security policy (production, staging, development, future-proof)",
    )
    envelope_parser.add_argument(
        "--report",
        action="store_true",
        help="Print a Markdown report instead of JSON",
    )

    run_parser = subparsers.add_parser("run", help="Run registered security gates")
    run_parser.add_argument(
        "--gates",
        help="Comma-separated gate names to run (default: all)",
    )
    run_parser.add_argument(
        "--input",
        help="JSON/YAML file with gate input",
    )
    run_parser.add_argument(
        "--sequential",
        action="store_true",
        help="Run gates one at a time",
    )
    run_parser.add_argument(
        "--no-fail-fast",
        action="store_true",
        help="Report every gate even after a failure",
    )
    run_parser.add_argument(
        "--database-url",
        default=os.environ.get(DATABASE_URL_ENV),
        help=f"PostgreSQL DSN enabling the RLS gate (env: {DATABASE_URL_ENV})",
    )

    subparsers.add_parser("list", help="List available gates")
    subparsers.add_parser("check-config", help="Validate the configuration")

    tls_parser = subparsers.add_parser("inspect-tls", help="Inspect a TLS endpoint")
    tls_parser.add_argument("host", help="Hostname")
    tls_parser.add_argument("--port", type=int, default=443, help="Port")

    return parser


def build_runner(config: Config, database: Any = None) -> GateRunner:
    """Runner with every gate the configuration supports."""
    runner = GateRunner(config.runner)
    if config.crypto_policy:
        runner.register_gate(CryptoGate.for_policy(config.crypto_policy))
    else:
        runner.register_gate(CryptoGate(config.crypto))
    runner.register_gate(NetworkGate(config.network))
    if database is not None:
        from .rls import RLSGate

        runner.register_gate(RLSGate(database, config.rls))
    runner.register_gate(TestingGate(config.testing))
    return runner


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_validate_envelope(args: argparse.Namespace, config: Config) -> int:
    """Validate one envelope or a list of envelopes."""
    document = load_document(args.file)
    policy = args.policy or config.crypto_policy
    gate = CryptoGate.for_policy(policy) if policy else CryptoGate(config.crypto)

    envelopes = document if isinstance(document, list) else [document]
    results = [gate.validate_crypto_envelope(envelope) for envelope in envelopes]

    if args.report:
        for envelope, result in zip(envelopes, results):
            print(CryptoGate.generate_report(
                result, envelope if isinstance(envelope, dict) else None
            ))
    else:
        output = [r.to_dict() for r in results]
        _print_json(output if isinstance(document, list) else output[0])

    return EXIT_OK if all(r.valid for r in results) else EXIT_FAILED


async def cmd_run(args: argparse.Namespace, config: Config) -> int:
    """Run gates and print the report."""
    runner_config = config.runner
    if args.sequential:
        runner_config = replace(runner_config, parallel=False)
    if args.no_fail_fast:
        runner_config = replace(runner_config, fail_fast=False)
    config = replace(config, runner=runner_config)

    input_data = load_document(args.input) if args.input else {}

    database = None
    if args.database_url:
        from .rls.postgres import PostgresConnection

        database = await PostgresConnection.connect(
            args.database_url, service_accounts=config.rls.service_accounts
        )

    try:
        runner = build_runner(config, database)
        try:
            if args.gates:
                names = [name.strip() for name in args.gates.split(",") if name.strip()]
                unknown = [name for name in names if name not in runner.gate_names]
                if unknown:
                    print(f"Unknown gates: {', '.join(unknown)}", file=sys.stderr)
                    return EXIT_CONFIG
                report = await runner.execute_selected(names, input_data)
            else:
                report = await runner.execute_all(input_data)
        except GateFailureError as e:
            _print_json({
                "passed": False,
                "failed_gate": e.gate_name,
                "summary": e.summary.to_dict() if e.summary else None,
                "results": {name: r.to_dict() for name, r in e.results.items()},
            })
            return EXIT_FAILED
    finally:
        if database is not None:
            await database.close()

    output = report.to_dict()
    if config.metrics_enabled:
        output["metrics"] = get_metrics().get_metrics()
    _print_json(output)
    return EXIT_OK if report.passed else EXIT_FAILED


async def cmd_list(args: argparse.Namespace, config: Config) -> int:
    """List available gates."""
    runner = build_runner(config)
    for gate in runner.list_gates():
        print(f"{gate['name']:<20} v{gate['version']:<8} {gate['description']}")
    print(f"{'rls':<20} {'':<9} (requires --database-url)")
    return EXIT_OK


async def cmd_check_config(args: argparse.Namespace, config: Config) -> int:
    """Validate configuration and each gate's view of it."""
    errors: List[str] = list(config.validate())
    warnings: List[str] = []

    # Gates are only constructible from a valid configuration
    if not errors:
        runner = build_runner(config)
        for name in runner.gate_names:
            result = runner.validate_gate_config(name, runner.get_gate_config(name))
            errors.extend(f"{name}: {e}" for e in result.errors)
            warnings.extend(f"{name}: {w}" for w in result.warnings)

    for warning in warnings:
        print(f"WARNING: {warning}")
    for error in errors:
        print(f"ERROR: {error}")
    if not errors:
        print("Configuration: VALID")
    return EXIT_CONFIG if errors else EXIT_OK


async def cmd_inspect_tls(args: argparse.Namespace, config: Config) -> int:
    """Inspect a single TLS endpoint."""
    inspector = TlsInspector(
        pinned_certificates=config.network.pinned_certificates,
        timeout=config.network.tls_timeout,
    )
    result = await inspector.inspect_connection(args.host, args.port)
    _print_json(result.to_dict())
    return EXIT_OK if result.valid else EXIT_FAILED


COMMANDS = {
    "validate-envelope": cmd_validate_envelope,
    "run": cmd_run,
    "list": cmd_list,
    "check-config": cmd_check_config,
    "inspect-tls": cmd_inspect_tls,
}


async def async_main(args: argparse.Namespace, config: Config) -> int:
    """Async main entry point."""
    handler = COMMANDS.get(args.command)
    if handler is None:
        print("No command given. Use --help for usage.", file=sys.stderr)
        return EXIT_CONFIG

    try:
        return await handler(args, config)
    except (ConfigurationError, UnknownPolicyError) as e:
        logger.debug(f"Configuration error: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return EXIT_CONFIG
    except SecurityGateError as e:
        logger.debug(f"Security gate error: {e}")
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return EXIT_FAILED
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.debug(f"Could not read input: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
        print(f"Failed to load config: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(
        args.log_level or config.log_level,
        json_format=args.json_logs or config.json_logs,
        log_file=config.log_file,
    )

    return asyncio.run(async_main(args, config))


if __name__ == "__main__":
    sys.exit(main())
