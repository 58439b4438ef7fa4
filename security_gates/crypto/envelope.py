"""
Security Gates - Crypto Envelope Validator

Schema and structure validation of encryption envelopes. Envelopes are
read-only input; nothing here mutates them.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from ..core.gate import ValidationResult, utcnow
from .algorithm import AlgorithmValidator

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("envelope.schema.json")

MAX_AAD_AGE = timedelta(hours=24)

_PATTERN_MESSAGES = {
    "salt": "salt must be valid base64",
    "nonce": "nonce must be valid base64",
    "aad.userId": "aad.userId must be a valid UUID",
    "aad.timestamp": "aad.timestamp must be an ISO-8601 timestamp",
}


@lru_cache(maxsize=1)
def load_envelope_schema() -> Dict[str, Any]:
    """Load the envelope JSON schema shipped with the package."""
    with open(SCHEMA_PATH) as f:
        schema = json.load(f)
    jsonschema.Draft7Validator.check_schema(schema)
    return schema


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _field_path(error: jsonschema.ValidationError) -> str:
    return ".".join(str(part) for part in error.absolute_path)


def _describe_schema_error(error: jsonschema.ValidationError) -> str:
    path = _field_path(error)

    if error.validator == "pattern" and path in _PATTERN_MESSAGES:
        return _PATTERN_MESSAGES[path]

    if error.validator == "required":
        missing = error.message.split("'")[1] if "'" in error.message else error.message
        field = f"{path}.{missing}" if path else missing
        return f"Missing required field: {field}"

    if path:
        return f"Schema validation error at {path}: {error.message}"
    return f"Schema validation error: {error.message}"


class EnvelopeValidator:
    """
    Crypto envelope validator.

    Two stages:
    - schema: shape, primitive types, base64 alphabet, UUID and ISO formats
    - structure: decoded lengths, key id, AAD contents and age
    """

    def __init__(
        self,
        algorithm_validator: Optional[AlgorithmValidator] = None,
        schema: Optional[Dict[str, Any]] = None,
    ):
        self.algorithm_validator = algorithm_validator or AlgorithmValidator()
        self._validator = jsonschema.Draft7Validator(schema or load_envelope_schema())

    def validate_schema(self, envelope: Any) -> ValidationResult:
        result = ValidationResult()
        errors = sorted(
            self._validator.iter_errors(envelope),
            key=lambda e: (list(map(str, e.absolute_path)), e.validator),
        )
        for error in errors:
            result.add_error(_describe_schema_error(error))
        return result

    def validate_structure(
        self,
        envelope: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """
        Decoded-length and AAD checks on a schema-valid envelope.

        Args:
            envelope: Envelope that already passed schema validation
            now: Reference time for the AAD age check

        Returns:
            Validation result
        """
        result = ValidationResult()
        algorithms = self.algorithm_validator

        result.merge(algorithms.validate_salt(envelope["salt"]))
        result.merge(algorithms.validate_nonce(envelope["algorithm"], envelope["nonce"]))
        result.merge(algorithms.validate_key_id(envelope["keyId"]))

        aad = envelope["aad"]
        for key in ("userId", "recordId", "tableName"):
            if not str(aad.get(key, "")).strip():
                result.add_error(f"AAD {key} must not be empty")

        try:
            timestamp = parse_timestamp(aad["timestamp"])
        except ValueError:
            result.add_error(f"AAD timestamp is not a valid date: {aad['timestamp']}")
            return result

        age = (now or utcnow()) - timestamp
        if age > MAX_AAD_AGE:
            hours = int(age.total_seconds() // 3600)
            result.add_warning(f"AAD timestamp is {hours} hours old")

        return result

    def validate_complete(
        self,
        envelope: Any,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """Schema first; structure only runs for schema-valid envelopes."""
        result = self.validate_schema(envelope)
        if not result.valid:
            logger.debug(f"Envelope rejected by schema: {len(result.errors)} errors")
            return result
        return result.merge(self.validate_structure(envelope, now=now))
