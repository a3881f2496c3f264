"""SignedSchemaOracleVerifier: checks signed oracle reports against a JSON Schema.

Use case: "release when the delivery oracle reports status=delivered". The
client attaches an oracle condition with the expected report schema; the
oracle later posts a signed report as verification evidence.

Verification flow:
    1. Look up the shared secret for the condition's oracle_id.
    2. Check the HMAC-SHA256 signature over the canonical JSON report.
    3. Validate the report against the condition's JSON Schema.

No external services required; this is a pure local check.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import jsonschema
from jsonschema import Draft7Validator

from milestone_escrow.domain.ledger_protocol import OracleVerdict
from milestone_escrow.logging_config import get_logger

logger = get_logger(__name__)


def canonical_json(report: Any) -> bytes:
    return json.dumps(report, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_report(secret: str, report: Any) -> str:
    """Hex HMAC-SHA256 of the canonical report, as oracles are expected to send it."""
    return hmac.new(secret.encode("utf-8"), canonical_json(report), hashlib.sha256).hexdigest()


class SignedSchemaOracleVerifier:
    """OracleVerifier that requires a valid signature and a schema-conforming report.

    Evidence shape: {"report": {...}, "signature": "<hex hmac>"}
    Condition data shape: {"oracle_id": "...", "schema": {...}}
    """

    def __init__(self, secrets: dict[str, str]) -> None:
        self._secrets = dict(secrets)

    async def verify(self, condition_data: dict[str, Any], evidence: dict[str, Any]) -> OracleVerdict:
        oracle_id = condition_data.get("oracle_id")
        logger.info("oracle.verify.start", oracle_id=oracle_id)

        # --- Step 1: Known oracle ---
        secret = self._secrets.get(str(oracle_id))
        if not secret:
            return OracleVerdict(is_valid=False, details=f"Unknown oracle: {oracle_id}")

        # --- Step 2: Signature ---
        if "report" not in evidence:
            return OracleVerdict(is_valid=False, details="Evidence has no oracle report")
        report = evidence["report"]
        signature = str(evidence.get("signature", ""))
        expected = sign_report(secret, report)
        if not hmac.compare_digest(signature, expected):
            logger.warning("oracle.verify.bad_signature", oracle_id=oracle_id)
            return OracleVerdict(is_valid=False, details="Oracle signature does not match")

        # --- Step 3: Schema ---
        schema = condition_data.get("schema") or {}
        try:
            Draft7Validator.check_schema(schema)
            validator = Draft7Validator(schema)
            errors = sorted(validator.iter_errors(report), key=lambda e: list(e.path))
        except jsonschema.SchemaError as exc:
            logger.error("oracle.verify.invalid_schema", oracle_id=oracle_id, error=exc.message)
            return OracleVerdict(is_valid=False, details=f"Condition schema is invalid: {exc.message}")

        if errors:
            error_details = [
                {"path": list(err.path), "message": err.message} for err in errors
            ]
            logger.info("oracle.verify.schema_failed", oracle_id=oracle_id, error_count=len(errors))
            return OracleVerdict(
                is_valid=False,
                details=f"Oracle report failed schema validation with {len(errors)} error(s).",
                errors=error_details,
            )

        logger.info("oracle.verify.passed", oracle_id=oracle_id)
        return OracleVerdict(is_valid=True, details="Oracle report verified.")


def check_schema(schema: Any) -> None:
    """Raise jsonschema.SchemaError if the schema itself is malformed."""
    Draft7Validator.check_schema(schema)
