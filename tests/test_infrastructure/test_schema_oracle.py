"""Unit tests for the SignedSchemaOracleVerifier.

Tests cover:
    - Signed report matching the schema -> pass
    - Report failing the schema -> fail with errors
    - Tampered report or wrong signature -> fail
    - Unknown oracle -> fail
    - Invalid schema definition -> fail
"""

from __future__ import annotations

import jsonschema
import pytest

from milestone_escrow.oracles.schema_oracle import SignedSchemaOracleVerifier, check_schema, sign_report

# --- Test fixtures ---

SECRET = "delivery-oracle-secret"

DELIVERY_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {"const": "delivered"},
        "parcel": {"type": "string"},
    },
    "required": ["status", "parcel"],
}

CONDITION = {"oracle_id": "courier", "schema": DELIVERY_SCHEMA}


def _evidence(report: dict, secret: str = SECRET) -> dict:
    return {"report": report, "signature": sign_report(secret, report)}


@pytest.fixture
def verifier() -> SignedSchemaOracleVerifier:
    return SignedSchemaOracleVerifier({"courier": SECRET})


# --- Tests ---


class TestOracleHappyPath:
    @pytest.mark.asyncio
    async def test_signed_conforming_report_passes(self, verifier: SignedSchemaOracleVerifier) -> None:
        verdict = await verifier.verify(CONDITION, _evidence({"status": "delivered", "parcel": "P-1"}))
        assert verdict.is_valid is True
        assert verdict.errors == []

    def test_signature_ignores_key_order(self) -> None:
        assert sign_report(SECRET, {"a": 1, "b": 2}) == sign_report(SECRET, {"b": 2, "a": 1})


class TestOracleFailures:
    @pytest.mark.asyncio
    async def test_report_failing_schema(self, verifier: SignedSchemaOracleVerifier) -> None:
        verdict = await verifier.verify(CONDITION, _evidence({"status": "in_transit", "parcel": "P-1"}))
        assert verdict.is_valid is False
        assert len(verdict.errors) == 1
        assert verdict.errors[0]["path"] == ["status"]

    @pytest.mark.asyncio
    async def test_tampered_report(self, verifier: SignedSchemaOracleVerifier) -> None:
        evidence = _evidence({"status": "in_transit", "parcel": "P-1"})
        evidence["report"] = {"status": "delivered", "parcel": "P-1"}
        verdict = await verifier.verify(CONDITION, evidence)
        assert verdict.is_valid is False
        assert "signature" in verdict.details

    @pytest.mark.asyncio
    async def test_wrong_secret(self, verifier: SignedSchemaOracleVerifier) -> None:
        verdict = await verifier.verify(CONDITION, _evidence({"status": "delivered", "parcel": "P-1"}, "guess"))
        assert verdict.is_valid is False

    @pytest.mark.asyncio
    async def test_unknown_oracle(self, verifier: SignedSchemaOracleVerifier) -> None:
        condition = {"oracle_id": "weather", "schema": DELIVERY_SCHEMA}
        verdict = await verifier.verify(condition, _evidence({"status": "delivered", "parcel": "P-1"}))
        assert verdict.is_valid is False
        assert "Unknown oracle" in verdict.details

    @pytest.mark.asyncio
    async def test_missing_report(self, verifier: SignedSchemaOracleVerifier) -> None:
        verdict = await verifier.verify(CONDITION, {"signature": "00"})
        assert verdict.is_valid is False

    @pytest.mark.asyncio
    async def test_invalid_schema(self, verifier: SignedSchemaOracleVerifier) -> None:
        condition = {"oracle_id": "courier", "schema": {"type": 12}}
        verdict = await verifier.verify(condition, _evidence({"status": "delivered"}))
        assert verdict.is_valid is False
        assert "schema is invalid" in verdict.details

    def test_check_schema_rejects_malformed_schema(self) -> None:
        check_schema(DELIVERY_SCHEMA)
        with pytest.raises(jsonschema.SchemaError):
            check_schema({"type": 12})
