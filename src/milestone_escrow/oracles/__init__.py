"""Oracle verifier implementations."""

from milestone_escrow.oracles.schema_oracle import (
    SignedSchemaOracleVerifier,
    check_schema,
    sign_report,
)

__all__ = ["SignedSchemaOracleVerifier", "check_schema", "sign_report"]
