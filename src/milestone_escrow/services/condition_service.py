"""Condition Service: release conditions and automatic release.

A milestone with conditions auto-releases only when ALL of its conditions
are met (conjunctive gate) and the escrow's auto-release policy allows it.

Condition data by type:
    time_based   {"release_at": "<ISO-8601>"}
    oracle       {"oracle_id": "...", "schema": {<JSON Schema>}}
    third_party  {"verifiers": ["<address>", ...]}   (optional list)

Third-party verifiers are authorized if listed on the condition or in the
configured trusted verifier set.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import jsonschema

from milestone_escrow.domain.clock import parse_iso, to_iso, utcnow
from milestone_escrow.domain.enums import ConditionType, EscrowStatus, MilestoneStatus, SettlementKind
from milestone_escrow.domain.exceptions import (
    ConditionNotYetDueError,
    EntityNotFoundError,
    EscrowError,
    InvalidStateError,
    OracleVerificationFailedError,
    UnauthorizedError,
    ValidationError,
)
from milestone_escrow.domain.settlement import SYSTEM_ACTOR, SettlementIntent
from milestone_escrow.logging_config import get_logger
from milestone_escrow.oracles.schema_oracle import check_schema
from milestone_escrow.services.escrow_service import (
    find_milestone,
    load_escrow,
    require_active,
    require_releasable,
)

if TYPE_CHECKING:
    from milestone_escrow.domain.clock import Clock
    from milestone_escrow.domain.ledger_protocol import OracleVerifier
    from milestone_escrow.infrastructure.database.orm_models import Milestone, ReleaseCondition
    from milestone_escrow.infrastructure.database.store import RecordStore, UnitOfWork
    from milestone_escrow.services.escrow_service import EscrowService
    from milestone_escrow.services.pipeline import SettlementPipeline

logger = get_logger(__name__)


@dataclass(frozen=True)
class AutoReleaseOutcome:
    """What happened after a condition was met.

    Attributes:
        attempted: Whether a release was attempted.
        released: Whether the release succeeded.
        error_code: Domain error code if the attempt failed.
        message: Human-readable explanation.
    """

    attempted: bool
    released: bool = False
    error_code: str | None = None
    message: str = ""


@dataclass(frozen=True)
class ConditionVerification:
    condition: ReleaseCondition
    auto_release: AutoReleaseOutcome


def normalize_condition_data(condition_type: ConditionType, data: dict[str, Any] | None) -> dict[str, Any]:
    """Validate condition data for its type; returns the normalized form."""
    data = dict(data or {})
    match condition_type:
        case ConditionType.TIME_BASED:
            raw = data.get("release_at")
            if not isinstance(raw, str):
                raise ValidationError("time_based condition requires an ISO-8601 release_at", field="release_at")
            try:
                data["release_at"] = parse_iso(raw).isoformat()
            except ValueError as err:
                raise ValidationError(f"release_at is not ISO-8601: {raw!r}", field="release_at") from err
        case ConditionType.ORACLE:
            oracle_id = data.get("oracle_id")
            if not isinstance(oracle_id, str) or not oracle_id.strip():
                raise ValidationError("oracle condition requires an oracle_id", field="oracle_id")
            schema = data.get("schema")
            if not isinstance(schema, dict):
                raise ValidationError("oracle condition requires a JSON Schema object", field="schema")
            try:
                check_schema(schema)
            except jsonschema.SchemaError as err:
                raise ValidationError(f"schema is not a valid JSON Schema: {err.message}", field="schema") from err
        case ConditionType.THIRD_PARTY:
            verifiers = data.get("verifiers", [])
            if not isinstance(verifiers, list) or not all(isinstance(v, str) and v for v in verifiers):
                raise ValidationError("verifiers must be a list of addresses", field="verifiers")
            data["verifiers"] = verifiers
    return data


class ConditionService:
    """Adds and verifies release conditions, then triggers auto-release."""

    def __init__(
        self,
        store: RecordStore,
        pipeline: SettlementPipeline,
        escrows: EscrowService,
        oracle: OracleVerifier,
        *,
        trusted_verifiers: list[str] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._escrows = escrows
        self._oracle = oracle
        self._trusted_verifiers = set(trusted_verifiers or [])
        self._clock = clock

    async def add_condition(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        condition_type: ConditionType | str,
        data: dict[str, Any] | None,
        actor: str,
        *,
        timeout: float | None = None,
    ) -> ReleaseCondition:
        """Attach a release condition to a milestone. Client only."""
        try:
            ctype = ConditionType(condition_type)
        except ValueError as err:
            raise ValidationError(f"Unknown condition type: {condition_type!r}", field="condition_type") from err
        normalized = normalize_condition_data(ctype, data)

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            if actor != escrow.client_address:
                raise UnauthorizedError(actor, "add a release condition")
            require_active(escrow)
            require_releasable(milestone)
            return SettlementIntent(
                kind=SettlementKind.ADD_CONDITION,
                escrow_id=escrow.id,
                actor=actor,
                payload={
                    "condition_id": str(uuid.uuid4()),
                    "condition_type": ctype.value,
                    "data": normalized,
                    "position": len(milestone.conditions),
                },
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        condition = await self._pipeline.execute(
            escrow_id, prepare, operation="add_condition", timeout=timeout
        )
        logger.info(
            "condition.added",
            condition_id=str(condition.id),
            milestone_id=str(milestone_id),
            condition_type=ctype.value,
        )
        return condition

    async def verify_condition(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        condition_id: uuid.UUID,
        verifier: str,
        evidence: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> ConditionVerification:
        """Mark a condition met, then auto-release if every condition is met."""

        async def prepare(uow: UnitOfWork) -> SettlementIntent:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            condition = self._find_condition(milestone, condition_id)
            if condition.met:
                raise InvalidStateError(f"Condition {condition.id} is already met")
            require_releasable(milestone)

            verification = await self._check(condition, verifier, evidence or {})
            return SettlementIntent(
                kind=SettlementKind.VERIFY_CONDITION,
                escrow_id=escrow.id,
                actor=verifier,
                payload={
                    "condition_id": str(condition.id),
                    "position": condition.position,
                    "verifier": verifier,
                    "verified_at": to_iso(self._clock()),
                    "verification": verification,
                },
                milestone_id=milestone.id,
                contract_ref=escrow.contract_ref,
                milestone_index=milestone.position,
            )

        condition = await self._pipeline.execute(
            escrow_id, prepare, operation="verify_condition", timeout=timeout
        )
        logger.info("condition.met", condition_id=str(condition_id), verifier=verifier)

        outcome = await self._maybe_auto_release(escrow_id, milestone_id, timeout=timeout)
        return ConditionVerification(condition=condition, auto_release=outcome)

    async def list_conditions(self, escrow_id: uuid.UUID, milestone_id: uuid.UUID) -> list[ReleaseCondition]:
        async with self._store.transaction() as uow:
            escrow = await load_escrow(uow, escrow_id)
            find_milestone(escrow, milestone_id)
            return await uow.conditions.find_by_milestone(milestone_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find_condition(milestone: Milestone, condition_id: uuid.UUID) -> ReleaseCondition:
        for condition in milestone.conditions:
            if condition.id == condition_id:
                return condition
        raise EntityNotFoundError("condition", condition_id)

    async def _check(self, condition: ReleaseCondition, verifier: str, evidence: dict[str, Any]) -> dict[str, Any]:
        """Type-specific verification; returns the record sent to the ledger."""
        ctype = ConditionType(condition.condition_type)
        data = condition.data or {}

        if ctype is ConditionType.THIRD_PARTY:
            allowed = set(data.get("verifiers") or []) | self._trusted_verifiers
            if verifier not in allowed:
                raise UnauthorizedError(verifier, "verify this third-party condition")
            return {"type": ctype.value, "verifier": verifier}

        if ctype is ConditionType.TIME_BASED:
            now = self._clock()
            release_at = parse_iso(data["release_at"])
            if now < release_at:
                raise ConditionNotYetDueError(condition.id, release_at.isoformat())
            return {"type": ctype.value, "checked_at": now.isoformat()}

        verdict = await self._oracle.verify(data, evidence)
        if not verdict.is_valid:
            raise OracleVerificationFailedError(verdict.details, verdict.errors)
        return {"type": ctype.value, "oracle_id": data.get("oracle_id"), "verdict": verdict.to_dict()}

    async def _maybe_auto_release(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        *,
        timeout: float | None,
    ) -> AutoReleaseOutcome:
        """Release through the orchestrator once the conjunctive gate opens.

        Failures are logged and reported; a met condition is never reverted.
        """
        async with self._store.transaction() as uow:
            escrow = await load_escrow(uow, escrow_id)
            milestone = find_milestone(escrow, milestone_id)
            conditions = list(milestone.conditions)

        if not conditions or not all(c.met for c in conditions):
            return AutoReleaseOutcome(attempted=False, message="conditions still pending")
        if not escrow.auto_release:
            return AutoReleaseOutcome(attempted=False, message="auto-release disabled for this escrow")
        if escrow.status != EscrowStatus.ACTIVE:
            return AutoReleaseOutcome(attempted=False, message=f"escrow is {escrow.status}")
        if not MilestoneStatus(milestone.status).is_releasable:
            return AutoReleaseOutcome(attempted=False, message=f"milestone is {milestone.status}")

        try:
            await self._escrows.release_milestone(
                escrow_id, milestone_id, milestone.amount, SYSTEM_ACTOR, timeout=timeout
            )
        except InvalidStateError as exc:
            logger.info("condition.auto_release_skipped", milestone_id=str(milestone_id), reason=exc.message)
            return AutoReleaseOutcome(attempted=True, error_code=exc.code, message=exc.message)
        except EscrowError as exc:
            logger.warning(
                "condition.auto_release_failed",
                milestone_id=str(milestone_id),
                error_code=exc.code,
                error=exc.message,
            )
            return AutoReleaseOutcome(attempted=True, error_code=exc.code, message=exc.message)

        logger.info("condition.auto_released", milestone_id=str(milestone_id), amount=str(milestone.amount))
        return AutoReleaseOutcome(attempted=True, released=True, message="milestone released")
