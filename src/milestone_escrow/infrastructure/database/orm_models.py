"""SQLAlchemy 2.0 ORM models for the milestone escrow service.

Seven tables:
    1. escrows              - Payment agreements between a client and a provider.
    2. milestones           - Payment tranches of an escrow.
    3. release_conditions   - Conditions gating automatic release of a milestone.
    4. disputes             - Disputes over a milestone or a whole escrow.
    5. dispute_messages     - Append-only discussion thread of a dispute.
    6. escrow_events        - Append-only audit log of every state change.
    7. settlement_records   - Reconciliation journal keyed by ledger tx reference.

Design decisions:
    - UUIDs as primary keys (portable Uuid type: native on PostgreSQL).
    - Amounts are integer minor units: NUMERIC(78, 0) on PostgreSQL, digit
      strings elsewhere. Never floats.
    - Percentages are integer basis points.
    - JSON columns (JSONB on PostgreSQL) for condition data and intents.
    - CHECK constraints on status columns.
    - Partial unique indexes allow one open dispute per milestone and one open
      escrow-level dispute per escrow.
    - escrows.version is an optimistic concurrency counter.
    - escrow_events and dispute_messages are append-only.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class MinorUnits(TypeDecorator):
    """Exact integer amount in token minor units.

    Stored as NUMERIC(78, 0) on PostgreSQL (fits any uint256) and as a digit
    string on engines without arbitrary-precision integers. Always an int in
    Python.
    """

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):  # noqa: ANN001, ANN201
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("amounts must be integers, not floats")
        if dialect.name == "postgresql":
            return Decimal(int(value))
        return str(int(value))

    def process_result_value(self, value, dialect):  # noqa: ANN001, ANN201
        if value is None:
            return None
        return int(value)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Helper: auto-set updated_at on flush
# ---------------------------------------------------------------------------
def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = _utcnow()


# ---------------------------------------------------------------------------
# 1. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """A milestone-based payment agreement between a client and a provider."""

    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # --- Participants ---
    client_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Address that funds the escrow",
    )
    provider_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="Address that receives released milestone funds",
    )

    # --- Ledger references ---
    contract_ref: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
        comment="Ledger contract reference returned by create_escrow",
    )
    token_address: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    # --- Financials (integer minor units) ---
    total_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    released_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False, default=0)
    remaining_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(
        MinorUnits,
        nullable=False,
        default=0,
        comment="Portion of remaining_amount returned to the client",
    )

    # --- Status (guarded by EscrowStateMachine) ---
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    auto_release: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # --- Timestamps ---
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    # --- Optimistic concurrency ---
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Relationships ---
    milestones: Mapped[list[Milestone]] = relationship(
        "Milestone",
        back_populates="escrow",
        cascade="all, delete-orphan",
        order_by="Milestone.position.asc()",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'completed', 'cancelled', 'disputed')",
            name="ck_escrow_valid_status",
        ),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_client", "client_address"),
        Index("idx_escrow_provider", "provider_address"),
        Index("idx_escrow_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Escrow id={self.id} status={self.status} "
            f"released={self.released_amount}/{self.total_amount}>"
        )


# ---------------------------------------------------------------------------
# 2. milestones
# ---------------------------------------------------------------------------
class Milestone(Base):
    """A payment tranche of an escrow."""

    __tablename__ = "milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="0-based milestone index on the ledger",
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    percentage_bps: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Share of the escrow total in basis points (100% = 10000)",
    )
    amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    release_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # --- Evidence ---
    evidence_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    evidence_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # --- Pending modification request ---
    modification_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    modification_requested_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    modification_requested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    proposed_title: Mapped[str | None] = mapped_column(String(200), nullable=True)
    proposed_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    proposed_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    escrow: Mapped[Escrow] = relationship("Escrow", back_populates="milestones")
    conditions: Mapped[list[ReleaseCondition]] = relationship(
        "ReleaseCondition",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="ReleaseCondition.position.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'evidence_submitted', 'completed', 'disputed', 'cancelled')",
            name="ck_milestone_valid_status",
        ),
        CheckConstraint(
            "percentage_bps > 0 AND percentage_bps <= 10000",
            name="ck_milestone_percentage_bounds",
        ),
        UniqueConstraint("escrow_id", "position", name="uq_milestone_position"),
        Index("idx_milestone_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return f"<Milestone id={self.id} #{self.position} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 3. release_conditions
# ---------------------------------------------------------------------------
class ReleaseCondition(Base):
    """A condition that must be met before a milestone auto-releases.

    Once met, a condition is never reverted and never deleted.
    """

    __tablename__ = "release_conditions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    milestone_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="0-based condition index on the ledger",
    )
    condition_type: Mapped[str] = mapped_column(String(20), nullable=False)
    data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    met: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verify_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    milestone: Mapped[Milestone] = relationship("Milestone", back_populates="conditions")

    __table_args__ = (
        CheckConstraint(
            "condition_type IN ('third_party', 'time_based', 'oracle')",
            name="ck_condition_valid_type",
        ),
        UniqueConstraint("milestone_id", "position", name="uq_condition_position"),
        Index("idx_condition_milestone", "milestone_id"),
    )

    def __repr__(self) -> str:
        return f"<ReleaseCondition id={self.id} type={self.condition_type} met={self.met}>"


# ---------------------------------------------------------------------------
# 4. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A dispute over one milestone, or over a whole escrow when milestone_id is null."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("milestones.id", ondelete="CASCADE"),
        nullable=True,
    )

    initiator: Mapped[str] = mapped_column(String(128), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")

    # --- Resolution ---
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True)
    favor_client: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # --- Ledger references ---
    open_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolve_tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    messages: Mapped[list[DisputeMessage]] = relationship(
        "DisputeMessage",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeMessage.created_at.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("status IN ('open', 'resolved')", name="ck_dispute_valid_status"),
        Index(
            "uq_dispute_open_milestone",
            "milestone_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        Index(
            "uq_dispute_open_escrow_level",
            "escrow_id",
            unique=True,
            postgresql_where=text("status = 'open' AND milestone_id IS NULL"),
            sqlite_where=text("status = 'open' AND milestone_id IS NULL"),
        ),
        Index("idx_dispute_escrow", "escrow_id"),
    )

    @property
    def is_escrow_level(self) -> bool:
        return self.milestone_id is None

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} escrow={self.escrow_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. dispute_messages (Append-Only)
# ---------------------------------------------------------------------------
class DisputeMessage(Base):
    """An immutable message in a dispute thread."""

    __tablename__ = "dispute_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("disputes.id", ondelete="CASCADE"),
        nullable=False,
    )
    author: Mapped[str] = mapped_column(String(128), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    dispute: Mapped[Dispute] = relationship("Dispute", back_populates="messages")

    __table_args__ = (Index("idx_message_dispute", "dispute_id"),)


# ---------------------------------------------------------------------------
# 6. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable audit record of every state change of an escrow.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrows.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    event_type: Mapped[str] = mapped_column(
        String(40),
        nullable=False,
        comment="EventType enum value (e.g., MILESTONE_RELEASED)",
    )
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        default="SYSTEM",
        comment="Who triggered this event (address or SYSTEM)",
    )
    tx_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_escrow", "escrow_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 7. settlement_records (Reconciliation journal)
# ---------------------------------------------------------------------------
class SettlementRecord(Base):
    """One row per ledger transaction whose store mutation was attempted.

    status=applied rows are written in the same transaction as the mutation
    itself, so a tx_ref is applied at most once. status=pending rows are
    written when the store mutation failed after the ledger committed.
    """

    __tablename__ = "settlement_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tx_ref: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    escrow_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    intent: Mapped[dict] = mapped_column(JSONType, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'applied', 'discarded')",
            name="ck_settlement_valid_status",
        ),
        Index("idx_settlement_status", "status"),
        Index("idx_settlement_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return f"<SettlementRecord tx_ref={self.tx_ref} kind={self.kind} status={self.status}>"


# ---------------------------------------------------------------------------
# Register the auto-update listener for updated_at
# ---------------------------------------------------------------------------
event.listen(Escrow, "before_update", _set_updated_at)
event.listen(Milestone, "before_update", _set_updated_at)
