"""Database infrastructure: engine, ORM models, repositories, and the record store."""

from milestone_escrow.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
)
from milestone_escrow.infrastructure.database.orm_models import (
    Base,
    Dispute,
    DisputeMessage,
    Escrow,
    EscrowEvent,
    Milestone,
    ReleaseCondition,
    SettlementRecord,
)
from milestone_escrow.infrastructure.database.store import RecordStore, UnitOfWork

__all__ = [
    "Base",
    "Dispute",
    "DisputeMessage",
    "Escrow",
    "EscrowEvent",
    "Milestone",
    "ReleaseCondition",
    "SettlementRecord",
    "RecordStore",
    "UnitOfWork",
    "get_session_factory",
    "init_db",
    "close_db",
]
