"""Append-only points ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.models.account import _utcnow


class LedgerEntryKind(str, Enum):
    """Closed set of ledger entry kinds."""

    EARN = "earn"
    SPEND = "spend"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    REWARD = "reward"
    COMMISSION = "commission"
    RIPPLE = "ripple"
    VOUCHER = "voucher"

    @property
    def is_debit(self) -> bool:
        return self in DEBIT_KINDS


DEBIT_KINDS = frozenset({LedgerEntryKind.SPEND, LedgerEntryKind.TRANSFER_OUT})


class LedgerEntry(Base):
    """Signed point movement; ``amount`` is negative for debit kinds."""

    __tablename__ = "reward_ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_reward_ledger_entries_account_key"),
        UniqueConstraint("account_id", "sequence", name="uq_reward_ledger_entries_account_sequence"),
        Index("ix_reward_ledger_entries_kind_created", "kind", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence = Column(BigInteger, nullable=False)
    amount = Column(BigInteger, nullable=False)
    kind = Column(
        SqlEnum(
            LedgerEntryKind,
            name="reward_ledger_entry_kind",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    source_ref = Column(String(255), nullable=True)
    idempotency_key = Column(String(255), nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    cascade_depth = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
