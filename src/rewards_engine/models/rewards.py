"""Append-only reward records produced by the reward cascade."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base
from rewards_engine.models.account import _utcnow


class StepUpReward(Base):
    """Milestone reward paid when a new serial is a multiple of the beneficiary's."""

    __tablename__ = "reward_step_up_rewards"
    __table_args__ = (
        UniqueConstraint(
            "beneficiary_serial_number",
            "multiplier",
            name="uq_reward_step_up_rewards_serial_multiplier",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    beneficiary_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    beneficiary_serial_number = Column(BigInteger, nullable=False)
    multiplier = Column(Integer, nullable=False)
    trigger_global_number = Column(BigInteger, nullable=False)
    reward_points = Column(BigInteger, nullable=False)
    awarded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class InfinityCycle(Base):
    """Lifetime milestone cycle awarded once per account and cycle number."""

    __tablename__ = "reward_infinity_cycles"
    __table_args__ = (
        UniqueConstraint("account_id", "cycle_number", name="uq_reward_infinity_cycles_account_cycle"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    cycle_number = Column(Integer, nullable=False)
    milestone_points = Column(BigInteger, nullable=False)
    reward_points = Column(BigInteger, nullable=False)
    awarded_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ReferralCommission(Base):
    """Lifetime referral commission derived from one ledger entry of the referred account."""

    __tablename__ = "reward_referral_commissions"
    __table_args__ = (UniqueConstraint("source_entry_id", name="uq_reward_referral_commissions_source_entry"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_entry_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_ledger_entries.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_amount = Column(BigInteger, nullable=False)
    commission_rate = Column(Numeric(8, 6), nullable=False)
    commission_amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RippleReward(Base):
    """Secondary bonus paid to the referrer of a StepUp beneficiary."""

    __tablename__ = "reward_ripple_rewards"
    __table_args__ = (
        UniqueConstraint("triggering_step_up_reward_id", name="uq_reward_ripple_rewards_step_up_reward"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    referrer_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referred_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    triggering_step_up_reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_step_up_rewards.id", ondelete="CASCADE"),
        nullable=False,
    )
    ripple_percentage = Column(Numeric(8, 6), nullable=False)
    ripple_amount = Column(BigInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ShoppingVoucher(Base):
    """Merchant share of the voucher pool released by one StepUp reward."""

    __tablename__ = "reward_shopping_vouchers"
    __table_args__ = (
        UniqueConstraint(
            "triggering_step_up_reward_id",
            "merchant_id",
            name="uq_reward_shopping_vouchers_reward_merchant",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    triggering_step_up_reward_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_step_up_rewards.id", ondelete="CASCADE"),
        nullable=False,
    )
    voucher_amount = Column(BigInteger, nullable=False)
    distributed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
