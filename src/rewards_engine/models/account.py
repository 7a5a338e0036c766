"""Reward accounts and the serial number counters that order them."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID

from rewards_engine.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountRole(str, Enum):
    """Actor types that hold a points balance."""

    CUSTOMER = "customer"
    MERCHANT = "merchant"


class Account(Base):
    """Points-holding account for a customer or merchant."""

    __tablename__ = "reward_accounts"
    __table_args__ = (
        UniqueConstraint("region", "local_serial_number", name="uq_reward_accounts_region_local_serial"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    role = Column(
        SqlEnum(
            AccountRole,
            name="reward_account_role",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    region = Column(String(16), nullable=True, index=True)
    tier = Column(String(32), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    point_balance = Column(BigInteger, nullable=False, default=0)
    lifetime_earned = Column(BigInteger, nullable=False, default=0)
    global_serial_number = Column(BigInteger, nullable=True, unique=True)
    local_serial_number = Column(BigInteger, nullable=True)
    serial_assigned_at = Column(DateTime(timezone=True), nullable=True)
    referred_by_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reward_accounts.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    infinity_cycles_completed = Column(Integer, nullable=False, default=0)
    ledger_sequence = Column(BigInteger, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}


class SerialCounter(Base):
    """Singleton counter rows; ``scope`` is ``global`` or ``local:<region>``."""

    __tablename__ = "reward_serial_counters"

    scope = Column(String(64), primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


GLOBAL_SERIAL_SCOPE = "global"


def local_serial_scope(region: str) -> str:
    return f"local:{region}"
