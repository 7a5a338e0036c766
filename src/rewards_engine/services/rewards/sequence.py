"""Gapless global and region-local serial number assignment."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import SerializationConflict
from rewards_engine.models.account import (
    GLOBAL_SERIAL_SCOPE,
    Account,
    AccountRole,
    SerialCounter,
    _utcnow,
    local_serial_scope,
)
from rewards_engine.models.ledger import LedgerEntry
from rewards_engine.models.rewards import StepUpReward
from rewards_engine.rules import QualificationRules


@dataclass(slots=True)
class SerialAssignment:
    account_id: UUID
    global_serial_number: int
    local_serial_number: int | None
    region: str | None
    assigned_at: datetime


@dataclass(slots=True)
class SerialStats:
    """Aggregate view over assigned serial numbers and StepUp payouts."""

    total_assigned: int
    latest_global_number: int | None
    step_up_reward_count: int
    step_up_points_awarded: int
    local_counters: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "total_assigned": self.total_assigned,
            "latest_global_number": self.latest_global_number,
            "step_up_reward_count": self.step_up_reward_count,
            "step_up_points_awarded": self.step_up_points_awarded,
            "local_counters": dict(self.local_counters),
        }


class SequenceAssignor:
    """Hands out serial numbers from counter rows locked by an atomic increment.

    The counters live inside the caller's transaction, so a rolled back
    cascade also rolls back the increment and numbers stay gapless.
    """

    def __init__(self, db_session: AsyncSession, rules: QualificationRules) -> None:
        self._db = db_session
        self._rules = rules

    def qualifies(self, entry: LedgerEntry, account: Account) -> bool:
        return (
            account.role == AccountRole.CUSTOMER
            and account.global_serial_number is None
            and entry.kind in self._rules.qualifying_kinds
            and int(account.point_balance or 0) >= self._rules.threshold
        )

    async def assign_if_qualified(self, entry: LedgerEntry, account: Account) -> SerialAssignment | None:
        if not self.qualifies(entry, account):
            return None
        return await self.assign(account)

    async def assign(self, account: Account) -> SerialAssignment | None:
        """Give ``account`` the next global serial (and a local one when it has a region)."""

        if account.global_serial_number is not None:
            return None

        global_number = await self.next_value(GLOBAL_SERIAL_SCOPE)
        local_number: int | None = None
        if account.region:
            local_number = await self.next_value(local_serial_scope(account.region))

        assigned_at = _utcnow()
        account.global_serial_number = global_number
        account.local_serial_number = local_number
        account.serial_assigned_at = assigned_at
        await self._db.flush()

        logger.info(
            "Assigned serial number",
            account_id=str(account.id),
            global_serial_number=global_number,
            local_serial_number=local_number,
            region=account.region,
        )
        return SerialAssignment(
            account_id=account.id,
            global_serial_number=global_number,
            local_serial_number=local_number,
            region=account.region,
            assigned_at=assigned_at,
        )

    async def next_value(self, scope: str) -> int:
        value = await self._increment(scope)
        if value is not None:
            return value

        try:
            async with self._db.begin_nested():
                self._db.add(SerialCounter(scope=scope, value=1))
            return 1
        except IntegrityError:
            logger.debug("Serial counter created concurrently; retrying increment", scope=scope)

        value = await self._increment(scope)
        if value is None:
            raise SerializationConflict(f"Serial counter {scope!r} could not be incremented")
        return value

    async def _increment(self, scope: str) -> int | None:
        stmt = (
            update(SerialCounter)
            .where(SerialCounter.scope == scope)
            .values(value=SerialCounter.value + 1, updated_at=_utcnow())
            .returning(SerialCounter.value)
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else None

    async def current_value(self, scope: str = GLOBAL_SERIAL_SCOPE) -> int:
        result = await self._db.execute(select(SerialCounter.value).where(SerialCounter.scope == scope))
        value = result.scalar_one_or_none()
        return int(value or 0)

    async def stats(self) -> SerialStats:
        assigned = await self._db.execute(
            select(
                func.count(Account.global_serial_number),
                func.max(Account.global_serial_number),
            )
        )
        total_assigned, latest = assigned.one()

        step_up = await self._db.execute(
            select(
                func.count(StepUpReward.id),
                func.coalesce(func.sum(StepUpReward.reward_points), 0),
            )
        )
        step_up_count, step_up_points = step_up.one()

        local_prefix = local_serial_scope("")
        counters = await self._db.execute(
            select(SerialCounter.scope, SerialCounter.value).where(SerialCounter.scope.like(f"{local_prefix}%"))
        )
        local_counters = {
            scope[len(local_prefix):]: int(value) for scope, value in counters.all()
        }

        return SerialStats(
            total_assigned=int(total_assigned or 0),
            latest_global_number=int(latest) if latest is not None else None,
            step_up_reward_count=int(step_up_count or 0),
            step_up_points_awarded=int(step_up_points or 0),
            local_counters=local_counters,
        )


__all__ = ["SequenceAssignor", "SerialAssignment", "SerialStats"]
