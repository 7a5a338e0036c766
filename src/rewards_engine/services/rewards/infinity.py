"""Infinity cycle rewards at geometrically widening lifetime thresholds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.account import Account, AccountRole
from rewards_engine.models.ledger import LedgerEntry, LedgerEntryKind
from rewards_engine.models.rewards import InfinityCycle
from rewards_engine.rules import InfinityRules
from rewards_engine.services.ledger import LedgerCommand, derive_idempotency_key


@dataclass(slots=True)
class InfinityAward:
    cycle: InfinityCycle
    command: LedgerCommand


class InfinityCycleTracker:
    def __init__(self, db_session: AsyncSession, rules: InfinityRules) -> None:
        self._db = db_session
        self._rules = rules

    def pending_cycles(self, lifetime_earned: int, completed: int) -> list[int]:
        """Cycle numbers whose threshold ``lifetime_earned`` has reached, in order."""

        cycles: list[int] = []
        cycle_number = completed
        while not self._rules.is_capped(cycle_number) and lifetime_earned >= self._rules.threshold_for(cycle_number):
            cycles.append(cycle_number)
            cycle_number += 1
        return cycles

    async def evaluate(self, entry: LedgerEntry, account: Account, *, depth: int) -> List[InfinityAward]:
        if account.role != AccountRole.CUSTOMER or entry.kind.is_debit:
            return []

        lifetime = int(account.lifetime_earned or 0)
        awards: List[InfinityAward] = []
        for cycle_number in self.pending_cycles(lifetime, int(account.infinity_cycles_completed or 0)):
            reward_points = self._rules.reward_for(cycle_number)
            milestone = self._rules.threshold_for(cycle_number)
            cycle = InfinityCycle(
                account_id=account.id,
                cycle_number=cycle_number,
                milestone_points=milestone,
                reward_points=reward_points,
            )
            self._db.add(cycle)
            account.infinity_cycles_completed = cycle_number + 1
            awards.append(
                InfinityAward(
                    cycle=cycle,
                    command=LedgerCommand(
                        account_id=account.id,
                        amount=reward_points,
                        kind=LedgerEntryKind.REWARD,
                        idempotency_key=derive_idempotency_key("infinity", account.id, cycle_number),
                        source_ref=f"infinity:{cycle_number}",
                        depth=depth,
                    ),
                )
            )
            logger.info(
                "Infinity cycle completed",
                account_id=str(account.id),
                cycle_number=cycle_number,
                milestone_points=milestone,
                reward_points=reward_points,
                lifetime_earned=lifetime,
            )

        if awards:
            await self._db.flush()
        return awards


__all__ = ["InfinityAward", "InfinityCycleTracker"]
