"""StepUp milestone rewards for earlier serial holders."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.account import Account
from rewards_engine.models.ledger import LedgerEntryKind
from rewards_engine.models.rewards import StepUpReward
from rewards_engine.rules import StepUpRules
from rewards_engine.services.ledger import LedgerCommand, derive_idempotency_key


@dataclass(slots=True)
class StepUpAward:
    reward: StepUpReward
    beneficiary: Account
    command: LedgerCommand


class MilestoneRewardCalculator:
    """Pays holder ``N // m`` when serial ``N`` is a multiple of ``m``.

    Work per assignment is bounded by the size of the multiplier table.
    """

    def __init__(self, db_session: AsyncSession, rules: StepUpRules) -> None:
        self._db = db_session
        self._rules = rules

    def candidate_targets(self, serial_number: int) -> list[tuple[int, int]]:
        """Return ``(target_serial, multiplier)`` pairs, smallest multiplier first."""

        if serial_number <= 0:
            return []
        return [
            (serial_number // multiplier, multiplier)
            for multiplier in self._rules.multipliers
            if serial_number % multiplier == 0
        ]

    async def evaluate(self, serial_number: int, *, depth: int) -> List[StepUpAward]:
        awards: List[StepUpAward] = []
        for target, multiplier in self.candidate_targets(serial_number):
            beneficiary = await self._holder_of(target)
            if beneficiary is None:
                logger.debug(
                    "No serial holder for StepUp target",
                    trigger_global_number=serial_number,
                    target=target,
                    multiplier=multiplier,
                )
                continue
            if await self._already_awarded(target, multiplier):
                continue

            points = self._rules.reward_for(multiplier)
            reward = StepUpReward(
                beneficiary_account_id=beneficiary.id,
                beneficiary_serial_number=target,
                multiplier=multiplier,
                trigger_global_number=serial_number,
                reward_points=points,
            )
            self._db.add(reward)
            await self._db.flush()

            command = LedgerCommand(
                account_id=beneficiary.id,
                amount=points,
                kind=LedgerEntryKind.REWARD,
                idempotency_key=derive_idempotency_key("step-up", target, multiplier),
                source_ref=f"step-up:{target}x{multiplier}",
                depth=depth,
            )
            awards.append(StepUpAward(reward=reward, beneficiary=beneficiary, command=command))
            logger.info(
                "StepUp reward awarded",
                beneficiary_account_id=str(beneficiary.id),
                beneficiary_serial_number=target,
                multiplier=multiplier,
                trigger_global_number=serial_number,
                reward_points=points,
            )
        return awards

    async def _holder_of(self, serial_number: int) -> Account | None:
        result = await self._db.execute(select(Account).where(Account.global_serial_number == serial_number))
        return result.scalar_one_or_none()

    async def _already_awarded(self, serial_number: int, multiplier: int) -> bool:
        result = await self._db.execute(
            select(StepUpReward.id).where(
                StepUpReward.beneficiary_serial_number == serial_number,
                StepUpReward.multiplier == multiplier,
            )
        )
        return result.scalar_one_or_none() is not None


__all__ = ["MilestoneRewardCalculator", "StepUpAward"]
