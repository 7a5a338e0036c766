"""Ripple bonuses for referrers of StepUp beneficiaries."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.account import Account
from rewards_engine.models.ledger import LedgerEntryKind
from rewards_engine.models.rewards import RippleReward
from rewards_engine.rules import RippleRules
from rewards_engine.services.ledger import LedgerCommand, derive_idempotency_key
from rewards_engine.services.rewards.referral import floor_points
from rewards_engine.services.rewards.step_up import StepUpAward


@dataclass(slots=True)
class RippleAward:
    ripple: RippleReward
    command: LedgerCommand


class RippleRewardEngine:
    def __init__(self, db_session: AsyncSession, rules: RippleRules) -> None:
        self._db = db_session
        self._rules = rules

    @staticmethod
    def compute_ripple(reward_points: int, percentage: Decimal) -> int:
        return floor_points(Decimal(int(reward_points)) * percentage)

    async def evaluate(self, award: StepUpAward, *, depth: int) -> RippleAward | None:
        beneficiary = award.beneficiary
        if beneficiary.referred_by_id is None:
            return None

        referrer = await self._db.get(Account, beneficiary.referred_by_id)
        if referrer is None or not referrer.is_active:
            logger.info(
                "Skipping ripple reward for inactive referrer",
                beneficiary_account_id=str(beneficiary.id),
                referrer_account_id=str(beneficiary.referred_by_id),
            )
            return None

        percentage = self._rules.percentage_for(award.reward.multiplier)
        amount = self.compute_ripple(award.reward.reward_points, percentage)
        if amount <= 0:
            return None

        ripple = RippleReward(
            referrer_account_id=referrer.id,
            referred_account_id=beneficiary.id,
            triggering_step_up_reward_id=award.reward.id,
            ripple_percentage=percentage,
            ripple_amount=amount,
        )
        self._db.add(ripple)
        await self._db.flush()

        logger.info(
            "Ripple reward earned",
            referrer_account_id=str(referrer.id),
            beneficiary_account_id=str(beneficiary.id),
            multiplier=award.reward.multiplier,
            ripple_amount=amount,
        )
        return RippleAward(
            ripple=ripple,
            command=LedgerCommand(
                account_id=referrer.id,
                amount=amount,
                kind=LedgerEntryKind.RIPPLE,
                idempotency_key=derive_idempotency_key(
                    "ripple", award.reward.beneficiary_serial_number, award.reward.multiplier
                ),
                source_ref=f"ripple:{award.reward.beneficiary_serial_number}x{award.reward.multiplier}",
                depth=depth,
            ),
        )


__all__ = ["RippleAward", "RippleRewardEngine"]
