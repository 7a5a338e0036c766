"""Proportional split of the shopping voucher pool across active merchants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.account import Account, AccountRole, _utcnow
from rewards_engine.models.ledger import LedgerEntry, LedgerEntryKind
from rewards_engine.models.rewards import ShoppingVoucher
from rewards_engine.rules import VoucherRules
from rewards_engine.services.ledger import LedgerCommand, derive_idempotency_key
from rewards_engine.services.rewards.step_up import StepUpAward


def split_pool(pool: int, weights: Mapping[UUID, int]) -> Dict[UUID, int]:
    """Floor each merchant's proportional share and hand the residual to the heaviest.

    Ties on weight go to the smallest id string. The result always sums to
    ``pool`` when at least one weight is positive.
    """

    positive = {merchant_id: int(weight) for merchant_id, weight in weights.items() if weight > 0}
    if pool <= 0 or not positive:
        return {}

    total = sum(positive.values())
    shares = {merchant_id: pool * weight // total for merchant_id, weight in positive.items()}
    residual = pool - sum(shares.values())
    if residual:
        leader = min(positive, key=lambda merchant_id: (-positive[merchant_id], str(merchant_id)))
        shares[leader] += residual
    return shares


@dataclass(slots=True)
class VoucherAward:
    voucher: ShoppingVoucher
    command: LedgerCommand


class VoucherDistributor:
    def __init__(self, db_session: AsyncSession, rules: VoucherRules) -> None:
        self._db = db_session
        self._rules = rules

    async def participating_merchants(self, *, now: datetime | None = None) -> Dict[UUID, int]:
        """Return active merchants keyed by id with their ``transfer_out`` volume in the window."""

        reference = now or _utcnow()
        window_start = reference - timedelta(days=self._rules.lookback_days)
        volume = func.sum(-LedgerEntry.amount)
        stmt = (
            select(LedgerEntry.account_id, volume)
            .join(Account, Account.id == LedgerEntry.account_id)
            .where(
                Account.role == AccountRole.MERCHANT,
                Account.is_active.is_(True),
                LedgerEntry.kind == LedgerEntryKind.TRANSFER_OUT,
                LedgerEntry.created_at >= window_start,
            )
            .group_by(LedgerEntry.account_id)
        )
        result = await self._db.execute(stmt)
        return {account_id: int(total) for account_id, total in result.all() if total and int(total) > 0}

    async def distribute(self, award: StepUpAward, *, depth: int) -> List[VoucherAward]:
        weights = await self.participating_merchants()
        if not weights:
            logger.info(
                "No participating merchants; voucher pool not distributed",
                step_up_reward_id=str(award.reward.id),
                pool=self._rules.pool,
            )
            return []

        shares = split_pool(self._rules.pool, weights)
        serial_number = award.reward.beneficiary_serial_number
        multiplier = award.reward.multiplier
        awards: List[VoucherAward] = []
        for merchant_id in sorted(shares, key=str):
            amount = shares[merchant_id]
            if amount <= 0:
                continue
            voucher = ShoppingVoucher(
                merchant_id=merchant_id,
                triggering_step_up_reward_id=award.reward.id,
                voucher_amount=amount,
            )
            self._db.add(voucher)
            awards.append(
                VoucherAward(
                    voucher=voucher,
                    command=LedgerCommand(
                        account_id=merchant_id,
                        amount=amount,
                        kind=LedgerEntryKind.VOUCHER,
                        idempotency_key=derive_idempotency_key("voucher", serial_number, multiplier, merchant_id),
                        source_ref=f"voucher:{serial_number}x{multiplier}",
                        depth=depth,
                    ),
                )
            )
        await self._db.flush()

        logger.info(
            "Voucher pool distributed",
            step_up_reward_id=str(award.reward.id),
            pool=self._rules.pool,
            merchants=len(awards),
        )
        return awards


__all__ = ["VoucherAward", "VoucherDistributor", "split_pool"]
