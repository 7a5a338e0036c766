"""Lifetime referral commissions on the referred account's activity."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.account import Account
from rewards_engine.models.ledger import LedgerEntry, LedgerEntryKind
from rewards_engine.models.rewards import ReferralCommission
from rewards_engine.rules import ReferralRules
from rewards_engine.services.ledger import LedgerCommand, derive_idempotency_key


def floor_points(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


@dataclass(slots=True)
class CommissionAward:
    commission: ReferralCommission
    command: LedgerCommand


class ReferralCommissionEngine:
    """Credits the referrer a role-dependent share of each qualifying entry."""

    def __init__(self, db_session: AsyncSession, rules: ReferralRules) -> None:
        self._db = db_session
        self._rules = rules

    def applies_to(self, entry: LedgerEntry, account: Account) -> bool:
        return account.referred_by_id is not None and entry.kind in self._rules.commission_kinds

    @staticmethod
    def compute_commission(amount: int, rate: Decimal) -> int:
        return floor_points(Decimal(abs(int(amount))) * rate)

    async def evaluate(self, entry: LedgerEntry, account: Account, *, depth: int) -> CommissionAward | None:
        if not self.applies_to(entry, account):
            return None

        rate = self._rules.rate_for(account.role)
        referrer = await self._db.get(Account, account.referred_by_id)
        if referrer is None or not referrer.is_active:
            logger.info(
                "Skipping referral commission for inactive referrer",
                referred_account_id=str(account.id),
                referrer_account_id=str(account.referred_by_id),
                source_entry_id=str(entry.id),
            )
            return None

        commission_amount = self.compute_commission(entry.amount, rate)
        if commission_amount <= 0:
            return None

        commission = ReferralCommission(
            referrer_account_id=referrer.id,
            referred_account_id=account.id,
            source_entry_id=entry.id,
            source_amount=abs(int(entry.amount)),
            commission_rate=rate,
            commission_amount=commission_amount,
        )
        self._db.add(commission)
        await self._db.flush()

        logger.info(
            "Referral commission earned",
            referrer_account_id=str(referrer.id),
            referred_account_id=str(account.id),
            source_kind=entry.kind.value,
            commission_rate=str(rate),
            commission_amount=commission_amount,
        )
        return CommissionAward(
            commission=commission,
            command=LedgerCommand(
                account_id=referrer.id,
                amount=commission_amount,
                kind=LedgerEntryKind.COMMISSION,
                idempotency_key=derive_idempotency_key("commission", entry.id),
                source_ref=f"commission:{entry.id}",
                depth=depth,
            ),
        )


__all__ = ["CommissionAward", "ReferralCommissionEngine", "floor_points"]
