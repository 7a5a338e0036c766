"""Aggregate reporting over Infinity, ripple and voucher payouts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List
from uuid import UUID

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.models.rewards import InfinityCycle, RippleReward, ShoppingVoucher


@dataclass(slots=True)
class InfinityStats:
    customers_rewarded: int
    cycles_completed: int
    points_awarded: int
    cycles_by_number: Dict[int, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "customers_rewarded": self.customers_rewarded,
            "cycles_completed": self.cycles_completed,
            "points_awarded": self.points_awarded,
            "cycles_by_number": dict(self.cycles_by_number),
        }


@dataclass(slots=True)
class ReferrerRippleTotal:
    referrer_account_id: UUID
    ripple_count: int
    points_awarded: int


@dataclass(slots=True)
class RippleStats:
    ripple_count: int
    points_awarded: int
    top_referrers: List[ReferrerRippleTotal] = field(default_factory=list)

    @property
    def average_points(self) -> float:
        if not self.ripple_count:
            return 0.0
        return self.points_awarded / self.ripple_count

    def as_dict(self) -> Dict[str, object]:
        return {
            "ripple_count": self.ripple_count,
            "points_awarded": self.points_awarded,
            "average_points": self.average_points,
            "top_referrers": [
                {
                    "referrer_account_id": str(total.referrer_account_id),
                    "ripple_count": total.ripple_count,
                    "points_awarded": total.points_awarded,
                }
                for total in self.top_referrers
            ],
        }


@dataclass(slots=True)
class VoucherStats:
    voucher_count: int
    points_distributed: int
    merchants_rewarded: int
    pools_released: int

    def as_dict(self) -> Dict[str, object]:
        return {
            "voucher_count": self.voucher_count,
            "points_distributed": self.points_distributed,
            "merchants_rewarded": self.merchants_rewarded,
            "pools_released": self.pools_released,
        }


class RewardStatistics:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def infinity(self) -> InfinityStats:
        totals = await self._db.execute(
            select(
                func.count(distinct(InfinityCycle.account_id)),
                func.count(InfinityCycle.id),
                func.coalesce(func.sum(InfinityCycle.reward_points), 0),
            )
        )
        customers, cycles, points = totals.one()

        per_cycle = await self._db.execute(
            select(InfinityCycle.cycle_number, func.count(InfinityCycle.id))
            .group_by(InfinityCycle.cycle_number)
            .order_by(InfinityCycle.cycle_number)
        )
        return InfinityStats(
            customers_rewarded=int(customers or 0),
            cycles_completed=int(cycles or 0),
            points_awarded=int(points or 0),
            cycles_by_number={int(number): int(count) for number, count in per_cycle.all()},
        )

    async def ripple(self, *, top: int = 5) -> RippleStats:
        totals = await self._db.execute(
            select(
                func.count(RippleReward.id),
                func.coalesce(func.sum(RippleReward.ripple_amount), 0),
            )
        )
        count, points = totals.one()

        referrer_points = func.sum(RippleReward.ripple_amount)
        leaders = await self._db.execute(
            select(
                RippleReward.referrer_account_id,
                func.count(RippleReward.id),
                referrer_points,
            )
            .group_by(RippleReward.referrer_account_id)
            .order_by(referrer_points.desc(), RippleReward.referrer_account_id)
            .limit(top)
        )
        return RippleStats(
            ripple_count=int(count or 0),
            points_awarded=int(points or 0),
            top_referrers=[
                ReferrerRippleTotal(
                    referrer_account_id=referrer_id,
                    ripple_count=int(referrer_count),
                    points_awarded=int(referrer_total or 0),
                )
                for referrer_id, referrer_count, referrer_total in leaders.all()
            ],
        )

    async def vouchers(self) -> VoucherStats:
        totals = await self._db.execute(
            select(
                func.count(ShoppingVoucher.id),
                func.coalesce(func.sum(ShoppingVoucher.voucher_amount), 0),
                func.count(distinct(ShoppingVoucher.merchant_id)),
                func.count(distinct(ShoppingVoucher.triggering_step_up_reward_id)),
            )
        )
        count, points, merchants, pools = totals.one()
        return VoucherStats(
            voucher_count=int(count or 0),
            points_distributed=int(points or 0),
            merchants_rewarded=int(merchants or 0),
            pools_released=int(pools or 0),
        )


__all__ = [
    "InfinityStats",
    "ReferrerRippleTotal",
    "RewardStatistics",
    "RippleStats",
    "VoucherStats",
]
