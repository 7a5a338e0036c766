"""Breadth-first reward cascade run inside a single database transaction."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import CascadeDepthExceeded, DuplicateIdempotencyKey, IdempotencyKeyReuse
from rewards_engine.models.account import Account
from rewards_engine.models.ledger import LedgerEntry
from rewards_engine.models.rewards import (
    InfinityCycle,
    ReferralCommission,
    RippleReward,
    ShoppingVoucher,
    StepUpReward,
)
from rewards_engine.rules import RewardRules
from rewards_engine.services.ledger import LedgerCommand, PointsLedger
from rewards_engine.services.rewards.infinity import InfinityCycleTracker
from rewards_engine.services.rewards.referral import ReferralCommissionEngine
from rewards_engine.services.rewards.ripple import RippleRewardEngine
from rewards_engine.services.rewards.sequence import SequenceAssignor, SerialAssignment
from rewards_engine.services.rewards.step_up import MilestoneRewardCalculator
from rewards_engine.services.rewards.vouchers import VoucherDistributor


@dataclass
class CascadeSummary:
    """Everything a single command caused, in the order it was applied."""

    entries: List[LedgerEntry] = field(default_factory=list)
    serial_assignments: List[SerialAssignment] = field(default_factory=list)
    step_up_rewards: List[StepUpReward] = field(default_factory=list)
    infinity_cycles: List[InfinityCycle] = field(default_factory=list)
    commissions: List[ReferralCommission] = field(default_factory=list)
    ripple_rewards: List[RippleReward] = field(default_factory=list)
    vouchers: List[ShoppingVoucher] = field(default_factory=list)
    skipped_duplicates: int = 0
    max_depth: int = 0

    def merge(self, other: "CascadeSummary") -> None:
        self.entries.extend(other.entries)
        self.serial_assignments.extend(other.serial_assignments)
        self.step_up_rewards.extend(other.step_up_rewards)
        self.infinity_cycles.extend(other.infinity_cycles)
        self.commissions.extend(other.commissions)
        self.ripple_rewards.extend(other.ripple_rewards)
        self.vouchers.extend(other.vouchers)
        self.skipped_duplicates += other.skipped_duplicates
        self.max_depth = max(self.max_depth, other.max_depth)

    def as_dict(self) -> Dict[str, int]:
        return {
            "entries": len(self.entries),
            "serial_assignments": len(self.serial_assignments),
            "step_up_rewards": len(self.step_up_rewards),
            "infinity_cycles": len(self.infinity_cycles),
            "commissions": len(self.commissions),
            "ripple_rewards": len(self.ripple_rewards),
            "vouchers": len(self.vouchers),
            "skipped_duplicates": self.skipped_duplicates,
            "max_depth": self.max_depth,
        }


class RewardCascade:
    """Applies a ledger command and every reward it triggers.

    Effects are queued first-in first-out and each one is applied through the
    ledger, so derived credits can trigger further effects until the queue
    drains or ``max_depth`` is exceeded.
    """

    def __init__(self, db_session: AsyncSession, rules: RewardRules, *, max_depth: int) -> None:
        self._db = db_session
        self._max_depth = max_depth
        self.ledger = PointsLedger(db_session)
        self.sequence = SequenceAssignor(db_session, rules.qualification)
        self.step_up = MilestoneRewardCalculator(db_session, rules.step_up)
        self.infinity = InfinityCycleTracker(db_session, rules.infinity)
        self.referral = ReferralCommissionEngine(db_session, rules.referral)
        self.ripple = RippleRewardEngine(db_session, rules.ripple)
        self.vouchers = VoucherDistributor(db_session, rules.vouchers)

    async def run(self, command: LedgerCommand) -> tuple[LedgerEntry, Account, CascadeSummary]:
        """Apply ``command`` and drain its effects.

        ``DuplicateIdempotencyKey`` from the originating command propagates to
        the caller; duplicates of derived credits are skipped.
        """

        summary = CascadeSummary()
        entry, account = await self.ledger.apply(command)
        summary.entries.append(entry)
        queue: Deque[LedgerCommand] = deque(await self._react(entry, account, command.depth + 1, summary))
        await self._drain(queue, summary)
        return entry, account, summary

    async def replay_step_up(self) -> CascadeSummary:
        """Re-evaluate StepUp for every assigned serial; already paid rewards are skipped."""

        summary = CascadeSummary()
        result = await self._db.execute(select(func.max(Account.global_serial_number)))
        latest = result.scalar_one_or_none()
        if latest is None:
            return summary

        for serial_number in range(1, int(latest) + 1):
            queue: Deque[LedgerCommand] = deque(await self._step_up_effects(serial_number, 1, summary))
            await self._drain(queue, summary)
        return summary

    async def _drain(self, queue: Deque[LedgerCommand], summary: CascadeSummary) -> None:
        while queue:
            command = queue.popleft()
            if command.depth > self._max_depth:
                raise CascadeDepthExceeded(command.depth, self._max_depth)
            try:
                entry, account = await self.ledger.apply(command)
            except DuplicateIdempotencyKey as duplicate:
                stored = duplicate.entry
                if stored.kind != command.kind or abs(int(stored.amount)) != command.amount:
                    raise IdempotencyKeyReuse(
                        f"Reward credit key {command.idempotency_key!r} is held by a "
                        f"{stored.kind.value} entry of {abs(int(stored.amount))} points"
                    ) from duplicate
                summary.skipped_duplicates += 1
                logger.debug(
                    "Derived credit already applied",
                    account_id=str(command.account_id),
                    idempotency_key=command.idempotency_key,
                )
                continue
            summary.entries.append(entry)
            summary.max_depth = max(summary.max_depth, command.depth)
            queue.extend(await self._react(entry, account, command.depth + 1, summary))

    async def _react(
        self,
        entry: LedgerEntry,
        account: Account,
        depth: int,
        summary: CascadeSummary,
    ) -> List[LedgerCommand]:
        commands: List[LedgerCommand] = []

        assignment = await self.sequence.assign_if_qualified(entry, account)
        if assignment is not None:
            summary.serial_assignments.append(assignment)
            commands.extend(await self._step_up_effects(assignment.global_serial_number, depth, summary))

        for award in await self.infinity.evaluate(entry, account, depth=depth):
            summary.infinity_cycles.append(award.cycle)
            commands.append(award.command)

        commission = await self.referral.evaluate(entry, account, depth=depth)
        if commission is not None:
            summary.commissions.append(commission.commission)
            commands.append(commission.command)

        return commands

    async def _step_up_effects(self, serial_number: int, depth: int, summary: CascadeSummary) -> List[LedgerCommand]:
        commands: List[LedgerCommand] = []
        for award in await self.step_up.evaluate(serial_number, depth=depth):
            summary.step_up_rewards.append(award.reward)
            commands.append(award.command)

            ripple = await self.ripple.evaluate(award, depth=depth)
            if ripple is not None:
                summary.ripple_rewards.append(ripple.ripple)
                commands.append(ripple.command)

            for voucher in await self.vouchers.distribute(award, depth=depth):
                summary.vouchers.append(voucher.voucher)
                commands.append(voucher.command)
        return commands


__all__ = ["CascadeSummary", "RewardCascade"]
