"""Transactional facade over the points ledger and reward cascade."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, TypeVar
from uuid import UUID

from loguru import logger
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rewards_engine.core.errors import (
    DuplicateIdempotencyKey,
    IdempotencyKeyReuse,
    InvalidAmount,
    InvalidIdempotencyKey,
    InvalidTransfer,
    RetryExhausted,
    RewardEngineError,
    SerializationConflict,
)
from rewards_engine.core.settings import Settings, settings as default_settings
from rewards_engine.models.account import Account, AccountRole
from rewards_engine.models.ledger import LedgerEntry, LedgerEntryKind
from rewards_engine.models.rewards import (
    InfinityCycle,
    ReferralCommission,
    RippleReward,
    ShoppingVoucher,
    StepUpReward,
)
from rewards_engine.observability.rewards import RewardObservabilityStore, get_reward_store
from rewards_engine.rules import RewardRules, get_reward_rules
from rewards_engine.services.accounts import AccountService
from rewards_engine.services.ledger import LedgerCommand, LedgerPage, PointsLedger, is_reserved_idempotency_key
from rewards_engine.services.rewards import (
    CascadeSummary,
    InfinityStats,
    RewardCascade,
    RewardStatistics,
    RippleStats,
    SequenceAssignor,
    SerialStats,
    VoucherStats,
)

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]
T = TypeVar("T")

_RETRYABLE_SQLSTATES = {"40001", "40P01"}


@dataclass(slots=True)
class RecordResult:
    balance: int
    entry: LedgerEntry
    replayed: bool
    summary: CascadeSummary | None = None


@dataclass(slots=True)
class TransferResult:
    outgoing: LedgerEntry
    incoming: LedgerEntry
    from_balance: int
    to_balance: int
    replayed: bool
    summary: CascadeSummary | None = None


@dataclass(slots=True)
class LedgerIntegrityReport:
    """Comparison of an account's stored balance with its ledger history."""

    account_id: UUID
    stored_balance: int
    ledger_sum: int
    entry_count: int
    last_sequence: int
    sequence_gaps: List[int] = field(default_factory=list)
    balance_mismatches: List[int] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return (
            self.stored_balance == self.ledger_sum
            and not self.sequence_gaps
            and not self.balance_mismatches
            and self.last_sequence == self.entry_count
        )


def _sqlstate(error: DBAPIError) -> str | None:
    original = getattr(error, "orig", None)
    for attribute in ("sqlstate", "pgcode"):
        code = getattr(original, attribute, None)
        if code:
            return str(code)
    return None


def classify_conflict(error: BaseException) -> SerializationConflict | None:
    """Map driver and ORM errors that mean "another writer won" to ``SerializationConflict``."""

    if isinstance(error, SerializationConflict):
        return error
    if isinstance(error, StaleDataError):
        return SerializationConflict(f"Concurrent update detected: {error}")
    if isinstance(error, IntegrityError):
        return SerializationConflict(f"Unique guard rejected a concurrent write: {error.orig}")
    if isinstance(error, DBAPIError):
        if _sqlstate(error) in _RETRYABLE_SQLSTATES:
            return SerializationConflict(f"Database reported a serialization failure: {error.orig}")
        if "database is locked" in str(error.orig).lower():
            return SerializationConflict("SQLite database is locked by another writer")
    return None


def _validate_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Point amounts must be integers, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"Point amounts must be positive, got {amount}")
    return amount


def _validate_idempotency_key(idempotency_key: str) -> str:
    if not idempotency_key:
        raise InvalidIdempotencyKey("An idempotency key is required")
    if is_reserved_idempotency_key(idempotency_key):
        raise InvalidIdempotencyKey(
            f"Idempotency key {idempotency_key!r} uses a namespace reserved for reward credits"
        )
    return idempotency_key


def _ensure_same_payload(stored: LedgerEntry, amount: int, kind: LedgerEntryKind) -> None:
    if abs(int(stored.amount)) != amount or stored.kind != kind:
        raise IdempotencyKeyReuse(
            f"Idempotency key {stored.idempotency_key!r} was already used for "
            f"{stored.kind.value} {abs(int(stored.amount))}"
        )


class RewardEngine:
    """Entry point for every point-affecting command and reward query.

    Each command runs the ledger write and its full reward cascade in one
    transaction. Write conflicts restart the whole unit of work in a fresh
    session with exponential backoff.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        rules: RewardRules | None = None,
        settings: Settings | None = None,
        store: RewardObservabilityStore | None = None,
        max_cascade_depth: int | None = None,
        retry_attempts: int | None = None,
        retry_backoff_seconds: float | None = None,
        retry_max_backoff_seconds: float | None = None,
    ) -> None:
        config = settings or default_settings
        self._session_factory = session_factory
        self._rules = rules
        self._store = store or get_reward_store()
        self._max_depth = max_cascade_depth or config.cascade_max_depth
        self._retry_attempts = retry_attempts or config.conflict_retry_attempts
        self._retry_backoff = (
            retry_backoff_seconds if retry_backoff_seconds is not None else config.conflict_retry_backoff_seconds
        )
        self._retry_max_backoff = (
            retry_max_backoff_seconds
            if retry_max_backoff_seconds is not None
            else config.conflict_retry_max_backoff_seconds
        )
        self._page_size = config.ledger_page_size
        self._page_size_max = config.ledger_page_size_max
        self._tracer = trace.get_tracer(__name__)

    @property
    def rules(self) -> RewardRules:
        if self._rules is None:
            self._rules = get_reward_rules()
        return self._rules

    # Commands

    async def register_account(
        self,
        role: AccountRole | str,
        region: str | None = None,
        referred_by: UUID | None = None,
        tier: str | None = None,
    ) -> Account:
        async def work(session: AsyncSession) -> Account:
            return await AccountService(session).register(role, region=region, referred_by=referred_by, tier=tier)

        return await self._run_in_transaction("register_account", work)

    async def link_referrer(self, account_id: UUID, referrer_id: UUID) -> Account:
        async def work(session: AsyncSession) -> Account:
            return await AccountService(session).link_referrer(account_id, referrer_id)

        return await self._run_in_transaction("link_referrer", work)

    async def set_account_active(self, account_id: UUID, is_active: bool) -> Account:
        async def work(session: AsyncSession) -> Account:
            return await AccountService(session).set_active(account_id, is_active)

        return await self._run_in_transaction("set_account_active", work)

    async def record(
        self,
        account_id: UUID,
        amount: int,
        kind: LedgerEntryKind | str,
        source_ref: str | None,
        idempotency_key: str,
    ) -> RecordResult:
        """Apply one ledger entry and everything it triggers, exactly once per key."""

        amount = _validate_amount(amount)
        entry_kind = LedgerEntryKind(kind)
        _validate_idempotency_key(idempotency_key)

        async def work(session: AsyncSession) -> RecordResult:
            cascade = RewardCascade(session, self.rules, max_depth=self._max_depth)
            command = LedgerCommand(
                account_id=account_id,
                amount=amount,
                kind=entry_kind,
                idempotency_key=idempotency_key,
                source_ref=source_ref,
            )
            try:
                entry, account, summary = await cascade.run(command)
            except DuplicateIdempotencyKey as duplicate:
                _ensure_same_payload(duplicate.entry, amount, entry_kind)
                balance = await cascade.ledger.get_balance(account_id)
                return RecordResult(balance=balance, entry=duplicate.entry, replayed=True)
            return RecordResult(
                balance=int(account.point_balance),
                entry=entry,
                replayed=False,
                summary=summary,
            )

        with self._tracer.start_as_current_span("rewards.record") as span:
            span.set_attribute("rewards.account_id", str(account_id))
            span.set_attribute("rewards.kind", entry_kind.value)
            span.set_attribute("rewards.amount", amount)
            result = await self._run_in_transaction("record", work)
            span.set_attribute("rewards.replayed", result.replayed)

        self._record_telemetry("record", result.summary, replayed=result.replayed)
        logger.info(
            "Recorded ledger entry",
            account_id=str(account_id),
            kind=entry_kind.value,
            amount=amount,
            balance=result.balance,
            replayed=result.replayed,
            cascade=result.summary.as_dict() if result.summary else None,
        )
        return result

    async def transfer(
        self,
        from_id: UUID,
        to_id: UUID,
        amount: int,
        source_ref: str | None,
        idempotency_key: str,
    ) -> TransferResult:
        """Move points between two accounts as a ``transfer_out``/``transfer_in`` pair."""

        amount = _validate_amount(amount)
        if from_id == to_id:
            raise InvalidTransfer("Cannot transfer points to the same account")
        _validate_idempotency_key(idempotency_key)

        out_key = f"{idempotency_key}:out"
        in_key = f"{idempotency_key}:in"

        async def work(session: AsyncSession) -> TransferResult:
            cascade = RewardCascade(session, self.rules, max_depth=self._max_depth)
            try:
                outgoing, sender, summary = await cascade.run(
                    LedgerCommand(
                        account_id=from_id,
                        amount=amount,
                        kind=LedgerEntryKind.TRANSFER_OUT,
                        idempotency_key=out_key,
                        source_ref=source_ref,
                    )
                )
            except DuplicateIdempotencyKey as duplicate:
                _ensure_same_payload(duplicate.entry, amount, LedgerEntryKind.TRANSFER_OUT)
                incoming = await cascade.ledger.find_entry(to_id, in_key)
                if incoming is None:
                    raise IdempotencyKeyReuse(
                        f"Idempotency key {idempotency_key!r} was used for a transfer to another account"
                    ) from duplicate
                return TransferResult(
                    outgoing=duplicate.entry,
                    incoming=incoming,
                    from_balance=await cascade.ledger.get_balance(from_id),
                    to_balance=await cascade.ledger.get_balance(to_id),
                    replayed=True,
                )

            try:
                incoming, recipient, incoming_summary = await cascade.run(
                    LedgerCommand(
                        account_id=to_id,
                        amount=amount,
                        kind=LedgerEntryKind.TRANSFER_IN,
                        idempotency_key=in_key,
                        source_ref=source_ref,
                    )
                )
            except DuplicateIdempotencyKey as duplicate:
                raise IdempotencyKeyReuse(
                    f"Idempotency key {in_key!r} was already applied to account {to_id}"
                ) from duplicate
            summary.merge(incoming_summary)
            return TransferResult(
                outgoing=outgoing,
                incoming=incoming,
                from_balance=int(sender.point_balance),
                to_balance=int(recipient.point_balance),
                replayed=False,
                summary=summary,
            )

        with self._tracer.start_as_current_span("rewards.transfer") as span:
            span.set_attribute("rewards.from_account_id", str(from_id))
            span.set_attribute("rewards.to_account_id", str(to_id))
            span.set_attribute("rewards.amount", amount)
            result = await self._run_in_transaction("transfer", work)
            span.set_attribute("rewards.replayed", result.replayed)

        self._record_telemetry("transfer", result.summary, replayed=result.replayed)
        logger.info(
            "Transferred points",
            from_account_id=str(from_id),
            to_account_id=str(to_id),
            amount=amount,
            replayed=result.replayed,
        )
        return result

    async def replay_step_up_rewards(self) -> CascadeSummary:
        """Pay any StepUp reward that is due but missing, e.g. after an import."""

        async def work(session: AsyncSession) -> CascadeSummary:
            cascade = RewardCascade(session, self.rules, max_depth=self._max_depth)
            return await cascade.replay_step_up()

        with self._tracer.start_as_current_span("rewards.replay_step_up") as span:
            summary = await self._run_in_transaction("replay_step_up", work)
            span.set_attribute("rewards.step_up_rewards", len(summary.step_up_rewards))

        self._record_telemetry("replay_step_up", summary)
        logger.info("Replayed StepUp rewards", **summary.as_dict())
        return summary

    # Queries

    async def get_account(self, account_id: UUID) -> Account:
        async def work(session: AsyncSession) -> Account:
            return await AccountService(session).get(account_id)

        return await self._read(work)

    async def get_balance(self, account_id: UUID) -> int:
        async def work(session: AsyncSession) -> int:
            return await PointsLedger(session).get_balance(account_id)

        return await self._read(work)

    async def get_ledger(
        self,
        account_id: UUID,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> LedgerPage:
        async def work(session: AsyncSession) -> LedgerPage:
            return await PointsLedger(session).get_ledger(
                account_id,
                limit=limit or self._page_size,
                max_limit=self._page_size_max,
                cursor=cursor,
            )

        return await self._read(work)

    async def get_step_up_rewards(self, account_id: UUID) -> List[StepUpReward]:
        stmt = (
            select(StepUpReward)
            .where(StepUpReward.beneficiary_account_id == account_id)
            .order_by(StepUpReward.trigger_global_number, StepUpReward.multiplier)
        )
        return await self._list(stmt)

    async def get_infinity_cycles(self, account_id: UUID) -> List[InfinityCycle]:
        stmt = (
            select(InfinityCycle)
            .where(InfinityCycle.account_id == account_id)
            .order_by(InfinityCycle.cycle_number)
        )
        return await self._list(stmt)

    async def get_referral_commissions(self, account_id: UUID) -> List[ReferralCommission]:
        stmt = (
            select(ReferralCommission)
            .where(ReferralCommission.referrer_account_id == account_id)
            .order_by(ReferralCommission.created_at, ReferralCommission.id)
        )
        return await self._list(stmt)

    async def get_ripple_rewards(self, account_id: UUID) -> List[RippleReward]:
        stmt = (
            select(RippleReward)
            .where(RippleReward.referrer_account_id == account_id)
            .order_by(RippleReward.created_at, RippleReward.id)
        )
        return await self._list(stmt)

    async def get_shopping_vouchers(self, merchant_id: UUID) -> List[ShoppingVoucher]:
        stmt = (
            select(ShoppingVoucher)
            .where(ShoppingVoucher.merchant_id == merchant_id)
            .order_by(ShoppingVoucher.distributed_at, ShoppingVoucher.id)
        )
        return await self._list(stmt)

    async def serial_stats(self) -> SerialStats:
        async def work(session: AsyncSession) -> SerialStats:
            return await SequenceAssignor(session, self.rules.qualification).stats()

        return await self._read(work)

    async def infinity_stats(self) -> InfinityStats:
        async def work(session: AsyncSession) -> InfinityStats:
            return await RewardStatistics(session).infinity()

        return await self._read(work)

    async def ripple_stats(self, top: int = 5) -> RippleStats:
        async def work(session: AsyncSession) -> RippleStats:
            return await RewardStatistics(session).ripple(top=top)

        return await self._read(work)

    async def voucher_stats(self) -> VoucherStats:
        async def work(session: AsyncSession) -> VoucherStats:
            return await RewardStatistics(session).vouchers()

        return await self._read(work)

    async def verify_ledger_integrity(self, account_id: UUID) -> LedgerIntegrityReport:
        """Check that the stored balance, entry sequence and running balances agree."""

        async def work(session: AsyncSession) -> LedgerIntegrityReport:
            account = await AccountService(session).get(account_id)
            result = await session.execute(
                select(LedgerEntry).where(LedgerEntry.account_id == account_id).order_by(LedgerEntry.sequence)
            )
            entries = list(result.scalars().all())

            running = 0
            gaps: List[int] = []
            mismatches: List[int] = []
            expected_sequence = 1
            for entry in entries:
                while expected_sequence < entry.sequence:
                    gaps.append(expected_sequence)
                    expected_sequence += 1
                expected_sequence = entry.sequence + 1
                running += int(entry.amount)
                if running != int(entry.balance_after):
                    mismatches.append(int(entry.sequence))

            return LedgerIntegrityReport(
                account_id=account_id,
                stored_balance=int(account.point_balance),
                ledger_sum=await PointsLedger(session).compute_ledger_sum(account_id),
                entry_count=len(entries),
                last_sequence=int(account.ledger_sequence or 0),
                sequence_gaps=gaps,
                balance_mismatches=mismatches,
            )

        report = await self._read(work)
        if not report.is_consistent:
            logger.warning(
                "Ledger integrity check failed",
                account_id=str(account_id),
                stored_balance=report.stored_balance,
                ledger_sum=report.ledger_sum,
                sequence_gaps=report.sequence_gaps,
                balance_mismatches=report.balance_mismatches,
            )
        return report

    # Internals

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session

    async def _read(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        session = await self._ensure_session()
        async with session as managed_session:
            return await work(managed_session)

    async def _list(self, stmt) -> list:
        async def work(session: AsyncSession) -> list:
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._read(work)

    async def _run_in_transaction(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            session = await self._ensure_session()
            try:
                async with session as managed_session:
                    async with managed_session.begin():
                        return await work(managed_session)
            except (SerializationConflict, StaleDataError, DBAPIError) as error:
                conflict = classify_conflict(error)
                if conflict is None:
                    logger.exception("Reward command failed", operation=operation, attempt=attempt)
                    raise
                exhausted = attempt >= self._retry_attempts
                self._store.record_conflict(operation, exhausted=exhausted)
                if exhausted:
                    logger.warning(
                        "Reward command gave up after write conflicts",
                        operation=operation,
                        attempts=attempt,
                        error=str(conflict),
                    )
                    raise RetryExhausted(operation, attempt) from error
                delay = min(self._retry_max_backoff, self._retry_backoff * (2 ** (attempt - 1)))
                logger.warning(
                    "Write conflict; retrying reward command",
                    operation=operation,
                    attempt=attempt,
                    delay_seconds=delay,
                    error=str(conflict),
                )
                await asyncio.sleep(delay)
            except RewardEngineError as error:
                logger.warning(
                    "Reward command rejected",
                    operation=operation,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                raise

    def _record_telemetry(self, operation: str, summary: CascadeSummary | None, *, replayed: bool = False) -> None:
        self._store.record_command(operation, replayed=replayed)
        if summary is None:
            return
        self._store.record_serials(assignment.region for assignment in summary.serial_assignments)
        if summary.step_up_rewards:
            self._store.record_step_up(
                (reward.multiplier for reward in summary.step_up_rewards),
                sum(int(reward.reward_points) for reward in summary.step_up_rewards),
            )
        self._store.record_payout(
            "infinity",
            len(summary.infinity_cycles),
            sum(int(cycle.reward_points) for cycle in summary.infinity_cycles),
        )
        self._store.record_payout(
            "commission",
            len(summary.commissions),
            sum(int(commission.commission_amount) for commission in summary.commissions),
        )
        self._store.record_payout(
            "ripple",
            len(summary.ripple_rewards),
            sum(int(ripple.ripple_amount) for ripple in summary.ripple_rewards),
        )
        self._store.record_payout(
            "voucher",
            len(summary.vouchers),
            sum(int(voucher.voucher_amount) for voucher in summary.vouchers),
        )


__all__ = [
    "LedgerIntegrityReport",
    "RecordResult",
    "RewardEngine",
    "TransferResult",
    "classify_conflict",
]
