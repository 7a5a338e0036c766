"""Append-only points ledger with idempotent writes and cursor pagination."""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import (
    AccountNotFound,
    DuplicateIdempotencyKey,
    InsufficientBalance,
    InvalidAmount,
)
from rewards_engine.models.account import Account
from rewards_engine.models.ledger import LedgerEntry, LedgerEntryKind


@dataclass(slots=True)
class LedgerCommand:
    """A single requested ledger write; ``amount`` is a positive magnitude."""

    account_id: UUID
    amount: int
    kind: LedgerEntryKind
    idempotency_key: str
    source_ref: str | None = None
    depth: int = 0


@dataclass(slots=True)
class LedgerPage:
    """Newest-first slice of an account's ledger."""

    entries: list[LedgerEntry]
    next_cursor: str | None


RESERVED_KEY_NAMESPACES = frozenset({"step-up", "infinity", "commission", "ripple", "voucher"})


def derive_idempotency_key(namespace: str, *parts: object) -> str:
    """Deterministic key for engine-generated writes.

    The same triggering event always hashes to the same key, so re-running a
    cascade can never credit twice.
    """

    material = "|".join(str(part) for part in parts).encode("utf-8")
    digest = hashlib.sha256(material).hexdigest()[:40]
    return f"{namespace}:{digest}"


def is_reserved_idempotency_key(key: str) -> bool:
    namespace, separator, _ = key.partition(":")
    return bool(separator) and namespace in RESERVED_KEY_NAMESPACES


def encode_ledger_cursor(account_id: UUID, sequence: int) -> str:
    payload = f"{account_id}|{sequence}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_ledger_cursor(cursor: str) -> tuple[UUID, int]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
        account_part, sequence_part = raw.split("|", 1)
        return UUID(account_part), int(sequence_part)
    except (binascii.Error, UnicodeDecodeError, ValueError) as error:
        raise ValueError(f"Malformed ledger cursor: {cursor!r}") from error


class PointsLedger:
    """Applies ledger commands and keeps account balances in step with entries."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_account(self, account_id: UUID, *, for_update: bool = False) -> Account:
        stmt = select(Account).where(Account.id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt)
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def find_entry(self, account_id: UUID, idempotency_key: str) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def apply(self, command: LedgerCommand) -> tuple[LedgerEntry, Account]:
        """Append one entry and move the balance.

        Raises ``DuplicateIdempotencyKey`` when the key was already applied to
        the account and ``InsufficientBalance`` when a debit would overdraw it.
        """

        if command.amount <= 0:
            raise InvalidAmount(f"Ledger amounts must be positive, got {command.amount}")

        account = await self.get_account(command.account_id, for_update=True)

        existing = await self.find_entry(command.account_id, command.idempotency_key)
        if existing is not None:
            raise DuplicateIdempotencyKey(existing)

        signed_amount = -command.amount if command.kind.is_debit else command.amount
        balance_before = int(account.point_balance or 0)
        new_balance = balance_before + signed_amount
        if new_balance < 0:
            raise InsufficientBalance(
                account.id,
                requested=command.amount,
                available=balance_before,
            )

        account.point_balance = new_balance
        if signed_amount > 0:
            account.lifetime_earned = int(account.lifetime_earned or 0) + signed_amount
        account.ledger_sequence = int(account.ledger_sequence or 0) + 1

        entry = LedgerEntry(
            account_id=account.id,
            sequence=account.ledger_sequence,
            amount=signed_amount,
            kind=command.kind,
            source_ref=command.source_ref,
            idempotency_key=command.idempotency_key,
            balance_after=new_balance,
            cascade_depth=command.depth,
        )
        self._db.add(entry)
        await self._db.flush()
        logger.debug(
            "Applied ledger entry",
            account_id=str(account.id),
            kind=command.kind.value,
            amount=signed_amount,
            balance_after=new_balance,
            depth=command.depth,
        )
        return entry, account

    async def get_balance(self, account_id: UUID) -> int:
        account = await self.get_account(account_id)
        return int(account.point_balance or 0)

    async def compute_ledger_sum(self, account_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.account_id == account_id
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def get_ledger(
        self,
        account_id: UUID,
        *,
        limit: int = 25,
        max_limit: int = 100,
        cursor: str | None = None,
        kinds: Sequence[LedgerEntryKind] | None = None,
    ) -> LedgerPage:
        """Return a newest-first page of entries and the cursor for the next page."""

        await self.get_account(account_id)

        bounded_limit = max(1, min(limit, max_limit))
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.sequence.desc())
        )
        if kinds:
            stmt = stmt.where(LedgerEntry.kind.in_(list(kinds)))
        if cursor:
            cursor_account, cursor_sequence = decode_ledger_cursor(cursor)
            if cursor_account != account_id:
                raise ValueError("Ledger cursor belongs to a different account")
            stmt = stmt.where(LedgerEntry.sequence < cursor_sequence)

        stmt = stmt.limit(bounded_limit + 1)
        result = await self._db.execute(stmt)
        rows = list(result.scalars().all())
        has_more = len(rows) > bounded_limit
        entries = rows[:bounded_limit]
        next_cursor: str | None = None
        if has_more and entries:
            next_cursor = encode_ledger_cursor(account_id, entries[-1].sequence)

        return LedgerPage(entries=entries, next_cursor=next_cursor)


__all__ = [
    "LedgerCommand",
    "LedgerPage",
    "PointsLedger",
    "decode_ledger_cursor",
    "RESERVED_KEY_NAMESPACES",
    "derive_idempotency_key",
    "encode_ledger_cursor",
    "is_reserved_idempotency_key",
]
