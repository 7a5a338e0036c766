import sqlite3
from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from rewards_engine.core.errors import (
    AccountNotFound,
    ConfigurationMissing,
    InsufficientBalance,
    InvalidTransfer,
    RetryExhausted,
    SerializationConflict,
)
from rewards_engine.models import LedgerEntryKind
from rewards_engine.rules import RippleRules
from rewards_engine.services.engine import RewardEngine, classify_conflict
from rewards_engine.services.rewards import RewardCascade


class _PgError(Exception):
    sqlstate = "40001"


def test_classify_conflict_recognises_retryable_errors() -> None:
    assert isinstance(classify_conflict(StaleDataError("stale")), SerializationConflict)
    assert isinstance(classify_conflict(IntegrityError("INSERT", {}, Exception("UNIQUE"))), SerializationConflict)
    assert isinstance(
        classify_conflict(OperationalError("UPDATE", {}, sqlite3.OperationalError("database is locked"))),
        SerializationConflict,
    )
    assert isinstance(classify_conflict(DBAPIError("UPDATE", {}, _PgError("could not serialize"))), SerializationConflict)
    assert classify_conflict(OperationalError("SELECT", {}, sqlite3.OperationalError("no such table"))) is None
    assert classify_conflict(ValueError("nope")) is None


@pytest.mark.asyncio
async def test_transfer_moves_points_atomically(reward_engine) -> None:
    sender = await reward_engine.register_account("customer")
    recipient = await reward_engine.register_account("customer")
    await reward_engine.record(sender.id, 500, "earn", None, "seed")

    result = await reward_engine.transfer(sender.id, recipient.id, 300, "qr-1", "qr-1")

    assert result.replayed is False
    assert result.outgoing.kind == LedgerEntryKind.TRANSFER_OUT
    assert result.outgoing.amount == -300
    assert result.incoming.kind == LedgerEntryKind.TRANSFER_IN
    assert result.incoming.idempotency_key == "qr-1:in"
    assert (result.from_balance, result.to_balance) == (200, 300)

    replay = await reward_engine.transfer(sender.id, recipient.id, 300, "qr-1", "qr-1")
    assert replay.replayed is True
    assert replay.incoming.id == result.incoming.id
    assert await reward_engine.get_balance(sender.id) == 200
    assert await reward_engine.get_balance(recipient.id) == 300


@pytest.mark.asyncio
async def test_failed_transfer_leaves_no_partial_effect(reward_engine) -> None:
    sender = await reward_engine.register_account("customer")
    recipient = await reward_engine.register_account("customer")
    await reward_engine.record(sender.id, 500, "earn", None, "seed")

    with pytest.raises(InsufficientBalance):
        await reward_engine.transfer(sender.id, recipient.id, 1_000, None, "too-much")
    with pytest.raises(AccountNotFound):
        await reward_engine.transfer(sender.id, uuid4(), 100, None, "nobody")
    with pytest.raises(InvalidTransfer):
        await reward_engine.transfer(sender.id, sender.id, 100, None, "self")

    assert await reward_engine.get_balance(sender.id) == 500
    assert await reward_engine.get_balance(recipient.id) == 0
    assert len((await reward_engine.get_ledger(sender.id)).entries) == 1


@pytest.mark.asyncio
async def test_configuration_gap_rolls_back_the_whole_cascade(session_factory, rules) -> None:
    partial = replace(rules, ripple=RippleRules(percentages={25: Decimal("0.0667")}))
    engine = RewardEngine(session_factory, rules=partial, retry_backoff_seconds=0.0)

    referrer = await engine.register_account("customer")
    beneficiary = await engine.register_account("customer", referred_by=referrer.id)
    await engine.record(beneficiary.id, 1_500, "earn", None, "beneficiary")
    for index in range(3):
        account = await engine.register_account("customer")
        await engine.record(account.id, 1_500, "earn", None, f"fill-{index}")

    fifth = await engine.register_account("customer")
    with pytest.raises(ConfigurationMissing):
        await engine.record(fifth.id, 1_500, "earn", None, "fifth")

    stored = await engine.get_account(fifth.id)
    assert stored.point_balance == 0
    assert stored.global_serial_number is None
    assert (await engine.get_ledger(fifth.id)).entries == []
    assert await engine.get_step_up_rewards(beneficiary.id) == []

    stats = await engine.serial_stats()
    assert stats.total_assigned == 4
    assert stats.latest_global_number == 4


@pytest.mark.asyncio
async def test_conflicts_are_retried_with_a_fresh_session(reward_engine, reward_store, monkeypatch) -> None:
    account = await reward_engine.register_account("customer")
    original_run = RewardCascade.run
    calls = {"count": 0}

    async def flaky_run(self, command):
        calls["count"] += 1
        if calls["count"] <= 2:
            await original_run(self, command)
            raise SerializationConflict("simulated conflict")
        return await original_run(self, command)

    monkeypatch.setattr(RewardCascade, "run", flaky_run)

    result = await reward_engine.record(account.id, 100, "earn", None, "retry-me")

    assert calls["count"] == 3
    assert result.replayed is False
    assert await reward_engine.get_balance(account.id) == 100
    assert len((await reward_engine.get_ledger(account.id)).entries) == 1
    assert reward_store.snapshot().conflicts["total"] == 2


@pytest.mark.asyncio
async def test_retry_exhaustion_is_reported(session_factory, rules, reward_store, monkeypatch) -> None:
    engine = RewardEngine(
        session_factory,
        rules=rules,
        store=reward_store,
        retry_attempts=3,
        retry_backoff_seconds=0.0,
    )
    account = await engine.register_account("customer")

    async def always_conflicts(self, command):
        raise StaleDataError("row version changed")

    monkeypatch.setattr(RewardCascade, "run", always_conflicts)

    with pytest.raises(RetryExhausted) as excinfo:
        await engine.record(account.id, 100, "earn", None, "doomed")

    assert excinfo.value.attempts == 3
    conflicts = reward_store.snapshot().conflicts
    assert conflicts["total"] == 3
    assert conflicts["exhausted"] == 1
    assert await engine.get_balance(account.id) == 0
