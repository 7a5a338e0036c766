from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import UniqueConstraint
from sqlalchemy.exc import IntegrityError

from rewards_engine.core.errors import ConfigurationMissing, InvalidReferral
from rewards_engine.models import AccountRole, LedgerEntryKind, ReferralCommission, RippleReward
from rewards_engine.rules import ReferralRules
from rewards_engine.services.rewards import ReferralCommissionEngine


def test_commission_is_floored() -> None:
    assert ReferralCommissionEngine.compute_commission(10_000, Decimal("0.02")) == 200
    assert ReferralCommissionEngine.compute_commission(-1_999, Decimal("0.05")) == 99
    assert ReferralCommissionEngine.compute_commission(19, Decimal("0.05")) == 0


def test_missing_role_rate_is_a_configuration_error() -> None:
    rules = ReferralRules(rates={AccountRole.CUSTOMER: Decimal("0.05")}, commission_kinds=frozenset())
    with pytest.raises(ConfigurationMissing):
        rules.rate_for(AccountRole.MERCHANT)


@pytest.mark.asyncio
async def test_merchant_referral_pays_two_percent(reward_engine) -> None:
    referrer = await reward_engine.register_account("customer")
    merchant = await reward_engine.register_account("merchant", referred_by=referrer.id)

    result = await reward_engine.record(merchant.id, 10_000, "earn", "sale-1", "sale-1")

    commissions = await reward_engine.get_referral_commissions(referrer.id)
    assert len(commissions) == 1
    assert commissions[0].commission_amount == 200
    assert commissions[0].commission_rate == Decimal("0.02")
    assert commissions[0].source_entry_id == result.entry.id
    assert await reward_engine.get_balance(referrer.id) == 200

    ledger = await reward_engine.get_ledger(referrer.id)
    assert [entry.kind for entry in ledger.entries] == [LedgerEntryKind.COMMISSION]


@pytest.mark.asyncio
async def test_customer_commission_on_earn_and_transfer_out_only(reward_engine) -> None:
    referrer = await reward_engine.register_account("customer")
    customer = await reward_engine.register_account("customer", referred_by=referrer.id)
    friend = await reward_engine.register_account("customer")

    await reward_engine.record(customer.id, 1_000, "earn", None, "earn")
    await reward_engine.record(customer.id, 100, "spend", None, "spend")
    await reward_engine.transfer(customer.id, friend.id, 400, None, "gift")

    commissions = await reward_engine.get_referral_commissions(referrer.id)
    assert sorted(c.commission_amount for c in commissions) == [20, 50]
    assert await reward_engine.get_balance(referrer.id) == 70


@pytest.mark.asyncio
async def test_inactive_referrer_earns_nothing(reward_engine) -> None:
    referrer = await reward_engine.register_account("customer")
    customer = await reward_engine.register_account("customer", referred_by=referrer.id)
    await reward_engine.set_account_active(referrer.id, False)

    await reward_engine.record(customer.id, 5_000, "earn", None, "earn")

    assert await reward_engine.get_referral_commissions(referrer.id) == []
    assert await reward_engine.get_balance(referrer.id) == 0


@pytest.mark.asyncio
async def test_referral_links_are_validated(reward_engine) -> None:
    first = await reward_engine.register_account("customer")
    second = await reward_engine.register_account("customer", referred_by=first.id)
    loner = await reward_engine.register_account("customer")

    with pytest.raises(InvalidReferral):
        await reward_engine.register_account("customer", referred_by=uuid4())
    with pytest.raises(InvalidReferral):
        await reward_engine.link_referrer(loner.id, loner.id)
    with pytest.raises(InvalidReferral):
        await reward_engine.link_referrer(first.id, second.id)

    linked = await reward_engine.link_referrer(loner.id, second.id)
    assert linked.referred_by_id == second.id
    with pytest.raises(InvalidReferral):
        await reward_engine.link_referrer(loner.id, first.id)


def test_each_source_pays_at_most_one_commission_or_ripple() -> None:
    def unique_sets(model) -> list:
        return [
            {column.name for column in constraint.columns}
            for constraint in model.__table__.constraints
            if isinstance(constraint, UniqueConstraint)
        ]

    assert {"source_entry_id"} in unique_sets(ReferralCommission)
    assert {"triggering_step_up_reward_id"} in unique_sets(RippleReward)


@pytest.mark.asyncio
async def test_second_commission_for_the_same_entry_is_rejected(reward_engine, session_factory) -> None:
    referrer = await reward_engine.register_account("customer")
    referred = await reward_engine.register_account("customer", referred_by=referrer.id)
    await reward_engine.record(referred.id, 1_000, "earn", None, "sale")
    [commission] = await reward_engine.get_referral_commissions(referrer.id)

    async with session_factory() as session:
        session.add(
            ReferralCommission(
                referrer_account_id=referrer.id,
                referred_account_id=referred.id,
                source_entry_id=commission.source_entry_id,
                source_amount=1_000,
                commission_rate=Decimal("0.05"),
                commission_amount=50,
            )
        )
        with pytest.raises(IntegrityError):
            await session.flush()
        await session.rollback()

    assert len(await reward_engine.get_referral_commissions(referrer.id)) == 1
