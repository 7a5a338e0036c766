"""Account registration and referral linking."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewards_engine.core.errors import AccountNotFound, InvalidReferral
from rewards_engine.models.account import Account, AccountRole


def normalize_region(region: str | None) -> str | None:
    if region is None:
        return None
    cleaned = region.strip().upper()
    return cleaned or None


class AccountService:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get(self, account_id: UUID) -> Account:
        account = await self._db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def register(
        self,
        role: AccountRole | str,
        *,
        region: str | None = None,
        referred_by: UUID | None = None,
        tier: str | None = None,
    ) -> Account:
        """Create an empty account, optionally linked to an existing referrer."""

        resolved_role = AccountRole(role)
        if referred_by is not None:
            referrer = await self._db.get(Account, referred_by)
            if referrer is None:
                raise InvalidReferral(f"Referrer {referred_by} does not exist")

        account = Account(
            role=resolved_role,
            region=normalize_region(region),
            tier=tier,
            referred_by_id=referred_by,
            point_balance=0,
            lifetime_earned=0,
            infinity_cycles_completed=0,
            ledger_sequence=0,
            is_active=True,
        )
        self._db.add(account)
        await self._db.flush()
        logger.info(
            "Registered reward account",
            account_id=str(account.id),
            role=resolved_role.value,
            region=account.region,
            referred_by=str(referred_by) if referred_by else None,
        )
        return account

    async def link_referrer(self, account_id: UUID, referrer_id: UUID) -> Account:
        """Attach a referrer after registration; the link is permanent once set."""

        if account_id == referrer_id:
            raise InvalidReferral("An account cannot refer itself")

        account = await self.get(account_id)
        if account.referred_by_id is not None:
            if account.referred_by_id == referrer_id:
                return account
            raise InvalidReferral(f"Account {account_id} is already referred by {account.referred_by_id}")

        referrer = await self._db.get(Account, referrer_id)
        if referrer is None:
            raise InvalidReferral(f"Referrer {referrer_id} does not exist")

        cursor: Account | None = referrer
        while cursor is not None and cursor.referred_by_id is not None:
            if cursor.referred_by_id == account_id:
                raise InvalidReferral("Referral link would create a cycle")
            cursor = await self._db.get(Account, cursor.referred_by_id)

        account.referred_by_id = referrer_id
        await self._db.flush()
        logger.info("Linked referrer", account_id=str(account_id), referrer_id=str(referrer_id))
        return account

    async def set_active(self, account_id: UUID, is_active: bool) -> Account:
        account = await self.get(account_id)
        account.is_active = is_active
        await self._db.flush()
        logger.info("Updated account activity", account_id=str(account_id), is_active=is_active)
        return account


__all__ = ["AccountService", "normalize_region"]
