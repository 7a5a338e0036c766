"""Check that account balances match their ledger history.

Example::
    python tooling/scripts/verify_ledger_integrity.py
    python tooling/scripts/verify_ledger_integrity.py --account-id <uuid>

Exits non-zero when any inspected account is inconsistent.
"""

# meta: script: ledger-integrity

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from uuid import UUID

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Verify reward ledger integrity")
    parser.add_argument(
        "--account-id",
        type=UUID,
        action="append",
        default=None,
        help="Account to inspect. Repeatable; defaults to every account.",
    )
    return parser.parse_args()


async def _run(account_ids: list[UUID] | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    package_src = repo_root / "src"
    if str(package_src) not in sys.path:
        sys.path.insert(0, str(package_src))

    from sqlalchemy import select  # type: ignore import-position

    from rewards_engine.db.session import async_session  # type: ignore import-position
    from rewards_engine.models import Account  # type: ignore import-position
    from rewards_engine.runtime import configure_runtime  # type: ignore import-position
    from rewards_engine.services.engine import RewardEngine  # type: ignore import-position

    configure_runtime()

    if not account_ids:
        async with async_session() as session:
            result = await session.execute(select(Account.id).order_by(Account.created_at))
            account_ids = list(result.scalars().all())

    engine = RewardEngine(async_session)
    inconsistent = 0
    for account_id in account_ids:
        report = await engine.verify_ledger_integrity(account_id)
        if not report.is_consistent:
            inconsistent += 1
            logger.error(
                "Account ledger is inconsistent",
                account_id=str(account_id),
                stored_balance=report.stored_balance,
                ledger_sum=report.ledger_sum,
                sequence_gaps=report.sequence_gaps,
                balance_mismatches=report.balance_mismatches,
            )
    return {"accounts": len(account_ids), "inconsistent": inconsistent}


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.account_id))
    if summary["inconsistent"]:
        logger.error("Ledger integrity check failed", **summary)
        return 1
    logger.success("Ledger integrity check passed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
