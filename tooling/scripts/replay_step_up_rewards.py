"""Pay StepUp rewards that are due but missing.

Intended usage: run after importing serial holders from another system or
after restoring a backup, so every (serial, multiplier) pair that should have
paid out does so exactly once. Already paid rewards are skipped.

Example::
    python tooling/scripts/replay_step_up_rewards.py --dry-run

Use ``--dry-run`` to evaluate the cascade inside a transaction that is rolled
back instead of committed.
"""

# meta: script: step-up-replay

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Replay missing StepUp rewards")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate rewards inside a transaction and roll back changes.",
    )
    return parser.parse_args()


async def _run(dry_run: bool) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    package_src = repo_root / "src"
    if str(package_src) not in sys.path:
        sys.path.insert(0, str(package_src))

    from rewards_engine.core.settings import settings  # type: ignore import-position
    from rewards_engine.db.session import async_session  # type: ignore import-position
    from rewards_engine.rules import get_reward_rules  # type: ignore import-position
    from rewards_engine.runtime import configure_runtime  # type: ignore import-position
    from rewards_engine.services.engine import RewardEngine  # type: ignore import-position
    from rewards_engine.services.rewards import RewardCascade  # type: ignore import-position

    configure_runtime()

    if not dry_run:
        summary = await RewardEngine(async_session).replay_step_up_rewards()
        return summary.as_dict()

    async with async_session() as session:
        cascade = RewardCascade(session, get_reward_rules(), max_depth=settings.cascade_max_depth)
        summary = await cascade.replay_step_up()
        await session.rollback()
        return summary.as_dict()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.dry_run))
    logger.success(
        "StepUp replay completed",
        dry_run=args.dry_run,
        step_up_rewards=summary.get("step_up_rewards", 0),
        ripple_rewards=summary.get("ripple_rewards", 0),
        vouchers=summary.get("vouchers", 0),
        skipped_duplicates=summary.get("skipped_duplicates", 0),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
