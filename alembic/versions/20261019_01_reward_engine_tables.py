"""Reward accounts, serial counters, ledger and reward tables.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


account_role = sa.Enum("customer", "merchant", name="reward_account_role")
ledger_entry_kind = sa.Enum(
    "earn",
    "spend",
    "transfer_in",
    "transfer_out",
    "reward",
    "commission",
    "ripple",
    "voucher",
    name="reward_ledger_entry_kind",
)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "reward_accounts",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("role", account_role, nullable=False),
        sa.Column("region", sa.String(length=16), nullable=True),
        sa.Column("tier", sa.String(length=32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("point_balance", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("global_serial_number", sa.BigInteger(), nullable=True),
        sa.Column("local_serial_number", sa.BigInteger(), nullable=True),
        sa.Column("serial_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "referred_by_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("infinity_cycles_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ledger_sequence", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("global_serial_number", name="uq_reward_accounts_global_serial_number"),
        sa.UniqueConstraint("region", "local_serial_number", name="uq_reward_accounts_region_local_serial"),
    )
    op.create_index("ix_reward_accounts_region", "reward_accounts", ["region"])
    op.create_index("ix_reward_accounts_referred_by_id", "reward_accounts", ["referred_by_id"])

    op.create_table(
        "reward_serial_counters",
        sa.Column("scope", sa.String(length=64), primary_key=True),
        sa.Column("value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "reward_ledger_entries",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("kind", ledger_entry_kind, nullable=False),
        sa.Column("source_ref", sa.String(length=255), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("balance_after", sa.BigInteger(), nullable=False),
        sa.Column("cascade_depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("account_id", "idempotency_key", name="uq_reward_ledger_entries_account_key"),
        sa.UniqueConstraint("account_id", "sequence", name="uq_reward_ledger_entries_account_sequence"),
    )
    op.create_index("ix_reward_ledger_entries_kind_created", "reward_ledger_entries", ["kind", "created_at"])

    op.create_table(
        "reward_step_up_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "beneficiary_account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("beneficiary_serial_number", sa.BigInteger(), nullable=False),
        sa.Column("multiplier", sa.Integer(), nullable=False),
        sa.Column("trigger_global_number", sa.BigInteger(), nullable=False),
        sa.Column("reward_points", sa.BigInteger(), nullable=False),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "beneficiary_serial_number",
            "multiplier",
            name="uq_reward_step_up_rewards_serial_multiplier",
        ),
    )
    op.create_index(
        "ix_reward_step_up_rewards_beneficiary_account_id",
        "reward_step_up_rewards",
        ["beneficiary_account_id"],
    )

    op.create_table(
        "reward_infinity_cycles",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("milestone_points", sa.BigInteger(), nullable=False),
        sa.Column("reward_points", sa.BigInteger(), nullable=False),
        sa.Column("awarded_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("account_id", "cycle_number", name="uq_reward_infinity_cycles_account_cycle"),
    )
    op.create_index("ix_reward_infinity_cycles_account_id", "reward_infinity_cycles", ["account_id"])

    op.create_table(
        "reward_referral_commissions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "referrer_account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referred_account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "source_entry_id",
            _uuid(),
            sa.ForeignKey("reward_ledger_entries.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_amount", sa.BigInteger(), nullable=False),
        sa.Column("commission_rate", sa.Numeric(8, 6), nullable=False),
        sa.Column("commission_amount", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source_entry_id", name="uq_reward_referral_commissions_source_entry"),
    )
    op.create_index(
        "ix_reward_referral_commissions_referrer_account_id",
        "reward_referral_commissions",
        ["referrer_account_id"],
    )

    op.create_table(
        "reward_ripple_rewards",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "referrer_account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "referred_account_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "triggering_step_up_reward_id",
            _uuid(),
            sa.ForeignKey("reward_step_up_rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("ripple_percentage", sa.Numeric(8, 6), nullable=False),
        sa.Column("ripple_amount", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "triggering_step_up_reward_id",
            name="uq_reward_ripple_rewards_step_up_reward",
        ),
    )
    op.create_index(
        "ix_reward_ripple_rewards_referrer_account_id",
        "reward_ripple_rewards",
        ["referrer_account_id"],
    )

    op.create_table(
        "reward_shopping_vouchers",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "merchant_id",
            _uuid(),
            sa.ForeignKey("reward_accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "triggering_step_up_reward_id",
            _uuid(),
            sa.ForeignKey("reward_step_up_rewards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("voucher_amount", sa.BigInteger(), nullable=False),
        sa.Column("distributed_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "triggering_step_up_reward_id",
            "merchant_id",
            name="uq_reward_shopping_vouchers_reward_merchant",
        ),
    )
    op.create_index("ix_reward_shopping_vouchers_merchant_id", "reward_shopping_vouchers", ["merchant_id"])


def downgrade() -> None:
    op.drop_index("ix_reward_shopping_vouchers_merchant_id", table_name="reward_shopping_vouchers")
    op.drop_table("reward_shopping_vouchers")
    op.drop_index("ix_reward_ripple_rewards_referrer_account_id", table_name="reward_ripple_rewards")
    op.drop_table("reward_ripple_rewards")
    op.drop_index("ix_reward_referral_commissions_referrer_account_id", table_name="reward_referral_commissions")
    op.drop_table("reward_referral_commissions")
    op.drop_index("ix_reward_infinity_cycles_account_id", table_name="reward_infinity_cycles")
    op.drop_table("reward_infinity_cycles")
    op.drop_index("ix_reward_step_up_rewards_beneficiary_account_id", table_name="reward_step_up_rewards")
    op.drop_table("reward_step_up_rewards")
    op.drop_index("ix_reward_ledger_entries_kind_created", table_name="reward_ledger_entries")
    op.drop_table("reward_ledger_entries")
    op.drop_table("reward_serial_counters")
    op.drop_index("ix_reward_accounts_referred_by_id", table_name="reward_accounts")
    op.drop_index("ix_reward_accounts_region", table_name="reward_accounts")
    op.drop_table("reward_accounts")
    ledger_entry_kind.drop(op.get_bind(), checkfirst=True)
    account_role.drop(op.get_bind(), checkfirst=True)
