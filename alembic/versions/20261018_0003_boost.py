"""Boost balances, boost change journal, stake awards and agent boosts.

Revision ID: 003_boost
Revises: 002_indexing
Create Date: 2026-10-18 00:03:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "003_boost"
down_revision: Union[str, None] = "002_indexing"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "boost_balances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("balance", sa.Numeric(78, 0), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "competition_id", name="uq_boost_balances_user_competition"),
        sa.CheckConstraint("balance >= 0", name="ck_boost_balances_non_negative"),
    )

    op.create_table(
        "boost_changes",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("balance_id", sa.Integer(), nullable=False),
        sa.Column("wallet", sa.LargeBinary(20), nullable=False),
        sa.Column("delta_amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("idem_key", sa.LargeBinary(256), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["balance_id"], ["boost_balances.id"]),
        sa.UniqueConstraint("balance_id", "idem_key", name="uq_boost_changes_balance_idem"),
    )
    op.create_index("idx_boost_changes_balance", "boost_changes", ["balance_id"])

    op.create_table(
        "stake_boost_awards",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("stake_id", sa.Numeric(78, 0), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("base_amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("multiplier", sa.Numeric(6, 4), nullable=False),
        sa.Column("boost_change_id", sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["boost_change_id"], ["boost_changes.id"]),
        sa.UniqueConstraint("stake_id", "competition_id", name="uq_stake_boost_awards_stake_competition"),
    )

    op.create_table(
        "agent_boost_totals",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("agent_id", sa.String(36), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("total", sa.Numeric(78, 0), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agent_id", "competition_id", name="uq_agent_boost_totals_agent_competition"),
    )

    op.create_table(
        "agent_boosts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("agent_boost_total_id", sa.Integer(), nullable=False),
        sa.Column("change_id", sa.String(36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["agent_boost_total_id"], ["agent_boost_totals.id"]),
        sa.ForeignKeyConstraint(["change_id"], ["boost_changes.id"]),
        sa.UniqueConstraint("change_id", name="uq_agent_boosts_change"),
    )
    op.create_index("idx_agent_boosts_total", "agent_boosts", ["agent_boost_total_id"])


def downgrade() -> None:
    op.drop_index("idx_agent_boosts_total", table_name="agent_boosts")
    op.drop_table("agent_boosts")
    op.drop_table("agent_boost_totals")
    op.drop_table("stake_boost_awards")
    op.drop_index("idx_boost_changes_balance", table_name="boost_changes")
    op.drop_table("boost_changes")
    op.drop_table("boost_balances")
