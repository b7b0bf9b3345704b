"""Balances and trades.

Revision ID: 001_ledger
Revises:
Create Date: 2026-10-18 00:01:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_ledger"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "balances",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("agent_id", sa.String(36), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("token_address", sa.String(66), nullable=False),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("specific_chain", sa.String(32), nullable=True),
        sa.Column("symbol", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "agent_id", "token_address", "competition_id", name="uq_balances_agent_token_competition"
        ),
        sa.CheckConstraint("amount >= 0", name="ck_balances_amount_non_negative"),
    )
    op.create_index("idx_balances_agent_competition", "balances", ["agent_id", "competition_id"])
    op.create_index("idx_balances_competition", "balances", ["competition_id"])

    op.create_table(
        "trades",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("agent_id", sa.String(36), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("from_token", sa.String(66), nullable=False),
        sa.Column("to_token", sa.String(66), nullable=False),
        sa.Column("from_amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("to_amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("price", sa.Numeric(30, 10), nullable=False),
        sa.Column("trade_amount_usd", sa.Numeric(30, 10), nullable=True),
        sa.Column("from_token_symbol", sa.String(32), nullable=True),
        sa.Column("to_token_symbol", sa.String(32), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("from_chain", sa.String(16), nullable=True),
        sa.Column("to_chain", sa.String(16), nullable=True),
        sa.Column("from_specific_chain", sa.String(32), nullable=True),
        sa.Column("to_specific_chain", sa.String(32), nullable=True),
        sa.Column("trade_type", sa.String(16), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_trades_agent_competition_ts", "trades", ["agent_id", "competition_id", "timestamp"]
    )
    op.create_index("idx_trades_competition_ts", "trades", ["competition_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("idx_trades_competition_ts", table_name="trades")
    op.drop_index("idx_trades_agent_competition_ts", table_name="trades")
    op.drop_table("trades")
    op.drop_index("idx_balances_competition", table_name="balances")
    op.drop_index("idx_balances_agent_competition", table_name="balances")
    op.drop_table("balances")
