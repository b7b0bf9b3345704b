"""Chain event journal, stake mirror and stake change journal.

Revision ID: 002_indexing
Revises: 001_ledger
Create Date: 2026-10-18 00:02:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "002_indexing"
down_revision: Union[str, None] = "001_ledger"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "indexing_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("raw_event_data", sa.JSON(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("transaction_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("transaction_hash", "log_index", name="uq_indexing_events_tx_log"),
    )
    op.create_index("idx_indexing_events_block_log", "indexing_events", ["block_number", "log_index"])
    op.create_index("idx_indexing_events_type", "indexing_events", ["type"])

    op.create_table(
        "stakes",
        sa.Column("id", sa.Numeric(78, 0), autoincrement=False, nullable=False),
        sa.Column("wallet", sa.LargeBinary(20), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("staked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("can_unstake_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("unstaked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("can_withdraw_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("relocked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount >= 0", name="ck_stakes_amount_non_negative"),
    )
    op.create_index("idx_stakes_wallet", "stakes", ["wallet"])
    op.create_index("idx_stakes_wallet_address", "stakes", ["wallet_address"])

    # The change row is written before the stake it creates, so the FK is checked at commit.
    op.create_table(
        "stake_changes",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("stake_id", sa.Numeric(78, 0), nullable=False),
        sa.Column("wallet", sa.LargeBinary(20), nullable=False),
        sa.Column("wallet_address", sa.String(42), nullable=False),
        sa.Column("delta_amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("tx_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["stake_id"], ["stakes.id"], deferrable=True, initially="DEFERRED"),
        sa.UniqueConstraint("tx_hash", "log_index", name="uq_stake_changes_tx_log"),
    )
    op.create_index("idx_stake_changes_stake", "stake_changes", ["stake_id"])
    op.create_index("idx_stake_changes_block", "stake_changes", ["block_number"])


def downgrade() -> None:
    op.drop_index("idx_stake_changes_block", table_name="stake_changes")
    op.drop_index("idx_stake_changes_stake", table_name="stake_changes")
    op.drop_table("stake_changes")
    op.drop_index("idx_stakes_wallet_address", table_name="stakes")
    op.drop_index("idx_stakes_wallet", table_name="stakes")
    op.drop_table("stakes")
    op.drop_index("idx_indexing_events_type", table_name="indexing_events")
    op.drop_index("idx_indexing_events_block_log", table_name="indexing_events")
    op.drop_table("indexing_events")
