"""Rewards, Merkle tree nodes and committed roots.

Revision ID: 004_rewards
Revises: 003_boost
Create Date: 2026-10-18 00:04:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "004_rewards"
down_revision: Union[str, None] = "003_boost"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "rewards",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("amount", sa.Numeric(78, 0), nullable=False),
        sa.Column("leaf_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("user_id", sa.String(36), nullable=True),
        sa.Column("agent_id", sa.String(36), nullable=True),
        sa.Column("claimed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("competition_id", "address", name="uq_rewards_competition_address"),
    )
    op.create_index("idx_rewards_address", "rewards", ["address"])

    op.create_table(
        "rewards_tree",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False),
        sa.Column("hash", sa.LargeBinary(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("competition_id", "level", "idx", name="uq_rewards_tree_node"),
    )

    op.create_table(
        "rewards_roots",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("competition_id", sa.String(36), nullable=False),
        sa.Column("root_hash", sa.LargeBinary(32), nullable=False),
        sa.Column("tx", sa.String(66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("competition_id", name="uq_rewards_roots_competition"),
        sa.UniqueConstraint("root_hash", name="uq_rewards_roots_root_hash"),
    )


def downgrade() -> None:
    op.drop_table("rewards_roots")
    op.drop_table("rewards_tree")
    op.drop_index("idx_rewards_address", table_name="rewards")
    op.drop_table("rewards")
