"""SQLAlchemy models for persistent storage.

This module defines the database schema for agent balances and trades,
the on-chain event journal and stake mirror, boost accounting, and
rewards with their Merkle commitments.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 fits in 78 decimal digits.
AMOUNT_PRECISION = 78


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Balances & trades
# ============================================================================


class BalanceModel(Base):
    """Token balance of one agent in one competition."""

    __tablename__ = "balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_address: Mapped[str] = mapped_column(String(66), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    specific_chain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("agent_id", "token_address", "competition_id", name="uq_balances_agent_token_competition"),
        CheckConstraint("amount >= 0", name="ck_balances_amount_non_negative"),
        Index("idx_balances_agent_competition", "agent_id", "competition_id"),
        Index("idx_balances_competition", "competition_id"),
    )


class TradeModel(Base):
    """Settled trade (immutable)."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)

    from_token: Mapped[str] = mapped_column(String(66), nullable=False)
    to_token: Mapped[str] = mapped_column(String(66), nullable=False)
    from_amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    to_amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(30, 10), nullable=False)
    trade_amount_usd: Mapped[Decimal | None] = mapped_column(Numeric(30, 10), nullable=True)
    from_token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_token_symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)

    from_chain: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_chain: Mapped[str | None] = mapped_column(String(16), nullable=True)
    from_specific_chain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_specific_chain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    trade_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_trades_agent_competition_ts", "agent_id", "competition_id", "timestamp"),
        Index("idx_trades_competition_ts", "competition_id", "timestamp"),
    )


# ============================================================================
# Indexing & stakes
# ============================================================================


class IndexingEventModel(Base):
    """Raw on-chain log mirror (append-only)."""

    __tablename__ = "indexing_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    raw_event_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_indexing_events_tx_log"),
        Index("idx_indexing_events_block_log", "block_number", "log_index"),
        Index("idx_indexing_events_type", "type"),
    )


class StakeModel(Base):
    """Current state of an on-chain stake, keyed by its receipt id."""

    __tablename__ = "stakes"

    id: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), primary_key=True, autoincrement=False)
    wallet: Mapped[bytes] = mapped_column(LargeBinary(20), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)

    staked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    can_unstake_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    unstaked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    can_withdraw_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    relocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_stakes_amount_non_negative"),
        Index("idx_stakes_wallet", "wallet"),
        Index("idx_stakes_wallet_address", "wallet_address"),
    )


class StakeChangeModel(Base):
    """Immutable journal of stake mutations, one row per applied chain event."""

    __tablename__ = "stake_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    stake_id: Mapped[Decimal] = mapped_column(
        Numeric(AMOUNT_PRECISION, 0),
        ForeignKey("stakes.id", deferrable=True, initially="DEFERRED"),
        nullable=False,
    )
    wallet: Mapped[bytes] = mapped_column(LargeBinary(20), nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    delta_amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # stake|unstake|relock|withdraw
    tx_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_stake_changes_tx_log"),
        Index("idx_stake_changes_stake", "stake_id"),
        Index("idx_stake_changes_block", "block_number"),
    )


# ============================================================================
# Boost
# ============================================================================


class BoostBalanceModel(Base):
    """Boost balance of one user in one competition."""

    __tablename__ = "boost_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "competition_id", name="uq_boost_balances_user_competition"),
        CheckConstraint("balance >= 0", name="ck_boost_balances_non_negative"),
    )


class BoostChangeModel(Base):
    """Append-only journal of boost deltas with an idempotency key."""

    __tablename__ = "boost_changes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    balance_id: Mapped[int] = mapped_column(Integer, ForeignKey("boost_balances.id"), nullable=False)
    wallet: Mapped[bytes] = mapped_column(LargeBinary(20), nullable=False)
    delta_amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    idem_key: Mapped[bytes] = mapped_column(LargeBinary(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("balance_id", "idem_key", name="uq_boost_changes_balance_idem"),
        Index("idx_boost_changes_balance", "balance_id"),
    )


class StakeBoostAwardModel(Base):
    """Association of a stake with the boost change it was awarded for a competition."""

    __tablename__ = "stake_boost_awards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stake_id: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    boost_change_id: Mapped[str] = mapped_column(String(36), ForeignKey("boost_changes.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("stake_id", "competition_id", name="uq_stake_boost_awards_stake_competition"),
    )


class AgentBoostTotalModel(Base):
    """Total boost an agent received in a competition."""

    __tablename__ = "agent_boost_totals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(36), nullable=False)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("agent_id", "competition_id", name="uq_agent_boost_totals_agent_competition"),
    )


class AgentBoostModel(Base):
    """Immutable link between a boost debit and the agent total it was spent on."""

    __tablename__ = "agent_boosts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_boost_total_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("agent_boost_totals.id"), nullable=False
    )
    change_id: Mapped[str] = mapped_column(String(36), ForeignKey("boost_changes.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("change_id", name="uq_agent_boosts_change"),
        Index("idx_agent_boosts_total", "agent_boost_total_id"),
    )


# ============================================================================
# Rewards
# ============================================================================


class RewardModel(Base):
    """Computed payout for one address in one competition."""

    __tablename__ = "rewards"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(AMOUNT_PRECISION, 0), nullable=False)
    leaf_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    agent_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("competition_id", "address", name="uq_rewards_competition_address"),
        Index("idx_rewards_address", "address"),
    )


class RewardsTreeModel(Base):
    """One node of a competition's rewards Merkle tree."""

    __tablename__ = "rewards_tree"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    idx: Mapped[int] = mapped_column(Integer, nullable=False)
    hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("competition_id", "level", "idx", name="uq_rewards_tree_node"),
    )


class RewardsRootModel(Base):
    """Merkle root committed for a competition's rewards."""

    __tablename__ = "rewards_roots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False)
    root_hash: Mapped[bytes] = mapped_column(LargeBinary(32), nullable=False)
    tx: Mapped[str | None] = mapped_column(String(66), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("competition_id", name="uq_rewards_roots_competition"),
        UniqueConstraint("root_hash", name="uq_rewards_roots_root_hash"),
    )
