"""Repository pattern implementations for data access.

This module provides data access abstractions for agent balances and
trades, the on-chain event journal and stake mirror, boost accounting,
and rewards with their Merkle commitments. All SQL lives here; callers
own the transaction (see ``DatabaseManager.get_async_session``).
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from compete_ledger.storage.coders import (
    address_to_bytes,
    bytes_to_address,
    ensure_utc,
    normalize_address,
    optional_utc,
)
from compete_ledger.storage.models import (
    AgentBoostModel,
    AgentBoostTotalModel,
    BalanceModel,
    BoostBalanceModel,
    BoostChangeModel,
    IndexingEventModel,
    RewardModel,
    RewardsRootModel,
    RewardsTreeModel,
    StakeBoostAwardModel,
    StakeChangeModel,
    StakeModel,
    TradeModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return the conflict-aware ``insert()`` for the session's dialect."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


def _fresh(model: type[Any]) -> Any:
    """ORM select that reloads rows already in the session; delta UPDATEs bypass the identity map."""
    return select(model).execution_options(populate_existing=True)


def _to_int(value: Decimal | int | float | None) -> int:
    if value is None:
        return 0
    return int(value)


# ============================================================================
# Errors
# ============================================================================


class LedgerError(Exception):
    """Base error for balance ledger operations."""


class BalanceNotFoundError(LedgerError):
    """Raised when a debit targets a balance row that does not exist."""

    def __init__(self, agent_id: str, token_address: str, competition_id: str) -> None:
        self.agent_id = agent_id
        self.token_address = token_address
        self.competition_id = competition_id
        super().__init__(
            f"Balance not found: agent={agent_id} token={token_address} competition={competition_id}"
        )


class InsufficientBalanceError(LedgerError):
    """Raised when a delta would drive a balance below zero."""

    def __init__(
        self,
        agent_id: str,
        token_address: str,
        competition_id: str,
        *,
        current: int,
        requested: int,
    ) -> None:
        self.agent_id = agent_id
        self.token_address = token_address
        self.competition_id = competition_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Insufficient balance: agent={agent_id} token={token_address} "
            f"competition={competition_id} current={current} requested={requested}"
        )


class BoostError(Exception):
    """Base error for boost accounting."""


class BoostBalanceError(BoostError):
    """Raised when a boost debit has no balance or exceeds it."""


# ============================================================================
# Balances & trades
# ============================================================================


@dataclass
class BalanceDTO:
    """Data transfer object for agent balances."""

    agent_id: str
    competition_id: str
    token_address: str
    amount: int
    specific_chain: str | None = None
    symbol: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: BalanceModel) -> BalanceDTO:
        return cls(
            agent_id=model.agent_id,
            competition_id=model.competition_id,
            token_address=model.token_address,
            amount=_to_int(model.amount),
            specific_chain=model.specific_chain,
            symbol=model.symbol,
            created_at=optional_utc(model.created_at),
            updated_at=optional_utc(model.updated_at),
        )


@dataclass
class InitialBalance:
    """One entry of the balance set an agent starts a competition with."""

    token_address: str
    amount: int
    symbol: str | None = None
    specific_chain: str | None = None


class BalanceRepository:
    """Repository for per-(agent, competition, token) balances.

    Every mutation is a single delta statement so concurrent writers on the
    same row are serialized by the database instead of overwriting each
    other.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, agent_id: str, token_address: str, competition_id: str) -> BalanceDTO | None:
        result = await self.session.execute(
            _fresh(BalanceModel).where(
                BalanceModel.agent_id == agent_id,
                BalanceModel.token_address == token_address.lower(),
                BalanceModel.competition_id == competition_id,
            )
        )
        model = result.scalar_one_or_none()
        return BalanceDTO.from_model(model) if model else None

    async def list_for_agent(self, agent_id: str, competition_id: str) -> list[BalanceDTO]:
        result = await self.session.execute(
            _fresh(BalanceModel)
            .where(BalanceModel.agent_id == agent_id, BalanceModel.competition_id == competition_id)
            .order_by(BalanceModel.token_address)
        )
        return [BalanceDTO.from_model(m) for m in result.scalars().all()]

    async def apply_delta(
        self,
        agent_id: str,
        token_address: str,
        competition_id: str,
        delta: int,
        *,
        specific_chain: str | None = None,
        symbol: str | None = None,
    ) -> int:
        """Apply ``amount = amount + delta`` and return the new amount.

        A credit on a missing row creates it. A debit (or zero delta) on a
        missing row raises ``BalanceNotFoundError``; a debit that would go
        negative matches no row and raises ``InsufficientBalanceError``.
        """
        token = token_address.lower()
        now = datetime.now(UTC)

        if delta > 0:
            stmt = dialect_insert(self.session, BalanceModel).values(
                agent_id=agent_id,
                competition_id=competition_id,
                token_address=token,
                amount=delta,
                specific_chain=specific_chain,
                symbol=symbol,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["agent_id", "token_address", "competition_id"],
                set_={"amount": BalanceModel.amount + stmt.excluded.amount, "updated_at": now},
            ).returning(BalanceModel.amount)
            result = await self.session.execute(stmt)
            return _to_int(result.scalar_one())

        guarded = (
            update(BalanceModel)
            .where(
                BalanceModel.agent_id == agent_id,
                BalanceModel.token_address == token,
                BalanceModel.competition_id == competition_id,
                BalanceModel.amount + delta >= 0,
            )
            .values(amount=BalanceModel.amount + delta, updated_at=now)
            .returning(BalanceModel.amount)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(guarded)
        new_amount = result.scalar_one_or_none()
        if new_amount is not None:
            return _to_int(new_amount)

        current = await self.get(agent_id, token, competition_id)
        if current is None:
            raise BalanceNotFoundError(agent_id, token, competition_id)
        raise InsufficientBalanceError(
            agent_id, token, competition_id, current=current.amount, requested=-delta
        )

    async def reset(
        self, agent_id: str, competition_id: str, initial_balances: Iterable[InitialBalance]
    ) -> list[BalanceDTO]:
        """Delete every balance of the agent in the competition and insert the initial set."""
        await self.session.execute(
            delete(BalanceModel).where(
                BalanceModel.agent_id == agent_id, BalanceModel.competition_id == competition_id
            )
        )
        now = datetime.now(UTC)
        models = [
            BalanceModel(
                agent_id=agent_id,
                competition_id=competition_id,
                token_address=entry.token_address.lower(),
                amount=entry.amount,
                specific_chain=entry.specific_chain,
                symbol=entry.symbol,
                created_at=now,
                updated_at=now,
            )
            for entry in initial_balances
        ]
        self.session.add_all(models)
        await self.session.flush()
        return [BalanceDTO.from_model(m) for m in models]


@dataclass
class TradeDTO:
    """Data transfer object for settled trades."""

    agent_id: str
    competition_id: str
    from_token: str
    to_token: str
    from_amount: int
    to_amount: int
    price: Decimal
    reason: str
    success: bool = True
    error: str | None = None
    trade_amount_usd: Decimal | None = None
    from_token_symbol: str | None = None
    to_token_symbol: str | None = None
    from_chain: str | None = None
    to_chain: str | None = None
    from_specific_chain: str | None = None
    to_specific_chain: str | None = None
    trade_type: str | None = None
    tx_hash: str | None = None
    block_number: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            id=model.id,
            agent_id=model.agent_id,
            competition_id=model.competition_id,
            from_token=model.from_token,
            to_token=model.to_token,
            from_amount=_to_int(model.from_amount),
            to_amount=_to_int(model.to_amount),
            price=model.price,
            reason=model.reason,
            success=model.success,
            error=model.error,
            trade_amount_usd=model.trade_amount_usd,
            from_token_symbol=model.from_token_symbol,
            to_token_symbol=model.to_token_symbol,
            from_chain=model.from_chain,
            to_chain=model.to_chain,
            from_specific_chain=model.from_specific_chain,
            to_specific_chain=model.to_specific_chain,
            trade_type=model.trade_type,
            tx_hash=model.tx_hash,
            block_number=model.block_number,
            timestamp=ensure_utc(model.timestamp),
        )


class TradeRepository:
    """Repository for immutable trade rows."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: TradeDTO) -> TradeDTO:
        model = TradeModel(
            id=dto.id,
            agent_id=dto.agent_id,
            competition_id=dto.competition_id,
            from_token=dto.from_token.lower(),
            to_token=dto.to_token.lower(),
            from_amount=dto.from_amount,
            to_amount=dto.to_amount,
            price=dto.price,
            trade_amount_usd=dto.trade_amount_usd,
            from_token_symbol=dto.from_token_symbol,
            to_token_symbol=dto.to_token_symbol,
            success=dto.success,
            error=dto.error,
            reason=dto.reason,
            from_chain=dto.from_chain,
            to_chain=dto.to_chain,
            from_specific_chain=dto.from_specific_chain,
            to_specific_chain=dto.to_specific_chain,
            trade_type=dto.trade_type,
            tx_hash=dto.tx_hash,
            block_number=dto.block_number,
            timestamp=dto.timestamp,
        )
        self.session.add(model)
        await self.session.flush()
        return dto

    async def get(self, trade_id: str) -> TradeDTO | None:
        result = await self.session.execute(select(TradeModel).where(TradeModel.id == trade_id))
        model = result.scalar_one_or_none()
        return TradeDTO.from_model(model) if model else None

    async def list_for_agent(
        self, agent_id: str, competition_id: str, *, limit: int | None = None
    ) -> list[TradeDTO]:
        stmt = (
            select(TradeModel)
            .where(TradeModel.agent_id == agent_id, TradeModel.competition_id == competition_id)
            .order_by(TradeModel.timestamp.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [TradeDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Indexing events & stakes
# ============================================================================


@dataclass
class IndexingEventDTO:
    """Data transfer object for journaled chain logs."""

    type: str
    block_number: int
    block_hash: bytes
    block_timestamp: datetime
    transaction_hash: bytes
    log_index: int
    raw_event_data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: IndexingEventModel) -> IndexingEventDTO:
        return cls(
            id=model.id,
            type=model.type,
            block_number=model.block_number,
            block_hash=model.block_hash,
            block_timestamp=ensure_utc(model.block_timestamp),
            transaction_hash=model.transaction_hash,
            log_index=model.log_index,
            raw_event_data=model.raw_event_data,
            created_at=optional_utc(model.created_at),
        )


class IndexingEventRepository:
    """Append-only journal of raw chain logs keyed by (tx hash, log index)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert(self, dto: IndexingEventDTO) -> bool:
        """Insert the event; returns False when it was already journaled."""
        stmt = (
            dialect_insert(self.session, IndexingEventModel)
            .values(
                id=dto.id,
                raw_event_data=dto.raw_event_data,
                type=dto.type,
                block_number=dto.block_number,
                block_hash=dto.block_hash,
                block_timestamp=dto.block_timestamp,
                transaction_hash=dto.transaction_hash,
                log_index=dto.log_index,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["transaction_hash", "log_index"])
            .returning(IndexingEventModel.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def exists(self, transaction_hash: bytes, log_index: int) -> bool:
        result = await self.session.execute(
            select(IndexingEventModel.id)
            .where(
                IndexingEventModel.transaction_hash == transaction_hash,
                IndexingEventModel.log_index == log_index,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get(self, transaction_hash: bytes, log_index: int) -> IndexingEventDTO | None:
        result = await self.session.execute(
            select(IndexingEventModel).where(
                IndexingEventModel.transaction_hash == transaction_hash,
                IndexingEventModel.log_index == log_index,
            )
        )
        model = result.scalar_one_or_none()
        return IndexingEventDTO.from_model(model) if model else None

    async def last_block_number(self) -> int | None:
        result = await self.session.execute(select(func.max(IndexingEventModel.block_number)))
        return result.scalar_one_or_none()


@dataclass
class StakeDTO:
    """Current state of one stake position."""

    id: int
    wallet: bytes
    amount: int
    staked_at: datetime
    can_unstake_after: datetime
    unstaked_at: datetime | None = None
    can_withdraw_after: datetime | None = None
    withdrawn_at: datetime | None = None
    relocked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def wallet_address(self) -> str:
        return bytes_to_address(self.wallet)

    @classmethod
    def from_model(cls, model: StakeModel) -> StakeDTO:
        return cls(
            id=_to_int(model.id),
            wallet=model.wallet,
            amount=_to_int(model.amount),
            staked_at=ensure_utc(model.staked_at),
            can_unstake_after=ensure_utc(model.can_unstake_after),
            unstaked_at=optional_utc(model.unstaked_at),
            can_withdraw_after=optional_utc(model.can_withdraw_after),
            withdrawn_at=optional_utc(model.withdrawn_at),
            relocked_at=optional_utc(model.relocked_at),
            created_at=optional_utc(model.created_at),
            updated_at=optional_utc(model.updated_at),
        )


@dataclass
class StakeChangeDTO:
    """Immutable journal entry for one applied stake event."""

    stake_id: int
    wallet: bytes
    delta_amount: int
    kind: str
    tx_hash: bytes
    log_index: int
    block_number: int
    block_hash: bytes
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: StakeChangeModel) -> StakeChangeDTO:
        return cls(
            id=model.id,
            stake_id=_to_int(model.stake_id),
            wallet=model.wallet,
            delta_amount=_to_int(model.delta_amount),
            kind=model.kind,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            block_number=model.block_number,
            block_hash=model.block_hash,
            created_at=optional_utc(model.created_at),
        )


class StakeRepository:
    """Repository for the stake mirror and its change journal."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, stake_id: int, *, for_update: bool = False) -> StakeDTO | None:
        stmt = _fresh(StakeModel).where(StakeModel.id == stake_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return StakeDTO.from_model(model) if model else None

    async def insert_change(self, dto: StakeChangeDTO, *, created_at: datetime | None = None) -> bool:
        """Insert the journal row; False means the event was already applied."""
        stmt = (
            dialect_insert(self.session, StakeChangeModel)
            .values(
                id=dto.id,
                stake_id=dto.stake_id,
                wallet=dto.wallet,
                wallet_address=bytes_to_address(dto.wallet),
                delta_amount=dto.delta_amount,
                kind=dto.kind,
                tx_hash=dto.tx_hash,
                log_index=dto.log_index,
                block_number=dto.block_number,
                block_hash=dto.block_hash,
                created_at=created_at or datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["tx_hash", "log_index"])
            .returning(StakeChangeModel.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def insert_stake(self, dto: StakeDTO) -> bool:
        now = datetime.now(UTC)
        stmt = (
            dialect_insert(self.session, StakeModel)
            .values(
                id=dto.id,
                wallet=dto.wallet,
                wallet_address=dto.wallet_address,
                amount=dto.amount,
                staked_at=dto.staked_at,
                can_unstake_after=dto.can_unstake_after,
                unstaked_at=None,
                can_withdraw_after=None,
                withdrawn_at=None,
                relocked_at=None,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["id"])
            .returning(StakeModel.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def update_stake(self, stake_id: int, **values: Any) -> None:
        await self.session.execute(
            update(StakeModel)
            .where(StakeModel.id == stake_id)
            .values(**values, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    async def list_changes(self, stake_id: int) -> list[StakeChangeDTO]:
        result = await self.session.execute(
            select(StakeChangeModel)
            .where(StakeChangeModel.stake_id == stake_id)
            .order_by(StakeChangeModel.block_number, StakeChangeModel.log_index)
        )
        return [StakeChangeDTO.from_model(m) for m in result.scalars().all()]

    async def last_applied_block(self) -> int | None:
        result = await self.session.execute(select(func.max(StakeChangeModel.block_number)))
        return result.scalar_one_or_none()

    async def all_staked(self, *, after_id: int | None = None, limit: int = 100) -> list[StakeDTO]:
        """Page through active stakes ordered by id."""
        stmt = _fresh(StakeModel).where(StakeModel.unstaked_at.is_(None))
        if after_id is not None:
            stmt = stmt.where(StakeModel.id > after_id)
        result = await self.session.execute(stmt.order_by(StakeModel.id).limit(limit))
        return [StakeDTO.from_model(m) for m in result.scalars().all()]

    async def all_staked_by_wallet(self, wallet: str | bytes) -> list[StakeDTO]:
        result = await self.session.execute(
            _fresh(StakeModel)
            .where(StakeModel.wallet == address_to_bytes(wallet), StakeModel.unstaked_at.is_(None))
            .order_by(StakeModel.id)
        )
        return [StakeDTO.from_model(m) for m in result.scalars().all()]

    async def total_staked_by_wallet(self, wallet: str | bytes) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(StakeModel.amount), 0)).where(
                StakeModel.wallet == address_to_bytes(wallet), StakeModel.unstaked_at.is_(None)
            )
        )
        return _to_int(result.scalar_one())


# ============================================================================
# Boost
# ============================================================================


@dataclass(frozen=True)
class BoostApplied:
    """A boost change was written."""

    change_id: str
    balance_after: int
    idem_key: bytes


@dataclass(frozen=True)
class BoostNoop:
    """The idempotency key was already used; nothing changed."""

    balance: int
    idem_key: bytes


BoostResult = BoostApplied | BoostNoop


@dataclass(frozen=True)
class AgentBoostResult:
    """Outcome of spending boost on an agent."""

    applied: bool
    agent_total: int
    balance: int
    idem_key: bytes


@dataclass
class BoostSpendingDTO:
    """One boost debit spent on an agent; the input unit of rewards allocation."""

    user_id: str
    wallet_address: str
    agent_id: str
    amount: int
    created_at: datetime


class BoostRepository:
    """Repository for boost balances, their change journal and agent totals."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _balance_row(self, user_id: str, competition_id: str) -> BoostBalanceModel | None:
        result = await self.session.execute(
            _fresh(BoostBalanceModel)
            .where(BoostBalanceModel.user_id == user_id, BoostBalanceModel.competition_id == competition_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _ensure_balance(self, user_id: str, competition_id: str) -> tuple[int, int]:
        now = datetime.now(UTC)
        stmt = (
            dialect_insert(self.session, BoostBalanceModel)
            .values(user_id=user_id, competition_id=competition_id, balance=0, created_at=now, updated_at=now)
            .on_conflict_do_nothing(index_elements=["user_id", "competition_id"])
            .returning(BoostBalanceModel.id)
        )
        inserted = (await self.session.execute(stmt)).scalar_one_or_none()
        if inserted is not None:
            return inserted, 0
        row = await self._balance_row(user_id, competition_id)
        if row is None:
            raise BoostBalanceError(f"Boost balance vanished for user={user_id} competition={competition_id}")
        return row.id, _to_int(row.balance)

    async def _insert_change(
        self, balance_id: int, wallet: bytes, delta: int, idem_key: bytes, meta: dict[str, Any] | None
    ) -> str | None:
        stmt = (
            dialect_insert(self.session, BoostChangeModel)
            .values(
                id=str(uuid.uuid4()),
                balance_id=balance_id,
                wallet=wallet,
                delta_amount=delta,
                meta=meta or {},
                idem_key=idem_key,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["balance_id", "idem_key"])
            .returning(BoostChangeModel.id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def increase(
        self,
        *,
        user_id: str,
        wallet: str | bytes,
        competition_id: str,
        amount: int,
        idem_key: bytes | None = None,
        meta: dict[str, Any] | None = None,
    ) -> BoostResult:
        """Credit boost once per (balance, idempotency key)."""
        if amount < 0:
            raise ValueError("Boost increase amount must be non-negative")
        key = idem_key if idem_key is not None else os.urandom(32)

        balance_id, current = await self._ensure_balance(user_id, competition_id)
        change_id = await self._insert_change(balance_id, address_to_bytes(wallet), amount, key, meta)
        if change_id is None:
            return BoostNoop(balance=current, idem_key=key)

        result = await self.session.execute(
            update(BoostBalanceModel)
            .where(BoostBalanceModel.id == balance_id)
            .values(balance=BoostBalanceModel.balance + amount, updated_at=datetime.now(UTC))
            .returning(BoostBalanceModel.balance)
            .execution_options(synchronize_session=False)
        )
        return BoostApplied(change_id=change_id, balance_after=_to_int(result.scalar_one()), idem_key=key)

    async def decrease(
        self,
        *,
        user_id: str,
        wallet: str | bytes,
        competition_id: str,
        amount: int,
        idem_key: bytes | None = None,
        meta: dict[str, Any] | None = None,
    ) -> BoostResult:
        """Debit boost once per (balance, idempotency key)."""
        if amount <= 0:
            raise ValueError("Boost decrease amount must be positive")
        key = idem_key if idem_key is not None else os.urandom(32)

        row = await self._balance_row(user_id, competition_id)
        if row is None:
            raise BoostBalanceError(f"No boost balance for user={user_id} competition={competition_id}")
        current = _to_int(row.balance)

        seen = await self.session.execute(
            select(BoostChangeModel.id).where(
                BoostChangeModel.balance_id == row.id, BoostChangeModel.idem_key == key
            )
        )
        if seen.scalar_one_or_none() is not None:
            return BoostNoop(balance=current, idem_key=key)

        if current < amount:
            raise BoostBalanceError(
                f"Insufficient boost for user={user_id} competition={competition_id}: "
                f"balance={current} requested={amount}"
            )

        change_id = await self._insert_change(row.id, address_to_bytes(wallet), -amount, key, meta)
        if change_id is None:
            return BoostNoop(balance=current, idem_key=key)
        result = await self.session.execute(
            update(BoostBalanceModel)
            .where(BoostBalanceModel.id == row.id)
            .values(balance=BoostBalanceModel.balance - amount, updated_at=datetime.now(UTC))
            .returning(BoostBalanceModel.balance)
            .execution_options(synchronize_session=False)
        )
        return BoostApplied(change_id=change_id, balance_after=_to_int(result.scalar_one()), idem_key=key)

    async def user_boost_balance(self, user_id: str, competition_id: str) -> int:
        result = await self.session.execute(
            select(BoostBalanceModel.balance).where(
                BoostBalanceModel.user_id == user_id, BoostBalanceModel.competition_id == competition_id
            )
        )
        return _to_int(result.scalar_one_or_none())

    async def record_stake_boost_award(
        self,
        *,
        stake_id: int,
        competition_id: str,
        base_amount: int,
        multiplier: int,
        boost_change_id: str,
    ) -> bool:
        stmt = (
            dialect_insert(self.session, StakeBoostAwardModel)
            .values(
                stake_id=stake_id,
                competition_id=competition_id,
                base_amount=base_amount,
                multiplier=multiplier,
                boost_change_id=boost_change_id,
                created_at=datetime.now(UTC),
            )
            .on_conflict_do_nothing(index_elements=["stake_id", "competition_id"])
            .returning(StakeBoostAwardModel.id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    async def unawarded_stakes(self, wallet: str | bytes, competition_id: str) -> list[StakeDTO]:
        """Active stakes of the wallet that have no award for the competition yet."""
        awarded = exists().where(
            StakeBoostAwardModel.stake_id == StakeModel.id,
            StakeBoostAwardModel.competition_id == competition_id,
        )
        result = await self.session.execute(
            _fresh(StakeModel)
            .where(StakeModel.wallet == address_to_bytes(wallet), StakeModel.unstaked_at.is_(None), ~awarded)
            .order_by(StakeModel.id)
        )
        return [StakeDTO.from_model(m) for m in result.scalars().all()]

    async def boost_agent(
        self,
        *,
        user_id: str,
        wallet: str | bytes,
        agent_id: str,
        competition_id: str,
        amount: int,
        idem_key: bytes | None = None,
    ) -> AgentBoostResult:
        """Debit the user's boost and credit the agent's total in one step."""
        debit = await self.decrease(
            user_id=user_id,
            wallet=wallet,
            competition_id=competition_id,
            amount=amount,
            idem_key=idem_key,
            meta={"agent_id": agent_id},
        )
        if isinstance(debit, BoostNoop):
            totals = await self.agent_boost_totals(competition_id, [agent_id])
            return AgentBoostResult(
                applied=False, agent_total=totals.get(agent_id, 0), balance=debit.balance, idem_key=debit.idem_key
            )

        now = datetime.now(UTC)
        stmt = dialect_insert(self.session, AgentBoostTotalModel).values(
            agent_id=agent_id, competition_id=competition_id, total=amount, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["agent_id", "competition_id"],
            set_={"total": AgentBoostTotalModel.total + stmt.excluded.total, "updated_at": now},
        ).returning(AgentBoostTotalModel.id, AgentBoostTotalModel.total)
        total_id, total = (await self.session.execute(stmt)).one()

        self.session.add(AgentBoostModel(agent_boost_total_id=total_id, change_id=debit.change_id, created_at=now))
        await self.session.flush()
        return AgentBoostResult(
            applied=True, agent_total=_to_int(total), balance=debit.balance_after, idem_key=debit.idem_key
        )

    async def agent_boost_totals(
        self, competition_id: str, agent_ids: Sequence[str] | None = None
    ) -> dict[str, int]:
        stmt = select(AgentBoostTotalModel.agent_id, AgentBoostTotalModel.total).where(
            AgentBoostTotalModel.competition_id == competition_id
        )
        if agent_ids is not None:
            stmt = stmt.where(AgentBoostTotalModel.agent_id.in_(list(agent_ids)))
        result = await self.session.execute(stmt)
        return {agent_id: _to_int(total) for agent_id, total in result.all()}

    async def user_boosts(self, user_id: str, competition_id: str) -> dict[str, int]:
        """Boost the user has spent per agent in the competition."""
        result = await self.session.execute(
            select(AgentBoostTotalModel.agent_id, func.sum(BoostChangeModel.delta_amount))
            .select_from(BoostChangeModel)
            .join(BoostBalanceModel, BoostChangeModel.balance_id == BoostBalanceModel.id)
            .join(AgentBoostModel, AgentBoostModel.change_id == BoostChangeModel.id)
            .join(AgentBoostTotalModel, AgentBoostTotalModel.id == AgentBoostModel.agent_boost_total_id)
            .where(BoostBalanceModel.user_id == user_id, BoostBalanceModel.competition_id == competition_id)
            .group_by(AgentBoostTotalModel.agent_id)
        )
        return {agent_id: -_to_int(spent) for agent_id, spent in result.all()}

    async def user_boost_spending(self, competition_id: str) -> list[BoostSpendingDTO]:
        """All boost debits spent on agents in the competition, oldest first."""
        result = await self.session.execute(
            select(
                BoostBalanceModel.user_id,
                BoostChangeModel.wallet,
                AgentBoostTotalModel.agent_id,
                BoostChangeModel.delta_amount,
                BoostChangeModel.created_at,
            )
            .select_from(BoostChangeModel)
            .join(BoostBalanceModel, BoostChangeModel.balance_id == BoostBalanceModel.id)
            .join(AgentBoostModel, AgentBoostModel.change_id == BoostChangeModel.id)
            .join(AgentBoostTotalModel, AgentBoostTotalModel.id == AgentBoostModel.agent_boost_total_id)
            .where(BoostBalanceModel.competition_id == competition_id, BoostChangeModel.delta_amount < 0)
            .order_by(BoostChangeModel.created_at, BoostChangeModel.id)
        )
        return [
            BoostSpendingDTO(
                user_id=user_id,
                wallet_address=bytes_to_address(wallet),
                agent_id=agent_id,
                amount=-_to_int(delta),
                created_at=ensure_utc(created_at),
            )
            for user_id, wallet, agent_id, delta, created_at in result.all()
        ]


# ============================================================================
# Rewards
# ============================================================================


@dataclass
class RewardDTO:
    """Data transfer object for persisted rewards."""

    competition_id: str
    address: str
    amount: int
    leaf_hash: bytes
    user_id: str | None = None
    agent_id: str | None = None
    claimed: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RewardModel) -> RewardDTO:
        return cls(
            id=model.id,
            competition_id=model.competition_id,
            address=model.address,
            amount=_to_int(model.amount),
            leaf_hash=model.leaf_hash,
            user_id=model.user_id,
            agent_id=model.agent_id,
            claimed=model.claimed,
            created_at=optional_utc(model.created_at),
        )


@dataclass
class RewardsRootDTO:
    competition_id: str
    root_hash: bytes
    tx: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RewardsRootModel) -> RewardsRootDTO:
        return cls(
            competition_id=model.competition_id,
            root_hash=model.root_hash,
            tx=model.tx,
            created_at=optional_utc(model.created_at),
        )


class RewardsRepository:
    """Repository for rewards, Merkle tree nodes and committed roots."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_rewards(self, rewards: Sequence[RewardDTO]) -> None:
        if not rewards:
            return
        now = datetime.now(UTC)
        self.session.add_all(
            [
                RewardModel(
                    id=r.id,
                    competition_id=r.competition_id,
                    address=normalize_address(r.address),
                    amount=r.amount,
                    leaf_hash=r.leaf_hash,
                    user_id=r.user_id,
                    agent_id=r.agent_id,
                    claimed=r.claimed,
                    created_at=now,
                )
                for r in rewards
            ]
        )
        await self.session.flush()

    async def list_by_competition(self, competition_id: str) -> list[RewardDTO]:
        result = await self.session.execute(
            _fresh(RewardModel).where(RewardModel.competition_id == competition_id).order_by(RewardModel.address)
        )
        return [RewardDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_address(self, address: str, *, unclaimed_only: bool = False) -> list[RewardDTO]:
        stmt = _fresh(RewardModel).where(RewardModel.address == normalize_address(address))
        if unclaimed_only:
            stmt = stmt.where(RewardModel.claimed.is_(False))
        result = await self.session.execute(stmt.order_by(RewardModel.created_at, RewardModel.competition_id))
        return [RewardDTO.from_model(m) for m in result.scalars().all()]

    async def get_reward(self, competition_id: str, address: str) -> RewardDTO | None:
        result = await self.session.execute(
            _fresh(RewardModel).where(
                RewardModel.competition_id == competition_id,
                RewardModel.address == normalize_address(address),
            )
        )
        model = result.scalar_one_or_none()
        return RewardDTO.from_model(model) if model else None

    async def mark_claimed(self, competition_id: str, address: str, amount: int) -> bool:
        result = await self.session.execute(
            update(RewardModel)
            .where(
                RewardModel.competition_id == competition_id,
                RewardModel.address == normalize_address(address),
                RewardModel.amount == amount,
            )
            .values(claimed=True)
            .returning(RewardModel.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None

    async def insert_tree(self, competition_id: str, layers: Sequence[Sequence[bytes]]) -> None:
        now = datetime.now(UTC)
        self.session.add_all(
            [
                RewardsTreeModel(competition_id=competition_id, level=level, idx=idx, hash=node, created_at=now)
                for level, layer in enumerate(layers)
                for idx, node in enumerate(layer)
            ]
        )
        await self.session.flush()

    async def get_tree(self, competition_id: str) -> list[list[bytes]]:
        """Stored tree as layers, leaves first."""
        result = await self.session.execute(
            select(RewardsTreeModel.level, RewardsTreeModel.idx, RewardsTreeModel.hash)
            .where(RewardsTreeModel.competition_id == competition_id)
            .order_by(RewardsTreeModel.level, RewardsTreeModel.idx)
        )
        layers: list[list[bytes]] = []
        for level, _idx, node in result.all():
            while len(layers) <= level:
                layers.append([])
            layers[level].append(node)
        return layers

    async def insert_root(self, competition_id: str, root_hash: bytes, tx: str | None = None) -> RewardsRootDTO:
        model = RewardsRootModel(
            competition_id=competition_id, root_hash=root_hash, tx=tx, created_at=datetime.now(UTC)
        )
        self.session.add(model)
        await self.session.flush()
        return RewardsRootDTO.from_model(model)

    async def get_root(self, competition_id: str) -> RewardsRootDTO | None:
        result = await self.session.execute(
            _fresh(RewardsRootModel).where(RewardsRootModel.competition_id == competition_id)
        )
        model = result.scalar_one_or_none()
        return RewardsRootDTO.from_model(model) if model else None

    async def find_competition_by_root(self, root_hash: bytes) -> str | None:
        result = await self.session.execute(
            select(RewardsRootModel.competition_id).where(RewardsRootModel.root_hash == root_hash)
        )
        return result.scalar_one_or_none()

    async def update_root_tx(self, root_hash: bytes, tx: str) -> bool:
        result = await self.session.execute(
            update(RewardsRootModel)
            .where(RewardsRootModel.root_hash == root_hash)
            .values(tx=tx)
            .returning(RewardsRootModel.id)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none() is not None
