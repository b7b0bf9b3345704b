"""Balance ledger and atomic trade settlement.

Balances are only ever changed through delta statements in
``BalanceRepository``; this module owns the transaction boundaries, the
balance cache invalidation and the retry policy for trades.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy.exc import DBAPIError

from compete_ledger.storage.repos import (
    BalanceDTO,
    BalanceRepository,
    InitialBalance,
    TradeDTO,
    TradeRepository,
)

if TYPE_CHECKING:
    from compete_ledger.config import LedgerSettings
    from compete_ledger.ledger.cache import BalanceCache
    from compete_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 0.05

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for serialization failures and deadlocks anywhere in the cause chain."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "sqlstate", None) or getattr(current, "pgcode", None)
        if code in RETRYABLE_SQLSTATES:
            return True
        current = getattr(current, "orig", None) or current.__cause__
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    is_retryable: Callable[[BaseException], bool] = is_retryable_db_error,
) -> T:
    """Run ``operation`` again with exponential backoff on retryable database errors.

    ``operation`` must open its own transaction so each attempt starts clean.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except DBAPIError as e:
            if attempt >= max_retries or not is_retryable(e):
                raise
            delay = base_delay_seconds * (2**attempt)
            attempt += 1
            logger.warning(
                "Retryable database error (attempt %d/%d), retrying in %.3fs: %s",
                attempt,
                max_retries,
                delay,
                e,
            )
            await asyncio.sleep(delay)


@dataclass
class SettledTrade:
    """A committed trade with the post-trade balances of both legs."""

    trade: TradeDTO
    from_balance: int
    to_balance: int


class BalanceLedger:
    """Read/write API over agent balances.

    Example:
        ```python
        ledger = BalanceLedger(db, cache=BalanceCache(redis))
        await ledger.reset_balances("agent-1", "comp-1", [InitialBalance(usdc, 5_000 * 10**6)])
        await ledger.update_balance("agent-1", usdc, "comp-1", -100)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        cache: BalanceCache | None = None,
        specific_chain_tokens: Mapping[str, Mapping[str, str]] | None = None,
    ) -> None:
        self._db = db
        self._cache = cache
        self._chain_by_token: dict[str, str] = {}
        for chain, tokens in (specific_chain_tokens or {}).items():
            for address in tokens.values():
                self._chain_by_token[address.lower()] = chain

    @classmethod
    def from_settings(
        cls, db: DatabaseManager, settings: LedgerSettings, *, cache: BalanceCache | None = None
    ) -> BalanceLedger:
        return cls(db, cache=cache, specific_chain_tokens=settings.specific_chain_tokens)

    @property
    def db(self) -> DatabaseManager:
        return self._db

    def specific_chain_for_token(self, token_address: str) -> str | None:
        return self._chain_by_token.get(token_address.lower())

    async def invalidate(self, agent_id: str, competition_id: str) -> None:
        if self._cache is not None:
            await self._cache.invalidate(competition_id, agent_id)

    async def get_balance(self, agent_id: str, token_address: str, competition_id: str) -> int:
        async with self._db.get_async_session() as session:
            balance = await BalanceRepository(session).get(agent_id, token_address, competition_id)
        return balance.amount if balance else 0

    async def get_balances(self, agent_id: str, competition_id: str) -> dict[str, int]:
        """Token address to amount for the agent, served from cache when present."""
        if self._cache is not None:
            cached = await self._cache.get(competition_id, agent_id)
            if cached is not None:
                return cached

        async with self._db.get_async_session() as session:
            rows = await BalanceRepository(session).list_for_agent(agent_id, competition_id)
        balances = {row.token_address: row.amount for row in rows}

        if self._cache is not None:
            await self._cache.set(competition_id, agent_id, balances)
        return balances

    async def update_balance(self, agent_id: str, token_address: str, competition_id: str, delta: int) -> int:
        """Apply one delta atomically and return the new amount."""
        async with self._db.get_async_session() as session:
            amount = await BalanceRepository(session).apply_delta(
                agent_id,
                token_address,
                competition_id,
                delta,
                specific_chain=self.specific_chain_for_token(token_address),
            )
        await self.invalidate(agent_id, competition_id)
        return amount

    async def reset_balances(
        self, agent_id: str, competition_id: str, initial_balances: Iterable[InitialBalance]
    ) -> list[BalanceDTO]:
        entries = [
            InitialBalance(
                token_address=entry.token_address,
                amount=entry.amount,
                symbol=entry.symbol,
                specific_chain=entry.specific_chain or self.specific_chain_for_token(entry.token_address),
            )
            for entry in initial_balances
        ]
        async with self._db.get_async_session() as session:
            balances = await BalanceRepository(session).reset(agent_id, competition_id, entries)
        await self.invalidate(agent_id, competition_id)
        logger.info(
            "Reset %d balances for agent=%s competition=%s", len(balances), agent_id, competition_id
        )
        return balances

    async def get_trades(
        self, agent_id: str, competition_id: str, *, limit: int | None = None
    ) -> list[TradeDTO]:
        async with self._db.get_async_session() as session:
            return await TradeRepository(session).list_for_agent(agent_id, competition_id, limit=limit)

    async def end_competition(self, competition_id: str) -> None:
        """Drop every cached balance of a competition that has ended."""
        if self._cache is not None:
            await self._cache.invalidate_competition(competition_id)


class TradeSettler:
    """Applies both legs of a trade and records it in one transaction."""

    def __init__(
        self,
        ledger: BalanceLedger,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        self._ledger = ledger
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay_seconds

    @classmethod
    def from_settings(cls, ledger: BalanceLedger, settings: LedgerSettings) -> TradeSettler:
        return cls(
            ledger,
            max_retries=settings.trade_max_retries,
            retry_base_delay_seconds=settings.trade_retry_base_delay_seconds,
        )

    async def settle_trade(self, trade: TradeDTO) -> SettledTrade:
        """Debit ``from_token``, credit ``to_token`` and insert the trade row.

        Raises:
            ValueError: If the amounts are invalid.
            BalanceNotFoundError: If the agent holds no ``from_token`` balance.
            InsufficientBalanceError: If the debit exceeds the balance.
        """
        if trade.from_amount <= 0:
            raise ValueError("from_amount must be positive")
        if trade.to_amount < 0:
            raise ValueError("to_amount must not be negative")

        trade.from_token = trade.from_token.lower()
        trade.to_token = trade.to_token.lower()
        if trade.from_specific_chain is None:
            trade.from_specific_chain = self._ledger.specific_chain_for_token(trade.from_token)
        if trade.to_specific_chain is None:
            trade.to_specific_chain = self._ledger.specific_chain_for_token(trade.to_token)

        settled = await with_retry(
            lambda: self._settle_once(trade),
            max_retries=self._max_retries,
            base_delay_seconds=self._retry_base_delay,
        )
        await self._ledger.invalidate(trade.agent_id, trade.competition_id)
        logger.info(
            "Settled trade %s agent=%s %s %s -> %s %s",
            trade.id,
            trade.agent_id,
            trade.from_amount,
            trade.from_token,
            trade.to_amount,
            trade.to_token,
        )
        return settled

    async def _settle_once(self, trade: TradeDTO) -> SettledTrade:
        async with self._ledger.db.get_async_session() as session:
            balances = BalanceRepository(session)

            if trade.from_token == trade.to_token:
                after = await balances.apply_delta(
                    trade.agent_id, trade.from_token, trade.competition_id, -trade.from_amount
                )
                if trade.to_amount > 0:
                    after = await balances.apply_delta(
                        trade.agent_id, trade.to_token, trade.competition_id, trade.to_amount
                    )
                from_balance = to_balance = after
            else:
                legs = sorted(
                    [
                        (trade.from_token, -trade.from_amount, trade.from_specific_chain, trade.from_token_symbol),
                        (trade.to_token, trade.to_amount, trade.to_specific_chain, trade.to_token_symbol),
                    ],
                    key=lambda leg: leg[0],
                )
                after_by_token: dict[str, int] = {}
                for token, delta, chain, symbol in legs:
                    if delta == 0:
                        # burn: nothing credited
                        existing = await balances.get(trade.agent_id, token, trade.competition_id)
                        after_by_token[token] = existing.amount if existing else 0
                        continue
                    after_by_token[token] = await balances.apply_delta(
                        trade.agent_id,
                        token,
                        trade.competition_id,
                        delta,
                        specific_chain=chain,
                        symbol=symbol,
                    )
                from_balance = after_by_token[trade.from_token]
                to_balance = after_by_token[trade.to_token]

            await TradeRepository(session).insert(trade)
        return SettledTrade(trade=trade, from_balance=from_balance, to_balance=to_balance)
