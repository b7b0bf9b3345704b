"""Per-log event processing behind the journal gate."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from compete_ledger.indexing.stakes import StakeProjector
from compete_ledger.storage.coders import bytes_to_hex
from compete_ledger.storage.repos import (
    IndexingEventDTO,
    IndexingEventRepository,
    RewardsRepository,
    StakeRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from compete_ledger.boost.awards import BoostAwardEngine
    from compete_ledger.indexing.events import ChainEvent
    from compete_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class EventJournal:
    """Append-only record of every chain log the indexer has handled."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = IndexingEventRepository(session)

    async def has_event(self, event: ChainEvent) -> bool:
        return await self._repo.exists(event.transaction_hash, event.log_index)

    async def record_event(self, event: ChainEvent) -> bool:
        """Journal ``event``; False when the (tx hash, log index) pair is already there."""
        return await self._repo.insert(
            IndexingEventDTO(
                type=event.type,
                block_number=event.block_number,
                block_hash=event.block_hash,
                block_timestamp=event.block_timestamp,
                transaction_hash=event.transaction_hash,
                log_index=event.log_index,
                raw_event_data=event.raw_event_data(),
            )
        )


class EventProcessor:
    """Applies one decoded log per transaction.

    Staking events go to the stake projector; a freshly created stake is
    then awarded boost in every competition open for boosting. Reward
    claims flag the matching reward, and allocations record the commit
    transaction on the rewards root.
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        projector: StakeProjector | None = None,
        boost_engine: BoostAwardEngine | None = None,
    ) -> None:
        self._db = db
        self._projector = projector or StakeProjector()
        self._boost_engine = boost_engine

    async def process(self, event: ChainEvent, *, now: datetime | None = None) -> bool:
        """Handle ``event`` at most once.

        The journal row is written before dispatch, so of two concurrent
        callers only the one whose insert lands applies the event; the other
        waits on the row and gets False. A failed dispatch rolls the journal
        row back with everything else.

        Returns:
            True if this call applied the event, False for a replayed log.
        """
        async with self._db.get_async_session() as session:
            if not await EventJournal(session).record_event(event):
                logger.debug(
                    "Skipping journaled %s tx=%s log=%d",
                    event.name,
                    bytes_to_hex(event.transaction_hash),
                    event.log_index,
                )
                return False

            if event.is_stake_event:
                await self._handle_stake_event(session, event, now or datetime.now(UTC))
            elif event.type == "reward_claimed":
                await self._handle_reward_claimed(session, event)
            elif event.type == "allocation_added":
                await self._handle_allocation_added(session, event)
            else:
                logger.warning("No handler for event %s", event.name)
        return True

    async def _handle_stake_event(self, session: AsyncSession, event: ChainEvent, now: datetime) -> None:
        change = await self._projector.apply_event(session, event)
        if change is None or event.type != "stake" or self._boost_engine is None:
            return

        stake = await StakeRepository(session).get(change.stake_id)
        if stake is None:
            return
        competitions = await self._boost_engine.competitions.find_open_for_boosting(now)
        logger.debug("Found %d competitions open for boosting", len(competitions))
        for competition in competitions:
            await self._boost_engine.award_for_stake(session, stake, competition)

    async def _handle_reward_claimed(self, session: AsyncSession, event: ChainEvent) -> None:
        root_hash: bytes = event.args["root"]
        user: str = event.args["user"]
        amount = int(event.args["amount"])

        repo = RewardsRepository(session)
        competition_id = await repo.find_competition_by_root(root_hash)
        if competition_id is None:
            logger.warning("RewardClaimed for unknown root %s", bytes_to_hex(root_hash))
            return
        if not await repo.mark_claimed(competition_id, user, amount):
            logger.warning(
                "RewardClaimed matched no reward: competition=%s user=%s amount=%d", competition_id, user, amount
            )
            return
        logger.info("Reward claimed: competition=%s user=%s amount=%d", competition_id, user, amount)

    async def _handle_allocation_added(self, session: AsyncSession, event: ChainEvent) -> None:
        root_hash: bytes = event.args["root"]
        tx = bytes_to_hex(event.transaction_hash)
        if not await RewardsRepository(session).update_root_tx(root_hash, tx):
            logger.warning("AllocationAdded for unknown root %s", bytes_to_hex(root_hash))
            return
        logger.info("Rewards root %s allocated in tx %s", bytes_to_hex(root_hash), tx)
