"""Background indexing of staking and rewards contract logs.

The service scans the chain in fixed-size block chunks, decodes the logs of
the configured contracts and hands them, in (block, log index) order, to
the ``EventProcessor``. On start it resumes from the highest block already
applied; that block is scanned again and the journal turns its logs into
no-ops.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3

from compete_ledger.indexing.events import REWARDS_EVENTS, STAKING_EVENTS, decode_log
from compete_ledger.storage.repos import IndexingEventRepository, StakeRepository

if TYPE_CHECKING:
    from compete_ledger.config import IndexingSettings
    from compete_ledger.indexing.chain import ChainClient
    from compete_ledger.indexing.processor import EventProcessor
    from compete_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE_BLOCKS = 2_000
DEFAULT_DELAY_SECONDS = 3.0


class IndexingError(Exception):
    """Raised when the indexing service is misconfigured."""


@dataclass
class IndexingStats:
    ticks: int = 0
    logs_seen: int = 0
    events_applied: int = 0
    failed_ticks: int = 0
    last_scanned_block: int | None = None
    last_error: str | None = None


class IndexingService:
    """Polls ``eth_getLogs`` and feeds decoded events to the processor.

    Example:
        ```python
        service = IndexingService(db, client, processor, staking_contract="0x...")
        await service.start()
        ...
        await service.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        client: ChainClient,
        processor: EventProcessor,
        *,
        staking_contract: str | None = None,
        rewards_contract: str | None = None,
        start_block: int = 0,
        chunk_size_blocks: int = DEFAULT_CHUNK_SIZE_BLOCKS,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        confirmations: int = 0,
    ) -> None:
        if staking_contract is None and rewards_contract is None:
            raise IndexingError("At least one contract address is required")
        if chunk_size_blocks < 1:
            raise IndexingError("chunk_size_blocks must be positive")

        self._db = db
        self._client = client
        self._processor = processor
        self._start_block = start_block
        self._chunk_size = chunk_size_blocks
        self._delay_seconds = delay_seconds
        self._confirmations = confirmations

        specs = []
        self._addresses: list[str] = []
        if staking_contract is not None:
            self._addresses.append(AsyncWeb3.to_checksum_address(staking_contract))
            specs.extend(STAKING_EVENTS)
        if rewards_contract is not None:
            self._addresses.append(AsyncWeb3.to_checksum_address(rewards_contract))
            specs.extend(REWARDS_EVENTS)
        self._topics = [spec.topic0 for spec in specs]

        self._next_block: int | None = None
        self._stats = IndexingStats()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        db: DatabaseManager,
        client: ChainClient,
        processor: EventProcessor,
        settings: IndexingSettings,
    ) -> IndexingService:
        return cls(
            db,
            client,
            processor,
            staking_contract=settings.staking_contract,
            rewards_contract=settings.rewards_contract,
            start_block=settings.start_block,
            chunk_size_blocks=settings.logs_chunk_size_blocks,
            delay_seconds=settings.delay_seconds,
            confirmations=settings.confirmations,
        )

    @property
    def stats(self) -> IndexingStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def resume_block(self) -> int:
        """First block to scan: the highest applied block, or ``start_block`` on an empty store."""
        async with self._db.get_async_session() as session:
            last_stake = await StakeRepository(session).last_applied_block()
            last_event = await IndexingEventRepository(session).last_block_number()
        applied = [b for b in (last_stake, last_event) if b is not None]
        if not applied:
            return self._start_block
        return max(max(applied), self._start_block)

    def _filter_params(self, from_block: int, to_block: int) -> dict[str, Any]:
        return {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": self._addresses,
            "topics": [self._topics],
        }

    async def run_once(self) -> bool:
        """Scan one chunk. Returns True when the scan has reached the chain tip."""
        if self._next_block is None:
            self._next_block = await self.resume_block()
            logger.info("Indexing resumes at block %d", self._next_block)

        head = await self._client.get_block_number() - self._confirmations
        from_block = self._next_block
        if from_block > head:
            return True
        to_block = min(from_block + self._chunk_size - 1, head)

        logs = await self._client.get_logs(self._filter_params(from_block, to_block))
        logs.sort(key=lambda log: (int(log["blockNumber"]), int(log["logIndex"])))

        timestamps: dict[int, datetime] = {}
        applied = 0
        for log in logs:
            block_number = int(log["blockNumber"])
            if block_number not in timestamps:
                timestamps[block_number] = await self._client.get_block_timestamp(block_number)
            event = decode_log(log, block_timestamp=timestamps[block_number])
            if event is None:
                logger.debug("Skipping log with unknown topic in block %d", block_number)
                continue
            if await self._processor.process(event):
                applied += 1

        self._next_block = to_block + 1
        self._stats.ticks += 1
        self._stats.logs_seen += len(logs)
        self._stats.events_applied += applied
        self._stats.last_scanned_block = to_block
        logger.info(
            "Indexed blocks %d-%d: %d logs, %d applied", from_block, to_block, len(logs), applied
        )
        return to_block >= head

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Indexing service already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Indexing service started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Indexing service stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                caught_up = await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception("Indexing tick failed")
                self._stats.failed_ticks += 1
                self._stats.last_error = str(e)
                caught_up = True

            if not caught_up:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._delay_seconds)
                break
            except TimeoutError:
                pass
