"""Tests for the block-chunk indexing loop."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from web3 import AsyncWeb3

from compete_ledger.config import IndexingSettings
from compete_ledger.indexing.events import EVENTS_BY_TOPIC, REWARD_CLAIMED, STAKE
from compete_ledger.indexing.processor import EventProcessor
from compete_ledger.indexing.service import IndexingError, IndexingService
from compete_ledger.storage.database import DatabaseManager

STAKING_CONTRACT = "0x" + "5a" * 20
REWARDS_CONTRACT = "0x" + "7e" * 20
STAKER = "0x1234567890abcdef1234567890abcdef12345678"
BLOCK_TIME = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def client() -> AsyncMock:
    client = AsyncMock()
    client.get_block_number = AsyncMock(return_value=10_000)
    client.get_logs = AsyncMock(return_value=[])
    client.get_block_timestamp = AsyncMock(return_value=BLOCK_TIME)
    return client


@pytest.fixture
def processor() -> AsyncMock:
    processor = AsyncMock(spec=EventProcessor)
    processor.process.return_value = True
    return processor


def _service(db: DatabaseManager, client: AsyncMock, processor: AsyncMock, **kwargs) -> IndexingService:
    kwargs.setdefault("staking_contract", STAKING_CONTRACT)
    return IndexingService(db, client, processor, **kwargs)


class TestConfiguration:
    def test_requires_a_contract(self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock) -> None:
        with pytest.raises(IndexingError):
            IndexingService(db, client, processor)

    def test_rejects_empty_chunks(self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock) -> None:
        with pytest.raises(IndexingError):
            _service(db, client, processor, chunk_size_blocks=0)

    @pytest.mark.asyncio
    async def test_from_settings(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("INDEXING_STAKING_CONTRACT", STAKING_CONTRACT)
        monkeypatch.setenv("INDEXING_START_BLOCK", "1000")
        monkeypatch.setenv("INDEXING_LOGS_CHUNK_SIZE_BLOCKS", "500")
        monkeypatch.setenv("INDEXING_CONFIRMATIONS", "10")
        service = IndexingService.from_settings(db, client, processor, IndexingSettings())

        await service.run_once()

        params = client.get_logs.await_args.args[0]
        assert (params["fromBlock"], params["toBlock"]) == (1_000, 1_499)
        assert params["address"] == [AsyncWeb3.to_checksum_address(STAKING_CONTRACT)]


class TestResumeBlock:
    @pytest.mark.asyncio
    async def test_empty_store_uses_start_block(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock
    ) -> None:
        assert await _service(db, client, processor, start_block=42).resume_block() == 42

    @pytest.mark.asyncio
    async def test_resumes_at_last_applied_block(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock, make_event
    ) -> None:
        stake = make_event(
            STAKE, block=150, staker=STAKER, stake_id=1, amount=10, start_time=0, lockup_end_time=60
        )
        claim = make_event(REWARD_CLAIMED, block=180, tx=2, root=b"\x01" * 32, user=STAKER, amount=1)
        real = EventProcessor(db)
        await real.process(stake)
        await real.process(claim)

        assert await _service(db, client, processor, start_block=10).resume_block() == 180
        assert await _service(db, client, processor, start_block=500).resume_block() == 500


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_scans_in_chunks(self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock) -> None:
        client.get_block_number.return_value = 4_500
        service = _service(
            db, client, processor, rewards_contract=REWARDS_CONTRACT, start_block=1_000, chunk_size_blocks=2_000
        )

        assert await service.run_once() is False
        assert await service.run_once() is False
        assert await service.run_once() is True

        ranges = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in client.get_logs.await_args_list]
        assert ranges == [(1_000, 2_999), (3_000, 4_500)]
        assert service.stats.ticks == 2
        assert service.stats.last_scanned_block == 4_500

    @pytest.mark.asyncio
    async def test_filter_covers_both_contracts(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock
    ) -> None:
        service = _service(db, client, processor, rewards_contract=REWARDS_CONTRACT)
        await service.run_once()

        params = client.get_logs.await_args.args[0]
        assert params["address"] == [
            AsyncWeb3.to_checksum_address(STAKING_CONTRACT),
            AsyncWeb3.to_checksum_address(REWARDS_CONTRACT),
        ]
        assert sorted(params["topics"][0]) == sorted(EVENTS_BY_TOPIC)

    @pytest.mark.asyncio
    async def test_staking_only_filter(self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock) -> None:
        service = _service(db, client, processor)
        await service.run_once()

        topics = client.get_logs.await_args.args[0]["topics"][0]
        kinds = {EVENTS_BY_TOPIC[t].type for t in topics}
        assert kinds == {"stake", "unstake", "relock", "withdraw"}

    @pytest.mark.asyncio
    async def test_waits_for_confirmations(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock
    ) -> None:
        client.get_block_number.return_value = 100
        service = _service(db, client, processor, start_block=95, confirmations=10)

        assert await service.run_once() is True
        client.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_applies_logs_in_chain_order(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock, make_log
    ) -> None:
        client.get_block_number.return_value = 300
        late = make_log(REWARD_CLAIMED, block=250, log_index=0, tx=3, root=b"\x01" * 32, user=STAKER, amount=1)
        early_b = make_log(
            STAKE, block=200, log_index=4, tx=2, staker=STAKER, stake_id=2, amount=5, start_time=0, lockup_end_time=1
        )
        early_a = make_log(
            STAKE, block=200, log_index=1, tx=1, staker=STAKER, stake_id=1, amount=5, start_time=0, lockup_end_time=1
        )
        unknown = {**early_a, "topics": [b"\xff" * 32], "logIndex": 9}
        client.get_logs.return_value = [late, unknown, early_b, early_a]
        processor.process.side_effect = [True, False, True]

        service = _service(db, client, processor, rewards_contract=REWARDS_CONTRACT, start_block=200)
        assert await service.run_once() is True

        processed = [(c.args[0].block_number, c.args[0].log_index) for c in processor.process.await_args_list]
        assert processed == [(200, 1), (200, 4), (250, 0)]
        assert [c.args[0] for c in client.get_block_timestamp.await_args_list] == [200, 250]
        assert service.stats.logs_seen == 4
        assert service.stats.events_applied == 2

    @pytest.mark.asyncio
    async def test_processor_error_does_not_advance(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock, make_log
    ) -> None:
        client.get_block_number.return_value = 100
        client.get_logs.return_value = [
            make_log(STAKE, block=100, staker=STAKER, stake_id=1, amount=5, start_time=0, lockup_end_time=1)
        ]
        processor.process.side_effect = RuntimeError("db down")
        service = _service(db, client, processor, start_block=100)

        with pytest.raises(RuntimeError):
            await service.run_once()
        processor.process.side_effect = None
        processor.process.return_value = True

        assert await service.run_once() is True
        assert client.get_logs.await_args.args[0]["fromBlock"] == 100


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock) -> None:
        client.get_block_number.return_value = 0
        service = _service(db, client, processor, start_block=10, delay_seconds=0.01)

        await service.start()
        await asyncio.sleep(0.05)
        assert service.is_running

        await service.stop()
        assert not service.is_running
        assert client.get_block_number.await_count >= 1

    @pytest.mark.asyncio
    async def test_failed_ticks_are_recorded(
        self, db: DatabaseManager, client: AsyncMock, processor: AsyncMock
    ) -> None:
        client.get_block_number.side_effect = RuntimeError("rpc down")
        service = _service(db, client, processor, delay_seconds=0.01)

        await service.start()
        await asyncio.sleep(0.05)
        await service.stop()

        assert service.stats.failed_ticks >= 1
        assert service.stats.last_error == "rpc down"
