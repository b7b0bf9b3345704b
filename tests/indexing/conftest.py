"""Fixtures for building contract logs and decoded events."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from compete_ledger.indexing.events import ChainEvent, EventSpec, decode_log, encode_log

STAKING_CONTRACT = "0x" + "5a" * 20
REWARDS_CONTRACT = "0x" + "7e" * 20
BLOCK_TIME = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


def raw_log(
    spec: EventSpec,
    *,
    block: int = 100,
    log_index: int = 0,
    tx: int = 1,
    address: str = STAKING_CONTRACT,
    **values: Any,
) -> dict[str, Any]:
    return encode_log(
        spec,
        block_number=block,
        block_hash=block.to_bytes(32, "big"),
        transaction_hash=tx.to_bytes(32, "big"),
        log_index=log_index,
        address=address,
        **values,
    )


@pytest.fixture
def make_log() -> Callable[..., dict[str, Any]]:
    return raw_log


@pytest.fixture
def make_event() -> Callable[..., ChainEvent]:
    def _make(spec: EventSpec, *, timestamp: datetime = BLOCK_TIME, **kwargs: Any) -> ChainEvent:
        event = decode_log(raw_log(spec, **kwargs), block_timestamp=timestamp)
        assert event is not None
        return event

    return _make
