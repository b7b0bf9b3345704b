"""Tests for contract event decoding."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest
from web3 import AsyncWeb3

from compete_ledger.indexing.events import (
    ALLOCATION_ADDED,
    EVENTS_BY_TOPIC,
    REWARD_CLAIMED,
    STAKE,
    UNSTAKE,
    EventDecodeError,
    decode_log,
)

STAKER = "0x1234567890abcdef1234567890abcdef12345678"
TS = datetime(2026, 1, 10, tzinfo=UTC)


class TestEventSpecs:
    def test_topics_are_distinct_keccak_hashes(self) -> None:
        assert len(EVENTS_BY_TOPIC) == 6
        for topic, spec in EVENTS_BY_TOPIC.items():
            assert len(topic) == 66
            assert topic == "0x" + bytes(AsyncWeb3.keccak(text=spec.signature)).hex()

    def test_stake_kinds(self, make_event) -> None:
        stake = make_event(STAKE, staker=STAKER, stake_id=1, amount=10, start_time=0, lockup_end_time=1)
        claimed = make_event(REWARD_CLAIMED, root=b"\x01" * 32, user=STAKER, amount=5)
        assert stake.is_stake_event
        assert not claimed.is_stake_event


class TestDecodeLog:
    def test_decodes_stake(self, make_log) -> None:
        log = make_log(
            STAKE,
            block=77,
            log_index=3,
            tx=9,
            staker=STAKER.upper().replace("0X", "0x"),
            stake_id=42,
            amount=10**24,
            start_time=1_700_000_000,
            lockup_end_time=1_700_086_400,
        )

        event = decode_log(log, block_timestamp=TS)

        assert event is not None
        assert (event.name, event.type) == ("Stake", "stake")
        assert (event.block_number, event.log_index) == (77, 3)
        assert event.transaction_hash == (9).to_bytes(32, "big")
        assert event.block_timestamp == TS
        assert event.args == {
            "staker": STAKER,
            "stake_id": 42,
            "amount": 10**24,
            "start_time": 1_700_000_000,
            "lockup_end_time": 1_700_086_400,
        }

    def test_decodes_hex_string_fields(self, make_log) -> None:
        log = make_log(UNSTAKE, staker=STAKER, stake_id=1, remaining_amount=0, withdraw_allowed_time=5)
        log["topics"] = ["0x" + t.hex() for t in log["topics"]]
        log["data"] = "0x" + log["data"].hex()
        log["transactionHash"] = "0x" + log["transactionHash"].hex()
        log["blockHash"] = "0x" + log["blockHash"].hex()

        event = decode_log(log, block_timestamp=TS)

        assert event is not None
        assert event.args["withdraw_allowed_time"] == 5

    def test_decodes_indexed_bytes32(self, make_log) -> None:
        root = bytes(range(32))
        log = make_log(
            ALLOCATION_ADDED,
            root=root,
            token="0x" + "cd" * 20,
            allocated_amount=1_000,
            start_timestamp=123,
        )
        event = decode_log(log, block_timestamp=TS)
        assert event is not None
        assert event.args["root"] == root
        assert event.args["token"] == "0x" + "cd" * 20

    def test_unknown_topic_is_skipped(self) -> None:
        log = {
            "topics": [b"\xff" * 32],
            "data": b"",
            "blockNumber": 1,
            "blockHash": b"\x00" * 32,
            "transactionHash": b"\x00" * 32,
            "logIndex": 0,
        }
        assert decode_log(log, block_timestamp=TS) is None
        assert decode_log({**log, "topics": []}, block_timestamp=TS) is None

    def test_truncated_data_raises(self, make_log) -> None:
        log = make_log(STAKE, staker=STAKER, stake_id=1, amount=10, start_time=0, lockup_end_time=1)
        log["data"] = log["data"][:-1]
        with pytest.raises(EventDecodeError):
            decode_log(log, block_timestamp=TS)

    def test_missing_indexed_topic_raises(self, make_log) -> None:
        log = make_log(STAKE, staker=STAKER, stake_id=1, amount=10, start_time=0, lockup_end_time=1)
        log["topics"] = log["topics"][:1]
        with pytest.raises(EventDecodeError):
            decode_log(log, block_timestamp=TS)

    def test_missing_coordinates_raise(self, make_log) -> None:
        log = make_log(STAKE, staker=STAKER, stake_id=1, amount=10, start_time=0, lockup_end_time=1)
        del log["logIndex"]
        with pytest.raises(EventDecodeError):
            decode_log(log, block_timestamp=TS)

    def test_raw_event_data_is_json_safe(self, make_event) -> None:
        event = make_event(REWARD_CLAIMED, root=b"\xab" * 32, user=STAKER, amount=10**30)
        payload = event.raw_event_data()

        assert json.loads(json.dumps(payload)) == payload
        assert payload["event"] == "RewardClaimed"
        assert payload["args"] == {"root": "0x" + "ab" * 32, "user": STAKER, "amount": str(10**30)}
