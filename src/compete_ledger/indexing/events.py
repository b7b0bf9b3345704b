"""Staking and rewards contract events: signatures, topics and log decoding."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from web3 import AsyncWeb3

from compete_ledger.storage.coders import bytes_to_hex


class EventDecodeError(Exception):
    """Raised when a log matches a known topic but its payload is malformed."""


@dataclass(frozen=True)
class EventArg:
    name: str
    kind: str  # address | uint | bytes32
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """ABI shape of one contract event."""

    name: str
    type: str
    signature: str
    args: tuple[EventArg, ...]

    @property
    def topic0(self) -> str:
        return "0x" + bytes(AsyncWeb3.keccak(text=self.signature)).hex()


STAKE = EventSpec(
    name="Stake",
    type="stake",
    signature="Stake(address,uint256,uint256,uint256,uint256)",
    args=(
        EventArg("staker", "address", indexed=True),
        EventArg("stake_id", "uint"),
        EventArg("amount", "uint"),
        EventArg("start_time", "uint"),
        EventArg("lockup_end_time", "uint"),
    ),
)
# remaining_amount below the staked amount is a partial unstake; otherwise the whole position is unstaked.
UNSTAKE = EventSpec(
    name="Unstake",
    type="unstake",
    signature="Unstake(address,uint256,uint256,uint64)",
    args=(
        EventArg("staker", "address", indexed=True),
        EventArg("stake_id", "uint"),
        EventArg("remaining_amount", "uint"),
        EventArg("withdraw_allowed_time", "uint"),
    ),
)
RELOCK = EventSpec(
    name="Relock",
    type="relock",
    signature="Relock(address,uint256,uint256)",
    args=(
        EventArg("staker", "address", indexed=True),
        EventArg("stake_id", "uint"),
        EventArg("updated_amount", "uint"),
    ),
)
WITHDRAW = EventSpec(
    name="Withdraw",
    type="withdraw",
    signature="Withdraw(address,uint256,uint256)",
    args=(
        EventArg("staker", "address", indexed=True),
        EventArg("stake_id", "uint"),
        EventArg("amount", "uint"),
    ),
)
REWARD_CLAIMED = EventSpec(
    name="RewardClaimed",
    type="reward_claimed",
    signature="RewardClaimed(bytes32,address,uint256)",
    args=(
        EventArg("root", "bytes32", indexed=True),
        EventArg("user", "address", indexed=True),
        EventArg("amount", "uint"),
    ),
)
ALLOCATION_ADDED = EventSpec(
    name="AllocationAdded",
    type="allocation_added",
    signature="AllocationAdded(bytes32,address,uint256,uint256)",
    args=(
        EventArg("root", "bytes32", indexed=True),
        EventArg("token", "address", indexed=True),
        EventArg("allocated_amount", "uint"),
        EventArg("start_timestamp", "uint"),
    ),
)

STAKING_EVENTS = (STAKE, UNSTAKE, RELOCK, WITHDRAW)
REWARDS_EVENTS = (REWARD_CLAIMED, ALLOCATION_ADDED)
EVENTS_BY_TOPIC: dict[str, EventSpec] = {spec.topic0: spec for spec in STAKING_EVENTS + REWARDS_EVENTS}
STAKE_KINDS = frozenset(spec.type for spec in STAKING_EVENTS)


def to_bytes(value: Any) -> bytes:
    """Bytes from HexBytes, bytes or a 0x hex string."""
    if isinstance(value, bytes | bytearray | memoryview):
        return bytes(value)
    text = str(value)
    if text.startswith("0x"):
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise EventDecodeError(f"Invalid hex value: {value!r}") from e


def _decode_word(word: bytes, kind: str) -> Any:
    if kind == "address":
        return "0x" + word[-20:].hex()
    if kind == "bytes32":
        return word
    return int.from_bytes(word, "big")


@dataclass(frozen=True)
class ChainEvent:
    """A decoded contract log with its chain coordinates."""

    name: str
    type: str
    block_number: int
    block_hash: bytes
    block_timestamp: datetime
    transaction_hash: bytes
    log_index: int
    address: str
    topics: tuple[bytes, ...]
    data: bytes
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def is_stake_event(self) -> bool:
        return self.type in STAKE_KINDS

    def raw_event_data(self) -> dict[str, Any]:
        """JSON-safe payload kept in the journal for replay and audit."""
        return {
            "event": self.name,
            "address": self.address,
            "topics": [bytes_to_hex(t) for t in self.topics],
            "data": bytes_to_hex(self.data),
            "args": {
                k: bytes_to_hex(v) if isinstance(v, bytes) else (str(v) if isinstance(v, int) else v)
                for k, v in self.args.items()
            },
        }


def decode_log(log: Mapping[str, Any], *, block_timestamp: datetime) -> ChainEvent | None:
    """Decode a raw ``eth_getLogs`` entry; returns None for unknown topics.

    Raises:
        EventDecodeError: If the log matches a known event but the topics or
            data words don't fit its ABI.
    """
    topics = tuple(to_bytes(t) for t in log.get("topics") or ())
    if not topics:
        return None
    spec = EVENTS_BY_TOPIC.get(bytes_to_hex(topics[0]))
    if spec is None:
        return None

    indexed = [a for a in spec.args if a.indexed]
    plain = [a for a in spec.args if not a.indexed]
    data = to_bytes(log.get("data") or b"")
    if len(topics) != len(indexed) + 1:
        raise EventDecodeError(f"{spec.name}: expected {len(indexed) + 1} topics, got {len(topics)}")
    if len(data) != 32 * len(plain):
        raise EventDecodeError(f"{spec.name}: expected {32 * len(plain)} data bytes, got {len(data)}")

    args: dict[str, Any] = {}
    for arg, topic in zip(indexed, topics[1:], strict=True):
        args[arg.name] = _decode_word(topic, arg.kind)
    for i, arg in enumerate(plain):
        args[arg.name] = _decode_word(data[32 * i : 32 * (i + 1)], arg.kind)

    try:
        return ChainEvent(
            name=spec.name,
            type=spec.type,
            block_number=int(log["blockNumber"]),
            block_hash=to_bytes(log["blockHash"]),
            block_timestamp=block_timestamp,
            transaction_hash=to_bytes(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            address=str(log.get("address") or "").lower(),
            topics=topics,
            data=data,
            args=args,
        )
    except KeyError as e:
        raise EventDecodeError(f"{spec.name}: log is missing {e}") from e


def encode_log(
    spec: EventSpec,
    *,
    block_number: int,
    block_hash: bytes,
    transaction_hash: bytes,
    log_index: int,
    address: str,
    **values: Any,
) -> dict[str, Any]:
    """Build a raw log for ``spec`` (the inverse of ``decode_log``), e.g. for replay fixtures."""
    topics: list[bytes] = [bytes.fromhex(spec.topic0[2:])]
    data = b""
    for arg in spec.args:
        value = values[arg.name]
        if arg.kind == "address":
            word = bytes(12) + bytes.fromhex(str(value).lower().removeprefix("0x"))
        elif arg.kind == "bytes32":
            word = to_bytes(value)
        else:
            word = int(value).to_bytes(32, "big")
        if arg.indexed:
            topics.append(word)
        else:
            data += word
    return {
        "address": address,
        "topics": topics,
        "data": data,
        "blockNumber": block_number,
        "blockHash": block_hash,
        "transactionHash": transaction_hash,
        "logIndex": log_index,
    }
