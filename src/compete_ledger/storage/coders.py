"""Conversions between hex strings and the fixed-width binary columns."""

from __future__ import annotations

from datetime import UTC, datetime

ADDRESS_LENGTH = 20
HASH_LENGTH = 32
ZERO_ADDRESS = "0x" + "00" * ADDRESS_LENGTH


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def hex_to_bytes(value: str | bytes, *, length: int) -> bytes:
    """Decode a 0x-prefixed hex string into exactly ``length`` bytes."""
    if isinstance(value, bytes | bytearray):
        raw = bytes(value)
    else:
        try:
            raw = bytes.fromhex(_strip_0x(value))
        except ValueError as e:
            raise ValueError(f"Invalid hex value: {value!r}") from e
    if len(raw) != length:
        raise ValueError(f"Expected {length} bytes, got {len(raw)}")
    return raw


def bytes_to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def address_to_bytes(address: str | bytes) -> bytes:
    return hex_to_bytes(address, length=ADDRESS_LENGTH)


def bytes_to_address(value: bytes) -> str:
    """Lowercase 0x address for a 20-byte wallet column."""
    if len(value) != ADDRESS_LENGTH:
        raise ValueError(f"Expected {ADDRESS_LENGTH} bytes, got {len(value)}")
    return bytes_to_hex(value)


def normalize_address(address: str) -> str:
    return bytes_to_address(address_to_bytes(address))


def hash_to_bytes(value: str | bytes) -> bytes:
    return hex_to_bytes(value, length=HASH_LENGTH)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None
