"""Tests for hex/bytes column coders."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from compete_ledger.storage.coders import (
    address_to_bytes,
    bytes_to_address,
    ensure_utc,
    hash_to_bytes,
    normalize_address,
)

MIXED_CASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


class TestAddressCoding:
    def test_round_trip_lowercases(self) -> None:
        raw = address_to_bytes(MIXED_CASE)
        assert len(raw) == 20
        assert bytes_to_address(raw) == MIXED_CASE.lower()
        assert normalize_address(MIXED_CASE) == MIXED_CASE.lower()

    def test_accepts_bytes(self) -> None:
        assert address_to_bytes(b"\x01" * 20) == b"\x01" * 20

    @pytest.mark.parametrize("value", ["0x1234", "0x" + "zz" * 20, "0x" + "00" * 21])
    def test_rejects_bad_addresses(self, value: str) -> None:
        with pytest.raises(ValueError):
            address_to_bytes(value)

    def test_hash_length_enforced(self) -> None:
        assert hash_to_bytes("0x" + "ab" * 32) == b"\xab" * 32
        with pytest.raises(ValueError):
            hash_to_bytes("0x" + "ab" * 20)


class TestEnsureUtc:
    def test_naive_is_treated_as_utc(self) -> None:
        assert ensure_utc(datetime(2026, 1, 1, 12)) == datetime(2026, 1, 1, 12, tzinfo=UTC)

    def test_aware_is_converted(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        converted = ensure_utc(datetime(2026, 1, 1, 12, tzinfo=plus_two))
        assert converted == datetime(2026, 1, 1, 10, tzinfo=UTC)
        assert converted.tzinfo == UTC
