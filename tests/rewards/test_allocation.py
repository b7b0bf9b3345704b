"""Tests for rewards allocation math."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from fractions import Fraction

import pytest

from compete_ledger.rewards.allocation import (
    AllocationWindow,
    BoostAllocation,
    InvalidAllocationWindowError,
    InvalidDecayRateError,
    LeaderboardEntry,
    Reward,
    calculate_rewards_for_competitors,
    calculate_rewards_for_users,
    compute_rewards,
    daily_decay,
    make_boost_decay_fn,
    merge_rewards,
    split_into_daily_intervals,
    split_prize_pool,
    validate_decay_rate,
)
from compete_ledger.rewards.merkle import build_rewards_tree

POOL = 1000 * 10**18
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b0" * 20
CHARLIE = "0x" + "c4" * 20
START = datetime(2024, 1, 1, tzinfo=UTC)
END = datetime(2024, 1, 5, tzinfo=UTC)
WINDOW = AllocationWindow(start=START, end=END)


def _leaderboard(*ranks: tuple[str, int]) -> list[LeaderboardEntry]:
    return [
        LeaderboardEntry(competitor=name, rank=rank, wallet="0x" + f"{i + 1:02x}" * 20)
        for i, (name, rank) in enumerate(ranks)
    ]


def _boost(wallet: str, competitor: str, amount: int, day: int = 0) -> BoostAllocation:
    return BoostAllocation(
        user_wallet=wallet, competitor=competitor, boost=amount, timestamp=START + timedelta(days=day, hours=1)
    )


LEADERBOARD = _leaderboard(("A", 1), ("B", 2), ("C", 3))
ALLOCATIONS = [
    _boost(ALICE, "A", 100),
    _boost(ALICE, "B", 50),
    _boost(ALICE, "C", 75),
    _boost(BOB, "A", 80),
    _boost(BOB, "A", 40),
    _boost(BOB, "B", 120),
    _boost(BOB, "C", 60),
    _boost(CHARLIE, "B", 90),
    _boost(CHARLIE, "C", 200),
    _boost(CHARLIE, "C", 30),
]


def _at(wallet: str, competitor: str, amount: int, when: str, user_id: str) -> BoostAllocation:
    return BoostAllocation(
        user_wallet=wallet,
        competitor=competitor,
        boost=amount,
        timestamp=datetime.fromisoformat(when).replace(tzinfo=UTC),
        user_id=user_id,
    )


# Boosts spread over the 4-day window; under decay 0.5 day n weighs 0.5 ** (n - 1).
SPREAD_ALLOCATIONS = [
    _at(ALICE, "A", 100, "2024-01-01T12:00:00", "alice-id"),
    _at(ALICE, "B", 50, "2024-01-02T18:00:00", "alice-id"),
    _at(ALICE, "C", 75, "2024-01-03T09:00:00", "alice-id"),
    _at(BOB, "A", 80, "2024-01-01T15:00:00", "bob-id"),
    _at(BOB, "A", 40, "2024-01-02T10:00:00", "bob-id"),
    _at(BOB, "B", 120, "2024-01-01T20:00:00", "bob-id"),
    _at(BOB, "C", 60, "2024-01-04T14:00:00", "bob-id"),
    _at(CHARLIE, "B", 90, "2024-01-02T12:00:00", "charlie-id"),
    _at(CHARLIE, "C", 200, "2024-01-01T08:00:00", "charlie-id"),
    _at(CHARLIE, "C", 30, "2024-01-03T16:00:00", "charlie-id"),
]


# ============================================================================
# Prize pool split
# ============================================================================


class TestSplitPrizePool:
    def test_geometric_split(self) -> None:
        shares = split_prize_pool(POOL, LEADERBOARD, Decimal("0.5"))
        assert shares == {"A": Fraction(4 * POOL, 7), "B": Fraction(2 * POOL, 7), "C": Fraction(POOL, 7)}
        assert sum(shares.values()) == POOL

    def test_ties_share_their_positions(self) -> None:
        shares = split_prize_pool(POOL, _leaderboard(("A", 1), ("B", 1), ("C", 3)), "0.5")
        assert shares["A"] == shares["B"] == Fraction(3 * POOL, 7)
        assert shares["C"] == Fraction(POOL, 7)

    def test_leaderboard_order_does_not_matter(self) -> None:
        shuffled = [LEADERBOARD[2], LEADERBOARD[0], LEADERBOARD[1]]
        assert split_prize_pool(POOL, shuffled, "0.5") == split_prize_pool(POOL, LEADERBOARD, "0.5")

    def test_empty(self) -> None:
        assert split_prize_pool(POOL, [], "0.5") == {}
        assert split_prize_pool(0, LEADERBOARD, "0.5") == {}


class TestCompetitorRewards:
    def test_three_ranks(self) -> None:
        rewards = calculate_rewards_for_competitors(POOL, LEADERBOARD, Decimal("0.5"))
        assert [(r.competitor, r.amount) for r in rewards] == [
            ("A", 571428571428571428571),
            ("B", 285714285714285714285),
            ("C", 142857142857142857142),
        ]
        assert rewards[0].address == LEADERBOARD[0].wallet

    def test_ties(self) -> None:
        rewards = calculate_rewards_for_competitors(POOL, _leaderboard(("A", 1), ("B", 1), ("C", 3)), "0.5")
        assert [r.amount for r in rewards] == [
            428571428571428571428,
            428571428571428571428,
            142857142857142857142,
        ]

    def test_rejects_bad_rate(self) -> None:
        with pytest.raises(InvalidDecayRateError):
            calculate_rewards_for_competitors(POOL, LEADERBOARD, "1")


# ============================================================================
# Decay helpers
# ============================================================================


class TestDecay:
    @pytest.mark.parametrize("rate", ["0.1", "0.5", "0.9", Decimal("0.25")])
    def test_valid_rates(self, rate: str | Decimal) -> None:
        assert validate_decay_rate(rate, "bad") == Fraction(Decimal(str(rate)))

    @pytest.mark.parametrize("rate", ["0.09", "0.95", "0", "1", "-0.5"])
    def test_invalid_rates(self, rate: str) -> None:
        with pytest.raises(InvalidDecayRateError, match="bad"):
            validate_decay_rate(rate, "bad")

    def test_daily_intervals(self) -> None:
        end = START + timedelta(days=2, hours=12)
        intervals = split_into_daily_intervals(AllocationWindow(start=START, end=end))
        assert intervals == [
            (START, START + timedelta(days=1)),
            (START + timedelta(days=1), START + timedelta(days=2)),
            (START + timedelta(days=2), end),
        ]

    def test_daily_intervals_empty_window(self) -> None:
        assert split_into_daily_intervals(AllocationWindow(start=END, end=START)) == []
        assert split_into_daily_intervals(AllocationWindow(start=START, end=START)) == []

    def test_daily_decay(self) -> None:
        rate = Fraction(1, 2)
        assert daily_decay(START, WINDOW, rate) == 1
        assert daily_decay(START + timedelta(hours=23, minutes=59), WINDOW, rate) == 1
        assert daily_decay(START + timedelta(days=2, hours=5), WINDOW, rate) == Fraction(1, 4)
        assert daily_decay(END, WINDOW, rate) == 0
        assert daily_decay(START - timedelta(seconds=1), WINDOW, rate) == 0

    def test_decay_fn_without_rate(self) -> None:
        weight = make_boost_decay_fn(WINDOW, None)
        assert weight(START - timedelta(days=30)) == 1
        assert weight(END + timedelta(days=30)) == 1

    def test_decay_fn_with_custom_policy(self) -> None:
        seen = []

        def policy(timestamp: datetime, window: AllocationWindow, rate: Fraction) -> Fraction:
            seen.append((timestamp, window, rate))
            return Fraction(1, 3)

        weight = make_boost_decay_fn(WINDOW, "0.5", policy)
        assert weight(START) == Fraction(1, 3)
        assert seen == [(START, WINDOW, Fraction(1, 2))]


# ============================================================================
# User rewards
# ============================================================================


class TestUserRewards:
    def test_without_time_decay(self) -> None:
        rewards = calculate_rewards_for_users(POOL, ALLOCATIONS, LEADERBOARD, WINDOW, Decimal("0.5"))
        assert {r.address: r.amount for r in rewards} == {
            ALICE: 344039522121713902535,
            BOB: 467039809505562930220,
            CHARLIE: 188920668372723167243,
        }
        assert [r.address for r in rewards] == sorted([ALICE, BOB, CHARLIE])

    def test_spread_boosts_without_time_decay(self) -> None:
        rewards = calculate_rewards_for_users(POOL, SPREAD_ALLOCATIONS, LEADERBOARD, WINDOW, "0.5")
        assert {r.address: (r.amount, r.owner) for r in rewards} == {
            ALICE: (344039522121713902535, "alice-id"),
            BOB: (467039809505562930220, "bob-id"),
            CHARLIE: (188920668372723167243, "charlie-id"),
        }

    def test_with_time_decay(self) -> None:
        rewards = calculate_rewards_for_users(POOL, SPREAD_ALLOCATIONS, LEADERBOARD, WINDOW, "0.5", "0.5")
        assert {r.address: (r.amount, r.owner) for r in rewards} == {
            ALICE: (294551339071887017092, "alice-id"),
            BOB: (394543812352031530113, "bob-id"),
            CHARLIE: (130663856691253951527, "charlie-id"),
        }

    def test_decay_is_measured_against_undecayed_totals(self) -> None:
        # Only day-2 boosts on A: each weighs 0.5, the total stays 100.
        allocations = [_boost(ALICE, "A", 60, day=1), _boost(BOB, "A", 40, day=1)]
        rewards = calculate_rewards_for_users(POOL, allocations, LEADERBOARD, WINDOW, "0.5", "0.5")
        share = Fraction(4 * POOL, 7)
        assert [(r.address, r.amount) for r in rewards] == [
            (ALICE, int(share * Fraction(30, 100))),
            (BOB, int(share * Fraction(20, 100))),
        ]

    def test_boosts_outside_window_earn_nothing(self) -> None:
        allocations = [
            _boost(ALICE, "A", 100),
            BoostAllocation(user_wallet=BOB, competitor="A", boost=100, timestamp=END),
        ]
        rewards = calculate_rewards_for_users(POOL, allocations, LEADERBOARD, WINDOW, "0.5", "0.5")
        assert [(r.address, r.amount) for r in rewards] == [(ALICE, 571428571428571428571)]

    def test_unranked_competitor_earns_nothing(self) -> None:
        allocations = [_boost(ALICE, "A", 10), _boost(ALICE, "Z", 1_000), _boost(BOB, "Z", 5)]
        rewards = calculate_rewards_for_users(POOL, allocations, LEADERBOARD, WINDOW)
        assert [(r.address, r.amount) for r in rewards] == [(ALICE, 571428571428571428571)]

    def test_payout_never_exceeds_pool(self) -> None:
        allocations = [_boost("0x" + f"{i:040x}", "A", 1 + i % 3) for i in range(1, 8)]
        rewards = calculate_rewards_for_users(1_000, allocations, _leaderboard(("A", 1)), WINDOW)
        total = sum(r.amount for r in rewards)
        assert 1_000 - len(allocations) <= total <= 1_000

    def test_owner_is_carried(self) -> None:
        allocation = BoostAllocation(
            user_wallet=ALICE, competitor="A", boost=1, timestamp=START, user_id="user-alice"
        )
        [reward] = calculate_rewards_for_users(POOL, [allocation], LEADERBOARD, WINDOW)
        assert reward.owner == "user-alice"

    def test_empty_inputs(self) -> None:
        assert calculate_rewards_for_users(POOL, [], LEADERBOARD, WINDOW) == []
        assert calculate_rewards_for_users(POOL, ALLOCATIONS, [], WINDOW) == []
        assert calculate_rewards_for_users(0, ALLOCATIONS, LEADERBOARD, WINDOW) == []

    def test_invalid_window(self) -> None:
        with pytest.raises(InvalidAllocationWindowError):
            calculate_rewards_for_users(POOL, ALLOCATIONS, LEADERBOARD, AllocationWindow(start=END, end=START))

    def test_invalid_boost_decay_rate(self) -> None:
        with pytest.raises(InvalidDecayRateError):
            calculate_rewards_for_users(POOL, ALLOCATIONS, LEADERBOARD, WINDOW, "0.5", "0.05")

    def test_hook_sees_each_stage(self) -> None:
        stages: list[str] = []
        calculate_rewards_for_users(
            POOL, ALLOCATIONS, LEADERBOARD, WINDOW, hook=lambda stage, _snapshot: stages.append(stage)
        )
        assert stages == ["prize_pool_split", "competitor_totals", "user_totals"]


# ============================================================================
# Merging and the full computation
# ============================================================================


class TestComputeRewards:
    def test_merge_sums_by_address(self) -> None:
        merged = merge_rewards(
            [Reward(address=BOB.upper().replace("0X", "0x"), amount=5, owner="user-bob")],
            [Reward(address=BOB, amount=7, competitor="B"), Reward(address=ALICE, amount=1)],
        )
        assert merged == [
            Reward(address=ALICE, amount=1),
            Reward(address=BOB, amount=12, owner="user-bob", competitor="B"),
        ]

    def test_compute_rewards_commits_to_merged_set(self) -> None:
        computation = compute_rewards(
            competition_id="comp-1",
            users_prize_pool=POOL,
            competitors_prize_pool=POOL,
            leaderboard=LEADERBOARD,
            allocations=ALLOCATIONS,
            window=WINDOW,
        )

        assert len(computation.rewards) == 6
        assert sum(r.amount for r in computation.rewards) <= 2 * POOL
        assert computation.merkle_root == build_rewards_tree("comp-1", computation.rewards).root
        assert computation.merkle_root != build_rewards_tree("comp-2", computation.rewards).root
