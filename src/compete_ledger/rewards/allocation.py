"""Rewards allocation math.

Everything here is a pure function of its inputs. Amounts are integers in
the token's minor units; intermediate values are exact ``Fraction``s and are
floored only when a payout is emitted, so the sum of payouts never exceeds
the prize pool. The residual from flooring is left undistributed.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from fractions import Fraction
from itertools import groupby
from typing import Any

from compete_ledger.rewards.merkle import build_rewards_tree

logger = logging.getLogger(__name__)

DAY = timedelta(days=1)

MIN_DECAY_RATE = Fraction(1, 10)
MAX_DECAY_RATE = Fraction(9, 10)
DEFAULT_PRIZE_POOL_DECAY_RATE = Decimal("0.5")
DEFAULT_BOOST_TIME_DECAY_RATE = Decimal("0.5")

Rate = Decimal | Fraction | int | str


class RewardsError(Exception):
    """Base error for rewards computation."""


class InvalidAllocationWindowError(RewardsError):
    """Raised when the boost allocation window is empty or inverted."""


class InvalidDecayRateError(RewardsError):
    """Raised when a decay rate is outside [0.1, 0.9]."""


@dataclass(frozen=True)
class AllocationWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class LeaderboardEntry:
    """A ranked competitor and the wallet its prize is paid to."""

    competitor: str
    rank: int
    wallet: str
    owner: str | None = None


@dataclass(frozen=True)
class BoostAllocation:
    """Boost a user spent on a competitor at a point in time."""

    user_wallet: str
    competitor: str
    boost: int
    timestamp: datetime
    user_id: str | None = None


@dataclass(frozen=True)
class Reward:
    address: str
    amount: int
    owner: str | None = None
    competitor: str | None = None


@dataclass(frozen=True)
class RewardsComputation:
    rewards: list[Reward]
    merkle_root: bytes


# (timestamp, window, rate) -> weight
BoostDecayPolicy = Callable[[datetime, AllocationWindow, Fraction], Fraction]
# (stage, snapshot)
InstrumentationHook = Callable[[str, Mapping[str, Any]], None]


def _as_fraction(value: Rate) -> Fraction:
    if isinstance(value, Fraction | int):
        return Fraction(value)
    return Fraction(Decimal(str(value)))


def validate_window(window: AllocationWindow) -> None:
    if window.end <= window.start:
        raise InvalidAllocationWindowError("Invalid boost allocation window")


def validate_decay_rate(rate: Rate, message: str) -> Fraction:
    r = _as_fraction(rate)
    if r < MIN_DECAY_RATE or r > MAX_DECAY_RATE:
        raise InvalidDecayRateError(message)
    return r


def split_into_daily_intervals(window: AllocationWindow) -> list[tuple[datetime, datetime]]:
    """Consecutive one-day intervals from ``window.start``; the last one ends at ``window.end``."""
    intervals: list[tuple[datetime, datetime]] = []
    cursor = window.start
    while cursor < window.end:
        upper = min(cursor + DAY, window.end)
        intervals.append((cursor, upper))
        cursor = upper
    return intervals


def daily_decay(timestamp: datetime, window: AllocationWindow, rate: Fraction) -> Fraction:
    """``rate ** d`` for the d-th whole day since the window opened, 0 outside ``[start, end)``."""
    if timestamp < window.start or timestamp >= window.end:
        return Fraction(0)
    day_index = (timestamp - window.start) // DAY
    return rate**day_index


def make_boost_decay_fn(
    window: AllocationWindow,
    rate: Rate | None,
    policy: BoostDecayPolicy = daily_decay,
) -> Callable[[datetime], Fraction]:
    """Bind ``policy`` to a window and rate; no rate means weight 1 everywhere."""
    if rate is None:
        return lambda _timestamp: Fraction(1)
    r = _as_fraction(rate)
    return lambda timestamp: policy(timestamp, window, r)


def split_prize_pool(
    prize_pool: int, leaderboard: Sequence[LeaderboardEntry], decay_rate: Rate
) -> dict[str, Fraction]:
    """Exact share of ``prize_pool`` per competitor.

    Position i of k receives ``pool * (1 - r) * r**(i - 1) / (1 - r**k)``.
    Competitors tied on rank split the positions they occupy equally.
    """
    if not leaderboard or prize_pool <= 0:
        return {}
    r = _as_fraction(decay_rate)
    k = len(leaderboard)
    denominator = 1 - r**k
    ordered = sorted(leaderboard, key=lambda e: e.rank)

    shares: dict[str, Fraction] = {}
    position = 1
    for _rank, group_iter in groupby(ordered, key=lambda e: e.rank):
        group = list(group_iter)
        weight = sum(
            ((1 - r) * r ** (i - 1) / denominator for i in range(position, position + len(group))),
            Fraction(0),
        )
        for entry in group:
            shares[entry.competitor] = prize_pool * weight / len(group)
        position += len(group)
    return shares


def _floor(value: Fraction) -> int:
    return value.numerator // value.denominator


def _emit(hook: InstrumentationHook | None, stage: str, snapshot: Mapping[str, Any]) -> None:
    if hook is not None:
        hook(stage, snapshot)


def calculate_rewards_for_users(
    prize_pool: int,
    allocations: Iterable[BoostAllocation],
    leaderboard: Sequence[LeaderboardEntry],
    window: AllocationWindow,
    prize_pool_decay_rate: Rate = DEFAULT_PRIZE_POOL_DECAY_RATE,
    boost_time_decay_rate: Rate | None = None,
    *,
    decay_policy: BoostDecayPolicy = daily_decay,
    hook: InstrumentationHook | None = None,
) -> list[Reward]:
    """Pay each competitor's share of the pool to the users who boosted it.

    A user's cut of a competitor's share is their time-weighted boost over
    the competitor's total undecayed boost, counting only boosts that carry
    weight. With decay the payouts therefore sum to less than the pool; the
    remainder stays undistributed. Boosts on competitors that are no longer
    ranked earn nothing. Each user's payout is floored once.

    Raises:
        InvalidAllocationWindowError: If ``window.end <= window.start``.
        InvalidDecayRateError: If either rate is outside [0.1, 0.9].
    """
    validate_window(window)
    validate_decay_rate(prize_pool_decay_rate, "Invalid prize pool decay rate")
    if boost_time_decay_rate is not None:
        validate_decay_rate(boost_time_decay_rate, "Invalid boost time decay rate")

    allocations = list(allocations)
    if not leaderboard or prize_pool <= 0 or not allocations:
        return []

    shares = split_prize_pool(prize_pool, leaderboard, prize_pool_decay_rate)
    _emit(hook, "prize_pool_split", shares)

    weight_of = make_boost_decay_fn(window, boost_time_decay_rate, decay_policy)
    effective: dict[str, dict[str, Fraction]] = defaultdict(lambda: defaultdict(Fraction))
    competitor_totals: dict[str, Fraction] = defaultdict(Fraction)
    owners: dict[str, str | None] = {}
    for allocation in allocations:
        weighted = allocation.boost * weight_of(allocation.timestamp)
        owners.setdefault(allocation.user_wallet, allocation.user_id)
        if weighted <= 0:
            continue
        effective[allocation.user_wallet][allocation.competitor] += weighted
        competitor_totals[allocation.competitor] += allocation.boost
    _emit(hook, "competitor_totals", dict(competitor_totals))

    user_totals: dict[str, int] = {}
    for wallet, boosted in effective.items():
        payout = Fraction(0)
        for competitor, boost in boosted.items():
            share = shares.get(competitor)
            if share is None:
                logger.debug("Skipping boost on unranked competitor %s by %s", competitor, wallet)
                continue
            payout += share * boost / competitor_totals[competitor]
        user_totals[wallet] = _floor(payout)
    _emit(hook, "user_totals", user_totals)

    return [
        Reward(address=wallet, amount=amount, owner=owners.get(wallet))
        for wallet, amount in sorted(user_totals.items())
        if amount > 0
    ]


def calculate_rewards_for_competitors(
    prize_pool: int,
    leaderboard: Sequence[LeaderboardEntry],
    prize_pool_decay_rate: Rate = DEFAULT_PRIZE_POOL_DECAY_RATE,
    *,
    hook: InstrumentationHook | None = None,
) -> list[Reward]:
    """Pay each ranked competitor's share directly to its wallet."""
    validate_decay_rate(prize_pool_decay_rate, "Invalid prize pool decay rate")
    if not leaderboard or prize_pool <= 0:
        return []

    shares = split_prize_pool(prize_pool, leaderboard, prize_pool_decay_rate)
    _emit(hook, "prize_pool_split", shares)

    rewards = []
    for entry in leaderboard:
        amount = _floor(shares[entry.competitor])
        if amount > 0:
            rewards.append(
                Reward(address=entry.wallet, amount=amount, owner=entry.owner, competitor=entry.competitor)
            )
    return rewards


def merge_rewards(*groups: Iterable[Reward]) -> list[Reward]:
    """Sum rewards paid to the same address, ordered by address."""
    merged: dict[str, Reward] = {}
    for reward in (r for group in groups for r in group):
        key = reward.address.lower()
        existing = merged.get(key)
        if existing is None:
            merged[key] = Reward(
                address=key, amount=reward.amount, owner=reward.owner, competitor=reward.competitor
            )
            continue
        merged[key] = Reward(
            address=key,
            amount=existing.amount + reward.amount,
            owner=existing.owner or reward.owner,
            competitor=existing.competitor or reward.competitor,
        )
    return [merged[address] for address in sorted(merged)]


def compute_rewards(
    *,
    competition_id: str,
    users_prize_pool: int,
    competitors_prize_pool: int,
    leaderboard: Sequence[LeaderboardEntry],
    allocations: Iterable[BoostAllocation],
    window: AllocationWindow,
    prize_pool_decay_rate: Rate = DEFAULT_PRIZE_POOL_DECAY_RATE,
    boost_time_decay_rate: Rate | None = None,
    decay_policy: BoostDecayPolicy = daily_decay,
    hook: InstrumentationHook | None = None,
) -> RewardsComputation:
    """User and competitor rewards merged by address, with their Merkle root.

    Addresses must be 0x-prefixed 20-byte hex strings.
    """
    user_rewards = calculate_rewards_for_users(
        users_prize_pool,
        allocations,
        leaderboard,
        window,
        prize_pool_decay_rate,
        boost_time_decay_rate,
        decay_policy=decay_policy,
        hook=hook,
    )
    competitor_rewards = calculate_rewards_for_competitors(
        competitors_prize_pool, leaderboard, prize_pool_decay_rate, hook=hook
    )
    rewards = merge_rewards(user_rewards, competitor_rewards)
    tree = build_rewards_tree(competition_id, rewards)
    return RewardsComputation(rewards=rewards, merkle_root=tree.root)
