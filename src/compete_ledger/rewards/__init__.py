"""Rewards allocation, Merkle commitment and claim proofs."""

from compete_ledger.rewards.allocation import (
    AllocationWindow,
    BoostAllocation,
    InvalidAllocationWindowError,
    InvalidDecayRateError,
    LeaderboardEntry,
    Reward,
    RewardsComputation,
    RewardsError,
    calculate_rewards_for_competitors,
    calculate_rewards_for_users,
    compute_rewards,
    daily_decay,
    make_boost_decay_fn,
    split_prize_pool,
)
from compete_ledger.rewards.merkle import MerkleProofError, RewardsTree, build_rewards_tree, leaf_hash
from compete_ledger.rewards.service import LeaderboardSource, RewardProof, RewardsAllocationError, RewardsService

__all__ = [
    "AllocationWindow",
    "BoostAllocation",
    "InvalidAllocationWindowError",
    "InvalidDecayRateError",
    "LeaderboardEntry",
    "LeaderboardSource",
    "MerkleProofError",
    "Reward",
    "RewardProof",
    "RewardsAllocationError",
    "RewardsComputation",
    "RewardsError",
    "RewardsService",
    "RewardsTree",
    "build_rewards_tree",
    "calculate_rewards_for_competitors",
    "calculate_rewards_for_users",
    "compute_rewards",
    "daily_decay",
    "leaf_hash",
    "make_boost_decay_fn",
    "split_prize_pool",
]
