"""Rewards persistence: calculation for ended competitions, tree commitment and proofs."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from compete_ledger.rewards.allocation import (
    DEFAULT_PRIZE_POOL_DECAY_RATE,
    AllocationWindow,
    BoostAllocation,
    BoostDecayPolicy,
    InstrumentationHook,
    LeaderboardEntry,
    RewardsComputation,
    compute_rewards,
    daily_decay,
)
from compete_ledger.rewards.merkle import (
    MerkleProofError,
    build_tree_from_leaf_hashes,
    leaf_hash,
    proof_for,
)
from compete_ledger.storage.coders import bytes_to_hex, normalize_address
from compete_ledger.storage.repos import BoostRepository, RewardDTO, RewardsRepository, RewardsRootDTO

if TYPE_CHECKING:
    from compete_ledger.boost.awards import CompetitionRepository
    from compete_ledger.config import RewardsSettings
    from compete_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

ENDED_STATUS = "ended"


class RewardsAllocationError(Exception):
    """Raised when rewards cannot be calculated, committed or proven."""


class LeaderboardSource(Protocol):
    async def find_leaderboard_with_wallets(self, competition_id: str) -> list[LeaderboardEntry]:
        raise NotImplementedError


@dataclass(frozen=True)
class RewardProof:
    competition_id: str
    merkle_root: str
    amount: int
    proof: list[str]


class RewardsService:
    """Calculates, persists and commits rewards for ended competitions.

    Example:
        ```python
        service = RewardsService(db, competitions=competitions, leaderboards=leaderboards)
        await service.calculate_rewards(competition_id, 900 * 10**18, 100 * 10**18)
        root = await service.allocate(competition_id)
        proof = await service.retrieve_proof(competition_id, wallet, amount)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        competitions: CompetitionRepository,
        leaderboards: LeaderboardSource,
        prize_pool_decay_rate: Decimal = DEFAULT_PRIZE_POOL_DECAY_RATE,
        boost_time_decay_rate: Decimal | None = None,
        decay_policy: BoostDecayPolicy = daily_decay,
        hook: InstrumentationHook | None = None,
    ) -> None:
        self._db = db
        self._competitions = competitions
        self._leaderboards = leaderboards
        self._prize_pool_decay_rate = prize_pool_decay_rate
        self._boost_time_decay_rate = boost_time_decay_rate
        self._decay_policy = decay_policy
        self._hook = hook

    @classmethod
    def from_settings(
        cls,
        db: DatabaseManager,
        settings: RewardsSettings,
        *,
        competitions: CompetitionRepository,
        leaderboards: LeaderboardSource,
        decay_policy: BoostDecayPolicy = daily_decay,
        hook: InstrumentationHook | None = None,
    ) -> RewardsService:
        return cls(
            db,
            competitions=competitions,
            leaderboards=leaderboards,
            prize_pool_decay_rate=settings.prize_pool_decay_rate,
            boost_time_decay_rate=settings.boost_time_decay_rate,
            decay_policy=decay_policy,
            hook=hook,
        )

    async def calculate_rewards(
        self, competition_id: str, users_prize_pool: int, competitors_prize_pool: int
    ) -> RewardsComputation:
        """Compute and store the rewards of an ended competition.

        Raises:
            RewardsAllocationError: If the competition is unknown, has no
                voting dates, has not ended, has no leaderboard, or already
                has rewards.
        """
        competition = await self._competitions.find_by_id(competition_id)
        if competition is None:
            raise RewardsAllocationError(f"Competition {competition_id} not found")
        if competition.voting_start_date is None or competition.voting_end_date is None:
            raise RewardsAllocationError(f"Competition {competition_id} has no voting start or end date")
        if competition.status != ENDED_STATUS:
            raise RewardsAllocationError(f"Competition {competition_id} is not ended")

        leaderboard = await self._leaderboards.find_leaderboard_with_wallets(competition_id)
        if not leaderboard:
            raise RewardsAllocationError(f"No leaderboard entries for competition {competition_id}")
        window = AllocationWindow(start=competition.voting_start_date, end=competition.voting_end_date)

        async with self._db.get_async_session() as session:
            rewards_repo = RewardsRepository(session)
            if await rewards_repo.list_by_competition(competition_id):
                raise RewardsAllocationError(f"Rewards already calculated for competition {competition_id}")

            spending = await BoostRepository(session).user_boost_spending(competition_id)
            allocations = [
                BoostAllocation(
                    user_wallet=s.wallet_address,
                    competitor=s.agent_id,
                    boost=s.amount,
                    timestamp=s.created_at,
                    user_id=s.user_id,
                )
                for s in spending
            ]
            computation = compute_rewards(
                competition_id=competition_id,
                users_prize_pool=users_prize_pool,
                competitors_prize_pool=competitors_prize_pool,
                leaderboard=leaderboard,
                allocations=allocations,
                window=window,
                prize_pool_decay_rate=self._prize_pool_decay_rate,
                boost_time_decay_rate=self._boost_time_decay_rate,
                decay_policy=self._decay_policy,
                hook=self._hook,
            )
            await rewards_repo.insert_rewards(
                [
                    RewardDTO(
                        competition_id=competition_id,
                        address=reward.address,
                        amount=reward.amount,
                        leaf_hash=leaf_hash(reward.address, reward.amount),
                        user_id=reward.owner,
                        agent_id=reward.competitor,
                    )
                    for reward in computation.rewards
                ]
            )

        logger.info(
            "Calculated %d rewards for competition=%s from %d boost allocations",
            len(computation.rewards),
            competition_id,
            len(allocations),
        )
        return computation

    async def allocate(self, competition_id: str) -> RewardsRootDTO:
        """Build the Merkle tree over the stored rewards and persist every node and the root.

        Re-allocating an unchanged reward set returns the stored root.
        """
        async with self._db.get_async_session() as session:
            repo = RewardsRepository(session)
            rewards = await repo.list_by_competition(competition_id)
            if not rewards:
                raise RewardsAllocationError(f"No rewards to allocate for competition {competition_id}")

            tree = build_tree_from_leaf_hashes(competition_id, [r.leaf_hash for r in rewards])
            existing = await repo.get_root(competition_id)
            if existing is not None:
                if existing.root_hash != tree.root:
                    raise RewardsAllocationError(
                        f"Competition {competition_id} already committed to root {bytes_to_hex(existing.root_hash)}"
                    )
                logger.warning("Rewards for competition=%s already allocated", competition_id)
                return existing

            await repo.insert_tree(competition_id, tree.layers)
            root = await repo.insert_root(competition_id, tree.root)

        logger.info(
            "Allocated %d rewards (total=%d) for competition=%s root=%s",
            len(rewards),
            sum(r.amount for r in rewards),
            competition_id,
            bytes_to_hex(tree.root),
        )
        return root

    async def retrieve_proof(self, competition_id: str, address: str, amount: int) -> list[bytes]:
        async with self._db.get_async_session() as session:
            layers = await RewardsRepository(session).get_tree(competition_id)
        try:
            return proof_for(layers, leaf_hash(address, amount))
        except MerkleProofError as e:
            raise RewardsAllocationError(
                f"No proof for reward (address: {address}, amount: {amount}) in competition {competition_id}"
            ) from e

    async def rewards_with_proofs(self, address: str) -> list[RewardProof]:
        """Unclaimed, committed rewards of ``address`` with their proofs."""
        address = normalize_address(address)
        results: list[RewardProof] = []
        async with self._db.get_async_session() as session:
            repo = RewardsRepository(session)
            for reward in await repo.list_by_address(address, unclaimed_only=True):
                root = await repo.get_root(reward.competition_id)
                if root is None:
                    continue
                layers = await repo.get_tree(reward.competition_id)
                proof = proof_for(layers, reward.leaf_hash)
                results.append(
                    RewardProof(
                        competition_id=reward.competition_id,
                        merkle_root=bytes_to_hex(root.root_hash),
                        amount=reward.amount,
                        proof=[bytes_to_hex(p) for p in proof],
                    )
                )
        return results

    async def total_claimable(self, address: str) -> int:
        async with self._db.get_async_session() as session:
            rewards = await RewardsRepository(session).list_by_address(address, unclaimed_only=True)
        return sum(r.amount for r in rewards)

    async def competition_for_root(self, root_hash: bytes) -> str | None:
        async with self._db.get_async_session() as session:
            return await RewardsRepository(session).find_competition_by_root(root_hash)

    async def mark_claimed(self, root_hash: bytes, address: str, amount: int) -> bool:
        """Flag the reward behind a claim; False when no reward matches."""
        async with self._db.get_async_session() as session:
            repo = RewardsRepository(session)
            competition_id = await repo.find_competition_by_root(root_hash)
            if competition_id is None:
                logger.warning("No competition for rewards root %s", bytes_to_hex(root_hash))
                return False
            claimed = await repo.mark_claimed(competition_id, address, amount)
        if not claimed:
            logger.warning(
                "No reward to mark claimed: competition=%s address=%s amount=%d", competition_id, address, amount
            )
        return claimed
