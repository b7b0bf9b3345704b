"""Boost awards for stakes and flat grants, and boost spending on agents.

Every award carries an idempotency key derived from what it rewards, so a
stake is credited at most once per competition no matter how often the
indexer or a user retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from compete_ledger.storage.repos import (
    AgentBoostResult,
    BoostApplied,
    BoostNoop,
    BoostRepository,
    BoostResult,
    StakeDTO,
    StakeRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from compete_ledger.config import BoostSettings
    from compete_ledger.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_NO_STAKE_AMOUNT = 10**21
NO_STAKE_REASON = "no-stake"


class BoostAwardError(Exception):
    """Base error for boost awards and boost spending."""


class CompetitionNotFoundError(BoostAwardError):
    """Raised when a competition id does not resolve."""


class MissingVotingDatesError(BoostAwardError):
    """Raised when a competition that takes boosts has no voting window."""


class InvalidBoostWindowError(BoostAwardError):
    """Raised when boosting happens outside the competition's voting window."""


class NoStakeAmountNotConfiguredError(BoostAwardError):
    """Raised when a no-stake award is requested without a configured amount."""


class AlreadyClaimedBoostError(BoostAwardError):
    """Raised when a user claims a boost they already received."""


@dataclass(frozen=True)
class VotingWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Competition:
    """The slice of a competition the boost and rewards engines read."""

    id: str
    status: str
    voting_start_date: datetime | None = None
    voting_end_date: datetime | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    def voting_window(self) -> VotingWindow:
        if self.voting_start_date is None or self.voting_end_date is None:
            raise MissingVotingDatesError(f"Competition {self.id} missing voting dates")
        return VotingWindow(start=self.voting_start_date, end=self.voting_end_date)


@dataclass(frozen=True)
class UserRef:
    id: str
    wallet_address: str


class UserLookup(Protocol):
    async def find_by_wallet(self, wallet: str) -> UserRef | None:
        raise NotImplementedError


class CompetitionRepository(Protocol):
    async def find_by_id(self, competition_id: str) -> Competition | None:
        raise NotImplementedError

    async def find_voting_open(self, now: datetime) -> list[Competition]:
        raise NotImplementedError

    async def find_open_for_boosting(self, now: datetime) -> list[Competition]:
        raise NotImplementedError


@dataclass(frozen=True)
class AwardOutcome:
    """Result of one award inside a batch, tagged with what it was for."""

    competition_id: str
    result: BoostResult
    stake_id: int | None = None

    @property
    def applied(self) -> bool:
        return isinstance(self.result, BoostApplied)


def stake_multiplier(stake: StakeDTO, window: VotingWindow) -> int:
    """2 for a stake placed before voting opens and locked through its close, else 1."""
    if stake.staked_at < window.start and stake.can_unstake_after >= window.end:
        return 2
    return 1


def award_amount_for_stake(stake: StakeDTO, window: VotingWindow) -> int:
    return stake.amount * stake_multiplier(stake, window)


def stake_idem_key(competition_id: str, stake_id: int) -> bytes:
    return f"competition={competition_id};stake={stake_id}".encode()


def no_stake_idem_key(competition_id: str, reason: str) -> bytes:
    return f"competition={competition_id};reason={reason}".encode()


class BoostAwardEngine:
    """Credits boost for stakes and flat grants and spends it on agents.

    ``award_*`` methods run inside the caller's session; ``init_*``,
    ``claim_*`` and ``boost_agent`` open their own transaction.

    Example:
        ```python
        engine = BoostAwardEngine(db, users=users, competitions=competitions)
        outcomes = await engine.init_for_stake("0xabc...")
        fresh = [o for o in outcomes if o.applied]
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        users: UserLookup,
        competitions: CompetitionRepository,
        no_stake_amount: int | None = DEFAULT_NO_STAKE_AMOUNT,
    ) -> None:
        self._db = db
        self._users = users
        self._competitions = competitions
        self._no_stake_amount = no_stake_amount

    @classmethod
    def from_settings(
        cls,
        db: DatabaseManager,
        settings: BoostSettings,
        *,
        users: UserLookup,
        competitions: CompetitionRepository,
    ) -> BoostAwardEngine:
        return cls(db, users=users, competitions=competitions, no_stake_amount=settings.no_stake_amount)

    @property
    def competitions(self) -> CompetitionRepository:
        return self._competitions

    async def award_for_stake(
        self, session: AsyncSession, stake: StakeDTO, competition: Competition
    ) -> BoostResult:
        """Credit the stake owner's boost for ``competition`` once.

        A wallet with no registered user is a no-op with balance 0.
        """
        window = competition.voting_window()
        idem_key = stake_idem_key(competition.id, stake.id)

        user = await self._users.find_by_wallet(stake.wallet_address)
        if user is None:
            logger.debug("No user for wallet %s, skipping stake %d", stake.wallet_address, stake.id)
            return BoostNoop(balance=0, idem_key=idem_key)

        multiplier = stake_multiplier(stake, window)
        amount = stake.amount * multiplier
        repo = BoostRepository(session)
        result = await repo.increase(
            user_id=user.id,
            wallet=stake.wallet,
            competition_id=competition.id,
            amount=amount,
            idem_key=idem_key,
            meta={"description": f"Award for stake {stake.id}", "multiplier": multiplier},
        )
        if isinstance(result, BoostApplied):
            await repo.record_stake_boost_award(
                stake_id=stake.id,
                competition_id=competition.id,
                base_amount=stake.amount,
                multiplier=multiplier,
                boost_change_id=result.change_id,
            )
            logger.info(
                "Awarded %d boost (x%d) to user=%s for stake %d in competition=%s",
                amount,
                multiplier,
                user.id,
                stake.id,
                competition.id,
            )
        return result

    async def award_no_stake(
        self,
        session: AsyncSession,
        competition_id: str,
        user_id: str,
        wallet: str,
        amount: int,
        reason: str,
    ) -> BoostResult:
        return await BoostRepository(session).increase(
            user_id=user_id,
            wallet=wallet,
            competition_id=competition_id,
            amount=amount,
            idem_key=no_stake_idem_key(competition_id, reason),
            meta={"description": f"Voluntary award of {amount}"},
        )

    async def init_for_stake(self, wallet: str, *, now: datetime | None = None) -> list[AwardOutcome]:
        """Award every active stake of ``wallet`` in every voting-open competition."""
        now = now or datetime.now(UTC)
        outcomes: list[AwardOutcome] = []
        async with self._db.get_async_session() as session:
            stakes = await StakeRepository(session).all_staked_by_wallet(wallet)
            if not stakes:
                return outcomes
            for competition in await self._competitions.find_voting_open(now):
                for stake in stakes:
                    result = await self.award_for_stake(session, stake, competition)
                    outcomes.append(AwardOutcome(competition_id=competition.id, result=result, stake_id=stake.id))
        return outcomes

    async def init_no_stake(
        self, user_id: str, wallet: str, *, now: datetime | None = None
    ) -> list[AwardOutcome]:
        """Grant the flat no-stake boost in every voting-open competition."""
        if self._no_stake_amount is None:
            raise NoStakeAmountNotConfiguredError("No-stake boost amount is not configured")
        now = now or datetime.now(UTC)
        outcomes: list[AwardOutcome] = []
        async with self._db.get_async_session() as session:
            for competition in await self._competitions.find_voting_open(now):
                competition.voting_window()
                result = await self.award_no_stake(
                    session, competition.id, user_id, wallet, self._no_stake_amount, NO_STAKE_REASON
                )
                outcomes.append(AwardOutcome(competition_id=competition.id, result=result))
        return outcomes

    async def claim_boost(self, user_id: str, wallet: str, competition_id: str) -> BoostApplied:
        """Grant the no-stake boost on request; a second claim raises."""
        if self._no_stake_amount is None:
            raise NoStakeAmountNotConfiguredError("No-stake boost amount is not configured")
        async with self._db.get_async_session() as session:
            result = await BoostRepository(session).increase(
                user_id=user_id,
                wallet=wallet,
                competition_id=competition_id,
                amount=self._no_stake_amount,
                idem_key=f"claim-{user_id}-{competition_id}".encode(),
                meta={"description": "Claim non-stake boost"},
            )
        if isinstance(result, BoostNoop):
            raise AlreadyClaimedBoostError(f"User {user_id} already claimed boost in competition {competition_id}")
        return result

    async def claim_staked_boost(self, user_id: str, wallet: str, competition_id: str) -> int:
        """Award every not-yet-awarded stake of ``wallet``; returns the new boost balance."""
        async with self._db.get_async_session() as session:
            stakes = await BoostRepository(session).unawarded_stakes(wallet, competition_id)
            if not stakes:
                raise AlreadyClaimedBoostError(
                    f"No unawarded stakes for {wallet} in competition {competition_id}"
                )
            competition = await self._competitions.find_by_id(competition_id)
            if competition is None:
                raise CompetitionNotFoundError(f"Competition {competition_id} not found")

            balance = 0
            for stake in stakes:
                result = await self.award_for_stake(session, stake, competition)
                if isinstance(result, BoostNoop):
                    raise AlreadyClaimedBoostError(
                        f"Stake {stake.id} already awarded in competition {competition_id}"
                    )
                balance = result.balance_after
        return balance

    async def boost_agent(
        self,
        *,
        user_id: str,
        wallet: str,
        agent_id: str,
        competition_id: str,
        amount: int,
        idem_key: bytes | None = None,
        now: datetime | None = None,
    ) -> AgentBoostResult:
        """Spend ``amount`` of the user's boost on ``agent_id``.

        Raises:
            CompetitionNotFoundError: If the competition does not exist.
            MissingVotingDatesError: If it has no voting window.
            InvalidBoostWindowError: If ``now`` is outside the window.
            BoostBalanceError: If the user's boost balance is too small.
        """
        if amount <= 0:
            raise ValueError("Boost amount must be positive")
        competition = await self._competitions.find_by_id(competition_id)
        if competition is None:
            raise CompetitionNotFoundError(f"Competition {competition_id} not found")
        window = competition.voting_window()
        now = now or datetime.now(UTC)
        if not (window.start < now < window.end):
            raise InvalidBoostWindowError(
                f"Competition {competition_id} is not open for boosting at {now.isoformat()}"
            )

        async with self._db.get_async_session() as session:
            result = await BoostRepository(session).boost_agent(
                user_id=user_id,
                wallet=wallet,
                agent_id=agent_id,
                competition_id=competition_id,
                amount=amount,
                idem_key=idem_key,
            )
        if result.applied:
            logger.info(
                "User %s boosted agent %s by %d in competition=%s (total=%d)",
                user_id,
                agent_id,
                amount,
                competition_id,
                result.agent_total,
            )
        else:
            logger.warning("Boost of agent %s by user %s already applied", agent_id, user_id)
        return result
