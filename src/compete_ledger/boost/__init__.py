"""Boost awards and boost spending."""

from compete_ledger.boost.awards import (
    AlreadyClaimedBoostError,
    AwardOutcome,
    BoostAwardEngine,
    BoostAwardError,
    Competition,
    CompetitionNotFoundError,
    CompetitionRepository,
    InvalidBoostWindowError,
    MissingVotingDatesError,
    NoStakeAmountNotConfiguredError,
    UserLookup,
    UserRef,
    VotingWindow,
    award_amount_for_stake,
    stake_multiplier,
)
from compete_ledger.storage.repos import BoostApplied, BoostNoop, BoostResult

__all__ = [
    "AlreadyClaimedBoostError",
    "AwardOutcome",
    "BoostApplied",
    "BoostAwardEngine",
    "BoostAwardError",
    "BoostNoop",
    "BoostResult",
    "Competition",
    "CompetitionNotFoundError",
    "CompetitionRepository",
    "InvalidBoostWindowError",
    "MissingVotingDatesError",
    "NoStakeAmountNotConfiguredError",
    "UserLookup",
    "UserRef",
    "VotingWindow",
    "award_amount_for_stake",
    "stake_multiplier",
]
