"""Stake lifecycle: derived status and the event projector.

Status is a pure function of the lifecycle timestamps and a reference
time; nothing about it is stored. The projector applies one decoded
staking event to the ``stakes`` mirror, inserting the ``stake_changes``
journal row first so a replayed event changes nothing.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from compete_ledger.storage.coders import address_to_bytes, bytes_to_hex
from compete_ledger.storage.repos import StakeChangeDTO, StakeDTO, StakeRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from compete_ledger.indexing.events import ChainEvent

logger = logging.getLogger(__name__)


class StakeProjectionError(Exception):
    """Raised when an event cannot be applied to the stake mirror."""


class StakeStatus(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    UNSTAKED = "unstaked"
    WITHDRAWAL_PENDING = "withdrawal_pending"
    WITHDRAWN = "withdrawn"
    RELOCKED = "relocked"


def _reached(ts: datetime | None, as_of: datetime) -> bool:
    return ts is not None and ts <= as_of


def stake_status(stake: StakeDTO, as_of: datetime) -> StakeStatus:
    """Lifecycle status of ``stake`` as of ``as_of``."""
    if _reached(stake.withdrawn_at, as_of):
        return StakeStatus.WITHDRAWN
    if _reached(stake.relocked_at, as_of):
        return StakeStatus.RELOCKED
    if _reached(stake.unstaked_at, as_of):
        if _reached(stake.can_withdraw_after, as_of):
            return StakeStatus.WITHDRAWAL_PENDING
        return StakeStatus.UNSTAKED
    if as_of < stake.can_unstake_after:
        return StakeStatus.LOCKED
    return StakeStatus.UNLOCKED


class StakeProjector:
    """Applies staking events to the stake mirror at most once."""

    async def apply_event(self, session: AsyncSession, event: ChainEvent) -> StakeChangeDTO | None:
        """Apply ``event`` within the caller's transaction.

        Returns:
            The journal row written, or None when the event was already
            applied (or describes a transition the stake has already made).

        Raises:
            StakeProjectionError: If an unstake/relock/withdraw targets an
                unknown stake, a stake event reuses an existing id, or an
                unstake leaves more than the stake holds.
        """
        repo = StakeRepository(session)
        stake_id = int(event.args["stake_id"])

        if event.type == "stake":
            return await self._stake(repo, event, stake_id)

        stake = await repo.get(stake_id, for_update=True)
        if stake is None:
            raise StakeProjectionError(
                f"{event.name} for unknown stake {stake_id} (tx={bytes_to_hex(event.transaction_hash)})"
            )

        if event.type == "unstake":
            planned = self._plan_unstake(stake, event)
        elif event.type == "relock":
            planned = self._plan_relock(stake, event)
        elif event.type == "withdraw":
            planned = self._plan_withdraw(stake, event)
        else:
            raise ValueError(f"Not a staking event: {event.type}")

        if planned is None:
            return None
        delta, values = planned

        change = self._change(event, stake_id, stake.wallet, delta)
        if not await repo.insert_change(change, created_at=event.block_timestamp):
            logger.warning(
                "Skipping already applied %s tx=%s log=%d",
                event.name,
                bytes_to_hex(event.transaction_hash),
                event.log_index,
            )
            return None
        await repo.update_stake(stake_id, **values)
        logger.info("Applied %s to stake %d (delta=%d)", event.name, stake_id, delta)
        return change

    async def _stake(self, repo: StakeRepository, event: ChainEvent, stake_id: int) -> StakeChangeDTO | None:
        wallet = address_to_bytes(event.args["staker"])
        amount = int(event.args["amount"])
        change = self._change(event, stake_id, wallet, amount)
        if not await repo.insert_change(change, created_at=event.block_timestamp):
            logger.warning(
                "Skipping already applied Stake tx=%s log=%d",
                bytes_to_hex(event.transaction_hash),
                event.log_index,
            )
            return None

        lockup = int(event.args["lockup_end_time"]) - int(event.args["start_time"])
        staked_at = event.block_timestamp
        created = await repo.insert_stake(
            StakeDTO(
                id=stake_id,
                wallet=wallet,
                amount=amount,
                staked_at=staked_at,
                can_unstake_after=staked_at + timedelta(seconds=lockup),
            )
        )
        if not created:
            raise StakeProjectionError(f"Stake {stake_id} already exists")
        logger.info("Staked %d for %s (stake=%d)", amount, event.args["staker"], stake_id)
        return change

    def _plan_unstake(self, stake: StakeDTO, event: ChainEvent) -> tuple[int, dict[str, Any]] | None:
        remaining = int(event.args["remaining_amount"])
        can_withdraw_after = datetime.fromtimestamp(int(event.args["withdraw_allowed_time"]), UTC)
        if remaining > stake.amount:
            raise StakeProjectionError(
                f"Unstake of stake {stake.id} leaves {remaining}, more than the {stake.amount} staked"
            )
        if remaining < stake.amount:
            return remaining - stake.amount, {"amount": remaining, "can_withdraw_after": can_withdraw_after}
        if stake.unstaked_at is not None:
            logger.warning("Unstake skipped: stake %d already unstaked", stake.id)
            return None
        return 0, {"unstaked_at": event.block_timestamp, "can_withdraw_after": can_withdraw_after}

    def _plan_relock(self, stake: StakeDTO, event: ChainEvent) -> tuple[int, dict[str, Any]] | None:
        if stake.relocked_at is not None or stake.unstaked_at is not None:
            logger.warning("Relock skipped: stake %d already unstaked or relocked", stake.id)
            return None
        updated = int(event.args["updated_amount"])
        values: dict[str, Any] = {"relocked_at": event.block_timestamp, "unstaked_at": event.block_timestamp}
        if updated == 0:
            return -stake.amount, values
        values["amount"] = updated
        return updated - stake.amount, values

    def _plan_withdraw(self, stake: StakeDTO, event: ChainEvent) -> tuple[int, dict[str, Any]] | None:
        if stake.withdrawn_at is not None:
            logger.warning("Withdraw skipped: stake %d already withdrawn", stake.id)
            return None
        return 0, {"withdrawn_at": event.block_timestamp}

    @staticmethod
    def _change(event: ChainEvent, stake_id: int, wallet: bytes, delta: int) -> StakeChangeDTO:
        return StakeChangeDTO(
            stake_id=stake_id,
            wallet=wallet,
            delta_amount=delta,
            kind=event.type,
            tx_hash=event.transaction_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            block_hash=event.block_hash,
        )
