"""Redis read-through cache of per-agent balances.

The database stays the source of truth: every write path in the ledger
invalidates the affected (competition, agent) entry after commit, and
ending a competition drops all of its entries.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from redis.asyncio import Redis

if TYPE_CHECKING:
    from compete_ledger.config import RedisSettings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class BalanceCache:
    """Hash per (competition, agent) mapping token address to amount."""

    def __init__(
        self,
        redis: Redis,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = "ledger:balances:",
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    @classmethod
    def from_settings(cls, redis: Redis, settings: RedisSettings) -> BalanceCache:
        return cls(redis, ttl_seconds=settings.balance_cache_ttl_seconds)

    def _key(self, competition_id: str, agent_id: str) -> str:
        return f"{self._prefix}{competition_id}:{agent_id}"

    def _index_key(self, competition_id: str) -> str:
        return f"{self._prefix}{competition_id}:agents"

    async def get(self, competition_id: str, agent_id: str) -> dict[str, int] | None:
        try:
            data = await self._redis.hgetall(self._key(competition_id, agent_id))
        except Exception as e:
            logger.warning("Balance cache get failed: %s", e)
            return None
        if not data:
            return None
        return {_decode(k): int(_decode(v)) for k, v in data.items()}

    async def set(self, competition_id: str, agent_id: str, balances: Mapping[str, int]) -> None:
        if not balances:
            return
        key = self._key(competition_id, agent_id)
        index_key = self._index_key(competition_id)
        try:
            pipe = self._redis.pipeline()
            pipe.delete(key)
            pipe.hset(key, mapping={token: str(amount) for token, amount in balances.items()})
            pipe.expire(key, self._ttl)
            pipe.sadd(index_key, agent_id)
            pipe.expire(index_key, self._ttl)
            await pipe.execute()
        except Exception as e:
            logger.warning("Balance cache set failed: %s", e)

    async def invalidate(self, competition_id: str, agent_id: str) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.delete(self._key(competition_id, agent_id))
            pipe.srem(self._index_key(competition_id), agent_id)
            await pipe.execute()
        except Exception as e:
            logger.error("Balance cache invalidation failed (competition=%s agent=%s): %s", competition_id, agent_id, e)

    async def invalidate_competition(self, competition_id: str) -> int:
        """Drop every cached balance of the competition; returns the number of agents cleared."""
        index_key = self._index_key(competition_id)
        try:
            members = await self._redis.smembers(index_key)
            agent_ids = sorted(_decode(m) for m in members)
            pipe = self._redis.pipeline()
            for agent_id in agent_ids:
                pipe.delete(self._key(competition_id, agent_id))
            pipe.delete(index_key)
            await pipe.execute()
        except Exception as e:
            logger.error("Balance cache invalidation failed (competition=%s): %s", competition_id, e)
            return 0
        logger.info("Cleared cached balances for %d agents (competition=%s)", len(agent_ids), competition_id)
        return len(agent_ids)
