"""RPC access for the staking and rewards indexer.

The indexer needs three things from the chain: the head block number, logs
for a block range, and the timestamp of the blocks those logs came from.
``ChainClient`` serves them through an ordered list of endpoints (primary
first), throttled by a shared token bucket. Confirmed block headers are cached
in Redis because they never change.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from compete_ledger.config import ChainSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
BLOCK_CACHE_TTL_SECONDS = 3600
ENDPOINT_RECOVERY_SECONDS = 60.0


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails on every endpoint."""


@dataclass
class RateLimiter:
    """Token bucket shared by every endpoint of one client."""

    capacity: float
    per_second: float
    tokens: float
    updated_at: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            capacity=max_requests_per_second,
            per_second=max_requests_per_second,
            tokens=max_requests_per_second,
            updated_at=time.monotonic(),
        )

    async def acquire(self) -> None:
        while True:
            now = time.monotonic()
            self.tokens = min(self.capacity, self.tokens + (now - self.updated_at) * self.per_second)
            self.updated_at = now
            if self.tokens >= 1:
                self.tokens -= 1
                return
            await asyncio.sleep((1 - self.tokens) / self.per_second)


@dataclass
class Endpoint:
    """One RPC URL and whether it answered last time it was asked."""

    label: str
    w3: Any
    healthy: bool = True
    failed_at: float = field(default=0.0)

    def is_due(self, now: float) -> bool:
        """Unhealthy endpoints are retried once the recovery window passes."""
        return self.healthy or now - self.failed_at > ENDPOINT_RECOVERY_SECONDS

    def mark(self, ok: bool) -> None:
        if ok and not self.healthy:
            logger.info("%s RPC endpoint recovered", self.label)
        self.healthy = ok
        if not ok:
            self.failed_at = time.monotonic()


@dataclass(frozen=True)
class BlockHeader:
    number: int
    timestamp: int
    hash: str | None = None

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, UTC)

    @classmethod
    def from_rpc(cls, block: Any) -> BlockHeader:
        raw_hash = block.get("hash")
        if raw_hash is not None and not isinstance(raw_hash, str):
            raw_hash = "0x" + bytes(raw_hash).hex()
        return cls(number=int(block["number"]), timestamp=int(block["timestamp"]), hash=raw_hash)


def _connect(rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
    w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
    # L2s such as Base carry PoA-style extraData in block headers.
    w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
    return w3


class ChainClient:
    """Rate-limited RPC access with retry, failover and block header caching.

    Example:
        ```python
        client = ChainClient(
            "https://mainnet.base.org",
            fallback_rpc_url="https://base.publicnode.com",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        head = await client.get_block_number()
        logs = await client.get_logs({"fromBlock": head - 10, "toBlock": head, "address": [...]})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        cache_prefix: str = "chain:",
    ) -> None:
        self.endpoints = [Endpoint("Primary", _connect(rpc_url))]
        if fallback_rpc_url:
            self.endpoints.append(Endpoint("Fallback", _connect(fallback_rpc_url)))

        self._redis = redis
        self._cache_prefix = cache_prefix
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._limiter = RateLimiter.create(max_requests_per_second)

    @classmethod
    def from_settings(cls, settings: ChainSettings, redis: Redis | None = None) -> ChainClient:
        return cls(
            settings.rpc_url,
            fallback_rpc_url=settings.fallback_rpc_url,
            redis=redis,
            max_requests_per_second=settings.max_requests_per_second,
            max_retries=settings.max_retries,
        )

    async def _attempt(self, endpoint: Endpoint, method: str, args: tuple[Any, ...]) -> Any:
        """Retry ``method`` on one endpoint with exponential backoff.

        Raises:
            Web3Exception: The last error once retries are exhausted.
        """
        delay = self._retry_delay
        attempt = 1
        while True:
            try:
                return await getattr(endpoint.w3.eth, method)(*args)
            except Web3Exception as e:
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s", endpoint.label, method, attempt, self._max_retries, e
                )
                if attempt >= self._max_retries:
                    raise
            await asyncio.sleep(delay)
            delay *= 2
            attempt += 1

    async def call(self, method: str, *args: Any) -> Any:
        """Call ``w3.eth.<method>`` on the first endpoint that answers.

        Raises:
            RPCError: If every due endpoint exhausted its retries.
        """
        await self._limiter.acquire()
        now = time.monotonic()
        # With nothing due, every endpoint gets another chance.
        due = [e for e in self.endpoints if e.is_due(now)] or self.endpoints
        errors: list[str] = []
        for endpoint in due:
            try:
                result = await self._attempt(endpoint, method, args)
            except Web3Exception as e:
                endpoint.mark(False)
                errors.append(f"{endpoint.label}: {e}")
                continue
            endpoint.mark(True)
            return result
        raise RPCError(f"RPC call {method} failed on every endpoint: {'; '.join(errors)}")

    async def _cached_header(self, key: str) -> BlockHeader | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            logger.warning("Block cache read failed: %s", e)
            return None
        return BlockHeader(**json.loads(raw)) if raw is not None else None

    async def _cache_header(self, key: str, header: BlockHeader) -> None:
        if self._redis is None:
            return
        payload = json.dumps({"number": header.number, "timestamp": header.timestamp, "hash": header.hash})
        try:
            await self._redis.set(key, payload, ex=BLOCK_CACHE_TTL_SECONDS)
        except Exception as e:
            logger.warning("Block cache write failed: %s", e)

    async def get_block(self, block_number: int) -> BlockHeader:
        """Header of a confirmed block, served from Redis when cached."""
        key = f"{self._cache_prefix}block:{block_number}"
        header = await self._cached_header(key)
        if header is None:
            header = BlockHeader.from_rpc(await self.call("get_block", block_number))
            await self._cache_header(key, header)
        return header

    async def get_block_timestamp(self, block_number: int) -> datetime:
        return (await self.get_block(block_number)).time

    async def get_block_number(self) -> int:
        """Current chain head. Never cached."""
        return BlockHeader.from_rpc(await self.call("get_block", "latest")).number

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        return [dict(log) for log in await self.call("get_logs", filter_params)]

    async def health_check(self) -> bool:
        try:
            await self.get_block_number()
        except RPCError:
            return False
        return True

    async def aclose(self) -> None:
        """Disconnect every endpoint's HTTP session."""
        for endpoint in self.endpoints:
            disconnect = getattr(endpoint.w3.provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close %s RPC session: %s", endpoint.label, e)
