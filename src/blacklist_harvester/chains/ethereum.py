"""Ethereum JSON-RPC client with rate limiting, retries and caching.

This module provides the Ethereum client used by the sync engine with:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff
- Failover to secondary RPC URL
- Range-limit classification for `eth_getLogs`
- Block timestamp caching (in-process, plus Redis when configured)
"""

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from blacklist_harvester.chains.errors import FetchError, RangeLimitError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_CACHE_TTL_SECONDS = 7 * 24 * 3600  # block timestamps never change
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_TIMESTAMP_CACHE_SIZE = 10_000

# Substrings providers use when a getLogs query spans too much.
RANGE_LIMIT_MARKERS = (
    "query returned more than",
    "range is too large",
    "max is 1k blocks",
    "block range is too wide",
    "block range too large",
    "exceed maximum block range",
    "log response size exceeded",
    "too many results",
)

# Minimal ABIs for the denylist view functions.
USDT_VIEW_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_maker", "type": "address"}],
        "name": "isBlackListed",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    }
]
USDC_VIEW_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_account", "type": "address"}],
        "name": "isBlacklisted",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    }
]

_TRANSIENT_ERRORS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError)


class EthereumClientError(FetchError):
    """Base exception for Ethereum client errors."""


class RPCError(EthereumClientError):
    """Raised when RPC call fails."""


def is_range_limit_error(error: BaseException) -> bool:
    """Return True if a provider error means the queried range was too large."""
    message = str(error).lower()
    return any(marker in message for marker in RANGE_LIMIT_MARKERS)


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class EthereumClient:
    """Ethereum client with caching, rate limiting and failover.

    Example:
        ```python
        client = EthereumClient(
            rpc_url="https://eth.llamarpc.com",
            fallback_rpc_url="https://ethereum-rpc.publicnode.com",
        )
        head = await client.get_block_number()
        logs = await client.get_logs(
            address=["0xdAC17F958D2ee523a2206206994597C13D831ec7"],
            topics=[["0x42e1...", "0xd7e9..."]],
            from_block=head - 100,
            to_block=head,
        )
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timestamp_cache_size: int = DEFAULT_TIMESTAMP_CACHE_SIZE,
    ) -> None:
        """Initialize the Ethereum client.

        Args:
            rpc_url: Primary Ethereum RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client for caching block timestamps.
            cache_ttl_seconds: Redis cache TTL in seconds.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            timestamp_cache_size: Entries kept in the in-process timestamp cache.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url))

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._timestamps: dict[int, int] = {}
        self._timestamp_cache_size = timestamp_cache_size
        self._cache_prefix = "eth:"

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call_endpoint(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        func_name: str,
        *args: Any,
    ) -> tuple[bool, Any]:
        """Call one endpoint with retries.

        Returns ``(True, result)`` on success and ``(False, last_error)`` once
        retries are exhausted. Range-limit errors are raised immediately:
        retrying the same range cannot succeed.
        """
        last_error: Exception | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                method = getattr(w3.eth, func_name)
                return True, await method(*args)
            except _TRANSIENT_ERRORS as e:
                if func_name == "get_logs" and is_range_limit_error(e):
                    raise RangeLimitError(str(e)) from e
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    func_name,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2  # Exponential backoff
        return False, last_error

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RangeLimitError: If the provider rejected a log query as too large.
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Any = None
        if self._should_try_primary():
            ok, result = await self._call_endpoint(self._w3, "Primary", func_name, *args)
            if ok:
                self._primary_healthy = True
                return result
            last_error = result
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result = await self._call_endpoint(self._w3_fallback, "Fallback", func_name, *args)
            if ok:
                logger.info("Fallback RPC succeeded for %s", func_name)
                return result
            last_error = result

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_block_number(self) -> int:
        """Return the current chain head."""
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(
        self,
        *,
        address: str | Sequence[str],
        topics: Sequence[Any],
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch logs for an inclusive block range via `eth_getLogs`.

        Raises:
            RangeLimitError: If the provider refuses the range.
            RPCError: On any other persistent failure.
        """
        if isinstance(address, str):
            checksummed: str | list[str] = AsyncWeb3.to_checksum_address(address)
        else:
            checksummed = [AsyncWeb3.to_checksum_address(a) for a in address]
        filter_params = {
            "address": checksummed,
            "topics": list(topics),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_block_timestamp(self, block_number: int) -> int:
        """Return a block's timestamp in unix seconds."""
        cached_ts = self._timestamps.get(block_number)
        if cached_ts is not None:
            return cached_ts

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            ts = int(cached)
        else:
            block = await self._execute_with_retry("get_block", block_number)
            ts = int(block["timestamp"])
            await self._set_cached(cache_key, str(ts))

        if len(self._timestamps) >= self._timestamp_cache_size:
            self._timestamps.pop(next(iter(self._timestamps)))
        self._timestamps[block_number] = ts
        return ts

    async def get_block_timestamps(self, block_numbers: Sequence[int]) -> dict[int, int]:
        """Resolve timestamps for several blocks, one request per uncached block."""
        result: dict[int, int] = {}
        for number in sorted(set(block_numbers)):
            result[number] = await self.get_block_timestamp(number)
        return result

    async def is_blacklisted(self, token: str, contract: str, address: str) -> bool:
        """Ask the token contract whether an address is currently denylisted.

        Args:
            token: "USDT" or "USDC"; selects the view function.
            contract: Token contract address.
            address: Holder address.
        """
        if token.upper() == "USDT":
            abi, fn_name = USDT_VIEW_ABI, "isBlackListed"
        elif token.upper() == "USDC":
            abi, fn_name = USDC_VIEW_ABI, "isBlacklisted"
        else:
            raise ValueError(f"No denylist view function known for token {token!r}")

        await self._rate_limiter.acquire()
        try:
            w3 = self._w3 if self._primary_healthy else (self._w3_fallback or self._w3)
            instance = w3.eth.contract(address=AsyncWeb3.to_checksum_address(contract), abi=abi)
            fn = getattr(instance.functions, fn_name)
            result = await fn(AsyncWeb3.to_checksum_address(address)).call()
        except _TRANSIENT_ERRORS as e:
            raise RPCError(f"Failed to call {fn_name}: {e}") from e
        return bool(result)

    async def health_check(self) -> bool:
        """Check if the client can connect to the RPC."""
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
