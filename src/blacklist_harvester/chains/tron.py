"""TronGrid HTTP client.

Thin async wrapper around the TronGrid full-node and event APIs used by the
sync engine: chain head and block lookups, paginated contract event queries
and constant (view) contract calls.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from blacklist_harvester.chains.errors import FetchError
from blacklist_harvester.models import Network, canonical_address

logger = logging.getLogger(__name__)

DEFAULT_FULL_NODE = "https://api.trongrid.io"
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0

# Nominal TRON block interval, used only to seed the block search bracket.
BLOCK_INTERVAL_MS = 3_000

_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class TronGridError(FetchError):
    """Raised when a TronGrid request fails."""


@dataclass(frozen=True)
class TronBlock:
    """Header fields of a TRON block."""

    number: int
    timestamp_ms: int


@dataclass
class EventPage:
    """One page of a TronGrid contract event query."""

    events: list[dict[str, Any]] = field(default_factory=list)
    fingerprint: str | None = None


def _parse_block(payload: dict[str, Any]) -> TronBlock:
    try:
        raw = payload["block_header"]["raw_data"]
        return TronBlock(number=int(raw["number"]), timestamp_ms=int(raw["timestamp"]))
    except (KeyError, TypeError, ValueError) as e:
        raise TronGridError(f"Unexpected block payload: {payload!r:.200}") from e


def encode_address_param(address: str) -> str:
    """ABI-encode a TRON address as a single 32-byte call parameter."""
    body = canonical_address(address, Network.TRON)[2:]
    return body.rjust(64, "0")


class TronGridClient:
    """Async client for the TronGrid HTTP API.

    Example:
        ```python
        client = TronGridClient(api_key="...")
        head = await client.get_now_block()
        page = await client.get_contract_events(
            "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t",
            event_name="AddedBlackList",
            min_timestamp=head.timestamp_ms - 86_400_000,
            max_timestamp=head.timestamp_ms,
        )
        await client.aclose()
        ```
    """

    def __init__(
        self,
        full_node: str = DEFAULT_FULL_NODE,
        *,
        api_key: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base_url = full_node.rstrip("/")
        self._api_key = api_key
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["TRON-PRO-API-KEY"] = self._api_key
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers())
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request with bounded retries on transport errors and 429/5xx."""
        url = f"{self._base_url}{path}"
        delay = self._retry_delay
        last_error: str = ""

        for attempt in range(self._max_retries):
            try:
                session = self._get_session()
                async with session.request(method, url, params=params, json=json_body) as response:
                    if response.status == 200:
                        data = await response.json(content_type=None)
                        if not isinstance(data, dict):
                            raise TronGridError(f"Unexpected response from {path}: {data!r:.200}")
                        return data
                    body = await response.text()
                    last_error = f"HTTP {response.status}: {body[:200]}"
                    if response.status not in _RETRYABLE_STATUSES:
                        raise TronGridError(f"TronGrid {path} failed: {last_error}")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = str(e) or type(e).__name__

            logger.warning(
                "TronGrid %s failed (attempt %d/%d): %s",
                path,
                attempt + 1,
                self._max_retries,
                last_error,
            )
            if attempt < self._max_retries - 1:
                await asyncio.sleep(delay)
                delay *= 2

        raise TronGridError(f"TronGrid {path} failed after all retries: {last_error}")

    async def get_now_block(self) -> TronBlock:
        """Return the latest block header."""
        return _parse_block(await self._request("POST", "/wallet/getnowblock"))

    async def get_block_by_number(self, number: int) -> TronBlock:
        """Return the header of a block by height."""
        if number < 0:
            raise ValueError("block number must be >= 0")
        payload = await self._request("POST", "/wallet/getblockbynum", json_body={"num": number})
        if not payload:
            raise TronGridError(f"Block {number} not found")
        return _parse_block(payload)

    async def get_contract_events(
        self,
        contract: str,
        *,
        event_name: str,
        min_timestamp: int,
        max_timestamp: int,
        limit: int = 200,
        fingerprint: str | None = None,
    ) -> EventPage:
        """Fetch one page of contract events in ascending block-time order.

        Timestamps are inclusive bounds in milliseconds.
        """
        params: dict[str, Any] = {
            "event_name": event_name,
            "min_block_timestamp": min_timestamp,
            "max_block_timestamp": max_timestamp,
            "order_by": "block_timestamp,asc",
            "limit": limit,
        }
        if fingerprint:
            params["fingerprint"] = fingerprint

        payload = await self._request("GET", f"/v1/contracts/{contract}/events", params=params)
        if payload.get("success") is False:
            raise TronGridError(f"TronGrid event query failed: {payload.get('error', payload)!r:.200}")

        events = payload.get("data") or []
        meta = payload.get("meta") or {}
        return EventPage(events=list(events), fingerprint=meta.get("fingerprint") or None)

    async def block_number_at_or_before(self, timestamp_ms: int, *, head: TronBlock | None = None) -> int:
        """Resolve a millisecond timestamp to the latest block at-or-before it.

        The search is seeded from the nominal block interval, widened until it
        brackets the target, then narrowed by bisection.
        """
        head = head or await self.get_now_block()
        if timestamp_ms >= head.timestamp_ms:
            return head.number

        guess = head.number - (head.timestamp_ms - timestamp_ms) // BLOCK_INTERVAL_MS
        step = 64

        lo = max(0, guess - step)
        while lo > 0:
            block = await self.get_block_by_number(lo)
            if block.timestamp_ms <= timestamp_ms:
                break
            step *= 2
            lo = max(0, lo - step)

        hi = min(head.number, max(guess + step, lo + 1))
        while hi < head.number:
            block = await self.get_block_by_number(hi)
            if block.timestamp_ms > timestamp_ms:
                break
            lo = hi
            step *= 2
            hi = min(head.number, hi + step)

        while lo + 1 < hi:
            mid = (lo + hi) // 2
            block = await self.get_block_by_number(mid)
            if block.timestamp_ms <= timestamp_ms:
                lo = mid
            else:
                hi = mid
        return lo

    async def trigger_constant_contract(
        self,
        contract: str,
        function_selector: str,
        parameter: str,
        *,
        owner_address: str | None = None,
    ) -> list[str]:
        """Execute a view function and return its raw ``constant_result`` words."""
        body = {
            "owner_address": owner_address or contract,
            "contract_address": contract,
            "function_selector": function_selector,
            "parameter": parameter,
            "visible": True,
        }
        payload = await self._request("POST", "/wallet/triggerconstantcontract", json_body=body)
        result = payload.get("result") or {}
        if result.get("result") is not True:
            raise TronGridError(f"Constant call {function_selector} failed: {result!r:.200}")
        return list(payload.get("constant_result") or [])

    async def is_blacklisted(self, contract: str, address: str) -> bool:
        """Call the USDT ``isBlackListed(address)`` view function."""
        words = await self.trigger_constant_contract(
            contract,
            "isBlackListed(address)",
            encode_address_param(address),
        )
        if not words:
            raise TronGridError("isBlackListed returned no result")
        return int(words[0] or "0", 16) != 0

    async def health_check(self) -> bool:
        try:
            await self.get_now_block()
            return True
        except TronGridError:
            return False

    async def aclose(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
