"""Canonical data models shared by the sync engine and the store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import base58

ETH_ADDRESS_HEX_LEN = 40
TRON_ADDRESS_PREFIX = "41"


class Network(str, Enum):
    """Ledgers the harvester knows how to read."""

    ETHEREUM = "ETHEREUM"
    TRON = "TRON"


class Direction(str, Enum):
    """Whether an event adds an address to, or removes it from, a denylist."""

    ADD = "add"
    REMOVE = "remove"

    @property
    def is_blacklisted(self) -> bool:
        return self is Direction.ADD


class InvalidAddressError(ValueError):
    """Raised when an address cannot be converted to its canonical form."""


def _strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def _is_hex(value: str) -> bool:
    try:
        int(value, 16)
    except ValueError:
        return False
    return True


def canonical_address(address: str, network: Network | str) -> str:
    """Return the canonical storage form of an address.

    Ethereum addresses become ``0x`` + 40 lowercase hex characters. TRON
    addresses become ``41`` + 40 lowercase hex characters; base58 ``T...``
    addresses and ``0x``-prefixed 20-byte hex are both accepted.

    Raises:
        InvalidAddressError: If the value is not a recognizable address.
    """
    network = Network(network)
    value = address.strip()
    if not value:
        raise InvalidAddressError("empty address")

    if network is Network.ETHEREUM:
        body = _strip_hex_prefix(value).lower()
        if len(body) != ETH_ADDRESS_HEX_LEN or not _is_hex(body):
            raise InvalidAddressError(f"not an Ethereum address: {address!r}")
        return "0x" + body

    if value.startswith("T"):
        try:
            raw = base58.b58decode_check(value)
        except ValueError as e:
            raise InvalidAddressError(f"bad base58 TRON address: {address!r}") from e
        if len(raw) != 21 or raw[0] != 0x41:
            raise InvalidAddressError(f"not a TRON address: {address!r}")
        return raw.hex()

    body = _strip_hex_prefix(value).lower()
    if len(body) == ETH_ADDRESS_HEX_LEN + 2 and body.startswith(TRON_ADDRESS_PREFIX):
        body = body[2:]
    if len(body) != ETH_ADDRESS_HEX_LEN or not _is_hex(body):
        raise InvalidAddressError(f"not a TRON address: {address!r}")
    return TRON_ADDRESS_PREFIX + body


def lookup_address(address: str) -> str:
    """Best-effort canonical form for a user-supplied address of unknown network."""
    value = address.strip()
    if value.startswith("T") and len(value) == 34:
        return canonical_address(value, Network.TRON)
    return value.lower()


def tron_base58(address_hex: str) -> str:
    """Render a canonical TRON hex address as base58check."""
    return base58.b58encode_check(bytes.fromhex(canonical_address(address_hex, Network.TRON))).decode()


@dataclass(frozen=True)
class BlacklistEvent:
    """A normalized denylist event, ready to be reduced into a record write."""

    address: str
    token: str
    network: Network
    direction: Direction
    block_number: int
    transaction_hash: str
    timestamp: int
    log_index: int = 0

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.address, self.token, self.network.value)

    @property
    def position(self) -> tuple[int, int]:
        """Chain order of the event: block first, then index inside the block."""
        return (self.block_number, self.log_index)

    @property
    def is_blacklisted(self) -> bool:
        return self.direction.is_blacklisted


@dataclass(frozen=True)
class RawEvent:
    """Provider-native event entry plus the chain time resolved for it.

    ``payload`` is left exactly as the provider returned it (a web3 log
    dict on Ethereum, a TronGrid event object on TRON).
    """

    network: Network
    payload: Mapping[str, Any] = field(repr=False)
    timestamp: int | None = None
