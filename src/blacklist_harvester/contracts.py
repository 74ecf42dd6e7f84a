"""Contract layouts: which events each stablecoin emits and how to read them.

Each (network, token) pair maps to a ``ContractLayout`` listing its event
kinds. A kind carries the direction it represents and the rule used to pull
the affected address out of the raw event, so a single generic normalizer can
handle every token without per-token branching.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from web3 import Web3

from blacklist_harvester.models import Direction, Network

if TYPE_CHECKING:
    from blacklist_harvester.config import Settings

# Deployment blocks; nothing earlier can hold a blacklist event.
USDT_DEPLOYMENT_BLOCK = 4_634_748
USDC_DEPLOYMENT_BLOCK = 6_082_465


def event_topic(signature: str) -> str:
    """Return the 0x-prefixed keccak256 topic for an event signature."""
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


class AddressRule(str, Enum):
    """Where the denylisted address lives inside a raw event."""

    # Trailing 20 bytes of the unindexed data payload.
    DATA_TAIL = "data_tail"
    # Trailing 20 bytes of an indexed topic.
    TOPIC = "topic"
    # A field of an indexer's decoded event result.
    RESULT_FIELD = "result_field"


@dataclass(frozen=True)
class EventKind:
    """One event signature of a contract and how to interpret it."""

    name: str
    signature: str
    direction: Direction
    rule: AddressRule
    topic_index: int = 1
    result_fields: tuple[str, ...] = ("_user", "0")


@dataclass(frozen=True)
class ContractLayout:
    """Event layout for one token contract on one network.

    ``origin`` is the first position worth scanning: the deployment block on
    Ethereum. TRON layouts leave it at 0 and rely on the configured initial
    lookback instead.
    """

    network: Network
    token: str
    address: str
    kinds: tuple[EventKind, ...]
    origin: int = 0

    def kind_for(self, signature: str) -> EventKind | None:
        needle = signature.lower()
        for kind in self.kinds:
            if kind.signature.lower() == needle:
                return kind
        return None

    @property
    def signatures(self) -> list[str]:
        return [kind.signature for kind in self.kinds]

    @property
    def label(self) -> str:
        return f"{self.network.value}/{self.token}"


def _log_kind(name: str, direction: Direction, rule: AddressRule) -> EventKind:
    signature = f"{name}(address)"
    return EventKind(name=name, signature=event_topic(signature), direction=direction, rule=rule)


def ethereum_usdt_layout(address: str) -> ContractLayout:
    # USDT does not index the address; it is the whole data word.
    return ContractLayout(
        network=Network.ETHEREUM,
        token="USDT",
        address=address,
        origin=USDT_DEPLOYMENT_BLOCK,
        kinds=(
            _log_kind("AddedBlackList", Direction.ADD, AddressRule.DATA_TAIL),
            _log_kind("RemovedBlackList", Direction.REMOVE, AddressRule.DATA_TAIL),
        ),
    )


def ethereum_usdc_layout(address: str) -> ContractLayout:
    # USDC indexes the address as topics[1].
    return ContractLayout(
        network=Network.ETHEREUM,
        token="USDC",
        address=address,
        origin=USDC_DEPLOYMENT_BLOCK,
        kinds=(
            _log_kind("Blacklisted", Direction.ADD, AddressRule.TOPIC),
            _log_kind("UnBlacklisted", Direction.REMOVE, AddressRule.TOPIC),
        ),
    )


def tron_usdt_layout(address: str) -> ContractLayout:
    return ContractLayout(
        network=Network.TRON,
        token="USDT",
        address=address,
        kinds=(
            EventKind(
                name="AddedBlackList",
                signature="AddedBlackList",
                direction=Direction.ADD,
                rule=AddressRule.RESULT_FIELD,
            ),
            EventKind(
                name="RemovedBlackList",
                signature="RemovedBlackList",
                direction=Direction.REMOVE,
                rule=AddressRule.RESULT_FIELD,
            ),
        ),
    )


def build_layouts(settings: Settings) -> dict[Network, list[ContractLayout]]:
    """Build the configured contract layouts, grouped by network."""
    layouts: dict[Network, list[ContractLayout]] = {Network.ETHEREUM: [], Network.TRON: []}

    eth = settings.ethereum
    if eth.usdt_contract:
        layouts[Network.ETHEREUM].append(ethereum_usdt_layout(eth.usdt_contract))
    if eth.usdc_contract:
        layouts[Network.ETHEREUM].append(ethereum_usdc_layout(eth.usdc_contract))

    tron = settings.tron
    if tron.usdt_contract:
        layouts[Network.TRON].append(tron_usdt_layout(tron.usdt_contract))

    return layouts
