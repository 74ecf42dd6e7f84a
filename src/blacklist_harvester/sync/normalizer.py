"""Turn provider-native events into canonical ``BlacklistEvent`` values.

One generic function serves every token: the contract layout says which
event kinds exist, which direction each one means and where the address
lives. Anything that does not fit the layout raises ``MalformedEventError``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from web3 import Web3

from blacklist_harvester.contracts import AddressRule, ContractLayout, EventKind
from blacklist_harvester.models import (
    BlacklistEvent,
    InvalidAddressError,
    Network,
    RawEvent,
    canonical_address,
)
from blacklist_harvester.sync.errors import MalformedEventError

WORD_BYTES = 32
ADDRESS_BYTES = 20


def _to_bytes(value: Any, what: str) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        body = value[2:] if value[:2].lower() == "0x" else value
        try:
            return bytes.fromhex(body)
        except ValueError as e:
            raise MalformedEventError(f"{what} is not hex: {value!r:.80}") from e
    raise MalformedEventError(f"{what} has unexpected type {type(value).__name__}")


def _to_hex(value: Any, what: str) -> str:
    return Web3.to_hex(_to_bytes(value, what)).lower()


def _require(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None:
        raise MalformedEventError(f"event is missing {key!r}")
    return value


def _address_from_word(word: bytes, what: str) -> str:
    if len(word) < ADDRESS_BYTES:
        raise MalformedEventError(f"{what} is {len(word)} bytes, too short for an address")
    return "0x" + word[-ADDRESS_BYTES:].hex()


def _log_address(payload: Mapping[str, Any], topics: Sequence[Any], kind: EventKind) -> str:
    if kind.rule is AddressRule.DATA_TAIL:
        data = _to_bytes(_require(payload, "data"), "data")
        if len(data) < WORD_BYTES:
            raise MalformedEventError(f"data is {len(data)} bytes, expected at least {WORD_BYTES}")
        return _address_from_word(data[:WORD_BYTES], "data")

    if kind.rule is AddressRule.TOPIC:
        if len(topics) <= kind.topic_index:
            raise MalformedEventError(f"{kind.name} log has no topics[{kind.topic_index}]")
        return _address_from_word(_to_bytes(topics[kind.topic_index], "topic"), "topic")

    raise MalformedEventError(f"address rule {kind.rule.value} does not apply to log events")


def _normalize_log(raw: RawEvent, layout: ContractLayout) -> BlacklistEvent:
    payload = raw.payload
    topics = payload.get("topics") or []
    if not topics:
        raise MalformedEventError("log has no topics")

    topic0 = _to_hex(topics[0], "topics[0]")
    kind = layout.kind_for(topic0)
    if kind is None:
        raise MalformedEventError(f"unknown event signature {topic0} for {layout.label}")

    if raw.timestamp is None:
        raise MalformedEventError("log has no resolved block timestamp")

    address = _log_address(payload, topics, kind)
    try:
        return BlacklistEvent(
            address=canonical_address(address, Network.ETHEREUM),
            token=layout.token,
            network=layout.network,
            direction=kind.direction,
            block_number=int(_require(payload, "blockNumber")),
            transaction_hash=_to_hex(_require(payload, "transactionHash"), "transactionHash"),
            timestamp=int(raw.timestamp),
            log_index=int(payload.get("logIndex") or 0),
        )
    except (InvalidAddressError, TypeError, ValueError) as e:
        raise MalformedEventError(f"bad log field: {e}") from e


def _normalize_indexed(raw: RawEvent, layout: ContractLayout) -> BlacklistEvent:
    payload = raw.payload
    name = _require(payload, "event_name")
    kind = layout.kind_for(str(name))
    if kind is None:
        raise MalformedEventError(f"unknown event {name!r} for {layout.label}")
    if kind.rule is not AddressRule.RESULT_FIELD:
        raise MalformedEventError(f"address rule {kind.rule.value} does not apply to indexed events")

    result = payload.get("result")
    if not isinstance(result, Mapping):
        raise MalformedEventError("event has no decoded result")
    address = next((result[f] for f in kind.result_fields if result.get(f)), None)
    if address is None:
        raise MalformedEventError(f"event result has none of {list(kind.result_fields)}")

    try:
        timestamp = raw.timestamp
        if timestamp is None:
            timestamp = int(_require(payload, "block_timestamp")) // 1000
        tx = str(_require(payload, "transaction_id")).lower()
        return BlacklistEvent(
            address=canonical_address(str(address), Network.TRON),
            token=layout.token,
            network=layout.network,
            direction=kind.direction,
            block_number=int(_require(payload, "block_number")),
            transaction_hash=tx[2:] if tx.startswith("0x") else tx,
            timestamp=int(timestamp),
            log_index=int(payload.get("event_index") or 0),
        )
    except (InvalidAddressError, TypeError, ValueError) as e:
        raise MalformedEventError(f"bad event field: {e}") from e


def normalize(raw: RawEvent, layout: ContractLayout) -> BlacklistEvent:
    """Convert one raw event into a ``BlacklistEvent``.

    Raises:
        MalformedEventError: If the event does not match the layout.
    """
    if raw.network is not layout.network:
        raise MalformedEventError(
            f"{raw.network.value} event cannot be read with the {layout.label} layout"
        )
    if layout.network is Network.ETHEREUM:
        return _normalize_log(raw, layout)
    return _normalize_indexed(raw, layout)


def normalize_all(raws: Sequence[RawEvent], layout: ContractLayout) -> list[BlacklistEvent]:
    """Normalize a window's events; the first malformed one aborts the batch."""
    return [normalize(raw, layout) for raw in raws]
