"""On-chain spot checks of the stored denylist.

Samples stored records and asks each token contract whether the address is
currently denylisted, reporting where the database and the chain disagree.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from blacklist_harvester.chains.errors import FetchError
from blacklist_harvester.models import Network, tron_base58

if TYPE_CHECKING:
    from blacklist_harvester.chains.ethereum import EthereumClient
    from blacklist_harvester.chains.tron import TronGridClient
    from blacklist_harvester.contracts import ContractLayout
    from blacklist_harvester.storage.repos import BlacklistRecordDTO
    from blacklist_harvester.storage.store import DenylistStore

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 50
DEFAULT_DELAY_SECONDS = 0.2


@dataclass
class Mismatch:
    address: str
    token: str
    network: str
    db_status: bool
    chain_status: bool


@dataclass
class ValidationReport:
    """Result of a sample validation run."""

    total: int = 0
    validated: int = 0
    matches: int = 0
    mismatches: list[Mismatch] = field(default_factory=list)
    errors: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def accuracy(self) -> float:
        """Share of validated records whose stored status matches the chain."""
        return self.matches / self.validated if self.validated else 0.0


class DenylistValidator:
    """Compares stored status with the live contract view functions."""

    def __init__(
        self,
        store: DenylistStore,
        layouts: Sequence[ContractLayout],
        *,
        eth_client: EthereumClient | None = None,
        tron_client: TronGridClient | None = None,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._layouts = {(layout.network, layout.token): layout for layout in layouts}
        self._eth = eth_client
        self._tron = tron_client
        self._delay = delay_seconds
        self._rng = rng or random.Random()

    async def chain_status(self, record: BlacklistRecordDTO) -> bool:
        """Query the contract for one record's current on-chain status."""
        network = Network(record.network)
        layout = self._layouts.get((network, record.token))
        if layout is None:
            raise ValueError(f"No contract configured for {record.network}/{record.token}")

        if network is Network.ETHEREUM:
            if self._eth is None:
                raise ValueError("Ethereum client not configured")
            return await self._eth.is_blacklisted(record.token, layout.address, record.address)

        if self._tron is None:
            raise ValueError("TronGrid client not configured")
        return await self._tron.is_blacklisted(layout.address, tron_base58(record.address))

    async def validate_sample(self, sample_size: int = DEFAULT_SAMPLE_SIZE) -> ValidationReport:
        """Validate a random sample of currently denylisted records."""
        records = await self._store.list_blacklisted()
        sample = self._rng.sample(records, k=min(sample_size, len(records)))
        logger.info("Validating random sample of %d addresses...", len(sample))
        return await self.validate_records(sample)

    async def validate_records(self, records: Sequence[BlacklistRecordDTO]) -> ValidationReport:
        report = ValidationReport(total=len(records))
        for i, record in enumerate(records):
            try:
                on_chain = await self.chain_status(record)
            except (FetchError, ValueError) as e:
                logger.warning("Could not validate %s %s/%s: %s", record.address, record.network, record.token, e)
                report.errors.append((record.address, record.token, record.network))
            else:
                report.validated += 1
                if on_chain == record.is_blacklisted:
                    report.matches += 1
                else:
                    report.mismatches.append(
                        Mismatch(
                            address=record.address,
                            token=record.token,
                            network=record.network,
                            db_status=record.is_blacklisted,
                            chain_status=on_chain,
                        )
                    )
            if self._delay > 0 and i < len(records) - 1:
                await asyncio.sleep(self._delay)

        logger.info(
            "Validation complete: %d/%d validated, accuracy %.2f%%, %d mismatches, %d errors",
            report.validated,
            report.total,
            report.accuracy * 100,
            len(report.mismatches),
            len(report.errors),
        )
        return report
