"""Chain RPC and indexer clients."""

from blacklist_harvester.chains.errors import FetchError, RangeLimitError
from blacklist_harvester.chains.ethereum import EthereumClient, EthereumClientError, RPCError
from blacklist_harvester.chains.tron import TronGridClient, TronGridError

__all__ = [
    "EthereumClient",
    "EthereumClientError",
    "FetchError",
    "RPCError",
    "RangeLimitError",
    "TronGridClient",
    "TronGridError",
]
