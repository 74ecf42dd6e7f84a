"""Stablecoin denylist harvester.

Synchronizes USDT/USDC blacklist events from Ethereum and TRON into a
queryable table of currently denylisted addresses.
"""

__version__ = "0.1.0"
