"""Errors shared by the chain clients and the event sources built on them."""


class FetchError(Exception):
    """Raised when a provider request fails (transport or provider-side)."""


class RangeLimitError(FetchError):
    """Raised when a query spans more blocks or results than the provider allows."""
