# predblink/errors.py
from typing import Optional


class IndexerError(Exception):
    """Base class for every error raised by the indexer core."""


class RpcError(IndexerError):
    """Transport failure, timeout or JSON-RPC error payload."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class DecodeError(IndexerError):
    """Malformed log data for a recognized event shape."""


class StoreError(IndexerError):
    """Storage unavailable or a constraint violation other than a duplicate key."""


class ValidationError(IndexerError):
    """Bad user-supplied path parameter."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
