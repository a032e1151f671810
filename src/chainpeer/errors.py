"""Exception hierarchy for chainpeer."""


class ChainPeerError(Exception):
    """Base exception for all chainpeer errors."""


class ConfigError(ChainPeerError, ValueError):
    """Raised when required settings are missing or invalid."""


class TransportError(ChainPeerError):
    """Raised when the RPC endpoint or the peer connection fails."""


class ConnectionFailure(TransportError):
    """Raised for a pending request when the peer disconnects or errors."""


class RequestTimeoutError(TransportError):
    """Raised when a one-shot request misses its deadline."""

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        self.kind = kind


class RpcError(TransportError):
    """Raised when the node answers a JSON-RPC call with an error object."""

    def __init__(self, message: str, code: int | None = None, method: str | None = None):
        super().__init__(message)
        self.code = code
        self.method = method


class ProtocolViolation(ChainPeerError):
    """Raised when the peer sends a message that does not fit the active request."""


class ParseError(ChainPeerError):
    """Raised when a parse strategy fails on a transaction."""

    def __init__(self, message: str, txid: str | None = None):
        super().__init__(message)
        self.txid = txid


class UnsupportedOperation(ChainPeerError):
    """Raised for unknown RPC methods, query kinds, strategies or events."""


class CacheError(ChainPeerError):
    """Raised when a cached entry was rewritten or removed under a stream reading it."""
