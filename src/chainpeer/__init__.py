"""
chainpeer package.

Query blocks, header ranges and the mempool of a Bitcoin SV node over its
P2P and JSON-RPC interfaces.
"""

from .client import ChainClient
from .config import CacheConfig, ClientConfig, PeerConfig, RpcConfig
from .errors import (
    CacheError,
    ChainPeerError,
    ConfigError,
    ConnectionFailure,
    ParseError,
    ProtocolViolation,
    RequestTimeoutError,
    RpcError,
    TransportError,
    UnsupportedOperation,
)
from .models import BlockHeader, BlockResult, HeaderQuery, MempoolResult

__all__ = [
    "ChainClient",
    "ClientConfig",
    "RpcConfig",
    "PeerConfig",
    "CacheConfig",
    "BlockHeader",
    "BlockResult",
    "HeaderQuery",
    "MempoolResult",
    "ChainPeerError",
    "CacheError",
    "ConfigError",
    "TransportError",
    "ConnectionFailure",
    "RequestTimeoutError",
    "RpcError",
    "ProtocolViolation",
    "ParseError",
    "UnsupportedOperation",
]
__version__ = "0.1.0"
