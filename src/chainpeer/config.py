#!/usr/bin/env python3
"""Configuration management for chainpeer.

This module provides type-safe configuration dataclasses with validation
for the chainpeer client. Configuration is loaded from environment variables
or from a nested mapping, with sensible defaults where appropriate.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar
from urllib.parse import urlunparse

from .errors import ConfigError

# Get logger for this module
logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RpcConfig:
    """Configuration for the node's JSON-RPC endpoint.

    Attributes:
        user: RPC username
        password: RPC password
        host: RPC host
        port: RPC port
        protocol: URL scheme (http or https)
        timeout: HTTP request timeout in seconds
    """

    user: str
    password: str
    host: str = "127.0.0.1"
    port: int = 8332
    protocol: str = "http"
    timeout: float = 30.0

    def __post_init__(self) -> None:
        """Validate RPC configuration."""
        # Credentials are mandatory, nothing is attempted without them
        if not self.user or not self.password:
            raise ConfigError(
                "RPC credentials are required (pass 'rpc.user' and 'rpc.pass', "
                "or set RPC_USER and RPC_PASSWORD)"
            )

        if self.protocol not in ("http", "https"):
            raise ConfigError(
                f"Invalid RPC protocol: {self.protocol}. Expected http or https"
            )

        if not 0 < int(self.port) < 65536:
            raise ConfigError(f"Invalid RPC port: {self.port}")

        if self.timeout <= 0:
            raise ConfigError(f"RPC timeout must be positive, got {self.timeout}")

    @property
    def url(self) -> str:
        return urlunparse((self.protocol, f"{self.host}:{self.port}", "/", "", "", ""))


@dataclass(frozen=True, slots=True)
class PeerConfig:
    """Configuration for the upstream P2P peer.

    Attributes:
        host: Peer host
        port: Peer port (defaults to the network's standard port)
        network: Network name
        magic: Message start bytes as hex (defaults to the network's magic)
        protocol_version: Protocol version announced in the version message
        user_agent: User agent announced in the version message
        connect_timeout: Seconds to wait for the TCP connection and handshake
    """

    host: str = "127.0.0.1"
    port: int | None = None
    network: str = "mainnet"
    magic: str | None = None
    protocol_version: int = 70015
    user_agent: str = "/chainpeer:0.1.0/"
    connect_timeout: float = 30.0

    # Standard magic bytes and ports per network
    SUPPORTED_NETWORKS: ClassVar[dict[str, tuple[str, int]]] = {
        "mainnet": ("e3e1f3e8", 8333),
        "testnet": ("f4e5f3f4", 18333),
        "regtest": ("dab5bffa", 18444),
        "stn": ("fbcec4f9", 9333),
    }

    def __post_init__(self) -> None:
        """Validate peer configuration."""
        if self.network not in self.SUPPORTED_NETWORKS:
            raise ConfigError(
                f"Unsupported network: {self.network}. "
                f"Supported networks: {', '.join(sorted(self.SUPPORTED_NETWORKS))}"
            )

        default_magic, default_port = self.SUPPORTED_NETWORKS[self.network]
        if self.port is None:
            object.__setattr__(self, "port", default_port)
        if self.magic is None:
            object.__setattr__(self, "magic", default_magic)

        try:
            magic_bytes = bytes.fromhex(self.magic)
        except ValueError:
            raise ConfigError(f"Invalid peer magic: {self.magic}") from None
        if len(magic_bytes) != 4:
            raise ConfigError(
                f"Peer magic must be 4 bytes (8 hex characters), got {self.magic}"
            )

        if not 0 < int(self.port) < 65536:
            raise ConfigError(f"Invalid peer port: {self.port}")

    @property
    def magic_bytes(self) -> bytes:
        return bytes.fromhex(self.magic)


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the on-disk chain cache.

    Attributes:
        enabled: Whether fetched blocks and mempool snapshots are cached
        path: Cache directory
        prune: Number of block entries to retain (None keeps everything)
    """

    enabled: bool = False
    path: Path = field(default_factory=lambda: Path.cwd() / "chain")
    prune: int | None = None

    def __post_init__(self) -> None:
        """Validate cache configuration."""
        if not isinstance(self.path, Path):
            object.__setattr__(self, "path", Path(self.path))
        if self.prune is not None and self.prune < 1:
            raise ConfigError(f"Cache prune count must be at least 1, got {self.prune}")


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Main configuration for a chainpeer client.

    Attributes:
        rpc: JSON-RPC endpoint settings
        peer: P2P peer settings
        cache: Chain cache settings
        request_timeout: Deadline in seconds for each one-shot request
    """

    rpc: RpcConfig
    peer: PeerConfig = field(default_factory=PeerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    request_timeout: float = 120.0

    def __post_init__(self) -> None:
        if self.request_timeout <= 0:
            raise ConfigError(
                f"Request timeout must be positive, got {self.request_timeout}"
            )

    @classmethod
    def from_mapping(cls, options: Mapping[str, Any]) -> "ClientConfig":
        """Build configuration from a nested mapping.

        Accepts ``{"rpc": {...}, "peer": {...}, "chain": {...}}``. The
        presence of a ``chain`` section enables the cache.

        Args:
            options: Nested configuration mapping

        Returns:
            ClientConfig instance

        Raises:
            ConfigError: If the RPC credentials are missing or a value is invalid
        """
        rpc_opts = dict(options.get("rpc") or {})
        if "pass" in rpc_opts:
            rpc_opts["password"] = rpc_opts.pop("pass")
        if not rpc_opts.get("user") or not rpc_opts.get("password"):
            raise ConfigError(
                "RPC credentials are required (pass 'rpc.user' and 'rpc.pass')"
            )
        rpc = RpcConfig(**rpc_opts)

        peer = PeerConfig(**dict(options.get("peer") or {}))

        chain_opts = options.get("chain")
        if chain_opts is None:
            cache = CacheConfig()
        else:
            chain_opts = dict(chain_opts)
            cache = CacheConfig(
                enabled=chain_opts.get("enabled", True),
                path=Path(chain_opts.get("path") or Path.cwd() / "chain"),
                prune=chain_opts.get("prune"),
            )

        kwargs: dict[str, Any] = {}
        if "request_timeout" in options:
            kwargs["request_timeout"] = float(options["request_timeout"])

        return cls(rpc=rpc, peer=peer, cache=cache, **kwargs)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Load configuration from environment variables.

        Returns:
            ClientConfig instance with loaded values

        Raises:
            ConfigError: If required environment variables are missing or invalid
        """
        rpc_user = os.environ.get("RPC_USER", "")
        rpc_password = os.environ.get("RPC_PASSWORD", "")
        if not rpc_user or not rpc_password:
            raise ConfigError(
                "RPC_USER and RPC_PASSWORD environment variables are required."
            )

        try:
            rpc = RpcConfig(
                user=rpc_user,
                password=rpc_password,
                host=os.environ.get("RPC_HOST", "127.0.0.1"),
                port=int(os.environ.get("RPC_PORT", "8332")),
                protocol=os.environ.get("RPC_PROTOCOL", "http"),
            )

            peer_port = os.environ.get("PEER_PORT")
            peer = PeerConfig(
                host=os.environ.get("PEER_HOST", "127.0.0.1"),
                port=int(peer_port) if peer_port else None,
                network=os.environ.get("NETWORK", "mainnet"),
                magic=os.environ.get("PEER_MAGIC") or None,
            )

            cache_path = os.environ.get("CACHE_PATH")
            cache_prune = os.environ.get("CACHE_PRUNE")
            cache = CacheConfig(
                enabled=bool(cache_path or cache_prune),
                path=Path(cache_path) if cache_path else Path.cwd() / "chain",
                prune=int(cache_prune) if cache_prune else None,
            )

            request_timeout = float(os.environ.get("REQUEST_TIMEOUT", "120"))
        except ConfigError:
            raise
        except ValueError as e:
            raise ConfigError(f"Invalid numeric setting: {e}") from None

        return cls(rpc=rpc, peer=peer, cache=cache, request_timeout=request_timeout)

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("chainpeer Configuration")
        logger.info("=" * 60)

        logger.info("RPC:")
        logger.info(f"  URL: {self.rpc.url}")
        logger.info(f"  User: {self.rpc.user}")
        logger.info("  Password: [CONFIGURED]")

        logger.info("Peer:")
        logger.info(f"  Address: {self.peer.host}:{self.peer.port}")
        logger.info(f"  Network: {self.peer.network} (magic {self.peer.magic})")

        logger.info("Cache:")
        if self.cache.enabled:
            logger.info(f"  Path: {self.cache.path}")
            logger.info(f"  Prune: {self.cache.prune if self.cache.prune else 'disabled'}")
        else:
            logger.info("  Disabled")

        logger.info(f"Request Timeout: {self.request_timeout} seconds")
        logger.info("=" * 60)
