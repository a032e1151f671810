import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .cache import ChainCache
from .config import ClientConfig
from .correlator import RequestCorrelator, RequestKind
from .errors import UnsupportedOperation
from .models import BlockHeader, BlockResult, HeaderQuery, MempoolResult
from .pipeline import TransformPipeline
from .resolver import BlockResolver
from .utils.peer_utility import PeerConnection
from .utils.rpc_utility import NodeRpc

# Get logger for this module
logger = logging.getLogger(__name__)


class ChainClient:
    """
    Query client for a Bitcoin SV node.

    Fetches blocks, header ranges and the mempool over the node's P2P
    interface, answers chain info and RPC passthrough calls over JSON-RPC,
    and delivers newly arriving blocks and mempool transactions to
    subscribers.
    """

    def __init__(
        self,
        config: ClientConfig | Mapping[str, Any],
        peer: PeerConnection | None = None,
        rpc: NodeRpc | None = None,
    ) -> None:
        """
        Initialize the ChainClient with configuration.

        :param config: Client configuration, or the nested ``{"rpc", "peer", "chain"}`` mapping
        :param peer: Peer connection to use instead of one built from the configuration
        :param rpc: RPC client to use instead of one built from the configuration
        :raises ConfigError: If the RPC credentials are missing or a setting is invalid
        """
        if not isinstance(config, ClientConfig):
            config = ClientConfig.from_mapping(config)
        self.config = config
        self.config.log_config()

        self.rpc = rpc or NodeRpc(config.rpc)
        self.peer = peer or PeerConnection(config.peer)
        self.pipeline = TransformPipeline()

        self.cache: ChainCache | None = None
        if config.cache.enabled:
            logger.debug(f"Initializing chain cache at {config.cache.path}")
            self.cache = ChainCache(config.cache.path, prune=config.cache.prune)

        self.resolver = BlockResolver(self.rpc)
        self.correlator = RequestCorrelator(
            peer=self.peer,
            rpc=self.rpc,
            pipeline=self.pipeline,
            cache=self.cache,
            resolver=self.resolver,
            request_timeout=config.request_timeout,
        )

        self._ready = asyncio.Event()
        self.peer.on("ready", self._ready.set)
        logger.info(f"ChainClient initialized (peer {config.peer.host}:{config.peer.port}, network {config.peer.network})")

    async def __aenter__(self) -> "ChainClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def connect(self) -> None:
        """Connect to the peer and complete the handshake."""
        await self.peer.connect()

    async def wait_ready(self) -> None:
        """Wait until the peer handshake has completed."""
        await self._ready.wait()

    async def close(self) -> None:
        """Close the peer connection."""
        self.correlator.log_metrics()
        await self.peer.close()

    async def get(self, kind: str, *args: Any) -> Any:
        """
        Run a query.

        - ``get("block", id)``: BlockResult for a height, hash or header
        - ``get("header", {"from": .., "to": .., "at": ..})``: list of BlockHeader
        - ``get("mempool")``: MempoolResult
        - ``get("info")``: ``getblockchaininfo`` result
        - ``get("rpc", method, *params)``: any known RPC method

        :raises UnsupportedOperation: For unknown kinds or RPC methods
        """
        match kind:
            case "block":
                return await self.block(*args)
            case "header":
                return await self.header(*args)
            case "mempool":
                return await self.mempool()
            case "info":
                return await self.rpc.get_blockchain_info()
            case "rpc":
                if not args:
                    raise UnsupportedOperation("get('rpc') needs a method name")
                return await self.rpc.passthrough(args[0], *args[1:])
            case _:
                raise UnsupportedOperation(f"No such query: {kind}")

    async def block(self, block_id: int | str | BlockHeader) -> BlockResult:
        return await self.correlator.issue(RequestKind.BLOCK, block_id=block_id)

    async def header(self, query: HeaderQuery | Mapping[str, Any]) -> list[BlockHeader]:
        if not isinstance(query, HeaderQuery):
            query = HeaderQuery.from_mapping(query)
        return await self.correlator.issue(RequestKind.HEADER, query=query)

    async def mempool(self) -> MempoolResult:
        return await self.correlator.issue(RequestKind.MEMPOOL)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """
        Register a callback for ``ready``, ``block`` or ``mempool``.

        Block callbacks receive a BlockResult; mempool callbacks receive
        each processed transaction record. Coroutine functions are run as
        tasks.
        """
        match event:
            case "ready":
                self.peer.on("ready", callback)
                if self.peer.is_ready:
                    result = callback()
                    if inspect.isawaitable(result):
                        self.correlator.schedule(result)
            case "block" | "mempool":
                self.correlator.subscribe(event, callback)
            case _:
                raise UnsupportedOperation(f"No such event: {event}")

    def use(self, name: str, fn: Any, arg: Any = None) -> None:
        """
        Configure the transform pipeline.

        - ``use("parse", "raw" | "hex" | "txo" | "bpu" | "bob" | callable, arg)``
        - ``use("filter", fn)``
        - ``use("map", fn)``
        """
        match name:
            case "parse":
                self.pipeline.use_parse(fn, arg)
            case "filter":
                self.pipeline.use_filter(fn)
            case "map":
                self.pipeline.use_map(fn)
            case _:
                raise UnsupportedOperation(f"No such pipeline stage: {name}")

    def invalidate(self, target: Mapping[str, Any]) -> list[int]:
        """Delete cached blocks: ``{"at": n}``, ``{"from": a}`` or ``{"from": a, "to": b}``."""
        cache = self._require_cache()
        return cache.invalidate(at=target.get("at"), from_=target.get("from"), to=target.get("to"))

    def prune(self, count: int | None = None) -> int:
        """Keep only the ``count`` most recent cached blocks (default: configured retention).

        :raises ValueError: If ``count`` is less than 1
        """
        return self._require_cache().prune(count)

    def _require_cache(self) -> ChainCache:
        if self.cache is None:
            raise UnsupportedOperation("The chain cache is not enabled (configure a 'chain' section)")
        return self.cache
