"""
Request correlation for peer events.

Peer messages arrive unsolicited and interleaved. The correlator keeps the
single active one-shot request and the persistent subscriptions, and
routes every headers, inv, tx and block event to whichever of them it
belongs to.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from bitcoin.core import CBlock, CTransaction, b2lx

from .cache import MEMPOOL_KEY, ChainCache
from .errors import ChainPeerError, ConnectionFailure, ProtocolViolation, RequestTimeoutError, TransportError
from .headers import HeaderPaginator, Step
from .mempool import MempoolCollector
from .models import BlockHeader, BlockRef, BlockResult, HeaderQuery, MempoolResult
from .pipeline import TransformPipeline
from .resolver import BlockResolver
from .utils.peer_utility import MSG_BLOCK, MSG_TX
from .utils.rpc_utility import NodeRpc

logger = logging.getLogger(__name__)


class RequestKind(Enum):
    NONE = "none"
    HEADER = "header"
    BLOCK = "block"
    MEMPOOL = "mempool"


@dataclass
class RequestContext:
    """The active one-shot request, if any."""

    kind: RequestKind = RequestKind.NONE
    future: asyncio.Future | None = None
    target: BlockHeader | None = None

    @property
    def active(self) -> bool:
        return self.kind != RequestKind.NONE and self.future is not None and not self.future.done()

    def resolve(self, value: Any) -> None:
        if self.future is not None and not self.future.done():
            self.future.set_result(value)

    def reject(self, error: BaseException) -> None:
        if self.future is not None and not self.future.done():
            self.future.set_exception(error)


@dataclass
class SubscriptionSet:
    """Persistent callbacks, kept across one-shot requests."""

    block: list[Callable[..., Any]] = field(default_factory=list)
    mempool: list[Callable[..., Any]] = field(default_factory=list)

    def add(self, kind: str, callback: Callable[..., Any]) -> None:
        getattr(self, kind).append(callback)

    def has(self, kind: str) -> bool:
        return bool(getattr(self, kind))


class RequestCorrelator:
    """
    Routes peer events to the active request and to subscriptions.

    One-shot requests are serialized: a second ``issue`` waits until the
    first has settled. Each one settles exactly once, with its result, a
    timeout, or a connection failure.
    """

    def __init__(
        self,
        peer,
        rpc: NodeRpc,
        pipeline: TransformPipeline,
        cache: ChainCache | None = None,
        resolver: BlockResolver | None = None,
        request_timeout: float = 120.0,
    ) -> None:
        """Initialize the correlator and register its peer handlers.

        Args:
            peer: PeerConnection (or any object with the same ``on`` and
                request methods)
            rpc: RPC client for height and mempool lookups
            pipeline: Transform pipeline applied to delivered transactions
            cache: Chain cache, or None to keep results in memory
            resolver: Block resolver (created from ``rpc`` if omitted)
            request_timeout: Deadline in seconds for each one-shot request
        """
        self.peer = peer
        self.rpc = rpc
        self.pipeline = pipeline
        self.cache = cache
        self.resolver = resolver or BlockResolver(rpc)
        self.request_timeout = request_timeout

        self.context = RequestContext()
        self.subscriptions = SubscriptionSet()
        self.collector = MempoolCollector()
        self.paginator: HeaderPaginator | None = None

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

        # Metrics tracking
        self.events_routed = 0
        self.events_ignored = 0
        self.events_failed = 0
        self.requests_completed = 0
        self.requests_failed = 0

        peer.on("headers", self.on_headers)
        peer.on("inv", self.on_inv)
        peer.on("tx", self.on_tx)
        peer.on("block", self.on_block)
        peer.on("notfound", self.on_notfound)
        peer.on("reject", self.on_reject)
        peer.on("error", self.on_error)
        peer.on("disconnect", self.on_disconnect)

    # One-shot requests

    async def issue(self, kind: RequestKind, **params: Any) -> Any:
        """
        Run a one-shot request and wait for its result.

        Args:
            kind: HEADER (``query=HeaderQuery``), BLOCK (``block_id=...``)
                or MEMPOOL
            **params: Request parameters

        Raises:
            RequestTimeoutError: If the request misses its deadline
            ConnectionFailure: If the peer goes away while it is pending
        """
        async with self._lock:
            loop = asyncio.get_running_loop()
            self.context = RequestContext(kind=kind, future=loop.create_future())
            logger.debug(f"Issuing {kind.value} request")
            try:
                result = await asyncio.wait_for(self._run(kind, params), timeout=self.request_timeout)
            except asyncio.TimeoutError:
                self.requests_failed += 1
                raise RequestTimeoutError(
                    f"{kind.value} request timed out after {self.request_timeout} seconds",
                    kind=kind.value,
                ) from None
            except BaseException:
                self.requests_failed += 1
                raise
            finally:
                if kind == RequestKind.MEMPOOL:
                    self.collector.cancel()
                self.paginator = None
                self.context = RequestContext()

            self.requests_completed += 1
            return result

    async def _run(self, kind: RequestKind, params: dict[str, Any]) -> Any:
        future = self.context.future
        match kind:
            case RequestKind.HEADER:
                await self._start_header(params["query"])
            case RequestKind.BLOCK:
                await self._start_block(params["block_id"])
            case RequestKind.MEMPOOL:
                await self._start_mempool()
            case _:
                raise ValueError(f"Cannot issue request of kind {kind}")
        return await future

    async def _start_header(self, query: HeaderQuery) -> None:
        self.paginator = HeaderPaginator(self.resolver, self.peer)
        if await self.paginator.start(query) is Step.COMPLETE:
            self.context.resolve(await self.paginator.finish())

    async def _start_block(self, block_id: Any) -> None:
        block_hash, header = await self.resolver.resolve(block_id)
        if header.height is None:
            header = header.with_height(await self.resolver.height(block_hash))
        self.context.target = header

        if self.cache is not None:
            stream = self.cache.read(header.height, self.pipeline, BlockRef.from_header(header))
            if stream is not None:
                logger.debug(f"Block {header.height} served from cache")
                self.context.resolve(BlockResult(header=header, tx=stream))
                return

        await self.peer.get_block(block_hash)

    async def _start_mempool(self) -> None:
        # An empty mempool produces no inventory at all
        info = await self.rpc.call("getmempoolinfo")
        if isinstance(info, dict) and info.get("size") == 0:
            logger.debug("Mempool is empty")
            self.context.resolve(self._mempool_result([]))
            return

        self.collector.begin_snapshot()
        await self.peer.mempool()

    # Subscriptions

    def subscribe(self, kind: str, callback: Callable[..., Any]) -> None:
        """Register a persistent ``block`` or ``mempool`` callback."""
        if kind not in ("block", "mempool"):
            raise ValueError(f"Cannot subscribe to {kind}")
        self.subscriptions.add(kind, callback)
        logger.info(f"Subscribed to {kind} events")

    def _notify(self, kind: str, payload: Any) -> None:
        for callback in list(getattr(self.subscriptions, kind)):
            try:
                result = callback(payload)
            except Exception as e:
                logger.error(f"Error in {kind} subscriber: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self.schedule(result)

    def schedule(self, awaitable: Any) -> asyncio.Future:
        """Run a callback's awaitable as a task whose failure is logged."""
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Callback task failed: {task.exception()}", exc_info=task.exception())

    # Peer event handlers

    async def on_headers(self, wire_headers: list) -> None:
        if self.context.kind != RequestKind.HEADER or self.paginator is None or not self.context.active:
            self.events_ignored += 1
            logger.debug(f"Ignoring {len(wire_headers)} unsolicited headers")
            return

        self.events_routed += 1
        batch = [BlockHeader.from_wire(h) for h in wire_headers]
        try:
            step = await self.paginator.on_batch(batch)
            if step is Step.COMPLETE:
                self.context.resolve(await self.paginator.finish())
        except ProtocolViolation as e:
            self.events_ignored += 1
            logger.warning(f"Protocol violation: {e}")
        except Exception as e:
            self.events_failed += 1
            logger.error(f"Header request failed: {e}", exc_info=True)
            self.context.reject(e)

    async def on_inv(self, inventory: list) -> None:
        txids = [b2lx(inv.hash) for inv in inventory if inv.type == MSG_TX]
        blocks = [b2lx(inv.hash) for inv in inventory if inv.type == MSG_BLOCK]

        if txids or not blocks:
            completed = self.collector.on_inventory(txids)
            snapshot = self.context.kind == RequestKind.MEMPOOL and self.context.active
            if snapshot and completed:
                self._complete_mempool()
            elif snapshot or self.subscriptions.has("mempool"):
                self.events_routed += 1
                await self.peer.get_data([(MSG_TX, txid) for txid in txids])
            else:
                self.events_ignored += 1

        if blocks:
            if self.subscriptions.has("block"):
                self.events_routed += 1
                logger.info(f"New block announced: {blocks[-1]}")
                await self.peer.get_data([(MSG_BLOCK, block_hash) for block_hash in blocks])
            else:
                self.events_ignored += 1

    async def on_tx(self, tx: CTransaction) -> None:
        txid = b2lx(tx.GetTxid())
        routed = False

        if self.context.kind == RequestKind.MEMPOOL and self.context.active:
            if self.collector.on_transaction(txid, tx):
                routed = True
                if self.collector.complete:
                    self._complete_mempool()

        if self.subscriptions.has("mempool") and self.collector.consume_live(txid):
            routed = True
            try:
                kept, record = self.pipeline.process_one(tx)
            except ChainPeerError as e:
                self.events_failed += 1
                logger.error(f"Could not process mempool transaction {txid}: {e}")
            else:
                if kept:
                    self._notify("mempool", record)

        if routed:
            self.events_routed += 1
        else:
            self.events_ignored += 1
            logger.debug(f"Ignoring unannounced transaction {txid}")

    async def on_block(self, block: CBlock) -> None:
        header = BlockHeader.from_wire(block)
        target = self.context.target

        if self.context.kind == RequestKind.BLOCK and self.context.active and target and target.hash == header.hash:
            self.events_routed += 1
            try:
                self.context.resolve(self._block_result(header.with_height(target.height), block.vtx))
            except Exception as e:
                self.events_failed += 1
                logger.error(f"Block request failed: {e}", exc_info=True)
                self.context.reject(e)
            return

        if not self.subscriptions.has("block"):
            self.events_ignored += 1
            logger.debug(f"Ignoring unrequested block {header.hash}")
            return

        self.events_routed += 1
        try:
            header = header.with_height(await self.resolver.height(header.hash))
            result = self._block_result(header, block.vtx)
        except Exception as e:
            self.events_failed += 1
            logger.error(f"Could not process new block {header.hash}: {e}", exc_info=True)
            return
        logger.info(f"New block {header.height} ({header.hash}) with {len(block.vtx)} transactions")
        self._notify("block", result)

    async def on_notfound(self, inventory: list) -> None:
        hashes = {b2lx(inv.hash) for inv in inventory}
        target = self.context.target
        if self.context.kind == RequestKind.BLOCK and target and target.hash in hashes:
            self.context.reject(TransportError(f"Peer does not have block {target.hash}"))
            return

        # Transactions evicted between inv and getdata will never arrive
        txids = [b2lx(inv.hash) for inv in inventory if inv.type == MSG_TX]
        completed = self.collector.drop(txids)
        if completed and self.context.kind == RequestKind.MEMPOOL and self.context.active:
            self._complete_mempool()
            return
        logger.debug(f"Peer reported {len(hashes)} items not found")

    async def on_reject(self, message: Any) -> None:
        logger.warning(f"Peer rejected a message: {message!r}")

    async def on_error(self, error: BaseException) -> None:
        if self.context.active:
            self.context.reject(ConnectionFailure(f"Peer error: {error}"))

    async def on_disconnect(self, reason: Any = None) -> None:
        if self.context.active:
            logger.error(f"Peer disconnected with a {self.context.kind.value} request pending")
            self.context.reject(ConnectionFailure(f"Peer disconnected: {reason}"))

    # Completion

    def _block_result(self, header: BlockHeader, txs: list[CTransaction]) -> BlockResult:
        blk = BlockRef.from_header(header)
        if self.cache is not None and header.height is not None:
            self.cache.write(header.height, txs)
            return BlockResult(header=header, tx=self.cache.stream(header.height, self.pipeline, blk))
        return BlockResult(header=header, tx=self.pipeline.run(txs, blk))

    def _mempool_result(self, txs: list[CTransaction]) -> MempoolResult:
        if self.cache is not None:
            self.cache.write(MEMPOOL_KEY, txs)
            return MempoolResult(tx=self.cache.stream(MEMPOOL_KEY, self.pipeline))
        return MempoolResult(tx=self.pipeline.run(txs))

    def _complete_mempool(self) -> None:
        txs = self.collector.finish()
        logger.info(f"Mempool snapshot complete with {len(txs)} transactions")
        try:
            self.context.resolve(self._mempool_result(txs))
        except Exception as e:
            self.events_failed += 1
            logger.error(f"Mempool request failed: {e}", exc_info=True)
            self.context.reject(e)

    # Metrics

    def get_metrics(self) -> dict[str, int]:
        """Get current routing metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_routed": self.events_routed,
            "events_ignored": self.events_ignored,
            "events_failed": self.events_failed,
            "requests_completed": self.requests_completed,
            "requests_failed": self.requests_failed,
            "subscriber_tasks": len(self._tasks),
        }

    def log_metrics(self) -> None:
        """Log current routing metrics."""
        metrics = self.get_metrics()
        logger.info(
            f"RequestCorrelator Metrics: "
            f"Routed={metrics['events_routed']}, "
            f"Ignored={metrics['events_ignored']}, "
            f"Failed={metrics['events_failed']}, "
            f"Completed={metrics['requests_completed']}, "
            f"FailedRequests={metrics['requests_failed']}"
        )
