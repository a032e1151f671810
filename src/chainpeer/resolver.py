"""
Block resolution.

Turns a height, a block hash or a BlockHeader into the canonical
``(hash, BlockHeader)`` pair, using the node's RPC interface.
"""

import logging
from collections import OrderedDict
from collections.abc import Mapping
from typing import Any

from .models import GENESIS_PREV_HASH, BlockHeader
from .utils.rpc_utility import NodeRpc

logger = logging.getLogger(__name__)

BlockId = int | str | BlockHeader | Mapping[str, Any]


class BlockResolver:
    """Resolves block identifiers with a bounded header lookup cache."""

    MAX_CACHED_HEADERS: int = 10_000

    def __init__(self, rpc: NodeRpc, max_cached: int | None = None) -> None:
        """Initialize the resolver.

        Args:
            rpc: RPC client used for hash and header lookups
            max_cached: Maximum number of headers kept in the lookup cache
        """
        self.rpc = rpc
        self.max_cached = max_cached or self.MAX_CACHED_HEADERS
        # OrderedDict gives LRU eviction over block hash -> header
        self._headers: OrderedDict[str, BlockHeader] = OrderedDict()
        self.current: BlockHeader | None = None

    def _remember(self, header: BlockHeader) -> None:
        if header.hash in self._headers:
            self._headers.move_to_end(header.hash)
        else:
            if len(self._headers) >= self.max_cached:
                self._headers.popitem(last=False)
        self._headers[header.hash] = header

    async def header(self, block_hash: str) -> BlockHeader:
        """Header for a block hash, from the cache or ``getblockheader``."""
        cached = self._headers.get(block_hash)
        if cached is not None:
            self._headers.move_to_end(block_hash)
            return cached

        header = BlockHeader.from_rpc(await self.rpc.get_block_header(block_hash))
        self._remember(header)
        return header

    async def resolve(self, block_id: BlockId) -> tuple[str, BlockHeader]:
        """
        Resolve a block identifier.

        Args:
            block_id: Height, block hash, BlockHeader, or a header mapping

        Returns:
            Tuple of (block hash, header); the header is also kept as ``current``

        Raises:
            ValueError: If the identifier has an unsupported type
        """
        match block_id:
            case BlockHeader():
                header = block_id
            case bool():
                raise ValueError(f"Cannot resolve block id {block_id!r}")
            case int():
                if block_id < 0:
                    raise ValueError(f"Block height must be non-negative, got {block_id}")
                block_hash = await self.rpc.get_block_hash(block_id)
                header = await self.header(block_hash)
            case str():
                header = await self.header(block_id)
            case Mapping() if "hash" in block_id:
                header = BlockHeader.from_rpc(block_id)
            case _:
                raise ValueError(f"Cannot resolve block id {block_id!r}")

        self.current = header
        return header.hash, header

    async def height(self, block_hash: str) -> int:
        return (await self.header(block_hash)).height

    async def previous(self, block_id: BlockId) -> str | None:
        """Hash of the block before ``block_id``, or None for genesis."""
        if isinstance(block_id, BlockHeader):
            header = block_id
        else:
            _, header = await self.resolve(block_id)
        if header.prev_hash == GENESIS_PREV_HASH:
            return None
        return header.prev_hash
