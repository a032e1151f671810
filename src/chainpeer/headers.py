"""
Header range pagination.

The peer answers ``getheaders`` in batches of at most 2000 headers. The
paginator chains those batches into one contiguous sequence, re-issuing
from the last received hash until the stop hash or the tip is reached,
and annotates the result with heights.
"""

import logging
from enum import Enum

from .errors import ProtocolViolation
from .models import BlockHeader, HeaderQuery
from .resolver import BlockResolver

logger = logging.getLogger(__name__)


class PaginatorState(Enum):
    IDLE = "idle"
    AWAITING_BATCH = "awaiting_batch"
    COMPLETE = "complete"


class Step(Enum):
    CONTINUE = "continue"
    COMPLETE = "complete"


class HeaderPaginator:
    """State machine for one ``{from, to, at}`` header query."""

    def __init__(self, resolver: BlockResolver, peer) -> None:
        self.resolver = resolver
        self.peer = peer
        self.state = PaginatorState.IDLE
        self.headers: list[BlockHeader] = []
        self.locator: str | None = None
        self.stop_hash: str | None = None
        self.batches = 0

    async def start(self, query: HeaderQuery) -> Step:
        """Begin a query; sends the first ``getheaders`` unless resolved directly."""
        self.headers = []
        self.stop_hash = None
        self.batches = 0

        if query.at is not None:
            _, header = await self.resolver.resolve(query.at)
            if header.height is None:
                header = header.with_height(await self.resolver.height(header.hash))
            self.headers = [header]
            self.state = PaginatorState.COMPLETE
            return Step.COMPLETE

        _, start = await self.resolver.resolve(query.from_)
        previous = await self.resolver.previous(start)
        if previous is None:
            # Genesis has no predecessor to use as locator, so seed it
            self.headers = [start]
            self.locator = start.hash
        else:
            self.locator = previous

        if query.to is not None:
            self.stop_hash, _ = await self.resolver.resolve(query.to)
            if self.headers and self.headers[-1].hash == self.stop_hash:
                self.state = PaginatorState.COMPLETE
                return Step.COMPLETE

        logger.debug(f"Requesting headers from {self.locator} (stop={self.stop_hash})")
        await self.peer.get_headers([self.locator], self.stop_hash)
        self.state = PaginatorState.AWAITING_BATCH
        return Step.CONTINUE

    async def on_batch(self, batch: list[BlockHeader]) -> Step:
        """
        Accumulate one ``headers`` batch.

        Raises:
            ProtocolViolation: If no batch is expected or the batch does not
                chain onto the headers received so far
        """
        if self.state != PaginatorState.AWAITING_BATCH:
            raise ProtocolViolation(f"Unexpected headers batch in state {self.state.value}")

        if not batch:
            self.state = PaginatorState.COMPLETE
            return Step.COMPLETE

        expected = self.headers[-1].hash if self.headers else self.locator
        for header in batch:
            if header.prev_hash != expected:
                raise ProtocolViolation(
                    f"Header {header.hash} does not extend {expected}"
                )
            expected = header.hash

        self.batches += 1
        for header in batch:
            self.headers.append(header)
            if header.hash == self.stop_hash:
                self.state = PaginatorState.COMPLETE
                return Step.COMPLETE

        await self.peer.get_headers([self.headers[-1].hash], self.stop_hash)
        return Step.CONTINUE

    async def finish(self) -> list[BlockHeader]:
        """Annotate accumulated headers with heights (one RPC lookup)."""
        self.state = PaginatorState.COMPLETE
        if not self.headers:
            return []
        first = self.headers[0]
        base = first.height if first.height is not None else await self.resolver.height(first.hash)
        logger.debug(f"Header range {base}..{base + len(self.headers) - 1} in {self.batches} batches")
        return [header.with_height(base + i) for i, header in enumerate(self.headers)]
