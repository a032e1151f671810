"""
Mempool collection.

A snapshot is armed by the first inventory announcement after it begins
and completes once every transaction that announcement listed has been
delivered. The live feed admits any delivered transaction listed in the
most recent announcement.
"""

import logging

from bitcoin.core import CTransaction

logger = logging.getLogger(__name__)


class MempoolCollector:
    """Snapshot gate and live-feed admission over inventory announcements."""

    def __init__(self) -> None:
        # Live expectation set, replaced on every announcement
        self.live: set[str] = set()

        # Snapshot state
        self.pending = False
        self.expected: set[str] | None = None
        self.expected_count = 0
        self.collected: list[CTransaction] = []
        self._collected_ids: set[str] = set()

    @property
    def armed(self) -> bool:
        return self.pending and self.expected is not None

    @property
    def complete(self) -> bool:
        return self.armed and len(self.collected) == self.expected_count

    def begin_snapshot(self) -> None:
        self.pending = True
        self.expected = None
        self.expected_count = 0
        self.collected = []
        self._collected_ids = set()

    def cancel(self) -> None:
        self.pending = False
        self.expected = None
        self.collected = []
        self._collected_ids = set()

    def on_inventory(self, txids: list[str]) -> bool:
        """
        Record an announcement.

        Returns:
            True if this announcement armed a snapshot that is already
            complete (it listed no transactions)
        """
        self.live = set(txids)
        if self.pending and self.expected is None:
            self.expected = set(txids)
            self.expected_count = len(self.expected)
            logger.debug(f"Mempool snapshot armed with {self.expected_count} transactions")
            return self.complete
        return False

    def consume_live(self, txid: str) -> bool:
        """Admit a delivery to the live feed at most once."""
        if txid in self.live:
            self.live.discard(txid)
            return True
        return False

    def on_transaction(self, txid: str, tx: CTransaction) -> bool:
        """Collect a delivery into the armed snapshot; returns True if accepted."""
        if not self.armed or txid not in self.expected or txid in self._collected_ids:
            return False
        self._collected_ids.add(txid)
        self.collected.append(tx)
        return True

    def drop(self, txids: list[str]) -> bool:
        """
        Stop expecting transactions the peer reported as not found.

        Returns:
            True if dropping them completes the armed snapshot
        """
        self.live.difference_update(txids)
        if not self.armed:
            return False
        missing = (set(txids) & self.expected) - self._collected_ids
        if not missing:
            return False
        self.expected -= missing
        self.expected_count -= len(missing)
        logger.debug(f"Mempool snapshot no longer expects {len(missing)} transactions")
        return self.complete

    def finish(self) -> list[CTransaction]:
        """Return the collected snapshot and reset the snapshot state."""
        collected = self.collected
        self.cancel()
        return collected
