"""
On-disk chain cache.

Each entry is a pair of files in the cache directory:

- ``<key>.tx``: one raw transaction hex per line, in arrival order
- ``<key>.json``: ``{"sync": bool, "generation": str}``; ``sync`` is true
  only once the log is fully on disk, and ``generation`` changes on every
  rewrite of the entry

Keys are block heights, or ``mempool`` for the latest mempool snapshot.
"""

import functools
import json
import logging
import os
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from bitcoin.core import CTransaction, b2x

from .errors import CacheError
from .models import BlockRef
from .pipeline import TransformPipeline, TxStream

logger = logging.getLogger(__name__)

MEMPOOL_KEY = "mempool"

CacheKey = int | str


def _tx_hex(tx: CTransaction | bytes | str) -> str:
    match tx:
        case str():
            return tx
        case bytes():
            return tx.hex()
        case _:
            return b2x(tx.serialize())


class ChainCache:
    """Block and mempool transaction logs with sync-flag sidecars."""

    def __init__(self, path: Path, prune: int | None = None) -> None:
        """
        Initialize the cache.

        Args:
            path: Cache directory (created if missing)
            prune: Number of block entries kept after each block write
        """
        self.path = Path(path)
        self.prune_count = prune
        self.path.mkdir(parents=True, exist_ok=True)

    def log_path(self, key: CacheKey) -> Path:
        return self.path / f"{key}.tx"

    def sidecar_path(self, key: CacheKey) -> Path:
        return self.path / f"{key}.json"

    def _write_sidecar(self, key: CacheKey, synced: bool, generation: str | None = None) -> None:
        meta: dict[str, Any] = {"sync": synced}
        if generation is not None:
            meta["generation"] = generation
        with open(self.sidecar_path(key), "w") as f:
            json.dump(meta, f)
            f.flush()
            os.fsync(f.fileno())

    def _read_sidecar(self, key: CacheKey) -> dict[str, Any] | None:
        """Sidecar contents of a consistent entry, or None on a miss."""
        log = self.log_path(key)
        sidecar = self.sidecar_path(key)

        match (log.exists(), sidecar.exists()):
            case (False, False):
                return None
            case (True, False):
                logger.warning(f"Cache entry {key}: log without sidecar, treating as miss")
                return None
            case (False, True):
                logger.warning(f"Cache entry {key}: sidecar without log, treating as miss")
                return None

        try:
            with open(sidecar) as f:
                meta: Any = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Cache entry {key}: unreadable sidecar ({e}), treating as miss")
            return None

        return meta if isinstance(meta, dict) else None

    def is_synced(self, key: CacheKey) -> bool:
        """True only when both files exist and the sidecar says ``sync``."""
        meta = self._read_sidecar(key)
        return meta is not None and meta.get("sync") is True

    def generation(self, key: CacheKey) -> str | None:
        """Generation token of a synced entry, or None if it is not synced."""
        meta = self._read_sidecar(key)
        if meta is None or meta.get("sync") is not True:
            return None
        return str(meta.get("generation", ""))

    def write(self, key: CacheKey, txs: Iterable[CTransaction | bytes | str]) -> Path:
        """
        Write a transaction log.

        The sidecar is marked unsynced first and only marked synced after
        the log has been flushed, fsynced and renamed into place, so an
        interrupted write is never read back as complete. The new log
        replaces the old one atomically; traversals already reading the
        old log finish on it.

        Returns:
            Path of the written log
        """
        log = self.log_path(key)
        partial = log.with_name(f"{log.name}.partial")
        self._write_sidecar(key, False)

        count = 0
        with open(partial, "w", encoding="ascii") as f:
            for tx in txs:
                f.write(_tx_hex(tx))
                f.write("\n")
                count += 1
            f.flush()
            os.fsync(f.fileno())
        os.replace(partial, log)

        self._write_sidecar(key, True, uuid.uuid4().hex)
        logger.debug(f"Cached {count} transactions under {key}")

        if key != MEMPOOL_KEY and self.prune_count:
            self.prune(self.prune_count, keep=key)
        return log

    def stream(self, key: CacheKey, pipeline: TransformPipeline, blk: BlockRef | None = None) -> TxStream:
        """
        Lazy stream over the current contents of a synced entry.

        Every traversal first checks that the entry still has the generation
        it had when the stream was created.

        Raises:
            CacheError: If the entry is not synced, or (when iterating) if it
                was rewritten or removed since
        """
        generation = self.generation(key)
        if generation is None:
            raise CacheError(f"Cache entry {key} is not synced")
        check = functools.partial(self._check_generation, key, generation)
        return pipeline.stream(self.log_path(key), blk, check=check)

    def _check_generation(self, key: CacheKey, generation: str) -> None:
        if self.generation(key) != generation:
            raise CacheError(f"Cache entry {key} was rewritten or removed after this stream was created")

    def read(self, key: CacheKey, pipeline: TransformPipeline, blk: BlockRef | None = None) -> TxStream | None:
        """Lazy stream over a synced entry, or None on a miss."""
        if not self.is_synced(key):
            return None
        return self.stream(key, pipeline, blk)

    def block_keys(self) -> list[int]:
        """Heights of all block entries on disk, ascending."""
        heights: set[int] = set()
        for entry in self.path.iterdir():
            if entry.suffix not in (".tx", ".json") or entry.stem == MEMPOOL_KEY:
                continue
            try:
                heights.add(int(entry.stem))
            except ValueError:
                continue
        return sorted(heights)

    def remove(self, key: CacheKey) -> bool:
        """Delete both files of an entry; missing files are ignored."""
        removed = False
        for path in (self.log_path(key), self.sidecar_path(key)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def invalidate(self, at: int | None = None, from_: int | None = None, to: int | None = None) -> list[int]:
        """
        Delete cached block entries.

        Args:
            at: Delete only this height
            from_: First height to delete
            to: Last height to delete (defaults to the highest cached height)

        Returns:
            Heights that had files on disk
        """
        if at is not None:
            removed = [int(at)] if self.remove(int(at)) else []
        elif from_ is not None:
            low = int(from_)
            high = int(to) if to is not None else None
            targets = [h for h in self.block_keys() if h >= low and (high is None or h <= high)]
            removed = [height for height in targets if self.remove(height)]
        else:
            raise ValueError("invalidate needs 'at' or 'from'")

        if removed:
            logger.info(f"Invalidated {len(removed)} cached blocks ({removed[0]}..{removed[-1]})")
        return removed

    def prune(self, count: int | None = None, keep: CacheKey | None = None) -> int:
        """
        Keep only the ``count`` highest block entries.

        The mempool entry is never pruned, and neither is ``keep`` (the
        entry just written, when pruning after a write).

        Args:
            count: Entries to retain (default: the configured retention)
            keep: A key to retain regardless of its height

        Returns:
            Number of entries removed

        Raises:
            ValueError: If ``count`` is less than 1
        """
        if count is None:
            count = self.prune_count
            if count is None:
                return 0
        if count < 1:
            raise ValueError(f"Prune count must be at least 1, got {count}")

        keys = self.block_keys()
        if len(keys) <= count:
            return 0

        stale = [height for height in keys[:-count] if height != keep]
        for height in stale:
            self.remove(height)
        if stale:
            logger.info(f"Pruned {len(stale)} cached blocks, keeping {count}")
        return len(stale)
