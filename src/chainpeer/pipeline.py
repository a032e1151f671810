"""
Transform pipeline: parse, filter and map transactions.

Runs eagerly over in-memory transactions, or lazily over a cached
transaction log through a restartable TxStream.
"""

import copy
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from bitcoin.core import CTransaction, b2lx

from .errors import ParseError
from .models import BlockRef, ParsedRecord
from .strategies import ParseStrategy, resolve_strategy

logger = logging.getLogger(__name__)

_SKIP = object()


def _blk_dict(blk: BlockRef | Mapping[str, Any] | None) -> dict[str, Any] | None:
    match blk:
        case None:
            return None
        case BlockRef():
            return blk.to_dict()
        case _:
            return dict(blk)


class TransformPipeline:
    """Parse → filter → map over transactions."""

    def __init__(
        self,
        strategy: ParseStrategy | None = None,
        filter_fn: Callable[[ParsedRecord], bool] | None = None,
        map_fn: Callable[[ParsedRecord], Any] | None = None,
    ) -> None:
        self.strategy: ParseStrategy = strategy or resolve_strategy(None)
        self.filter_fn = filter_fn
        self.map_fn = map_fn

    def use_parse(self, strategy: Any, arg: Any = None) -> None:
        self.strategy = resolve_strategy(strategy, arg)
        logger.debug(f"Parse strategy set to {self.strategy!r}")

    def use_filter(self, fn: Callable[[ParsedRecord], bool] | None) -> None:
        self.filter_fn = fn

    def use_map(self, fn: Callable[[ParsedRecord], Any] | None) -> None:
        self.map_fn = fn

    def snapshot(self) -> "TransformPipeline":
        """Copy of the current configuration, unaffected by later ``use`` calls."""
        return copy.copy(self)

    def parse(self, tx: CTransaction, blk: Mapping[str, Any] | None = None) -> ParsedRecord:
        """Parse one transaction.

        Raises:
            ParseError: If the strategy fails
        """
        try:
            return self.strategy.parse(tx, blk)
        except Exception as e:
            txid = b2lx(tx.GetTxid()) if isinstance(tx, CTransaction) else None
            raise ParseError(f"{self.strategy!r} failed on {txid}: {e}", txid=txid) from e

    def apply(self, tx: CTransaction, blk: Mapping[str, Any] | None = None) -> Any:
        """Run one transaction through the pipeline; returns ``_SKIP`` if filtered out."""
        record = self.parse(tx, blk)
        if self.filter_fn is not None and not self.filter_fn(record):
            return _SKIP
        if self.map_fn is None:
            return record

        mapped = self.map_fn(record)
        if isinstance(record, Mapping):
            result = {"$": mapped, "tx": record.get("tx")}
            if record.get("blk") is not None:
                result["blk"] = record["blk"]
            return result
        return {"$": mapped, "tx": record}

    def iter(self, items: Iterable[CTransaction], blk: BlockRef | Mapping[str, Any] | None = None) -> Iterator[Any]:
        blk_dict = _blk_dict(blk)
        for tx in items:
            result = self.apply(tx, blk_dict)
            if result is not _SKIP:
                yield result

    def run(self, items: Iterable[CTransaction], blk: BlockRef | Mapping[str, Any] | None = None) -> list[Any]:
        """Eagerly process transactions, preserving their order."""
        return list(self.iter(items, blk))

    def process_one(self, tx: CTransaction, blk: BlockRef | Mapping[str, Any] | None = None) -> tuple[bool, Any]:
        """Process a single transaction; returns ``(kept, result)``."""
        result = self.apply(tx, _blk_dict(blk))
        if result is _SKIP:
            return False, None
        return True, result

    def stream(
        self,
        path: Path,
        blk: BlockRef | Mapping[str, Any] | None = None,
        check: Callable[[], None] | None = None,
    ) -> "TxStream":
        """Lazy view over a transaction log, bound to the current configuration.

        ``check`` runs before each traversal opens the log and may raise to
        refuse reading it.
        """
        return TxStream(Path(path), self.snapshot(), _blk_dict(blk), check)


class TxStream:
    """
    Restartable iterator factory over a cached transaction log.

    Each call opens a fresh read of the log and re-runs parse, filter and
    map. ``stream()`` yields records one by one; ``stream(size)`` yields
    lists of at most ``size`` records.
    """

    def __init__(
        self,
        path: Path,
        pipeline: TransformPipeline,
        blk: dict[str, Any] | None = None,
        check: Callable[[], None] | None = None,
    ) -> None:
        self.path = path
        self.pipeline = pipeline
        self.blk = blk
        self.check = check

    def __repr__(self) -> str:
        return f"TxStream(path={str(self.path)!r})"

    def __call__(self, size: int | None = None) -> Iterator[Any]:
        if size is not None and size < 1:
            raise ValueError(f"Chunk size must be positive, got {size}")
        records = self.pipeline.iter(self._transactions(), self.blk)
        if size is None:
            return records
        return self._chunked(records, size)

    def __iter__(self) -> Iterator[Any]:
        return self()

    def _transactions(self) -> Iterator[CTransaction]:
        if self.check is not None:
            self.check()
        # An open traversal keeps reading the file it opened, even if the
        # log is replaced or unlinked meanwhile
        with open(self.path, "r", encoding="ascii") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield CTransaction.deserialize(bytes.fromhex(line))

    @staticmethod
    def _chunked(records: Iterator[Any], size: int) -> Iterator[list[Any]]:
        batch: list[Any] = []
        for record in records:
            batch.append(record)
            if len(batch) == size:
                yield batch
                batch = []
        if batch:
            yield batch
