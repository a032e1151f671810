#!/usr/bin/env python3
"""Data models for the chainpeer client.

This module provides immutable data classes for block headers, block
annotations and query results passed between the correlator, the
pipeline and callers.
"""

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, replace
from typing import Any, Union

from bitcoin.core import CBlockHeader, b2lx

GENESIS_PREV_HASH = "00" * 32

# A parse strategy may return a structured dict, a hex string or the raw
# CTransaction itself.
ParsedRecord = Union[dict[str, Any], str, Any]


@dataclass(frozen=True, slots=True)
class BlockHeader:
    """Represents a block header, from the peer or from RPC.

    Attributes:
        hash: Block hash (display byte order, hex)
        version: Block version
        prev_hash: Hash of the previous block (hex)
        merkle_root: Merkle root (hex)
        time: Block timestamp (Unix timestamp)
        bits: Compact difficulty target
        nonce: Header nonce
        height: Block height, None until resolved
    """

    hash: str
    version: int
    prev_hash: str
    merkle_root: str
    time: int
    bits: int
    nonce: int
    height: int | None = None

    def __str__(self) -> str:
        """Human-readable string representation."""
        return f"BlockHeader(height={self.height}, hash={self.hash[:16]}...)"

    @property
    def is_genesis(self) -> bool:
        return self.prev_hash == GENESIS_PREV_HASH

    def with_height(self, height: int) -> "BlockHeader":
        """Return a copy of this header carrying the given height."""
        return replace(self, height=height)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "hash": self.hash,
            "version": self.version,
            "prev_hash": self.prev_hash,
            "merkle_root": self.merkle_root,
            "time": self.time,
            "bits": self.bits,
            "nonce": self.nonce,
            "height": self.height,
        }

    @classmethod
    def from_wire(cls, header: CBlockHeader, height: int | None = None) -> "BlockHeader":
        """Build a header from a python-bitcoinlib CBlockHeader (or CBlock)."""
        return cls(
            hash=b2lx(header.GetHash()),
            version=header.nVersion,
            prev_hash=b2lx(header.hashPrevBlock),
            merkle_root=b2lx(header.hashMerkleRoot),
            time=header.nTime,
            bits=header.nBits,
            nonce=header.nNonce,
            height=height,
        )

    @classmethod
    def from_rpc(cls, result: Mapping[str, Any]) -> "BlockHeader":
        """Build a header from a ``getblockheader`` (verbose) RPC result.

        The genesis block has no ``previousblockhash`` field; it is
        represented by the all-zero hash like on the wire.
        """
        bits = result.get("bits", 0)
        return cls(
            hash=result["hash"],
            version=int(result.get("version", 0)),
            prev_hash=result.get("previousblockhash") or GENESIS_PREV_HASH,
            merkle_root=result.get("merkleroot", ""),
            time=int(result.get("time", 0)),
            bits=int(bits, 16) if isinstance(bits, str) else int(bits),
            nonce=int(result.get("nonce", 0)),
            height=result.get("height"),
        )


@dataclass(frozen=True, slots=True)
class BlockRef:
    """Block identity attached to records produced from a block fetch."""

    height: int | None
    hash: str
    time: int

    def to_dict(self) -> dict[str, Any]:
        return {"i": self.height, "h": self.hash, "t": self.time}

    @classmethod
    def from_header(cls, header: BlockHeader) -> "BlockRef":
        return cls(height=header.height, hash=header.hash, time=header.time)


@dataclass(frozen=True, slots=True)
class HeaderQuery:
    """A header range query.

    Attributes:
        from_: First block of the range (height, hash or header), inclusive
        to: Last block of the range, inclusive (optional)
        at: A single block to look up directly (optional)
    """

    from_: Any = None
    to: Any = None
    at: Any = None

    def __post_init__(self) -> None:
        if self.at is None and self.from_ is None:
            raise ValueError("Header query needs either 'at' or 'from'")

    @classmethod
    def from_mapping(cls, query: Mapping[str, Any]) -> "HeaderQuery":
        return cls(from_=query.get("from"), to=query.get("to"), at=query.get("at"))


@dataclass(frozen=True, slots=True)
class BlockResult:
    """Result of a block fetch.

    ``tx`` is a list of records for in-memory fetches, or a TxStream
    factory when the block went through the chain cache.
    """

    header: BlockHeader
    tx: list[ParsedRecord] | Callable[..., Iterator[Any]]


@dataclass(frozen=True, slots=True)
class MempoolResult:
    """Result of a mempool snapshot."""

    tx: list[ParsedRecord] | Callable[..., Iterator[Any]]
