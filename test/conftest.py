#!/usr/bin/env python3
"""Shared fixtures: synthetic chains, a fake peer and a fake RPC node."""

import asyncio
import hashlib
import inspect
from collections import defaultdict

import pytest
from bitcoin.core import CBlock, COutPoint, CTransaction, CTxIn, CTxOut, b2lx
from bitcoin.core.script import OP_0, OP_CHECKSIG, OP_DUP, OP_EQUALVERIFY, OP_HASH160, OP_RETURN, CScript
from bitcoin.net import CInv

from chainpeer.errors import RpcError
from chainpeer.utils.peer_utility import MSG_BLOCK, MSG_TX

PUBKEY = b"\x02" + b"\x11" * 32
SIGNATURE = b"\x30" * 71


def make_tx(seed: int, payload: bytes = b"hello") -> CTransaction:
    """A P2PKH spend with a pay-to-pubkey-hash output and a data output."""
    prev_hash = hashlib.sha256(seed.to_bytes(8, "little")).digest()
    txin = CTxIn(COutPoint(prev_hash, seed % 4), CScript([SIGNATURE, PUBKEY]))
    pay = CTxOut(1000 + seed, CScript([OP_DUP, OP_HASH160, b"\x22" * 20, OP_EQUALVERIFY, OP_CHECKSIG]))
    data = CTxOut(0, CScript([OP_0, OP_RETURN, b"prefix", b"|", payload]))
    return CTransaction([txin], [pay, data], nLockTime=seed)


def make_chain(count: int, start_height: int = 100, txs_per_block: int = 3) -> list[CBlock]:
    """Hash-chained blocks; a chain starting at height 0 begins with a genesis block."""
    prev = b"\x00" * 32 if start_height == 0 else hashlib.sha256(b"parent").digest()
    blocks = []
    for i in range(count):
        height = start_height + i
        vtx = [make_tx(height * 100 + n) for n in range(txs_per_block)]
        block = CBlock(
            nVersion=1,
            hashPrevBlock=prev,
            hashMerkleRoot=b"\x00" * 32,
            nTime=1_600_000_000 + height * 600,
            nBits=0x1D00FFFF,
            nNonce=height,
            vtx=vtx,
        )
        blocks.append(block)
        prev = block.GetHash()
    return blocks


def block_hash(block: CBlock) -> str:
    return b2lx(block.GetHash())


def tx_inv(*txs: CTransaction) -> list[CInv]:
    return [_inv(MSG_TX, tx.GetTxid()) for tx in txs]


def block_inv(*blocks: CBlock) -> list[CInv]:
    return [_inv(MSG_BLOCK, block.GetHash()) for block in blocks]


def _inv(inv_type: int, inv_hash: bytes) -> CInv:
    inv = CInv()
    inv.type = inv_type
    inv.hash = inv_hash
    return inv


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition was not reached")


class FakePeer:
    """Records outgoing requests and replays incoming events to handlers."""

    def __init__(self):
        self.handlers = defaultdict(list)
        self.sent: list[tuple] = []
        self.is_ready = True

    def on(self, event, handler):
        self.handlers[event].append(handler)

    async def emit(self, event, *args):
        for handler in list(self.handlers[event]):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    def sent_kinds(self) -> list[str]:
        return [entry[0] for entry in self.sent]

    async def connect(self):
        await self.emit("ready")

    async def close(self):
        await self.emit("disconnect", "closed")

    async def get_headers(self, locator, stop_hash=None):
        self.sent.append(("getheaders", list(locator), stop_hash))

    async def get_data(self, items):
        self.sent.append(("getdata", list(items)))

    async def get_block(self, block_hash):
        self.sent.append(("getblock", block_hash))

    async def mempool(self):
        self.sent.append(("mempool",))


class FakeRpc:
    """Answers header lookups for a synthetic chain."""

    def __init__(self, blocks: list[CBlock], start_height: int = 100):
        self.by_hash: dict[str, dict] = {}
        self.by_height: dict[int, str] = {}
        self.calls: list[tuple] = []
        self.mempool_size = 1
        for i, block in enumerate(blocks):
            self.add_block(block, start_height + i)

    def add_block(self, block: CBlock, height: int) -> None:
        result = {
            "hash": block_hash(block),
            "height": height,
            "version": block.nVersion,
            "merkleroot": b2lx(block.hashMerkleRoot),
            "time": block.nTime,
            "bits": f"{block.nBits:08x}",
            "nonce": block.nNonce,
        }
        if block.hashPrevBlock != b"\x00" * 32:
            result["previousblockhash"] = b2lx(block.hashPrevBlock)
        self.by_hash[result["hash"]] = result
        self.by_height[height] = result["hash"]

    async def get_block_hash(self, height):
        self.calls.append(("getblockhash", height))
        if height not in self.by_height:
            raise RpcError("Block height out of range", code=-8, method="getblockhash")
        return self.by_height[height]

    async def get_block_header(self, block_hash):
        self.calls.append(("getblockheader", block_hash))
        if block_hash not in self.by_hash:
            raise RpcError("Block not found", code=-5, method="getblockheader")
        return dict(self.by_hash[block_hash])

    async def get_blockchain_info(self):
        self.calls.append(("getblockchaininfo",))
        return {"chain": "main", "blocks": max(self.by_height), "bestblockhash": self.by_height[max(self.by_height)]}

    async def call(self, method, *params):
        self.calls.append((method, *params))
        if method == "getmempoolinfo":
            return {"size": self.mempool_size}
        raise RpcError(f"Method not found: {method}", code=-32601, method=method)


@pytest.fixture
def chain():
    """Ten blocks at heights 100..109."""
    return make_chain(10, start_height=100)


@pytest.fixture
def genesis_chain():
    """Five blocks at heights 0..4."""
    return make_chain(5, start_height=0)


@pytest.fixture
def fake_rpc(chain):
    return FakeRpc(chain, start_height=100)


@pytest.fixture
def fake_peer():
    return FakePeer()
