#!/usr/bin/env python3
"""Tests for the data models."""

import dataclasses

import pytest
from bitcoin.core import b2lx

from chainpeer.models import GENESIS_PREV_HASH, BlockHeader, BlockRef, HeaderQuery

from conftest import make_chain


class TestBlockHeader:

    def test_from_wire(self):
        block = make_chain(2)[1]

        header = BlockHeader.from_wire(block, height=101)

        assert header.hash == b2lx(block.GetHash())
        assert header.prev_hash == b2lx(block.hashPrevBlock)
        assert header.bits == 0x1D00FFFF
        assert header.height == 101
        assert not header.is_genesis

    def test_from_rpc(self):
        header = BlockHeader.from_rpc({
            "hash": "ab" * 32,
            "height": 7,
            "version": 536870912,
            "previousblockhash": "cd" * 32,
            "merkleroot": "ef" * 32,
            "time": 1_700_000_000,
            "bits": "1d00ffff",
            "nonce": 42,
        })

        assert header.bits == 0x1D00FFFF
        assert header.prev_hash == "cd" * 32
        assert header.height == 7

    def test_genesis_from_rpc(self):
        header = BlockHeader.from_rpc({"hash": "ab" * 32, "height": 0})

        assert header.prev_hash == GENESIS_PREV_HASH
        assert header.is_genesis

    def test_with_height_returns_copy(self):
        header = BlockHeader.from_wire(make_chain(1)[0])

        annotated = header.with_height(5)

        assert annotated.height == 5
        assert header.height is None
        with pytest.raises(dataclasses.FrozenInstanceError):
            header.height = 1


class TestBlockRef:

    def test_to_dict(self):
        header = BlockHeader.from_wire(make_chain(1)[0], height=100)

        assert BlockRef.from_header(header).to_dict() == {"i": 100, "h": header.hash, "t": header.time}


class TestHeaderQuery:

    def test_from_mapping(self):
        query = HeaderQuery.from_mapping({"from": 10, "to": 20})

        assert (query.from_, query.to, query.at) == (10, 20, None)

    def test_at_zero_is_a_valid_query(self):
        assert HeaderQuery(at=0).at == 0

    def test_requires_at_or_from(self):
        with pytest.raises(ValueError):
            HeaderQuery.from_mapping({"to": 5})
