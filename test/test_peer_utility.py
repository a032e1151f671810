#!/usr/bin/env python3
"""Tests for the P2P peer connection."""

import asyncio
import hashlib
import struct
from io import BytesIO
from unittest.mock import AsyncMock, MagicMock

import pytest
from bitcoin.core import b2lx
from bitcoin.core.serialize import VarIntSerializer
from bitcoin.messages import msg_inv

from chainpeer.config import PeerConfig
from chainpeer.errors import ConnectionFailure
from chainpeer.utils.peer_utility import (
    MSG_TX,
    ConnectionState,
    PeerConnection,
    checksum,
    parse_headers_payload,
)

from conftest import make_chain, tx_inv, make_tx


@pytest.fixture
def peer():
    return PeerConnection(PeerConfig(host="127.0.0.1", network="regtest"))


def recorder(peer, event):
    received = []

    async def handler(*args):
        received.append(args)

    peer.on(event, handler)
    return received


def read_frame_header(header: bytes) -> tuple[bytes, int]:
    (length,) = struct.unpack("<I", header[16:20])
    return header[4:16].rstrip(b"\x00"), length


class TestFraming:
    """Tests for message framing and payload decoding."""

    def test_frame_layout(self, peer):
        frame = peer.frame(b"verack", b"")

        assert frame[:4] == bytes.fromhex("dab5bffa")
        assert frame[4:16] == b"verack" + b"\x00" * 6
        assert frame[16:20] == struct.pack("<I", 0)
        assert frame[20:24] == hashlib.sha256(hashlib.sha256(b"").digest()).digest()[:4]
        assert len(frame) == 24

    def test_checksum(self):
        assert checksum(b"") == bytes.fromhex("5df6e0e2")

    def test_parse_headers_payload(self):
        blocks = make_chain(3)
        payload = VarIntSerializer.serialize(len(blocks)) + b"".join(
            block.get_header().serialize() + b"\x00" for block in blocks
        )

        headers = parse_headers_payload(payload)

        assert [h.GetHash() for h in headers] == [b.GetHash() for b in blocks]

    def test_unknown_event_rejected(self, peer):
        with pytest.raises(ValueError):
            peer.on("headers-please", print)


class TestDispatch:
    """Tests for decoded message handling."""

    @pytest.mark.asyncio
    async def test_inv_is_emitted(self, peer):
        received = recorder(peer, "inv")
        tx = make_tx(1)
        message = msg_inv()
        message.inv = tx_inv(tx)
        body = BytesIO()
        message.msg_ser(body)

        await peer._dispatch("inv", body.getvalue())

        (inventory,) = received[0]
        assert inventory[0].type == MSG_TX
        assert b2lx(inventory[0].hash) == b2lx(tx.GetTxid())

    @pytest.mark.asyncio
    async def test_headers_are_emitted(self, peer):
        received = recorder(peer, "headers")
        blocks = make_chain(2)
        payload = VarIntSerializer.serialize(2) + b"".join(
            b.get_header().serialize() + b"\x00" for b in blocks
        )

        await peer._dispatch("headers", payload)

        assert len(received[0][0]) == 2

    @pytest.mark.asyncio
    async def test_ping_is_answered(self, peer):
        peer.send = AsyncMock()

        await peer._dispatch("ping", struct.pack("<Q", 7))

        pong = peer.send.call_args[0][0]
        assert pong.command == b"pong"
        assert pong.nonce == 7

    @pytest.mark.asyncio
    async def test_verack_completes_handshake(self, peer):
        received = recorder(peer, "ready")

        await peer._dispatch("verack", b"")

        assert peer.is_ready
        assert received == [()]

    @pytest.mark.asyncio
    async def test_unsupported_message_is_ignored(self, peer):
        await peer._dispatch("protoconf", b"\x01\x02")

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self, peer):
        def broken():
            raise RuntimeError("boom")

        received = recorder(peer, "ready")
        peer.on("ready", broken)

        await peer._dispatch("verack", b"")

        assert received == [()]

    @pytest.mark.asyncio
    async def test_failed_reply_disconnects(self, peer):
        errors = recorder(peer, "error")
        disconnects = recorder(peer, "disconnect")
        reader = asyncio.StreamReader()
        reader.feed_data(peer.frame(b"ping", struct.pack("<Q", 7)))
        writer = MagicMock()
        writer.drain = AsyncMock(side_effect=ConnectionResetError("reset by peer"))
        peer._reader, peer._writer = reader, writer
        peer.state = ConnectionState.READY

        await asyncio.wait_for(peer._read_loop(), timeout=2)

        assert isinstance(errors[0][0], ConnectionFailure)
        assert len(disconnects) == 1
        assert peer.state == ConnectionState.DISCONNECTED
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, peer):
        with pytest.raises(ConnectionFailure):
            await peer.mempool()


class TestConnection:
    """Tests against a local socket standing in for a node."""

    async def _serve(self, handler):
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        return server, PeerConnection(PeerConfig(host="127.0.0.1", port=port, network="regtest", connect_timeout=2))

    @pytest.mark.asyncio
    async def test_handshake_and_close(self):
        commands = []

        async def handle(reader, writer):
            command, length = read_frame_header(await reader.readexactly(24))
            await reader.readexactly(length)
            commands.append(command)
            writer.write(peer.frame(b"verack", b""))
            await writer.drain()
            await reader.read()
            writer.close()

        server, peer = await self._serve(handle)
        disconnects = recorder(peer, "disconnect")

        await peer.connect()
        assert peer.state == ConnectionState.READY
        assert commands == [b"version"]

        await peer.close()
        assert peer.state == ConnectionState.CLOSED
        assert disconnects == [("closed",)]

        server.close()
        await server.wait_closed()

    @pytest.mark.asyncio
    async def test_remote_close_emits_disconnect(self):
        async def handle(reader, writer):
            command, length = read_frame_header(await reader.readexactly(24))
            await reader.readexactly(length)
            writer.write(peer.frame(b"verack", b""))
            await writer.drain()
            await asyncio.sleep(0.1)
            writer.close()

        server, peer = await self._serve(handle)
        disconnects = recorder(peer, "disconnect")

        await peer.connect()
        for _ in range(100):
            if disconnects:
                break
            await asyncio.sleep(0.01)

        assert disconnects == [("closed by peer",)]
        assert peer.state == ConnectionState.DISCONNECTED

        server.close()
        await server.wait_closed()

    @pytest.mark.asyncio
    async def test_bad_magic_fails_handshake(self):
        async def handle(reader, writer):
            command, length = read_frame_header(await reader.readexactly(24))
            await reader.readexactly(length)
            writer.write(b"\x00\x00\x00\x00" + peer.frame(b"verack", b"")[4:])
            await writer.drain()
            await reader.read()
            writer.close()

        server, peer = await self._serve(handle)
        errors = recorder(peer, "error")

        with pytest.raises(ConnectionFailure):
            await peer.connect()
        assert len(errors) == 1

        server.close()
        await server.wait_closed()

    @pytest.mark.asyncio
    async def test_unreachable_peer(self):
        server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        peer = PeerConnection(PeerConfig(host="127.0.0.1", port=port, network="regtest", connect_timeout=1))
        with pytest.raises(ConnectionFailure):
            await peer.connect()
