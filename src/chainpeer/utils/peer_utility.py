"""
Peer Utility for talking to a single node over the P2P protocol.

Provides an asyncio TCP connection with the version/verack handshake,
ping/pong keepalive and message framing, and emits decoded messages to
registered handlers strictly in arrival order.
"""

import asyncio
import hashlib
import inspect
import logging
import random
import struct
import time
from collections import defaultdict
from collections.abc import Callable, Iterable
from enum import Enum
from io import BytesIO
from typing import Any

from bitcoin.core import CBlockHeader, lx
from bitcoin.core.serialize import VarIntSerializer
from bitcoin.messages import (
    MsgSerializable,
    messagemap,
    msg_getdata,
    msg_getheaders,
    msg_mempool,
    msg_pong,
    msg_verack,
    msg_version,
)
from bitcoin.net import CInv

from ..config import PeerConfig
from ..errors import ConnectionFailure, ProtocolViolation

# Inventory types
MSG_TX = 1
MSG_BLOCK = 2

ZERO_HASH = b"\x00" * 32


class ConnectionState(Enum):
    """Connection state for the peer."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


def checksum(payload: bytes) -> bytes:
    """First four bytes of the double SHA-256 of a message payload."""
    return hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]


def parse_headers_payload(payload: bytes) -> list[CBlockHeader]:
    """Decode a ``headers`` payload.

    Each 80-byte header on the wire is followed by a transaction count
    (always zero), which the stock message class does not expect.
    """
    f = BytesIO(payload)
    count = VarIntSerializer.stream_deserialize(f)
    headers = []
    for _ in range(count):
        headers.append(CBlockHeader.stream_deserialize(f))
        VarIntSerializer.stream_deserialize(f)
    return headers


class PeerConnection:
    """
    A single upstream peer connection.

    Features:
    - Version/verack handshake and automatic pong replies
    - Framing with configurable network magic
    - Event handlers for ready, inv, headers, tx, block, notfound, reject,
      disconnect and error
    """

    EVENTS = frozenset(
        {"ready", "inv", "headers", "tx", "block", "notfound", "reject", "disconnect", "error"}
    )
    HEADER_SIZE = 24

    def __init__(self, config: PeerConfig) -> None:
        """
        Initialize the PeerConnection.

        Args:
            config: Peer address, network magic and handshake settings
        """
        self.config = config
        self.magic = config.magic_bytes
        self.state = ConnectionState.DISCONNECTED

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._handlers: dict[str, list[Callable[..., Any]]] = defaultdict(list)

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def address(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        """Register a handler (sync or async) for a peer event."""
        if event not in self.EVENTS:
            raise ValueError(f"Unknown peer event: {event}")
        self._handlers[event].append(handler)

    async def connect(self) -> None:
        """
        Open the TCP connection and complete the handshake.

        Raises:
            ConnectionFailure: If the peer cannot be reached or the handshake
                does not finish within the connect timeout
        """
        self.state = ConnectionState.CONNECTING
        self.logger.info(f"Connecting to peer {self.address}")

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.host, self.config.port),
                timeout=self.config.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self.state = ConnectionState.DISCONNECTED
            raise ConnectionFailure(f"Could not connect to peer {self.address}: {e!r}") from e

        self.state = ConnectionState.HANDSHAKING
        self._ready.clear()
        self._read_task = asyncio.create_task(self._read_loop())
        await self.send(self._version_message())

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise ConnectionFailure(f"Handshake with {self.address} timed out") from None

        if not self.is_ready:
            raise ConnectionFailure(f"Peer {self.address} closed the connection during handshake")

    async def close(self) -> None:
        """Close the connection and stop the read loop."""
        if self.state == ConnectionState.CLOSED:
            return
        was_open = self._writer is not None
        self.state = ConnectionState.CLOSED

        if self._read_task and self._read_task is not asyncio.current_task():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        self._read_task = None

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError as e:
                self.logger.debug(f"Error while closing socket: {e}")
        self._reader = self._writer = None
        self._ready.set()

        if was_open:
            self.logger.info(f"Closed connection to {self.address}")
            await self._emit("disconnect", "closed")

    async def send(self, message: MsgSerializable) -> None:
        """Frame and send a message to the peer."""
        if self._writer is None:
            raise ConnectionFailure(f"Peer {self.address} is not connected")

        body = BytesIO()
        message.msg_ser(body)
        frame = self.frame(message.command, body.getvalue())
        self.logger.debug(f"-> {message.command.decode()} ({len(frame)} bytes)")

        try:
            self._writer.write(frame)
            await self._writer.drain()
        except OSError as e:
            raise ConnectionFailure(f"Failed to send to {self.address}: {e}") from e

    def frame(self, command: bytes, payload: bytes) -> bytes:
        """Build the wire frame for a command and payload."""
        return (
            self.magic
            + command.ljust(12, b"\x00")
            + struct.pack("<I", len(payload))
            + checksum(payload)
            + payload
        )

    async def get_headers(self, locator: Iterable[str], stop_hash: str | None = None) -> None:
        """Send ``getheaders`` for the given locator hashes (hex, display order)."""
        message = msg_getheaders(protover=self.config.protocol_version)
        message.locator.vHave = [lx(h) for h in locator]
        message.hashstop = lx(stop_hash) if stop_hash else ZERO_HASH
        await self.send(message)

    async def get_data(self, items: Iterable[tuple[int, str]]) -> None:
        """Send ``getdata`` for ``(inventory type, hash hex)`` pairs."""
        message = msg_getdata(protover=self.config.protocol_version)
        for inv_type, inv_hash in items:
            inv = CInv()
            inv.type = inv_type
            inv.hash = lx(inv_hash)
            message.inv.append(inv)
        await self.send(message)

    async def get_block(self, block_hash: str) -> None:
        await self.get_data([(MSG_BLOCK, block_hash)])

    async def mempool(self) -> None:
        await self.send(msg_mempool(protover=self.config.protocol_version))

    def _version_message(self) -> msg_version:
        message = msg_version(protover=self.config.protocol_version)
        message.nVersion = self.config.protocol_version
        message.nServices = 0
        message.nTime = int(time.time())
        message.nNonce = random.getrandbits(64)
        message.strSubVer = self.config.user_agent.encode()
        message.fRelay = True
        return message

    async def _read_message(self) -> tuple[str, bytes]:
        header = await self._reader.readexactly(self.HEADER_SIZE)
        if header[:4] != self.magic:
            raise ProtocolViolation(
                f"Bad magic from {self.address}: {header[:4].hex()} (expected {self.magic.hex()})"
            )
        command = header[4:16].rstrip(b"\x00").decode("ascii", errors="replace")
        (length,) = struct.unpack("<I", header[16:20])
        payload = await self._reader.readexactly(length) if length else b""

        if checksum(payload) != header[20:24]:
            raise ValueError(f"Checksum mismatch on '{command}' message")
        return command, payload

    async def _read_loop(self) -> None:
        """Read messages and dispatch each one before reading the next."""
        reason = "closed by peer"
        try:
            while True:
                try:
                    command, payload = await self._read_message()
                except ValueError as e:
                    self.logger.warning(f"Dropping message from {self.address}: {e}")
                    continue
                await self._dispatch(command, payload)
        except asyncio.CancelledError:
            raise
        except asyncio.IncompleteReadError:
            self.logger.warning(f"Peer {self.address} closed the connection")
        except (OSError, ConnectionFailure, ProtocolViolation) as e:
            reason = str(e)
            self.logger.error(f"Peer connection error: {e}", exc_info=True)
            await self._emit("error", e)

        if self.state != ConnectionState.CLOSED:
            self.state = ConnectionState.DISCONNECTED
            if self._writer is not None:
                self._writer.close()
            self._reader = self._writer = None
            self._ready.set()
            await self._emit("disconnect", reason)

    async def _dispatch(self, command: str, payload: bytes) -> None:
        self.logger.debug(f"<- {command} ({len(payload)} bytes)")

        if command == "headers":
            try:
                headers = parse_headers_payload(payload)
            except Exception as e:
                self.logger.warning(f"Could not decode headers message: {e}")
                return
            await self._emit("headers", headers)
            return

        message_class = messagemap.get(command.encode())
        if message_class is None:
            self.logger.debug(f"Ignoring unsupported message '{command}'")
            return
        try:
            message = message_class.msg_deser(BytesIO(payload), self.config.protocol_version)
        except Exception as e:
            self.logger.warning(f"Could not decode '{command}' message: {e}")
            return

        match command:
            case "version":
                self.logger.info(
                    f"Peer {self.address} version {message.nVersion} "
                    f"{message.strSubVer!r} height {message.nStartingHeight}"
                )
                await self.send(msg_verack(protover=self.config.protocol_version))
            case "verack":
                self.state = ConnectionState.READY
                self._ready.set()
                self.logger.info(f"Handshake with {self.address} complete")
                await self._emit("ready")
            case "ping":
                pong = msg_pong(protover=self.config.protocol_version)
                pong.nonce = message.nonce
                await self.send(pong)
            case "inv":
                await self._emit("inv", list(message.inv))
            case "tx":
                await self._emit("tx", message.tx)
            case "block":
                await self._emit("block", message.block)
            case "notfound":
                await self._emit("notfound", list(message.inv))
            case "reject":
                await self._emit("reject", message)
            case _:
                self.logger.debug(f"Ignoring '{command}' message")

    async def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(f"Error in '{event}' handler: {e}", exc_info=True)
