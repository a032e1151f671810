import itertools
import json
import logging
from typing import Any

import httpx

from ..config import RpcConfig
from ..errors import RpcError, TransportError, UnsupportedOperation

logger = logging.getLogger(__name__)


class NodeRpc:
    """JSON-RPC client for the node.

    Provides the handful of lookups the client needs (block hash by height,
    block header by hash, chain info) plus a passthrough for any known
    node method.
    """

    # Method names accepted by the passthrough, compared case-insensitively
    KNOWN_METHODS: frozenset[str] = frozenset(
        name.lower()
        for name in (
            "abandonTransaction", "addNode", "clearBanned", "createRawTransaction",
            "decodeRawTransaction", "decodeScript", "disconnectNode", "estimateFee",
            "generate", "getAddedNodeInfo", "getBalance", "getBestBlockHash",
            "getBlock", "getBlockchainInfo", "getBlockCount", "getBlockHash",
            "getBlockHeader", "getBlockTemplate", "getChainTips",
            "getConnectionCount", "getDifficulty", "getInfo", "getMempoolInfo",
            "getMiningInfo", "getNetTotals", "getNetworkInfo", "getNewAddress",
            "getPeerInfo", "getRawMempool", "getRawTransaction", "getTransaction",
            "getTxOut", "getTxOutProof", "getTxOutSetInfo", "help", "listBanned",
            "listUnspent", "ping", "prioritiseTransaction", "sendRawTransaction",
            "setBan", "signMessage", "signRawTransaction", "submitBlock",
            "validateAddress", "verifyChain", "verifyMessage", "verifyTxOutProof",
        )
    )

    def __init__(self, config: RpcConfig) -> None:
        """Initialize the RPC client.

        Args:
            config: RPC endpoint settings
        """
        self.config: RpcConfig = config
        self._ids = itertools.count(1)

    def supports(self, method: str) -> bool:
        return isinstance(method, str) and method.lower() in self.KNOWN_METHODS

    async def call(self, method: str, *params: Any) -> Any:
        """Post a JSON-RPC request to the node.

        Args:
            method: RPC method name
            *params: Positional RPC parameters

        Returns:
            The ``result`` member of the response

        Raises:
            RpcError: If the node answers with an error object
            TransportError: If the HTTP exchange fails
        """
        payload: dict[str, Any] = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method.lower(),
            "params": list(params),
        }
        auth = httpx.BasicAuth(self.config.user, self.config.password)

        try:
            async with httpx.AsyncClient(auth=auth) as client:
                logger.debug(f"Posting to {self.config.url}: {json.dumps(payload)}")
                response: httpx.Response = await client.post(
                    self.config.url, json=payload, timeout=self.config.timeout
                )
        except httpx.HTTPError as e:
            raise TransportError(f"RPC request {method} failed: {e}") from e

        # bitcoind reports RPC errors with a non-2xx status and a JSON body
        try:
            body = response.json()
        except ValueError:
            body = None

        match body:
            case {"error": {"code": code, "message": message}}:
                raise RpcError(f"RPC error code={code} message={message}", code=code, method=method)
            case {"error": error} if error is not None:
                raise RpcError(f"RPC error: {error}", method=method)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(f"RPC request {method} failed: HTTP {response.status_code}") from e

        if not isinstance(body, dict) or "result" not in body:
            raise TransportError(f"Malformed RPC response for {method}")
        return body["result"]

    async def passthrough(self, method: str, *params: Any) -> Any:
        """Call any known node method by name.

        Raises:
            UnsupportedOperation: If the method is not a known node method
        """
        if not self.supports(method):
            raise UnsupportedOperation(f"No such JSON-RPC method exists: {method}")
        return await self.call(method, *params)

    async def get_block_hash(self, height: int) -> str:
        return await self.call("getblockhash", height)

    async def get_block_header(self, block_hash: str) -> dict[str, Any]:
        return await self.call("getblockheader", block_hash, True)

    async def get_blockchain_info(self) -> dict[str, Any]:
        return await self.call("getblockchaininfo")
