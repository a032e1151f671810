#!/usr/bin/env python3
"""Command-line entry point for chainpeer.

Runs one query against a node (header range, block, mempool snapshot,
chain info or RPC passthrough) or watches for new blocks and mempool
transactions, printing results as JSON lines.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

# Get logger for this module
logger = logging.getLogger(__name__)

import bitcoin
from bitcoin.core import CTransaction, b2x
from dotenv import load_dotenv

from chainpeer import BlockHeader, ChainClient, ChainPeerError, ClientConfig

# python-bitcoinlib chain parameters per network, used for address encoding
BITCOIN_PARAMS = {"mainnet": "mainnet", "testnet": "testnet", "stn": "testnet", "regtest": "regtest"}


def block_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


def json_default(obj: Any) -> Any:
    match obj:
        case CTransaction():
            return b2x(obj.serialize())
        case BlockHeader():
            return obj.to_dict()
        case bytes():
            return obj.hex()
        case _:
            return str(obj)


def emit(obj: Any) -> None:
    print(json.dumps(obj, default=json_default), flush=True)


def parse_param(value: str) -> Any:
    try:
        return json.loads(value)
    except ValueError:
        return value


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="chainpeer - query blocks, headers and mempool from a Bitcoin SV node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_USER, RPC_PASSWORD - Node JSON-RPC credentials (required)
  RPC_HOST, RPC_PORT     - Node JSON-RPC endpoint (default: 127.0.0.1:8332)
  PEER_HOST, PEER_PORT   - Node P2P endpoint (default: 127.0.0.1, network port)
  NETWORK                - mainnet, testnet, regtest or stn (default: mainnet)
  CACHE_PATH             - Enable the chain cache in this directory
  CACHE_PRUNE            - Number of cached blocks to keep
  REQUEST_TIMEOUT        - Per-request deadline in seconds (default: 120)
  LOG_LEVEL              - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--parse",
        default="hex",
        help="Parse strategy: raw, hex, txo, bpu or bob (default: hex)"
    )
    parser.add_argument(
        "--chunk",
        type=int,
        default=None,
        help="Print cached transactions in lists of this size"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    header = commands.add_parser("header", help="Fetch a header or a header range")
    header.add_argument("--from", dest="from_", type=block_id, help="First block (height or hash)")
    header.add_argument("--to", type=block_id, help="Last block (height or hash)")
    header.add_argument("--at", type=block_id, help="A single block (height or hash)")

    block = commands.add_parser("block", help="Fetch a block")
    block.add_argument("id", type=block_id, help="Block height or hash")

    commands.add_parser("mempool", help="Fetch a mempool snapshot")
    commands.add_parser("info", help="Show getblockchaininfo")

    rpc = commands.add_parser("rpc", help="Call a node RPC method")
    rpc.add_argument("method", help="RPC method name, e.g. getRawTransaction")
    rpc.add_argument("params", nargs="*", type=parse_param, help="Method parameters (JSON values)")

    watch = commands.add_parser("watch", help="Print new blocks and mempool transactions")
    watch.add_argument("--no-blocks", action="store_true", help="Do not watch blocks")
    watch.add_argument("--no-mempool", action="store_true", help="Do not watch the mempool")

    return parser


def emit_transactions(tx: Any, chunk: int | None) -> None:
    if callable(tx):
        for item in tx(chunk):
            emit(item)
    else:
        for item in tx:
            emit(item)


async def run(args: argparse.Namespace, config: ClientConfig) -> None:
    async with ChainClient(config) as client:
        client.use("parse", args.parse)

        match args.command:
            case "header":
                query = {"from": args.from_, "to": args.to, "at": args.at}
                for header in await client.get("header", query):
                    emit(header)
            case "block":
                result = await client.get("block", args.id)
                emit(result.header)
                emit_transactions(result.tx, args.chunk)
            case "mempool":
                result = await client.get("mempool")
                emit_transactions(result.tx, args.chunk)
            case "info":
                emit(await client.get("info"))
            case "rpc":
                emit(await client.get("rpc", args.method, *args.params))
            case "watch":
                def on_block(result: Any) -> None:
                    emit(result.header)
                    emit_transactions(result.tx, args.chunk)

                if not args.no_blocks:
                    client.on("block", on_block)
                if not args.no_mempool:
                    client.on("mempool", emit)
                logger.info("Watching for new blocks and transactions, press Ctrl+C to stop")
                await asyncio.Event().wait()


async def main() -> None:
    """Main entry point for the chainpeer command line.

    Parses arguments, loads configuration from the environment (and a
    ``.env`` file if present), and runs the requested command.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    load_dotenv()
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    try:
        # Load configuration from environment
        config: ClientConfig = ClientConfig.from_env()
        bitcoin.SelectParams(BITCOIN_PARAMS[config.peer.network])
        await run(args, config)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RPC_USER / RPC_PASSWORD: Node JSON-RPC credentials")
        logger.error("  - PEER_HOST / PEER_PORT: Node P2P endpoint")
        logger.error("  - NETWORK: mainnet, testnet, regtest or stn")
        sys.exit(1)

    except ChainPeerError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down")
