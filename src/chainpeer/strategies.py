#!/usr/bin/env python3
"""Transaction parse strategies.

A strategy turns a python-bitcoinlib ``CTransaction`` into the record handed
to filters, mappers and callers. Strategies are registered by name:

- ``raw``: the ``CTransaction`` itself (the default)
- ``hex``: the serialized transaction as a hex string
- ``txo``: flat per-input/per-output maps keyed by chunk position
- ``bpu``: inputs and outputs split into tapes of cells by delimiter rules
- ``bob``: ``bpu`` with the ``|`` and ``OP_RETURN`` delimiters preset

Any callable ``fn(tx, blk)`` can be used in place of a named strategy.
"""

import base64
import logging
from collections.abc import Callable, Iterator, Mapping
from typing import Any, ClassVar

import bitcoin
from bitcoin.base58 import CBase58Data
from bitcoin.core import CTransaction, Hash160, b2lx, b2x
from bitcoin.core.script import OPCODE_NAMES, CScript, CScriptInvalidError, CScriptOp

from .errors import UnsupportedOperation
from .models import ParsedRecord

logger = logging.getLogger(__name__)

# Pushes larger than this are moved to the ``ls``/``lb`` keys by ``bob``
LARGE_PUSH_BYTES = 512

OP_RETURN = 106

_REGISTRY: dict[str, type["ParseStrategy"]] = {}


def register(name: str) -> Callable[[type["ParseStrategy"]], type["ParseStrategy"]]:
    """Class decorator adding a strategy to the registry under ``name``."""

    def decorator(cls: type["ParseStrategy"]) -> type["ParseStrategy"]:
        cls.name = name
        _REGISTRY[name] = cls
        return cls

    return decorator


def available_strategies() -> list[str]:
    return sorted(_REGISTRY)


def script_chunks(script: bytes) -> Iterator[tuple[int, bytes | None]]:
    """Yield ``(opcode, data)`` for each chunk of a script.

    ``data`` is None for non-push opcodes, including ``OP_0``. A truncated
    push ends the iteration, which is common in data-carrier outputs.
    """
    try:
        for opcode, data, _ in CScript(script).raw_iter():
            yield opcode, (data if opcode != 0 else None)
    except CScriptInvalidError as e:
        logger.debug(f"Stopping at malformed script chunk: {e}")


def opcode_name(opcode: int) -> str:
    return OPCODE_NAMES.get(CScriptOp(opcode), f"OP_UNKNOWN_{opcode}")


def input_address(script_sig: bytes) -> str | None:
    """Address of a pay-to-pubkey-hash spend (``<sig> <pubkey>``), if any."""
    chunks = list(script_chunks(script_sig))
    if len(chunks) != 2 or any(data is None for _, data in chunks):
        return None
    pubkey = chunks[1][1]
    if len(pubkey) not in (33, 65):
        return None
    return _p2pkh_address(Hash160(pubkey))


def output_address(script_pubkey: bytes) -> str | None:
    """Address of a pay-to-pubkey-hash output script, if any."""
    if (
        len(script_pubkey) == 25
        and script_pubkey[:3] == b"\x76\xa9\x14"
        and script_pubkey[23:] == b"\x88\xac"
    ):
        return _p2pkh_address(script_pubkey[3:23])
    return None


def _p2pkh_address(pubkey_hash: bytes) -> str:
    version = bitcoin.params.BASE58_PREFIXES["PUBKEY_ADDR"]
    return str(CBase58Data.from_bytes(pubkey_hash, version))


class ParseStrategy:
    """Base class for named parse strategies."""

    name: ClassVar[str] = ""

    def parse(self, tx: CTransaction, blk: Mapping[str, Any] | None = None) -> ParsedRecord:
        raise NotImplementedError

    def __call__(self, tx: CTransaction, blk: Mapping[str, Any] | None = None) -> ParsedRecord:
        return self.parse(tx, blk)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


@register("raw")
class RawStrategy(ParseStrategy):
    """Pass the transaction through unchanged."""

    def parse(self, tx, blk=None):
        return tx


@register("hex")
class HexStrategy(ParseStrategy):
    """Serialize the transaction to hex."""

    def parse(self, tx, blk=None):
        return b2x(tx.serialize())


class _StructuredStrategy(ParseStrategy):
    """Shared skeleton for strategies producing ``{tx, in, out, lock}`` dicts."""

    def parse(self, tx, blk=None):
        record: dict[str, Any] = {
            "tx": {"h": b2lx(tx.GetTxid())},
            "in": [self._input(i, txin) for i, txin in enumerate(tx.vin)],
            "out": [self._output(i, txout) for i, txout in enumerate(tx.vout)],
            "lock": tx.nLockTime,
        }
        if blk:
            record["blk"] = dict(blk)
        return record

    def _input(self, index: int, txin) -> dict[str, Any]:
        script = bytes(txin.scriptSig)
        entry = {
            "i": index,
            "seq": txin.nSequence,
            "e": {
                "h": b2lx(txin.prevout.hash),
                "i": txin.prevout.n,
                "a": input_address(script),
            },
        }
        entry.update(self.describe_script(script))
        return entry

    def _output(self, index: int, txout) -> dict[str, Any]:
        script = bytes(txout.scriptPubKey)
        entry = {
            "i": index,
            "e": {"v": txout.nValue, "i": index, "a": output_address(script)},
        }
        entry.update(self.describe_script(script))
        return entry

    def describe_script(self, script: bytes) -> dict[str, Any]:
        raise NotImplementedError


@register("txo")
class TxoStrategy(_StructuredStrategy):
    """Flat chunk maps: ``b{n}``/``s{n}``/``h{n}`` per push, ``b{n}: {"op": ..}`` per opcode."""

    def describe_script(self, script):
        entry: dict[str, Any] = {}
        count = 0
        for n, (opcode, data) in enumerate(script_chunks(script)):
            count += 1
            if data is None:
                entry[f"b{n}"] = {"op": opcode}
            else:
                entry[f"b{n}"] = base64.b64encode(data).decode("ascii")
                entry[f"s{n}"] = data.decode("utf-8", errors="replace")
                entry[f"h{n}"] = data.hex()
        entry["len"] = count
        return entry


@register("bpu")
class BpuStrategy(_StructuredStrategy):
    """
    Split each script into tapes of cells.

    Options:
        split: list of rules ``{"token": {"s": str} | {"op": int}, "include": "l"|"r"|"c"}``.
            A matching chunk ends the current tape. ``l`` keeps the delimiter
            as the last cell of the left tape, ``r`` as the first cell of the
            next tape, ``c`` as a tape of its own; otherwise it is dropped.
        transform: ``fn(cell, context)`` applied to each cell, where context
            holds the pushed bytes under ``buf``.

    The options may also be given as a callable receiving the raw transaction
    hex and returning the options mapping.
    """

    def __init__(self, options: Mapping[str, Any] | Callable[[str], Mapping[str, Any]] | None = None):
        self.options = options

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(options={self.options!r})"

    def parse(self, tx, blk=None):
        options = self.options
        if callable(options):
            options = options(b2x(tx.serialize()))
        options = options or {}
        self._rules = list(options.get("split") or [])
        self._transform = options.get("transform")
        return super().parse(tx, blk)

    def describe_script(self, script):
        tapes: list[list[tuple[int, int, bytes | None]]] = [[]]
        for ii, (opcode, data) in enumerate(script_chunks(script)):
            chunk = (ii, opcode, data)
            rule = self._match(opcode, data)
            if rule is None:
                tapes[-1].append(chunk)
                continue
            match rule.get("include"):
                case "l":
                    tapes[-1].append(chunk)
                    tapes.append([])
                case "r":
                    tapes.append([chunk])
                case "c":
                    tapes.append([chunk])
                    tapes.append([])
                case _:
                    tapes.append([])

        tapes = [tape for tape in tapes if tape]
        return {
            "tape": [
                {"i": t, "cell": [self._cell(i, *chunk) for i, chunk in enumerate(tape)]}
                for t, tape in enumerate(tapes)
            ]
        }

    def _match(self, opcode: int, data: bytes | None) -> Mapping[str, Any] | None:
        for rule in self._rules:
            token = rule.get("token", {})
            if "op" in token and data is None and opcode == token["op"]:
                return rule
            if "s" in token and data is not None and data == token["s"].encode():
                return rule
        return None

    def _cell(self, i: int, ii: int, opcode: int, data: bytes | None) -> dict[str, Any]:
        if data is None:
            cell = {"op": opcode, "ops": opcode_name(opcode), "i": i, "ii": ii}
        else:
            cell = {
                "b": base64.b64encode(data).decode("ascii"),
                "s": data.decode("utf-8", errors="replace"),
                "h": data.hex(),
                "i": i,
                "ii": ii,
            }
        if self._transform:
            cell = self._transform(cell, {"buf": data, "op": opcode if data is None else None})
        return cell


def move_large_push(cell: dict[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    """Move oversized push contents from ``s``/``b`` to ``ls``/``lb``."""
    buf = context.get("buf")
    if buf is not None and len(buf) > LARGE_PUSH_BYTES:
        cell["ls"] = cell.pop("s")
        cell["lb"] = cell.pop("b")
    return cell


@register("bob")
class BobStrategy(BpuStrategy):
    """``bpu`` split on ``|`` pushes and on ``OP_RETURN`` (kept in the left tape)."""

    PRESET: ClassVar[dict[str, Any]] = {
        "split": [
            {"token": {"s": "|"}},
            {"token": {"op": OP_RETURN}, "include": "l"},
        ],
        "transform": move_large_push,
    }

    def __init__(self, options=None):
        super().__init__(options or self.PRESET)


class CallableStrategy(ParseStrategy):
    """Wrap a user-supplied ``fn(tx, blk)``."""

    name = "custom"

    def __init__(self, fn: Callable[..., ParsedRecord]):
        self.fn = fn

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({getattr(self.fn, '__name__', self.fn)!r})"

    def parse(self, tx, blk=None):
        return self.fn(tx, blk)


def resolve_strategy(strategy: str | Callable[..., ParsedRecord] | ParseStrategy | None, arg: Any = None) -> ParseStrategy:
    """Turn a strategy name, callable or instance into a ParseStrategy.

    Args:
        strategy: Registered name, a callable ``fn(tx, blk)`` or a strategy
            instance. None selects ``raw``.
        arg: Extra argument for the strategy (the ``bpu`` options)

    Raises:
        UnsupportedOperation: If the name is not registered
    """
    if strategy is None:
        return RawStrategy()
    if isinstance(strategy, ParseStrategy):
        return strategy
    if callable(strategy):
        return CallableStrategy(strategy)
    if strategy not in _REGISTRY:
        raise UnsupportedOperation(
            f"Unknown parse strategy: {strategy}. Available: {', '.join(available_strategies())}"
        )
    cls = _REGISTRY[strategy]
    if arg is not None and issubclass(cls, BpuStrategy):
        return cls(arg)
    return cls()
