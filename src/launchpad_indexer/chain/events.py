"""Event log and contract call codecs.

Raw logs arrive from web3 as attribute dicts with ``HexBytes`` fields. This
module normalizes them into plain dataclasses with lowercase ``0x`` strings
and decodes the three event shapes the indexer consumes: ERC20 ``Transfer``
and UniswapV2-style ``Swap`` and ``Sync``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

ZERO_ADDRESS = "0x" + "0" * 40

TRANSFER_TOPIC = "0x" + Web3.keccak(text="Transfer(address,address,uint256)").hex().removeprefix("0x")
SWAP_TOPIC = "0x" + Web3.keccak(
    text="Swap(address,uint256,uint256,uint256,uint256,address)"
).hex().removeprefix("0x")
SYNC_TOPIC = "0x" + Web3.keccak(text="Sync(uint112,uint112)").hex().removeprefix("0x")


class EventDecodeError(ValueError):
    """Raised when a log does not have the expected shape."""


def to_hex(value: Any) -> str:
    """Render bytes-like or hex-string values as a lowercase ``0x`` string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str):
        text = value.lower()
        return text if text.startswith("0x") else "0x" + text
    hex_method = getattr(value, "hex", None)
    if callable(hex_method):
        return to_hex(hex_method())
    raise TypeError(f"Cannot render {type(value).__name__} as hex")


def to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith(("0x", "0X")) else value
        return bytes.fromhex(text)
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def topic_to_address(topic: str) -> str:
    """Extract an address from a 32-byte indexed topic."""
    if len(topic) != 66:
        raise EventDecodeError(f"Unexpected topic length: {topic}")
    return "0x" + topic[-40:]


def address_to_topic(address: str) -> str:
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def selector(signature: str) -> str:
    """4-byte function selector for a canonical signature, as ``0x`` hex."""
    return "0x" + Web3.keccak(text=signature).hex().removeprefix("0x")[:8]


@dataclass(frozen=True)
class LogEvent:
    """A normalized raw log."""

    address: str
    topics: tuple[str, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> LogEvent:
        return cls(
            address=to_hex(raw["address"]),
            topics=tuple(to_hex(t) for t in raw.get("topics", ())),
            data=to_bytes(raw.get("data") or b""),
            block_number=int(raw["blockNumber"]),
            tx_hash=to_hex(raw["transactionHash"]),
            log_index=int(raw.get("logIndex") or 0),
        )

    @property
    def topic0(self) -> str | None:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class TransferEvent:
    contract_address: str
    from_address: str
    to_address: str
    amount: int
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class SwapEvent:
    pool_address: str
    sender: str
    recipient: str
    amount0_in: int
    amount1_in: int
    amount0_out: int
    amount1_out: int
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(frozen=True)
class SyncEvent:
    pool_address: str
    reserve0: int
    reserve1: int
    block_number: int
    tx_hash: str
    log_index: int


def _words(data: bytes, count: int) -> list[int]:
    if len(data) < 32 * count:
        raise EventDecodeError(f"Expected {count} words of data, got {len(data)} bytes")
    return [int.from_bytes(data[i * 32 : (i + 1) * 32], "big") for i in range(count)]


def decode_transfer(log: LogEvent) -> TransferEvent:
    if log.topic0 != TRANSFER_TOPIC or len(log.topics) < 3:
        raise EventDecodeError(f"Not a Transfer log: {log.tx_hash}:{log.log_index}")
    # Some tokens index the amount as a fourth topic.
    if len(log.topics) >= 4:
        amount = int(log.topics[3], 16)
    else:
        (amount,) = _words(log.data, 1)
    return TransferEvent(
        contract_address=log.address,
        from_address=topic_to_address(log.topics[1]),
        to_address=topic_to_address(log.topics[2]),
        amount=amount,
        block_number=log.block_number,
        tx_hash=log.tx_hash,
        log_index=log.log_index,
    )


def decode_swap(log: LogEvent) -> SwapEvent:
    if log.topic0 != SWAP_TOPIC or len(log.topics) < 3:
        raise EventDecodeError(f"Not a Swap log: {log.tx_hash}:{log.log_index}")
    amount0_in, amount1_in, amount0_out, amount1_out = _words(log.data, 4)
    return SwapEvent(
        pool_address=log.address,
        sender=topic_to_address(log.topics[1]),
        recipient=topic_to_address(log.topics[2]),
        amount0_in=amount0_in,
        amount1_in=amount1_in,
        amount0_out=amount0_out,
        amount1_out=amount1_out,
        block_number=log.block_number,
        tx_hash=log.tx_hash,
        log_index=log.log_index,
    )


def decode_sync(log: LogEvent) -> SyncEvent:
    if log.topic0 != SYNC_TOPIC:
        raise EventDecodeError(f"Not a Sync log: {log.tx_hash}:{log.log_index}")
    reserve0, reserve1 = _words(log.data, 2)
    return SyncEvent(
        pool_address=log.address,
        reserve0=reserve0,
        reserve1=reserve1,
        block_number=log.block_number,
        tx_hash=log.tx_hash,
        log_index=log.log_index,
    )


def encode_call(signature: str, arg_types: Sequence[str] = (), args: Sequence[Any] = ()) -> bytes:
    """ABI-encode a contract call: selector followed by packed arguments."""
    return to_bytes(selector(signature)) + abi_encode(list(arg_types), list(args))


def decode_uint(result: bytes) -> int:
    (value,) = abi_decode(["uint256"], result)
    return int(value)


def decode_address(result: bytes) -> str:
    (value,) = abi_decode(["address"], result)
    return str(value).lower()


GET_SELL_PRICE = "getSellPrice(uint256)"
FACTORY = "factory()"
WETH = "WETH()"
GET_PAIR = "getPair(address,address)"
TOKEN0 = "token0()"
TOKEN1 = "token1()"
DECIMALS = "decimals()"
