# predblink/chain/abi_decoder.py
"""
Bespoke ABI decoding for contract event logs.

Indexed parameters occupy `topics[1:]` in declaration order, one 32-byte
slot each. Non-indexed parameters are packed into `data`: a head of one
slot per parameter, where dynamic types (`string`, `bytes`) hold a byte
offset into `data` pointing at a length-prefixed payload.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from web3 import Web3

from predblink.errors import DecodeError

WORD_SIZE = 32
DYNAMIC_TYPES = ("string", "bytes")

_HEX_RE = re.compile(r"^0x([0-9a-fA-F]{2})*$")
_UINT_RE = re.compile(r"^uint(\d{0,3})$")
_FIXED_BYTES_RE = re.compile(r"^bytes(\d{1,2})$")


@dataclass(frozen=True)
class AbiParam:
    name: str
    abi_type: str
    indexed: bool = False

    @property
    def is_dynamic(self) -> bool:
        return self.abi_type in DYNAMIC_TYPES


@dataclass(frozen=True)
class EventShape:
    """Static description of one event: its name and ordered parameters."""

    name: str
    params: Tuple[AbiParam, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.abi_type for p in self.params)})"

    @property
    def topic0(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))

    @property
    def indexed_params(self) -> Tuple[AbiParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def data_params(self) -> Tuple[AbiParam, ...]:
        return tuple(p for p in self.params if not p.indexed)


def hex_to_bytes(value: str, field: str = "data") -> bytes:
    if not isinstance(value, str) or not _HEX_RE.match(value):
        raise DecodeError(f"{field} is not 0x-prefixed, even-length hex")
    return bytes.fromhex(value[2:])


def read_word(data: bytes, offset: int) -> bytes:
    if offset < 0 or offset + WORD_SIZE > len(data):
        raise DecodeError(f"word at byte {offset} is out of bounds (data is {len(data)} bytes)")
    return data[offset:offset + WORD_SIZE]


def decode_uint(word: bytes, bits: int = 256) -> int:
    value = int.from_bytes(word, "big")
    if value >> bits:
        raise DecodeError(f"value does not fit in uint{bits}")
    return value


def decode_bool(word: bytes) -> bool:
    return int.from_bytes(word, "big") == 1


def decode_address(word: bytes) -> str:
    if any(word[:12]):
        raise DecodeError("address slot has non-zero high bytes")
    return "0x" + word[12:].hex()


def decode_static(abi_type: str, word: bytes) -> Any:
    if abi_type == "address":
        return decode_address(word)
    if abi_type == "bool":
        return decode_bool(word)

    uint_match = _UINT_RE.match(abi_type)
    if uint_match:
        return decode_uint(word, int(uint_match.group(1) or 256))

    bytes_match = _FIXED_BYTES_RE.match(abi_type)
    if bytes_match:
        size = int(bytes_match.group(1))
        if not 1 <= size <= WORD_SIZE:
            raise DecodeError(f"invalid fixed bytes type {abi_type}")
        return "0x" + word[:size].hex()

    raise DecodeError(f"unsupported ABI type {abi_type}")


def decode_dynamic(abi_type: str, data: bytes, head_word: bytes) -> Any:
    """Follow a head-slot offset to its length-prefixed tail payload."""
    offset = int.from_bytes(head_word, "big")
    if offset > len(data):
        raise DecodeError(f"{abi_type} offset {offset} points past end of data ({len(data)} bytes)")

    length = int.from_bytes(read_word(data, offset), "big")
    start = offset + WORD_SIZE
    if length > len(data) - start:
        raise DecodeError(f"{abi_type} length {length} at offset {offset} exceeds data")

    payload = data[start:start + length]
    if abi_type == "bytes":
        return "0x" + payload.hex()

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"string at offset {offset} is not valid UTF-8") from e

    # PostgreSQL TEXT cannot hold NUL
    if "\x00" in text:
        raise DecodeError(f"string at offset {offset} contains a NUL character")
    return text


def decode_log(topics: Tuple[str, ...], data_hex: str, shape: EventShape) -> Dict[str, Any]:
    """
    Decode one log against `shape`.

    Pure function: the same input always yields the same dict of
    parameter name -> value, or raises DecodeError.
    """
    indexed = shape.indexed_params
    if len(topics) != len(indexed) + 1:
        raise DecodeError(
            f"{shape.name} expects {len(indexed) + 1} topics, got {len(topics)}"
        )

    values: Dict[str, Any] = {}

    for param, topic in zip(indexed, topics[1:]):
        word = hex_to_bytes(topic, field=f"topic {param.name}")
        if len(word) != WORD_SIZE:
            raise DecodeError(f"topic {param.name} is not a 32-byte word")
        # indexed dynamic values are stored as their keccak hash
        if param.is_dynamic:
            values[param.name] = "0x" + word.hex()
        else:
            values[param.name] = decode_static(param.abi_type, word)

    data = hex_to_bytes(data_hex)
    for position, param in enumerate(shape.data_params):
        head_word = read_word(data, position * WORD_SIZE)
        if param.is_dynamic:
            values[param.name] = decode_dynamic(param.abi_type, data, head_word)
        else:
            values[param.name] = decode_static(param.abi_type, head_word)

    return values
