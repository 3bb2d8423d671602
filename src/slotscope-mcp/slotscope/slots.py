"""
Solidity storage-layout arithmetic.

Mapping values live at ``keccak256(pad32(key) ++ pad32(slot))``; a nested
mapping applies the same rule again with the inner base taking the place of
the slot. Everything here is pure: no RPC, no state.
"""

import re
from typing import Any, Optional, Tuple, Union

from eth_utils import is_address, keccak, to_checksum_address

from .errors import InvalidAddress, UnsupportedKeyType

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
_HEX_BODY = re.compile(r"^[0-9a-fA-F]*$")
_NUMERIC_TYPE = re.compile(r"^(u?)int(\d*)$")

WORD_SIZE = 32
UINT256_LIMIT = 1 << 256
ZERO_WORD = "0x" + "00" * WORD_SIZE
ZERO_ADDRESS = "0x" + "00" * 20

TRANSFER_EVENT = "Transfer(address,address,uint256)"
APPROVAL_EVENT = "Approval(address,address,uint256)"


def keccak256(data: bytes) -> bytes:
    return keccak(primitive=data)


def pad32(b: bytes) -> bytes:
    if len(b) == WORD_SIZE:
        return b
    if len(b) > WORD_SIZE:
        raise ValueError("Encoded value exceeds 32 bytes.")
    return b.rjust(WORD_SIZE, b"\x00")


def to_hex(b: bytes) -> str:
    return "0x" + b.hex()


def hex_to_bytes(value: str, field: str = "value") -> bytes:
    if not isinstance(value, str):
        raise ValueError(f"{field} must be a hex string.")
    candidate = value.strip()
    if candidate[:2] in ("0x", "0X"):
        candidate = candidate[2:]
    if not _HEX_BODY.match(candidate):
        raise ValueError(f"{field} must be a hex string.")
    if len(candidate) % 2:
        candidate = "0" + candidate
    return bytes.fromhex(candidate)


def normalize_word(value: Any, field: str = "word") -> str:
    """Return ``value`` as a 0x-prefixed, left-padded, 32-byte lowercase hex string."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, int) and not isinstance(value, bool):
        if value < 0 or value >= UINT256_LIMIT:
            raise ValueError(f"{field} out of range [0, 2^256).")
        raw = value.to_bytes(WORD_SIZE, "big")
    else:
        raw = hex_to_bytes(value, field)
    if len(raw) > WORD_SIZE:
        stripped = raw.lstrip(b"\x00")
        if len(stripped) > WORD_SIZE:
            raise ValueError(f"{field} exceeds 32 bytes.")
        raw = stripped
    return to_hex(pad32(raw))


def parse_int(value: Any, field: str) -> int:
    """Accept an int, a decimal string, or a 0x-prefixed hex string."""
    if isinstance(value, bool):
        raise ValueError(f"{field} must be an integer.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        candidate = value.strip().lower()
        negative = candidate.startswith("-")
        if negative:
            candidate = candidate[1:]
        try:
            if candidate.startswith("0x"):
                parsed = int(candidate, 16)
            elif candidate.isdigit():
                parsed = int(candidate)
            else:
                raise ValueError(candidate)
        except ValueError as exc:
            raise ValueError(f"{field} must be a decimal or 0x-prefixed hex integer.") from exc
        return -parsed if negative else parsed
    raise ValueError(f"{field} must be an integer.")


def normalize_address(value: Any) -> str:
    """Validate an address (EIP-55 checksum enforced for mixed case) and checksum it."""
    if not isinstance(value, str):
        raise InvalidAddress(value)
    candidate = value.strip()
    if not candidate.startswith(("0x", "0X")):
        candidate = f"0x{candidate}"
    if not ADDRESS_PATTERN.match(candidate) or not is_address(candidate):
        raise InvalidAddress(value)
    return to_checksum_address(candidate)


def _numeric_bits(key_type: str) -> Optional[Tuple[bool, int]]:
    match = _NUMERIC_TYPE.match(key_type)
    if not match:
        return None
    signed = match.group(1) == ""
    bits = int(match.group(2) or "256")
    if bits < 8 or bits > 256 or bits % 8:
        return None
    return signed, bits


def normalize_key_type(key_type: Any) -> str:
    if not isinstance(key_type, str):
        raise UnsupportedKeyType(key_type)
    normalized = key_type.strip().lower()
    if normalized in {"address", "bytes32"}:
        return normalized
    numeric = _numeric_bits(normalized)
    if numeric is None:
        raise UnsupportedKeyType(key_type)
    signed, bits = numeric
    return f"{'int' if signed else 'uint'}{bits}"


def encode_key(value: Any, key_type: str) -> bytes:
    """Encode a mapping key to the 32-byte word Solidity hashes for it."""
    normalized_type = normalize_key_type(key_type)

    if normalized_type == "address":
        return pad32(bytes.fromhex(normalize_address(value)[2:]))

    if normalized_type == "bytes32":
        if isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        elif isinstance(value, str) and value.strip()[:2] in ("0x", "0X"):
            raw = hex_to_bytes(value, "bytes32 key")
        else:
            raise ValueError(f"bytes32 key must be 0x-prefixed hex, got {value!r}.")
        if len(raw) != WORD_SIZE:
            raise ValueError(f"bytes32 key must be exactly 32 bytes, got {len(raw)}.")
        return raw

    signed, bits = _numeric_bits(normalized_type)  # type: ignore[misc]
    number = parse_int(value, f"{normalized_type} key")
    if signed:
        low, high = -(1 << (bits - 1)), 1 << (bits - 1)
    else:
        low, high = 0, 1 << bits
    if number < low or number >= high:
        raise ValueError(f"{normalized_type} key {value!r} out of range.")
    # Two's complement sign extension to 256 bits.
    return (number % UINT256_LIMIT).to_bytes(WORD_SIZE, "big")


def canonical_key(value: Any, key_type: str) -> str:
    """Display form used as the result key: checksum address, decimal, or bytes32 hex."""
    normalized_type = normalize_key_type(key_type)
    if normalized_type == "address":
        return normalize_address(value)
    if normalized_type == "bytes32":
        return to_hex(encode_key(value, normalized_type))
    return str(parse_int(value, f"{normalized_type} key"))


def slot_bytes(base_slot: Union[int, str]) -> bytes:
    slot = parse_int(base_slot, "slot")
    if slot < 0 or slot >= UINT256_LIMIT:
        raise ValueError("slot out of range [0, 2^256).")
    return slot.to_bytes(WORD_SIZE, "big")


def mapping_slot(base_slot: Union[int, str], key_word: bytes) -> bytes:
    return keccak256(pad32(key_word) + slot_bytes(base_slot))


def nested_mapping_slot(
    base_slot: Union[int, str], outer_word: bytes, inner_word: bytes
) -> Tuple[bytes, bytes]:
    """Return ``(inner_base, leaf)`` for ``mapping(K1 => mapping(K2 => V))``."""
    inner_base = mapping_slot(base_slot, outer_word)
    return inner_base, keccak256(pad32(inner_word) + inner_base)


def event_topic(signature: str) -> str:
    if not isinstance(signature, str) or "(" not in signature or not signature.endswith(")"):
        raise ValueError(f"Invalid event signature {signature!r}; expected e.g. {TRANSFER_EVENT}.")
    return to_hex(keccak(text=signature.replace(" ", "")))


def topic_to_address(topic: Any) -> Optional[str]:
    """Checksummed address held in a left-padded topic, or None if the topic is not one."""
    if not isinstance(topic, str):
        return None
    try:
        raw = hex_to_bytes(topic, "topic")
    except ValueError:
        return None
    if len(raw) != WORD_SIZE or any(raw[:12]):
        return None
    tail = raw[12:]
    if not any(tail):
        return None
    return to_checksum_address(to_hex(tail))
