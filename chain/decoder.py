# chain_sync/chain/decoder.py
"""
Positional decoding of Dubhe ``order`` table records.

Every tuple element is the BCS encoding of one field, delivered either as
``bytes`` or as the list of ints found in the event's parsed JSON.
"""

import re
from typing import Sequence, Union

from exceptions import DecodeError
from models import ChainOrder

ByteLike = Union[bytes, bytearray, Sequence[int]]

KEY_FIELDS = 1
VALUE_FIELDS = 16

ADDRESS_LENGTH = 32
ZERO_ADDRESS = "0x" + "0" * (ADDRESS_LENGTH * 2)

_HEX_RE = re.compile(r"^[0-9a-f]+$")


# ---------- Address helpers ----------
def normalize_address(value: str) -> str:
    """Lowercase, 0x-prefixed, left-padded to 32 bytes."""
    raw = (value or "").strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    return "0x" + raw.rjust(ADDRESS_LENGTH * 2, "0")


def is_valid_address(value: str) -> bool:
    if not isinstance(value, str) or not value.startswith("0x"):
        return False
    body = value[2:]
    return len(body) == ADDRESS_LENGTH * 2 and bool(_HEX_RE.match(body))


# ---------- Field decoders ----------
def _as_bytes(value: ByteLike, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (int, str)):
        raise DecodeError(f"{field_name}: not a byte array ({type(value).__name__})")
    try:
        return bytes(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"{field_name}: not a byte array ({e})") from e


def decode_u64(value: ByteLike, field_name: str = "u64") -> str:
    raw = _as_bytes(value, field_name)
    if len(raw) != 8:
        raise DecodeError(f"{field_name}: expected 8 bytes, got {len(raw)}")
    return str(int.from_bytes(raw, "little"))


def decode_u8(value: ByteLike, field_name: str = "u8") -> int:
    raw = _as_bytes(value, field_name)
    if len(raw) != 1:
        raise DecodeError(f"{field_name}: expected 1 byte, got {len(raw)}")
    return raw[0]


def decode_address(value: ByteLike, field_name: str = "address") -> str:
    raw = _as_bytes(value, field_name)
    if len(raw) != ADDRESS_LENGTH:
        raise DecodeError(f"{field_name}: expected {ADDRESS_LENGTH} bytes, got {len(raw)}")
    return "0x" + raw.hex()


def decode_vec_u8(value: ByteLike, field_name: str = "vector<u8>") -> str:
    raw = _as_bytes(value, field_name)
    length = 0
    shift = 0
    pos = 0
    # ULEB128 length prefix
    while True:
        if pos >= len(raw):
            raise DecodeError(f"{field_name}: truncated length prefix")
        b = raw[pos]
        pos += 1
        length |= (b & 0x7F) << shift
        if not b & 0x80:
            break
        shift += 7
        if shift > 28:
            raise DecodeError(f"{field_name}: length prefix too long")
    body = raw[pos:]
    if len(body) != length:
        raise DecodeError(f"{field_name}: declared {length} bytes, got {len(body)}")
    return "0x" + body.hex()


# ---------- Record ----------
def decode_order(key_tuple: Sequence[ByteLike], value_tuple: Sequence[ByteLike]) -> ChainOrder:
    if key_tuple is None or len(key_tuple) < KEY_FIELDS:
        raise DecodeError(f"key tuple needs {KEY_FIELDS} element(s), got {len(key_tuple or [])}")
    if value_tuple is None or len(value_tuple) < VALUE_FIELDS:
        raise DecodeError(f"value tuple needs {VALUE_FIELDS} elements, got {len(value_tuple or [])}")

    v = value_tuple
    return ChainOrder(
        order_id=decode_u64(key_tuple[0], "order_id"),
        user=decode_address(v[0], "user"),
        companion=decode_address(v[1], "companion"),
        rule_set_id=decode_u64(v[2], "rule_set_id"),
        service_fee=decode_u64(v[3], "service_fee"),
        deposit=decode_u64(v[4], "deposit"),
        platform_fee_bps=decode_u64(v[5], "platform_fee_bps"),
        status=decode_u8(v[6], "status"),
        created_at=decode_u64(v[7], "created_at"),
        finish_at=decode_u64(v[8], "finish_at"),
        dispute_deadline=decode_u64(v[9], "dispute_deadline"),
        vault_service=decode_u64(v[10], "vault_service"),
        vault_deposit=decode_u64(v[11], "vault_deposit"),
        evidence_hash=decode_vec_u8(v[12], "evidence_hash"),
        dispute_status=decode_u8(v[13], "dispute_status"),
        resolved_by=decode_address(v[14], "resolved_by"),
        resolved_at=decode_u64(v[15], "resolved_at"),
    )
