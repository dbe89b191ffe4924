import pytest

from chain.decoder import (
    ZERO_ADDRESS,
    decode_address,
    decode_order,
    decode_u64,
    decode_u8,
    decode_vec_u8,
    is_valid_address,
    normalize_address,
)
from exceptions import DecodeError
from conftest import encode_order, encode_vec_u8, make_chain_order


def test_decode_order_round_trip():
    order = make_chain_order(
        order_id="42",
        status=4,
        service_fee="18446744073709551615",
        evidence_hash="0xdeadbeef",
        dispute_status=1,
    )
    key, value = encode_order(order)
    assert decode_order(key, value) == order


def test_decode_order_accepts_int_lists():
    order = make_chain_order()
    key, value = encode_order(order)
    decoded = decode_order([list(k) for k in key], [list(v) for v in value])
    assert decoded == order


def test_short_value_tuple_raises():
    key, value = encode_order(make_chain_order())
    with pytest.raises(DecodeError):
        decode_order(key, value[:15])


def test_empty_key_tuple_raises():
    _, value = encode_order(make_chain_order())
    with pytest.raises(DecodeError):
        decode_order([], value)


def test_u64_little_endian():
    assert decode_u64([1, 0, 0, 0, 0, 0, 0, 0]) == "1"
    assert decode_u64(bytes([0, 1, 0, 0, 0, 0, 0, 0])) == "256"


@pytest.mark.parametrize("value", [[1, 2, 3], [0] * 9])
def test_u64_wrong_width(value):
    with pytest.raises(DecodeError):
        decode_u64(value)


def test_u8_and_address_widths():
    assert decode_u8([6]) == 6
    with pytest.raises(DecodeError):
        decode_u8([1, 2])
    with pytest.raises(DecodeError):
        decode_address([0] * 31)
    assert decode_address([0] * 32) == ZERO_ADDRESS


def test_non_byte_values_raise():
    with pytest.raises(DecodeError):
        decode_u64(8)
    with pytest.raises(DecodeError):
        decode_u8("a")
    with pytest.raises(DecodeError):
        decode_u64([256, 0, 0, 0, 0, 0, 0, 0])


def test_vec_u8_length_prefix():
    assert decode_vec_u8([0]) == "0x"
    assert decode_vec_u8([2, 0xAB, 0xCD]) == "0xabcd"
    with pytest.raises(DecodeError):
        decode_vec_u8([3, 0xAB])
    with pytest.raises(DecodeError):
        decode_vec_u8([])


def test_vec_u8_multibyte_prefix():
    body = "0x" + "00" * 200
    encoded = encode_vec_u8(body)
    assert encoded[:2] == bytes([0xC8, 0x01])
    assert decode_vec_u8(encoded) == body


def test_normalize_address():
    assert normalize_address("0x0") == ZERO_ADDRESS
    assert normalize_address("0xAB") == "0x" + "0" * 62 + "ab"
    assert is_valid_address(normalize_address("0x1"))
    assert not is_valid_address("0x" + "g" * 64)
    assert not is_valid_address(normalize_address("0x" + "1" * 65))
