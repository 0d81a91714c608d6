import hashlib
import struct

import pytest
from solders.pubkey import Pubkey

from errors import DecodeError, HistoryOwnerMismatch, InvalidUtf8, TruncatedBuffer
from shop_codec import (
    ACCOUNT_DISCRIMINATORS,
    INSTRUCTION_DISCRIMINATORS,
    Item,
    PurchaseHistory,
    PurchaseRecord,
    Shop,
    decode_item,
    decode_purchase_history,
    decode_shop,
    encode_instruction_args,
    encode_item,
    encode_purchase_history,
    encode_shop,
    instruction_name,
)

DISC = b"\xaa" * 8


def test_decode_shop_reads_admin_and_count():
    admin = Pubkey.new_unique()
    raw = DISC + bytes(admin) + struct.pack("<Q", 42)
    shop = decode_shop(raw)
    assert shop == Shop(admin=admin, item_count=42)


def test_decode_item_reads_length_prefixed_uri():
    uri = "image:https://x/y.png"
    raw = DISC + struct.pack("<QQI", 1, 1_000_000_000, len(uri)) + uri.encode()
    assert decode_item(raw) == Item(id=1, price=1_000_000_000, metadata_uri=uri)


def test_decode_item_ignores_trailing_allocation():
    raw = DISC + struct.pack("<QQI", 5, 10, 3) + b"abc" + b"\x00" * 197
    assert decode_item(raw).metadata_uri == "abc"


def test_decode_history_preserves_order_and_signed_timestamps():
    user = Pubkey.new_unique()
    raw = DISC + bytes(user) + struct.pack("<I", 3)
    raw += struct.pack("<Qq", 2, 1_700_000_000) + struct.pack("<Qq", 1, -5) + struct.pack("<Qq", 2, 0)
    history = decode_purchase_history(raw)
    assert history.user == user
    assert [(p.item_id, p.timestamp) for p in history.purchases] == [(2, 1_700_000_000), (1, -5), (2, 0)]


def test_encoded_records_decode_back():
    admin = Pubkey.new_unique()
    shop = Shop(admin=admin, item_count=2**64 - 1)
    item = Item(id=9, price=123, metadata_uri="ipfs://bafy/é")
    history = PurchaseHistory(user=admin, purchases=(PurchaseRecord(9, 1), PurchaseRecord(3, -1)))
    assert decode_shop(encode_shop(shop)) == shop
    assert decode_item(encode_item(item)) == item
    assert decode_purchase_history(encode_purchase_history(history)) == history


def test_encoders_prefix_account_discriminators():
    assert ACCOUNT_DISCRIMINATORS["Shop"] == hashlib.sha256(b"account:Shop").digest()[:8]
    item = encode_item(Item(id=1, price=1, metadata_uri=""))
    assert item[:8] == ACCOUNT_DISCRIMINATORS["Item"]


@pytest.mark.parametrize("cut", [0, 7, 8, 39, 47])
def test_truncated_shop(cut):
    raw = encode_shop(Shop(admin=Pubkey.new_unique(), item_count=1))
    with pytest.raises(TruncatedBuffer) as exc:
        decode_shop(raw[:cut])
    assert exc.value.record == "Shop"


def test_item_string_longer_than_buffer_is_truncated():
    raw = DISC + struct.pack("<QQI", 1, 1, 50) + b"short"
    with pytest.raises(TruncatedBuffer) as exc:
        decode_item(raw)
    assert exc.value.available == len(raw)
    assert exc.value.needed > len(raw)


def test_history_count_larger_than_buffer_is_truncated():
    raw = DISC + bytes(Pubkey.new_unique()) + struct.pack("<I", 0xFFFFFFFF) + struct.pack("<Qq", 1, 1)
    with pytest.raises(TruncatedBuffer):
        decode_purchase_history(raw)


def test_invalid_utf8_metadata():
    raw = DISC + struct.pack("<QQI", 1, 1, 2) + b"\xff\xfe"
    with pytest.raises(InvalidUtf8) as exc:
        decode_item(raw)
    assert isinstance(exc.value, DecodeError)


def test_argless_instructions_are_just_the_tag():
    for name in ("initialize_shop", "first_purchase", "subsequent_purchase"):
        assert encode_instruction_args(name) == INSTRUCTION_DISCRIMINATORS[name]
    assert INSTRUCTION_DISCRIMINATORS["first_purchase"] == bytes([109, 212, 45, 217, 228, 42, 205, 63])
    assert INSTRUCTION_DISCRIMINATORS["subsequent_purchase"] == bytes([223, 75, 242, 206, 210, 168, 187, 166])


def test_add_item_args_layout():
    data = encode_instruction_args("add_item", {"id": 1, "price": 2, "metadata_uri": "ab"})
    assert data == INSTRUCTION_DISCRIMINATORS["add_item"] + struct.pack("<QQI", 1, 2, 2) + b"ab"
    assert instruction_name(data) == "add_item"


def test_add_item_args_validation():
    with pytest.raises(ValueError):
        encode_instruction_args("add_item", {"id": -1, "price": 2, "metadata_uri": ""})
    with pytest.raises(ValueError):
        encode_instruction_args("add_item", {"id": 1, "price": 2**64, "metadata_uri": ""})
    with pytest.raises(ValueError):
        encode_instruction_args("add_item", {"id": 1, "price": 1, "metadata_uri": "x" * 201})
    with pytest.raises(ValueError):
        encode_instruction_args("add_item")


def test_unknown_or_overloaded_instruction():
    with pytest.raises(ValueError):
        encode_instruction_args("delete_item")
    with pytest.raises(ValueError):
        encode_instruction_args("first_purchase", {"id": 1})
    assert instruction_name(b"\x00" * 8) is None


def test_history_owner_must_match_stored_user():
    owner, other = Pubkey.new_unique(), Pubkey.new_unique()
    raw = encode_purchase_history(PurchaseHistory(user=other, purchases=(PurchaseRecord(1, 5),)))
    assert decode_purchase_history(raw).user == other
    with pytest.raises(HistoryOwnerMismatch) as exc:
        decode_purchase_history(raw, owner=owner)
    assert isinstance(exc.value, DecodeError)
    assert exc.value.owner == owner and exc.value.user == other
    assert decode_purchase_history(raw, owner=other).purchases == (PurchaseRecord(1, 5),)
