"""
Binary layouts of the shop program's accounts and instruction arguments.

Every account starts with an 8-byte discriminator that is skipped on decode.
Integers are little-endian; strings and vectors carry a u32 length prefix.
Encoding goes through borsh layouts, decoding through explicit bounds-checked
readers so a short buffer is always a TruncatedBuffer.
"""

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from borsh_construct import CStruct, I64, String, U64, U8, Vec
from solders.pubkey import Pubkey

from errors import HistoryOwnerMismatch, InvalidUtf8, TruncatedBuffer

DISCRIMINATOR_SIZE = 8
PUBKEY_SIZE = 32
PURCHASE_RECORD_SIZE = 8 + 8
MAX_METADATA_URI_BYTES = 200
U64_MAX = (1 << 64) - 1

# Bump when the deployed program's layouts change.
LAYOUT_VERSION = 1


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


ACCOUNT_DISCRIMINATORS: Dict[str, bytes] = {
    name: account_discriminator(name) for name in ("Shop", "Item", "PurchaseHistory")
}

# Opcode tags agreed with the deployed program (from its IDL).
INSTRUCTION_DISCRIMINATORS: Dict[str, bytes] = {
    "initialize_shop": bytes([76, 158, 246, 22, 47, 236, 107, 186]),
    "add_item": bytes([225, 38, 79, 147, 116, 142, 147, 57]),
    "first_purchase": bytes([109, 212, 45, 217, 228, 42, 205, 63]),
    "subsequent_purchase": bytes([223, 75, 242, 206, 210, 168, 187, 166]),
}

ShopLayout = CStruct("admin" / U8[32], "item_count" / U64)
ItemLayout = CStruct("id" / U64, "price" / U64, "metadata_uri" / String)
PurchaseRecordLayout = CStruct("item_id" / U64, "timestamp" / I64)
PurchaseHistoryLayout = CStruct("user" / U8[32], "purchases" / Vec(PurchaseRecordLayout))
AddItemArgsLayout = CStruct("id" / U64, "price" / U64, "metadata_uri" / String)

INSTRUCTION_ARG_LAYOUTS = {
    "add_item": AddItemArgsLayout,
}


@dataclass(frozen=True)
class Shop:
    admin: Pubkey
    item_count: int


@dataclass(frozen=True)
class Item:
    id: int
    price: int  # lamports
    metadata_uri: str


@dataclass(frozen=True)
class PurchaseRecord:
    item_id: int
    timestamp: int


@dataclass(frozen=True)
class PurchaseHistory:
    user: Pubkey
    purchases: Tuple[PurchaseRecord, ...] = ()


class _Reader:
    def __init__(self, data: bytes, record: str):
        self.data = bytes(data)
        self.offset = 0
        self.record = record

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def require(self, size: int) -> None:
        if size > self.remaining():
            raise TruncatedBuffer(self.record, needed=self.offset + size, available=len(self.data))

    def take(self, size: int) -> bytes:
        self.require(size)
        chunk = self.data[self.offset : self.offset + size]
        self.offset += size
        return chunk

    def skip_discriminator(self) -> None:
        self.take(DISCRIMINATOR_SIZE)

    def u32(self) -> int:
        return int.from_bytes(self.take(4), "little")

    def u64(self) -> int:
        return int.from_bytes(self.take(8), "little")

    def i64(self) -> int:
        return int.from_bytes(self.take(8), "little", signed=True)

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(PUBKEY_SIZE))

    def string(self) -> str:
        length = self.u32()
        raw = self.take(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidUtf8(self.record, f"string at offset {self.offset - length} is not valid UTF-8") from exc


def decode_shop(data: bytes) -> Shop:
    reader = _Reader(data, "Shop")
    reader.skip_discriminator()
    admin = reader.pubkey()
    item_count = reader.u64()
    return Shop(admin=admin, item_count=item_count)


def decode_item(data: bytes) -> Item:
    reader = _Reader(data, "Item")
    reader.skip_discriminator()
    item_id = reader.u64()
    price = reader.u64()
    metadata_uri = reader.string()
    return Item(id=item_id, price=price, metadata_uri=metadata_uri)


def decode_purchase_history(data: bytes, owner: Optional[Pubkey] = None) -> PurchaseHistory:
    """With ``owner`` set, the stored user must be the wallet the address was derived from."""
    reader = _Reader(data, "PurchaseHistory")
    reader.skip_discriminator()
    user = reader.pubkey()
    count = reader.u32()
    # Check the whole vector up front; a corrupt count must not drive the loop.
    reader.require(count * PURCHASE_RECORD_SIZE)
    purchases = tuple(PurchaseRecord(item_id=reader.u64(), timestamp=reader.i64()) for _ in range(count))
    if owner is not None and user != owner:
        raise HistoryOwnerMismatch(owner, user)
    return PurchaseHistory(user=user, purchases=purchases)


def _check_u64(name: str, value: int) -> None:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"{name} out of u64 range: {value}")


def _check_metadata_uri(metadata_uri: str) -> None:
    size = len(metadata_uri.encode("utf-8"))
    if size > MAX_METADATA_URI_BYTES:
        raise ValueError(f"metadata_uri is {size} bytes; the item account holds at most {MAX_METADATA_URI_BYTES}")


def encode_shop(shop: Shop) -> bytes:
    _check_u64("item_count", shop.item_count)
    body = ShopLayout.build({"admin": list(bytes(shop.admin)), "item_count": shop.item_count})
    return ACCOUNT_DISCRIMINATORS["Shop"] + body


def encode_item(item: Item) -> bytes:
    _check_u64("id", item.id)
    _check_u64("price", item.price)
    body = ItemLayout.build({"id": item.id, "price": item.price, "metadata_uri": item.metadata_uri})
    return ACCOUNT_DISCRIMINATORS["Item"] + body


def encode_purchase_history(history: PurchaseHistory) -> bytes:
    body = PurchaseHistoryLayout.build(
        {
            "user": list(bytes(history.user)),
            "purchases": [{"item_id": p.item_id, "timestamp": p.timestamp} for p in history.purchases],
        }
    )
    return ACCOUNT_DISCRIMINATORS["PurchaseHistory"] + body


def encode_instruction_args(variant: str, args: Optional[Mapping[str, Any]] = None) -> bytes:
    """Opcode tag followed by the borsh-encoded arguments of ``variant``."""
    try:
        tag = INSTRUCTION_DISCRIMINATORS[variant]
    except KeyError:
        raise ValueError(f"Unknown instruction {variant}") from None
    layout = INSTRUCTION_ARG_LAYOUTS.get(variant)
    if layout is None:
        if args:
            raise ValueError(f"{variant} takes no arguments")
        return tag
    if args is None:
        raise ValueError(f"{variant} requires arguments")
    if variant == "add_item":
        _check_u64("id", args["id"])
        _check_u64("price", args["price"])
        _check_metadata_uri(args["metadata_uri"])
    return tag + layout.build(dict(args))


def instruction_name(data: bytes) -> Optional[str]:
    tag = bytes(data[:DISCRIMINATOR_SIZE])
    for name, value in INSTRUCTION_DISCRIMINATORS.items():
        if value == tag:
            return name
    return None
