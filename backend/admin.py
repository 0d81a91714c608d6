"""Admin-side operations and account read helpers."""

import logging
from typing import Optional

from solders.pubkey import Pubkey

from errors import ItemAlreadyExists, ShopNotInitialized
from pda import history_pda, item_pda, shop_pda
from rpc import ShopConnection, Signer, send_and_confirm
from settings import ShopConfig
from shop_codec import (
    MAX_METADATA_URI_BYTES,
    U64_MAX,
    Item,
    PurchaseHistory,
    Shop,
    decode_item,
    decode_purchase_history,
    decode_shop,
)
from tx_builder import build_add_item_ix, build_initialize_shop_ix, with_compute_budget

logger = logging.getLogger("shop.admin")


async def fetch_shop(connection: ShopConnection, config: ShopConfig) -> Optional[Shop]:
    raw = await connection.get_account(shop_pda(config.program_id))
    return decode_shop(raw) if raw is not None else None


async def fetch_item(connection: ShopConnection, config: ShopConfig, item_id: int) -> Optional[Item]:
    raw = await connection.get_account(item_pda(item_id, config.program_id))
    return decode_item(raw) if raw is not None else None


async def fetch_history(connection: ShopConnection, config: ShopConfig, wallet: Pubkey) -> Optional[PurchaseHistory]:
    raw = await connection.get_account(history_pda(wallet, config.program_id))
    return decode_purchase_history(raw, owner=wallet) if raw is not None else None


async def initialize_shop(connection: ShopConnection, admin: Signer, config: ShopConfig) -> Pubkey:
    """Create the shop singleton; an existing shop is left untouched."""
    shop_address = shop_pda(config.program_id)
    if await connection.get_account(shop_address) is not None:
        logger.info("shop_init_skip existing shop=%s", shop_address)
        return shop_address
    ix = build_initialize_shop_ix(admin.pubkey, config.program_id)
    sig = await send_and_confirm(connection, admin, with_compute_budget(ix, config.compute_unit_limit))
    logger.info("shop_initialized shop=%s admin=%s sig=%s", shop_address, admin.pubkey, sig)
    return shop_address


def validate_item_args(item_id: int, price: int, metadata_uri: str) -> None:
    for name, value in (("id", item_id), ("price", price)):
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"{name} out of u64 range: {value}")
    size = len(metadata_uri.encode("utf-8"))
    if size > MAX_METADATA_URI_BYTES:
        raise ValueError(f"metadata_uri is {size} bytes; limit is {MAX_METADATA_URI_BYTES}")


async def add_item(
    connection: ShopConnection,
    admin: Signer,
    config: ShopConfig,
    item_id: int,
    price: int,
    metadata_uri: str,
) -> str:
    validate_item_args(item_id, price, metadata_uri)
    shop_address = shop_pda(config.program_id)
    item_address = item_pda(item_id, config.program_id)
    if await connection.get_account(shop_address) is None:
        raise ShopNotInitialized(shop_address)
    if await connection.get_account(item_address) is not None:
        raise ItemAlreadyExists(item_id, item_address)
    ix = build_add_item_ix(admin.pubkey, item_id, price, metadata_uri, config.program_id)
    sig = await send_and_confirm(connection, admin, with_compute_budget(ix, config.compute_unit_limit))
    logger.info("item_added id=%s price=%s item=%s sig=%s", item_id, price, item_address, sig)
    return sig
