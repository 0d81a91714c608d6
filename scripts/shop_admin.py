#!/usr/bin/env python3
"""
Operator CLI for the on-chain item shop.

Examples:
    python scripts/shop_admin.py init --keypair wallets/admin.json
    python scripts/shop_admin.py add-item 1 1000000000 https://x/y.png --image
    python scripts/shop_admin.py get-item 1
    python scripts/shop_admin.py purchase 1 --keypair wallets/buyer.json
    python scripts/shop_admin.py history <wallet>
    python scripts/shop_admin.py network
    python scripts/shop_admin.py new-wallet wallets/buyer.json

RPC endpoint, program id and default keypair paths come from the same
environment / .env settings the API uses.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

sys.path.append(str(Path(__file__).resolve().parents[1] / "backend"))

from sqlmodel import create_engine  # noqa: E402

from admin import add_item, fetch_history, fetch_item, initialize_shop  # noqa: E402
from errors import ShopProtocolError  # noqa: E402
from metadata import image_uri_metadata, lamports_to_sol  # noqa: E402
from mirror import HistoryMirror  # noqa: E402
from network import NetworkVerifier  # noqa: E402
from pda import history_pda, item_pda, shop_pda  # noqa: E402
from purchase import run_purchase_workflow  # noqa: E402
from rpc import KeypairSigner, connect_rpc, load_keypair, load_or_create_keypair  # noqa: E402
from settings import Settings  # noqa: E402
from tx_builder import to_pubkey  # noqa: E402

logger = logging.getLogger("shop.cli")


def signer_from(path: Optional[str], fallback: Optional[str], role: str) -> KeypairSigner:
    chosen = path or fallback
    if not chosen:
        raise SystemExit(f"No {role} keypair: pass --keypair or set {role.upper()}_KEYPAIR_PATH")
    return KeypairSigner(load_keypair(chosen))


def explorer_line(config, signature: str) -> str:
    url = config.explorer_tx_url(signature)
    return f"  tx: {signature}" + (f"\n  explorer: {url}" if url else "")


async def cmd_init(args, settings: Settings) -> int:
    config = settings.shop_config()
    admin = signer_from(args.keypair, settings.admin_keypair_path, "admin")
    conn = connect_rpc(settings.solana_rpc, settings.commitment, settings.confirm_timeout_seconds, settings.confirm_poll_seconds)
    try:
        address = await initialize_shop(conn, admin, config)
    finally:
        await conn.close()
    print(f"Shop: {address}")
    print(f"Admin: {admin.pubkey}")
    return 0


async def cmd_add_item(args, settings: Settings) -> int:
    config = settings.shop_config()
    admin = signer_from(args.keypair, settings.admin_keypair_path, "admin")
    uri = image_uri_metadata(args.uri) if args.image else args.uri
    conn = connect_rpc(settings.solana_rpc, settings.commitment, settings.confirm_timeout_seconds, settings.confirm_poll_seconds)
    try:
        sig = await add_item(conn, admin, config, args.id, args.price, uri)
    finally:
        await conn.close()
    print(f"Item #{args.id}: {item_pda(args.id, config.program_id)}")
    print(f"  price: {args.price} lamports ({lamports_to_sol(args.price)} SOL)")
    print(f"  metadata_uri: {uri}")
    print(explorer_line(config, sig))
    return 0


async def cmd_get_item(args, settings: Settings) -> int:
    config = settings.shop_config()
    conn = connect_rpc(settings.solana_rpc, settings.commitment)
    try:
        item = await fetch_item(conn, config, args.id)
    finally:
        await conn.close()
    address = item_pda(args.id, config.program_id)
    if item is None:
        print(f"Item #{args.id} not found at {address}")
        return 1
    print(f"Item #{item.id}: {address}")
    print(f"  price: {item.price} lamports ({lamports_to_sol(item.price)} SOL)")
    print(f"  metadata_uri: {item.metadata_uri}")
    return 0


async def cmd_history(args, settings: Settings) -> int:
    config = settings.shop_config()
    if args.wallet:
        wallet = to_pubkey(args.wallet)
    else:
        wallet = signer_from(args.keypair, settings.buyer_keypair_path, "buyer").pubkey
    conn = connect_rpc(settings.solana_rpc, settings.commitment)
    try:
        history = await fetch_history(conn, config, wallet)
    finally:
        await conn.close()
    print(f"History for {wallet}: {history_pda(wallet, config.program_id)}")
    if history is None:
        print("  no purchases yet")
        return 0
    for idx, record in enumerate(history.purchases, start=1):
        print(f"  {idx}. item #{record.item_id} at {record.timestamp}")
    return 0


async def cmd_purchase(args, settings: Settings) -> int:
    config = settings.shop_config()
    buyer = signer_from(args.keypair, settings.buyer_keypair_path, "buyer")
    mirror = HistoryMirror(create_engine(settings.database_url))
    conn = connect_rpc(settings.solana_rpc, settings.commitment, settings.confirm_timeout_seconds, settings.confirm_poll_seconds)
    try:
        outcome = await run_purchase_workflow(conn, buyer, config, args.id, mirror=mirror)
    finally:
        await conn.close()
    print(f"Buyer: {buyer.pubkey}")
    print(f"Shop: {shop_pda(config.program_id)}")
    print(f"Item #{args.id}: {item_pda(args.id, config.program_id)}")
    print(f"History: {history_pda(buyer.pubkey, config.program_id)}")
    if outcome.variant:
        print(f"  opcode: {outcome.variant}")
    if outcome.signature:
        print(explorer_line(config, outcome.signature))
    if not outcome.confirmed:
        print(f"Purchase failed: {outcome.reason}")
        return 1
    print("Purchase confirmed")
    return 0


async def cmd_network(args, settings: Settings) -> int:
    network_config = settings.network_config()
    verifier = NetworkVerifier(network_config)
    endpoint = args.endpoint or settings.solana_rpc
    conn = connect_rpc(endpoint, settings.commitment)
    try:
        status = await verifier.verify(conn)
    finally:
        await conn.close()
    if status.ok:
        print(f"{endpoint} is {status.expected.name}")
        return 0
    print(f"Network mismatch: expected {status.expected.name}, connected to {status.detected_name}")
    return 1


async def cmd_new_wallet(args, settings: Settings) -> int:
    kp = load_or_create_keypair(args.path)
    print(f"Wallet {args.path}: {kp.pubkey()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Operate the on-chain item shop.")
    parser.add_argument("--keypair", help="Keypair file (overrides ADMIN_/BUYER_KEYPAIR_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Initialize the shop singleton")
    p.set_defaults(handler=cmd_init)

    p = sub.add_parser("add-item", help="Add an item to the catalog")
    p.add_argument("id", type=int)
    p.add_argument("price", type=int, help="Price in lamports")
    p.add_argument("uri", help="Metadata URI (or image URL with --image)")
    p.add_argument("--image", action="store_true", help="Store the URI as image:<url> metadata")
    p.set_defaults(handler=cmd_add_item)

    p = sub.add_parser("get-item", help="Show an item")
    p.add_argument("id", type=int)
    p.set_defaults(handler=cmd_get_item)

    p = sub.add_parser("history", help="Show a wallet's purchase history")
    p.add_argument("wallet", nargs="?")
    p.set_defaults(handler=cmd_history)

    p = sub.add_parser("purchase", help="Buy an item with the buyer keypair")
    p.add_argument("id", type=int)
    p.set_defaults(handler=cmd_purchase)

    p = sub.add_parser("network", help="Check which network the RPC endpoint serves")
    p.add_argument("--endpoint")
    p.set_defaults(handler=cmd_network)

    p = sub.add_parser("new-wallet", help="Create a keypair file if it does not exist")
    p.add_argument("path")
    p.set_defaults(handler=cmd_new_wallet)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = build_parser().parse_args(argv)
    settings = Settings()
    try:
        return asyncio.run(args.handler(args, settings))
    except (ShopProtocolError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
