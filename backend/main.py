import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from solana.exceptions import SolanaRpcException
from solders.pubkey import Pubkey
from sqlmodel import create_engine

from admin import fetch_item, fetch_shop
from errors import (
    DecodeError,
    InsufficientFunds,
    ItemAlreadyExists,
    ItemNotFound,
    ShopNotInitialized,
    ShopProtocolError,
    SubmissionFailed,
)
from metadata import describe_item
from mirror import HistoryMirror, history_capacity
from network import NetworkVerifier
from pda import history_pda, item_pda, shop_pda
from purchase import PurchaseWorkflow
from rpc import ShopConnection, connect_rpc
from settings import Settings, ShopConfig
from shop_codec import decode_purchase_history
from tx_builder import instruction_to_dict, message_from_instructions, to_pubkey

settings = Settings()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("shop")

SHOP_CONFIG = settings.shop_config()
NETWORK_CONFIG = settings.network_config()
engine = create_engine(settings.database_url)

app = FastAPI(title="Item Shop API", version="0.1.0")

_runtime: Dict[str, object] = {"connection": None, "mirror": None}


def _new_connection(endpoint: str) -> ShopConnection:
    return connect_rpc(
        endpoint,
        settings.commitment,
        settings.confirm_timeout_seconds,
        settings.confirm_poll_seconds,
    )


@app.on_event("startup")
async def startup_event():
    _runtime["mirror"] = HistoryMirror(engine)
    _runtime["connection"] = _new_connection(settings.solana_rpc)
    logger.info("api_started rpc=%s program=%s", settings.solana_rpc, SHOP_CONFIG.program_id)


@app.on_event("shutdown")
async def shutdown_event():
    conn = _runtime.get("connection")
    if conn is not None:
        await conn.close()
        _runtime["connection"] = None


def get_connection() -> ShopConnection:
    conn = _runtime.get("connection")
    if conn is None:
        conn = _new_connection(settings.solana_rpc)
        _runtime["connection"] = conn
    return conn


def get_mirror() -> HistoryMirror:
    mirror = _runtime.get("mirror")
    if mirror is None:
        mirror = HistoryMirror(engine)
        _runtime["mirror"] = mirror
    return mirror


def get_shop_config() -> ShopConfig:
    return SHOP_CONFIG


def get_network_verifier() -> NetworkVerifier:
    return NetworkVerifier(NETWORK_CONFIG, connect=_new_connection)


ERROR_STATUS = (
    ((ShopNotInitialized, ItemNotFound), 404),
    ((InsufficientFunds, ItemAlreadyExists), 400),
    ((DecodeError,), 500),
    ((SubmissionFailed,), 503),
)


@app.exception_handler(ShopProtocolError)
async def protocol_error_handler(request: Request, exc: ShopProtocolError):
    status = 500
    for kinds, code in ERROR_STATUS:
        if isinstance(exc, kinds):
            status = code
            break
    if status >= 500:
        logger.error("request_failed path=%s err=%s", request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(SolanaRpcException)
async def rpc_error_handler(request: Request, exc: SolanaRpcException):
    logger.error("rpc_unreachable path=%s err=%s", request.url.path, exc.error_msg)
    return JSONResponse(status_code=503, content={"detail": f"RPC unreachable: {exc.error_msg}"})


def parse_wallet(wallet: str) -> Pubkey:
    try:
        return to_pubkey(wallet)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid wallet: {wallet}") from exc


class ShopView(BaseModel):
    address: str
    admin: str
    item_count: int


class ItemView(BaseModel):
    id: int
    address: str
    name: str
    description: str
    image: str
    price_lamports: int
    price_sol: float
    metadata_uri: str


class PurchaseRecordView(BaseModel):
    item_id: int
    timestamp: int


class LocalPurchaseView(BaseModel):
    item_id: int
    timestamp: int
    position: Optional[int] = None
    signature: Optional[str] = None
    status: str


class HistoryView(BaseModel):
    wallet: str
    address: str
    exists: bool
    capacity: int
    purchases: List[PurchaseRecordView] = []
    local: List[LocalPurchaseView] = []


class KeyMeta(BaseModel):
    pubkey: str
    is_signer: bool
    is_writable: bool


class InstructionMeta(BaseModel):
    program_id: str
    keys: List[KeyMeta]
    data: str


class PurchaseBuildRequest(BaseModel):
    wallet: str
    item_id: int


class PurchaseBuildResponse(BaseModel):
    wallet: str
    item_id: int
    variant: str
    price_lamports: int
    balance_lamports: int
    history_address: str
    message_b64: str
    recent_blockhash: str
    instructions: List[InstructionMeta] = []


class NetworkStatusView(BaseModel):
    ok: bool
    endpoint: str
    expected: str
    detected: str


async def _item_view(item, address: Pubkey) -> ItemView:
    display = await run_in_threadpool(
        describe_item, item, settings.ipfs_gateway, settings.metadata_timeout_seconds
    )
    return ItemView(address=str(address), **display.model_dump())


@app.get("/health")
def health():
    return {"status": "ok", "program_id": str(SHOP_CONFIG.program_id), "rpc": settings.solana_rpc}


@app.get("/shop", response_model=ShopView)
async def get_shop(
    connection: ShopConnection = Depends(get_connection),
    config: ShopConfig = Depends(get_shop_config),
):
    shop = await fetch_shop(connection, config)
    address = shop_pda(config.program_id)
    if shop is None:
        raise ShopNotInitialized(address)
    return ShopView(address=str(address), admin=str(shop.admin), item_count=shop.item_count)


@app.get("/items/{item_id}", response_model=ItemView)
async def get_item(
    item_id: int,
    connection: ShopConnection = Depends(get_connection),
    config: ShopConfig = Depends(get_shop_config),
):
    try:
        address = item_pda(item_id, config.program_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    item = await fetch_item(connection, config, item_id)
    if item is None:
        raise ItemNotFound(item_id, address)
    return await _item_view(item, address)


@app.get("/items", response_model=List[ItemView])
async def list_items(
    connection: ShopConnection = Depends(get_connection),
    config: ShopConfig = Depends(get_shop_config),
):
    ids = list(range(1, settings.item_scan_limit + 1))
    # Independent reads; absent ids are skipped.
    items = await asyncio.gather(*(fetch_item(connection, config, item_id) for item_id in ids))
    found = [(item_id, item) for item_id, item in zip(ids, items) if item is not None]
    return list(
        await asyncio.gather(*(_item_view(item, item_pda(item_id, config.program_id)) for item_id, item in found))
    )


@app.get("/history/{wallet}", response_model=HistoryView)
async def get_history(
    wallet: str,
    connection: ShopConnection = Depends(get_connection),
    config: ShopConfig = Depends(get_shop_config),
    mirror: HistoryMirror = Depends(get_mirror),
):
    owner = parse_wallet(wallet)
    address = history_pda(owner, config.program_id)
    raw = await connection.get_account(address)
    purchases: List[PurchaseRecordView] = []
    if raw is None:
        capacity = history_capacity()
    else:
        history = decode_purchase_history(raw, owner=owner)
        await run_in_threadpool(mirror.sync, history)
        capacity = history_capacity(len(raw))
        purchases = [PurchaseRecordView(item_id=p.item_id, timestamp=p.timestamp) for p in history.purchases]
    local = [
        LocalPurchaseView(
            item_id=row.item_id,
            timestamp=row.timestamp,
            position=row.position,
            signature=row.signature,
            status=row.status,
        )
        for row in await run_in_threadpool(mirror.local_view, str(owner))
    ]
    return HistoryView(
        wallet=str(owner),
        address=str(address),
        exists=raw is not None,
        capacity=capacity,
        purchases=purchases,
        local=local,
    )


@app.post("/purchase/build", response_model=PurchaseBuildResponse)
async def build_purchase(
    req: PurchaseBuildRequest,
    connection: ShopConnection = Depends(get_connection),
    config: ShopConfig = Depends(get_shop_config),
):
    buyer = parse_wallet(req.wallet)
    workflow = PurchaseWorkflow(connection, config)
    try:
        plan = await workflow.prepare(buyer, req.item_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    blockhash = await connection.get_latest_blockhash()
    message_b64 = message_from_instructions(plan.instructions, buyer, blockhash)
    logger.info("purchase_build wallet=%s item=%s opcode=%s", buyer, req.item_id, plan.variant)
    return PurchaseBuildResponse(
        wallet=str(buyer),
        item_id=req.item_id,
        variant=plan.variant,
        price_lamports=plan.item.price,
        balance_lamports=plan.balance,
        history_address=str(plan.history_address),
        message_b64=message_b64,
        recent_blockhash=str(blockhash),
        instructions=[InstructionMeta(**instruction_to_dict(ix)) for ix in plan.instructions],
    )


@app.get("/network/status", response_model=NetworkStatusView)
async def network_status(
    endpoint: Optional[str] = None,
    connection: ShopConnection = Depends(get_connection),
    verifier: NetworkVerifier = Depends(get_network_verifier),
):
    if endpoint:
        candidate = verifier.connect(endpoint)
        try:
            status = await verifier.verify(candidate)
        finally:
            await candidate.close()
    else:
        status = await verifier.verify(connection)
    return NetworkStatusView(
        ok=status.ok,
        endpoint=endpoint or settings.solana_rpc,
        expected=status.expected.name,
        detected=status.detected_name,
    )
