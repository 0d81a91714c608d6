"""
Connection and signing capabilities used by the shop protocol layer.

The workflow only talks to the ``ShopConnection`` and ``Signer`` protocols;
``SolanaRpcConnection`` and ``KeypairSigner`` are the production adapters over
solana-py's AsyncClient and a local solders keypair. Tests substitute an
in-memory connection with the same surface.
"""

import asyncio
import enum
import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import SigningRejected, SubmissionFailed
from tx_builder import compile_message

logger = logging.getLogger("shop.rpc")

DEFAULT_CONFIRM_TIMEOUT = 30.0
DEFAULT_CONFIRM_POLL = 0.8
SIGNATURE_SIZE = 64


class ConfirmationStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class Confirmation:
    status: ConfirmationStatus
    reason: Optional[str] = None
    timeout: Optional[float] = None


class ShopConnection(Protocol):
    async def get_account(self, address: Pubkey) -> Optional[bytes]: ...

    async def get_balance(self, owner: Pubkey) -> int: ...

    async def get_genesis_fingerprint(self) -> bytes: ...

    async def get_latest_blockhash(self) -> Hash: ...

    async def submit(self, raw_tx: bytes) -> str: ...

    async def confirm(self, signature: str) -> Confirmation: ...

    async def close(self) -> None: ...


class Signer(Protocol):
    @property
    def pubkey(self) -> Pubkey: ...

    async def sign(self, message: bytes) -> bytes: ...


class SolanaRpcConnection:
    def __init__(
        self,
        client: AsyncClient,
        commitment: str = "confirmed",
        confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT,
        poll_interval: float = DEFAULT_CONFIRM_POLL,
    ):
        self.client = client
        self.commitment = Commitment(commitment)
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    async def get_account(self, address: Pubkey) -> Optional[bytes]:
        resp = await self.client.get_account_info(address, commitment=self.commitment)
        if resp.value is None or resp.value.data is None:
            return None
        return bytes(resp.value.data)

    async def get_balance(self, owner: Pubkey) -> int:
        resp = await self.client.get_balance(owner, commitment=self.commitment)
        return int(resp.value)

    async def get_genesis_fingerprint(self) -> bytes:
        resp = await self.client.get_genesis_hash()
        return bytes(resp.value)

    async def get_latest_blockhash(self) -> Hash:
        try:
            resp = await self.client.get_latest_blockhash(commitment=self.commitment)
        except RPCException as exc:
            raise SubmissionFailed(f"Blockhash request rejected: {exc}") from exc
        except SolanaRpcException as exc:
            raise SubmissionFailed(f"RPC unreachable: {exc.error_msg}") from exc
        return resp.value.blockhash

    async def submit(self, raw_tx: bytes) -> str:
        try:
            resp = await self.client.send_raw_transaction(
                raw_tx, opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment)
            )
        except RPCException as exc:
            raise SubmissionFailed(f"Transaction rejected: {exc}") from exc
        except SolanaRpcException as exc:
            raise SubmissionFailed(f"RPC unreachable: {exc.error_msg}") from exc
        return str(resp.value)

    async def confirm(self, signature: str) -> Confirmation:
        sig_obj = Signature.from_string(signature)
        start = time.monotonic()
        while time.monotonic() - start < self.confirm_timeout:
            try:
                resp = await self.client.get_signature_statuses([sig_obj])
            except SolanaRpcException as exc:
                logger.warning("confirm_poll_failed sig=%s err=%s", signature, exc.error_msg)
                resp = None
            if resp is not None and resp.value and resp.value[0]:
                status = resp.value[0]
                if status.err is not None:
                    return Confirmation(ConfirmationStatus.FAILED, str(status.err))
                if status.confirmation_status in (
                    TransactionConfirmationStatus.Confirmed,
                    TransactionConfirmationStatus.Finalized,
                ):
                    return Confirmation(ConfirmationStatus.CONFIRMED)
            await asyncio.sleep(self.poll_interval)
        return Confirmation(
            ConfirmationStatus.TIMEOUT,
            f"not confirmed within {self.confirm_timeout}s",
            timeout=self.confirm_timeout,
        )

    async def close(self) -> None:
        await self.client.close()


def connect_rpc(
    endpoint: str,
    commitment: str = "confirmed",
    confirm_timeout: float = DEFAULT_CONFIRM_TIMEOUT,
    poll_interval: float = DEFAULT_CONFIRM_POLL,
) -> SolanaRpcConnection:
    client = AsyncClient(endpoint, commitment=Commitment(commitment))
    return SolanaRpcConnection(client, commitment, confirm_timeout, poll_interval)


class KeypairSigner:
    def __init__(self, keypair: Keypair):
        self.keypair = keypair

    @property
    def pubkey(self) -> Pubkey:
        return self.keypair.pubkey()

    async def sign(self, message: bytes) -> bytes:
        return bytes(self.keypair.sign_message(message))


def load_keypair(path: Union[str, Path]) -> Keypair:
    with open(path, "r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if isinstance(raw, list):
        secret = bytes(raw)
    elif isinstance(raw, dict) and "secretKey" in raw:
        secret = bytes(raw["secretKey"])
    else:
        raise ValueError("Unsupported keypair file format")
    return Keypair.from_bytes(secret)


def load_or_create_keypair(path: Union[str, Path]) -> Keypair:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        return load_keypair(path)
    kp = Keypair()
    path.write_text(json.dumps(list(bytes(kp))))
    os.chmod(path, 0o600)
    return kp


async def sign_transaction(
    connection: ShopConnection, signer: Signer, instructions: Sequence[Instruction]
) -> VersionedTransaction:
    blockhash = await connection.get_latest_blockhash()
    message = compile_message(instructions, signer.pubkey, blockhash)
    raw_sig = bytes(await signer.sign(to_bytes_versioned(message)))
    if len(raw_sig) != SIGNATURE_SIZE:
        raise SigningRejected(f"signer returned {len(raw_sig)} bytes, expected a {SIGNATURE_SIZE}-byte signature")
    return VersionedTransaction.populate(message, [Signature.from_bytes(raw_sig)])


async def sign_and_submit(connection: ShopConnection, signer: Signer, instructions: Sequence[Instruction]) -> str:
    tx = await sign_transaction(connection, signer, instructions)
    return await connection.submit(bytes(tx))


async def send_and_confirm(connection: ShopConnection, signer: Signer, instructions: List[Instruction]) -> str:
    """Submit and wait; anything short of Confirmed is a SubmissionFailed."""
    signature = await sign_and_submit(connection, signer, instructions)
    result = await connection.confirm(signature)
    if result.status is not ConfirmationStatus.CONFIRMED:
        raise SubmissionFailed(result.reason or result.status.value, signature=signature)
    return signature
