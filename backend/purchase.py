"""
Purchase workflow.

One ``PurchaseWorkflow`` instance drives exactly one purchase attempt through

    Idle -> PricingCheck -> BalanceCheck -> HistoryProbe
         -> FirstPurchase | SubsequentPurchase -> Submitted -> Confirmed | Failed

Missing accounts and insufficient balance are reported before anything is
sent. Signing, submission and confirmation failures come back verbatim as a
Failed outcome; nothing is retried, because the opcode depends on whether the
history account existed when the instruction was built. A retry means a new
workflow, which reads the history account again.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from functools import partial
from typing import List, Optional, Tuple

import anyio.to_thread
from solders.instruction import Instruction
from solders.pubkey import Pubkey

from errors import (
    ConfirmationTimeout,
    DecodeError,
    InsufficientFunds,
    ItemNotFound,
    ShopNotInitialized,
    SigningRejected,
    SubmissionFailed,
)
from mirror import HistoryMirror
from pda import history_pda, item_pda, shop_pda
from rpc import ConfirmationStatus, ShopConnection, Signer, sign_transaction
from settings import ShopConfig
from shop_codec import Item, Shop, decode_item, decode_purchase_history, decode_shop
from tx_builder import build_purchase_ix, purchase_variant, with_compute_budget

logger = logging.getLogger("shop.purchase")


class PurchaseState(str, enum.Enum):
    IDLE = "idle"
    PRICING_CHECK = "pricing_check"
    BALANCE_CHECK = "balance_check"
    HISTORY_PROBE = "history_probe"
    FIRST_PURCHASE = "first_purchase"
    SUBSEQUENT_PURCHASE = "subsequent_purchase"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


VARIANT_STATES = {
    "first_purchase": PurchaseState.FIRST_PURCHASE,
    "subsequent_purchase": PurchaseState.SUBSEQUENT_PURCHASE,
}


@dataclass(frozen=True)
class PurchasePlan:
    buyer: Pubkey
    shop: Shop
    item: Item
    balance: int
    history_exists: bool
    variant: str
    instructions: Tuple[Instruction, ...]

    @property
    def history_address(self) -> Pubkey:
        return self.instructions[-1].accounts[4].pubkey


@dataclass
class PurchaseOutcome:
    state: PurchaseState
    item_id: int
    buyer: Pubkey
    variant: Optional[str] = None
    signature: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[Exception] = None

    @property
    def confirmed(self) -> bool:
        return self.state is PurchaseState.CONFIRMED


class PurchaseWorkflow:
    def __init__(
        self,
        connection: ShopConnection,
        config: ShopConfig,
        signer: Optional[Signer] = None,
        mirror: Optional[HistoryMirror] = None,
    ):
        self.connection = connection
        self.config = config
        self.signer = signer
        self.mirror = mirror
        self.state = PurchaseState.IDLE
        self.transitions: List[PurchaseState] = [PurchaseState.IDLE]

    def _enter(self, state: PurchaseState) -> None:
        self.state = state
        self.transitions.append(state)

    async def prepare(self, buyer: Pubkey, item_id: int) -> PurchasePlan:
        """Run the pre-submission states and build the instructions to sign."""
        program_id = self.config.program_id

        self._enter(PurchaseState.PRICING_CHECK)
        shop_address = shop_pda(program_id)
        item_address = item_pda(item_id, program_id)
        shop_raw, item_raw = await asyncio.gather(
            self.connection.get_account(shop_address),
            self.connection.get_account(item_address),
        )
        if shop_raw is None:
            raise ShopNotInitialized(shop_address)
        if item_raw is None:
            raise ItemNotFound(item_id, item_address)
        shop = decode_shop(shop_raw)
        item = decode_item(item_raw)

        self._enter(PurchaseState.BALANCE_CHECK)
        balance = await self.connection.get_balance(buyer)
        # Both sides in lamports.
        if balance < item.price:
            raise InsufficientFunds(balance, item.price)

        self._enter(PurchaseState.HISTORY_PROBE)
        history_exists = await self.connection.get_account(history_pda(buyer, program_id)) is not None

        variant = purchase_variant(history_exists)
        self._enter(VARIANT_STATES[variant])
        ix = build_purchase_ix(variant, buyer, item_id, shop.admin, program_id)
        instructions = tuple(with_compute_budget(ix, self.config.compute_unit_limit))
        logger.info(
            "purchase_prepared wallet=%s item=%s price=%s balance=%s opcode=%s",
            buyer,
            item_id,
            item.price,
            balance,
            variant,
        )
        return PurchasePlan(
            buyer=buyer,
            shop=shop,
            item=item,
            balance=balance,
            history_exists=history_exists,
            variant=variant,
            instructions=instructions,
        )

    def _fail(self, buyer: Pubkey, item_id: int, reason: str, error: Optional[Exception] = None, **kwargs) -> PurchaseOutcome:
        self._enter(PurchaseState.FAILED)
        logger.warning("purchase_failed wallet=%s item=%s reason=%s", buyer, item_id, reason)
        return PurchaseOutcome(PurchaseState.FAILED, item_id, buyer, reason=reason, error=error, **kwargs)

    async def run(self, item_id: int) -> PurchaseOutcome:
        if self.signer is None:
            raise ValueError("a signer is required to run a purchase")
        buyer = self.signer.pubkey
        try:
            plan = await self.prepare(buyer, item_id)
        except (ShopNotInitialized, ItemNotFound, InsufficientFunds) as exc:
            return self._fail(buyer, item_id, str(exc), exc)

        signature = None
        try:
            tx = await sign_transaction(self.connection, self.signer, plan.instructions)
            signature = await self.connection.submit(bytes(tx))
            self._enter(PurchaseState.SUBMITTED)
            logger.info("purchase_submitted wallet=%s item=%s opcode=%s sig=%s", buyer, item_id, plan.variant, signature)
            result = await self.connection.confirm(signature)
        except asyncio.CancelledError:
            self._fail(buyer, item_id, "cancelled", variant=plan.variant, signature=signature)
            raise
        except (SigningRejected, SubmissionFailed) as exc:
            return self._fail(buyer, item_id, str(exc), exc, variant=plan.variant, signature=signature)

        if result.status is ConfirmationStatus.TIMEOUT:
            error = ConfirmationTimeout(signature, result.timeout)
            return self._fail(buyer, item_id, result.reason or str(error), error, variant=plan.variant, signature=signature)
        if result.status is not ConfirmationStatus.CONFIRMED:
            reason = result.reason or result.status.value
            error = SubmissionFailed(reason, signature=signature)
            return self._fail(buyer, item_id, reason, error, variant=plan.variant, signature=signature)

        self._enter(PurchaseState.CONFIRMED)
        logger.info("purchase_confirmed wallet=%s item=%s sig=%s", buyer, item_id, signature)
        if self.mirror is not None:
            await self._reconcile(buyer, item_id, signature)
        return PurchaseOutcome(PurchaseState.CONFIRMED, item_id, buyer, variant=plan.variant, signature=signature)

    async def _reconcile(self, buyer: Pubkey, item_id: int, signature: str) -> None:
        # Session work is blocking; keep it off the event loop.
        await anyio.to_thread.run_sync(partial(self.mirror.record_confirmed, str(buyer), item_id, signature))
        raw = await self.connection.get_account(history_pda(buyer, self.config.program_id))
        if raw is None:
            # Read lagging the confirmation; the next sync catches up.
            logger.info("mirror_sync_deferred wallet=%s sig=%s", buyer, signature)
            return
        try:
            history = decode_purchase_history(raw, owner=buyer)
        except DecodeError:
            logger.exception("mirror_sync_decode_failed wallet=%s sig=%s", buyer, signature)
            return
        await anyio.to_thread.run_sync(self.mirror.sync, history)


async def run_purchase_workflow(
    connection: ShopConnection,
    signer: Signer,
    config: ShopConfig,
    item_id: int,
    mirror: Optional[HistoryMirror] = None,
) -> PurchaseOutcome:
    return await PurchaseWorkflow(connection, config, signer=signer, mirror=mirror).run(item_id)
