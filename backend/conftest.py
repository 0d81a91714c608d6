from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from errors import SubmissionFailed
from mirror import HISTORY_ACCOUNT_SPACE, history_capacity
from pda import history_pda, item_pda, shop_pda
from rpc import Confirmation, ConfirmationStatus, KeypairSigner
from settings import DEFAULT_PROGRAM_ID, ShopConfig
from shop_codec import (
    DISCRIMINATOR_SIZE,
    AddItemArgsLayout,
    Item,
    PurchaseHistory,
    PurchaseRecord,
    Shop,
    decode_item,
    decode_purchase_history,
    decode_shop,
    encode_item,
    encode_purchase_history,
    encode_shop,
    instruction_name,
)

FAKE_BLOCKHASH = Hash(bytes([7] * 32))


class FakeConnection:
    """In-memory chain running the shop program's instruction semantics."""

    def __init__(self, program_id: Pubkey, genesis: bytes = b"\x11" * 32):
        self.program_id = program_id
        self.genesis = genesis
        self.accounts: Dict[Pubkey, bytes] = {}
        self.balances: Dict[Pubkey, int] = {}
        self.calls: List[Tuple[str, object]] = []
        self.submitted: List[VersionedTransaction] = []
        self.submit_error: Optional[Exception] = None
        self.confirm_result: Optional[Confirmation] = None
        self.clock = 1_700_000_000
        self.closed = False

    # seeding helpers

    def seed_shop(self, admin: Pubkey, item_count: int = 0) -> None:
        self.accounts[shop_pda(self.program_id)] = encode_shop(Shop(admin=admin, item_count=item_count))

    def seed_item(self, item_id: int, price: int, metadata_uri: str = "") -> None:
        self.accounts[item_pda(item_id, self.program_id)] = encode_item(
            Item(id=item_id, price=price, metadata_uri=metadata_uri)
        )

    def seed_history(self, buyer: Pubkey, records: Sequence[PurchaseRecord] = ()) -> None:
        history = PurchaseHistory(user=buyer, purchases=tuple(records))
        self.accounts[history_pda(buyer, self.program_id)] = self._padded_history(history)

    def fund(self, owner: Pubkey, lamports: int) -> None:
        self.balances[owner] = lamports

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    # connection surface

    async def get_account(self, address: Pubkey) -> Optional[bytes]:
        self.calls.append(("get_account", address))
        return self.accounts.get(address)

    async def get_balance(self, owner: Pubkey) -> int:
        self.calls.append(("get_balance", owner))
        return self.balances.get(owner, 0)

    async def get_genesis_fingerprint(self) -> bytes:
        self.calls.append(("get_genesis_fingerprint", None))
        return self.genesis

    async def get_latest_blockhash(self) -> Hash:
        self.calls.append(("get_latest_blockhash", None))
        return FAKE_BLOCKHASH

    async def submit(self, raw_tx: bytes) -> str:
        self.calls.append(("submit", None))
        if self.submit_error is not None:
            raise self.submit_error
        tx = VersionedTransaction.from_bytes(raw_tx)
        self.submitted.append(tx)
        accounts = dict(self.accounts)
        balances = dict(self.balances)
        msg = tx.message
        keys = list(msg.account_keys)
        for cix in msg.instructions:
            if keys[cix.program_id_index] != self.program_id:
                continue
            metas = [keys[i] for i in cix.accounts]
            self._execute(bytes(cix.data), metas, accounts, balances)
        self.accounts = accounts
        self.balances = balances
        self.clock += 1
        return str(tx.signatures[0])

    async def confirm(self, signature: str) -> Confirmation:
        self.calls.append(("confirm", signature))
        if self.confirm_result is not None:
            return self.confirm_result
        return Confirmation(ConfirmationStatus.CONFIRMED)

    async def close(self) -> None:
        self.closed = True

    # program semantics

    def _padded_history(self, history: PurchaseHistory) -> bytes:
        data = encode_purchase_history(history)
        return data + b"\x00" * max(0, HISTORY_ACCOUNT_SPACE - len(data))

    def _execute(self, data: bytes, metas: List[Pubkey], accounts: dict, balances: dict) -> None:
        name = instruction_name(data)
        if name == "initialize_shop":
            admin, shop, _ = metas
            if shop in accounts:
                raise SubmissionFailed("custom program error: account already in use")
            accounts[shop] = encode_shop(Shop(admin=admin, item_count=0))
        elif name == "add_item":
            admin, shop_key, item_key, _ = metas
            args = AddItemArgsLayout.parse(data[DISCRIMINATOR_SIZE:])
            if item_key in accounts:
                raise SubmissionFailed("custom program error: account already in use")
            shop = decode_shop(accounts[shop_key])
            accounts[item_key] = encode_item(Item(id=args.id, price=args.price, metadata_uri=args.metadata_uri))
            accounts[shop_key] = encode_shop(Shop(admin=shop.admin, item_count=shop.item_count + 1))
        elif name in ("first_purchase", "subsequent_purchase"):
            buyer, _, item_key, admin, history_key, _ = metas
            item = decode_item(accounts[item_key])
            exists = history_key in accounts
            if name == "first_purchase" and exists:
                raise SubmissionFailed("custom program error: history account already in use")
            if name == "subsequent_purchase" and not exists:
                raise SubmissionFailed("custom program error: AccountNotInitialized")
            if balances.get(buyer, 0) < item.price:
                raise SubmissionFailed("custom program error: insufficient lamports")
            records: Tuple[PurchaseRecord, ...] = ()
            if exists:
                records = decode_purchase_history(accounts[history_key]).purchases
            if len(records) >= history_capacity():
                raise SubmissionFailed("custom program error: account data too small")
            balances[buyer] = balances.get(buyer, 0) - item.price
            balances[admin] = balances.get(admin, 0) + item.price
            history = PurchaseHistory(
                user=buyer,
                purchases=records + (PurchaseRecord(item_id=item.id, timestamp=self.clock),),
            )
            accounts[history_key] = self._padded_history(history)
        else:
            raise SubmissionFailed("custom program error: InstructionFallbackNotFound")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def program_id() -> Pubkey:
    return Pubkey.from_string(DEFAULT_PROGRAM_ID)


@pytest.fixture
def shop_config(program_id) -> ShopConfig:
    return ShopConfig(program_id=program_id, explorer_url="https://explorer.testnet.sonic.game")


@pytest.fixture
def admin_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def buyer_keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def admin_signer(admin_keypair) -> KeypairSigner:
    return KeypairSigner(admin_keypair)


@pytest.fixture
def buyer_signer(buyer_keypair) -> KeypairSigner:
    return KeypairSigner(buyer_keypair)


@pytest.fixture
def chain(program_id) -> FakeConnection:
    return FakeConnection(program_id)


@pytest.fixture
def stocked_chain(chain, admin_keypair) -> FakeConnection:
    chain.seed_shop(admin_keypair.pubkey(), item_count=1)
    chain.seed_item(1, 1_000_000_000, "image:https://x/y.png")
    return chain
