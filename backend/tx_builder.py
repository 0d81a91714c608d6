import base64
from typing import List, Optional, Sequence, Union

from solders.compute_budget import set_compute_unit_limit
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey

from pda import history_pda, item_pda, shop_pda
from shop_codec import DISCRIMINATOR_SIZE, encode_instruction_args, instruction_name

SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
DEFAULT_COMPUTE_UNIT_LIMIT = 1_000_000

PURCHASE_VARIANTS = ("first_purchase", "subsequent_purchase")


def to_pubkey(value: Union[str, Pubkey]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(value)


def build_initialize_shop_ix(admin: Pubkey, program_id: Pubkey) -> Instruction:
    data = encode_instruction_args("initialize_shop")
    accounts = [
        AccountMeta(admin, True, True),
        AccountMeta(shop_pda(program_id), False, True),
        AccountMeta(SYS_PROGRAM_ID, False, False),
    ]
    return Instruction(program_id, data, accounts)


def build_add_item_ix(admin: Pubkey, item_id: int, price: int, metadata_uri: str, program_id: Pubkey) -> Instruction:
    data = encode_instruction_args("add_item", {"id": item_id, "price": price, "metadata_uri": metadata_uri})
    accounts = [
        AccountMeta(admin, True, True),
        AccountMeta(shop_pda(program_id), False, True),
        AccountMeta(item_pda(item_id, program_id), False, True),
        AccountMeta(SYS_PROGRAM_ID, False, False),
    ]
    return Instruction(program_id, data, accounts)


def purchase_variant(history_exists: bool) -> str:
    """Creating the history account and appending to it are separate program paths."""
    return "subsequent_purchase" if history_exists else "first_purchase"


def build_purchase_ix(variant: str, buyer: Pubkey, item_id: int, admin: Pubkey, program_id: Pubkey) -> Instruction:
    if variant not in PURCHASE_VARIANTS:
        raise ValueError(f"Unknown purchase variant {variant}")
    data = encode_instruction_args(variant)
    # The admin receives the payment, so it is writable but never a signer here.
    accounts = [
        AccountMeta(buyer, True, True),
        AccountMeta(shop_pda(program_id), False, False),
        AccountMeta(item_pda(item_id, program_id), False, False),
        AccountMeta(admin, False, True),
        AccountMeta(history_pda(buyer, program_id), False, True),
        AccountMeta(SYS_PROGRAM_ID, False, False),
    ]
    return Instruction(program_id, data, accounts)


def build_compute_budget_ix(units: int = DEFAULT_COMPUTE_UNIT_LIMIT) -> Instruction:
    return set_compute_unit_limit(units)


def with_compute_budget(ix: Instruction, units: int = DEFAULT_COMPUTE_UNIT_LIMIT) -> List[Instruction]:
    return [build_compute_budget_ix(units), ix]


def opcode_of(ix: Instruction) -> Optional[str]:
    if len(ix.data) < DISCRIMINATOR_SIZE:
        return None
    return instruction_name(bytes(ix.data))


def instruction_to_dict(ix: Instruction) -> dict:
    return {
        "program_id": str(ix.program_id),
        "keys": [
            {
                "pubkey": str(k.pubkey),
                "is_signer": k.is_signer,
                "is_writable": k.is_writable,
            }
            for k in ix.accounts
        ],
        "data": base64.b64encode(bytes(ix.data)).decode(),
    }


def compile_message(ixs: Sequence[Instruction], payer: Pubkey, blockhash: Union[str, Hash]) -> MessageV0:
    if isinstance(blockhash, str):
        blockhash = Hash.from_string(blockhash)
    return MessageV0.try_compile(payer, list(ixs), [], blockhash)


def message_from_instructions(ixs: Sequence[Instruction], payer: Pubkey, blockhash: Union[str, Hash]) -> str:
    """Base64 of the versioned message bytes a wallet signs."""
    message = compile_message(ixs, payer, blockhash)
    return base64.b64encode(to_bytes_versioned(message)).decode()
