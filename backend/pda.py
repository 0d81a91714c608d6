from typing import List, Sequence, Tuple

from solders.pubkey import Pubkey

from errors import AddressDerivationExhausted

MAX_SEED_LEN = 32
MAX_SEEDS = 16

SHOP_SEED = b"shop"
ITEM_SEED = b"item"
HISTORY_SEED = b"history"


def derive_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """
    Search bumps 255..0 for the first seeds+bump combination that hashes to a
    point off the ed25519 curve. Same inputs always give the same pair.
    """
    # The bump occupies one of the seed slots.
    if len(seeds) >= MAX_SEEDS:
        raise ValueError(f"at most {MAX_SEEDS - 1} seeds allowed, got {len(seeds)}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise ValueError(f"seed longer than {MAX_SEED_LEN} bytes: {len(seed)}")
    seeds = [bytes(seed) for seed in seeds]
    for bump in range(255, -1, -1):
        try:
            return Pubkey.create_program_address([*seeds, bytes([bump])], program_id), bump
        except ValueError:
            # on-curve result for this bump
            continue
    raise AddressDerivationExhausted(
        f"no off-curve address for seeds {[s.hex() for s in seeds]} under {program_id}"
    )


def item_id_seed(item_id: int) -> bytes:
    if item_id < 0 or item_id >= 1 << 64:
        raise ValueError(f"item id out of u64 range: {item_id}")
    return item_id.to_bytes(8, "little")


def shop_seeds() -> List[bytes]:
    return [SHOP_SEED]


def item_seeds(item_id: int) -> List[bytes]:
    return [ITEM_SEED, item_id_seed(item_id)]


def history_seeds(buyer: Pubkey) -> List[bytes]:
    return [HISTORY_SEED, bytes(buyer)]


def shop_pda(program_id: Pubkey) -> Pubkey:
    return derive_address(shop_seeds(), program_id)[0]


def item_pda(item_id: int, program_id: Pubkey) -> Pubkey:
    return derive_address(item_seeds(item_id), program_id)[0]


def history_pda(buyer: Pubkey, program_id: Pubkey) -> Pubkey:
    return derive_address(history_seeds(buyer), program_id)[0]
