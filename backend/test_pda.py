import pytest
from solders.pubkey import Pubkey

from errors import AddressDerivationExhausted
from pda import (
    derive_address,
    history_pda,
    history_seeds,
    item_id_seed,
    item_pda,
    item_seeds,
    shop_pda,
)


def test_derive_address_is_deterministic(program_id):
    first = derive_address([b"item", item_id_seed(7)], program_id)
    second = derive_address([b"item", item_id_seed(7)], program_id)
    assert first == second
    assert 0 <= first[1] <= 255


def test_derive_address_matches_runtime_derivation(program_id):
    buyer = Pubkey.new_unique()
    for seeds in ([b"shop"], item_seeds(1), item_seeds(2**64 - 1), history_seeds(buyer)):
        assert derive_address(seeds, program_id) == Pubkey.find_program_address(seeds, program_id)


def test_derived_address_is_off_curve(program_id):
    address, _ = derive_address([b"shop"], program_id)
    assert not address.is_on_curve()


def test_address_helpers_use_protocol_seeds(program_id):
    buyer = Pubkey.new_unique()
    assert shop_pda(program_id) == Pubkey.find_program_address([b"shop"], program_id)[0]
    assert item_pda(3, program_id) == Pubkey.find_program_address([b"item", (3).to_bytes(8, "little")], program_id)[0]
    assert history_pda(buyer, program_id) == Pubkey.find_program_address([b"history", bytes(buyer)], program_id)[0]


def test_different_inputs_give_different_addresses(program_id):
    other_program = Pubkey.new_unique()
    assert item_pda(1, program_id) != item_pda(2, program_id)
    assert shop_pda(program_id) != shop_pda(other_program)


def test_item_id_seed_is_little_endian():
    assert item_id_seed(1) == b"\x01" + b"\x00" * 7
    assert item_id_seed(0x0102) == b"\x02\x01" + b"\x00" * 6


@pytest.mark.parametrize("bad", [-1, 2**64])
def test_item_id_seed_rejects_out_of_range(bad):
    with pytest.raises(ValueError):
        item_id_seed(bad)


def test_seed_limits(program_id):
    with pytest.raises(ValueError):
        derive_address([b"x" * 33], program_id)
    with pytest.raises(ValueError):
        derive_address([b"x"] * 16, program_id)


class _AlwaysOnCurve:
    @staticmethod
    def create_program_address(seeds, program_id):
        raise ValueError("Provided seeds do not result in a valid address")


def test_exhausted_search_raises(program_id, monkeypatch):
    monkeypatch.setattr("pda.Pubkey", _AlwaysOnCurve)
    with pytest.raises(AddressDerivationExhausted):
        derive_address([b"shop"], program_id)


def test_rejected_bump_falls_through_to_next(program_id, monkeypatch):
    tried = []

    class _RejectTopBump:
        @staticmethod
        def create_program_address(seeds, pid):
            tried.append(seeds[-1][0])
            if seeds[-1] == bytes([255]):
                raise ValueError("Provided seeds do not result in a valid address")
            return Pubkey.create_program_address(seeds, pid)

    monkeypatch.setattr("pda.Pubkey", _RejectTopBump)
    address, bump = derive_address([b"shop"], program_id)
    assert tried == [255, 254]
    assert bump == 254
    assert address == Pubkey.create_program_address([b"shop", bytes([254])], program_id)
