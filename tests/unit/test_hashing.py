"""
test_hashing.py - Unit tests for canonical operation hashes

Every expected digest is rebuilt here by plain byte concatenation, the way
abi.encodePacked lays fields out: addresses as 20 bytes, uint256 as 32-byte
big-endian, bytes32 as-is, strings as raw UTF-8.
"""

import pytest
from eth_utils import keccak, to_checksum_address

from utxo_ledger import CanonicalHasher, CommitmentEngine, Operation, RangeError, MAX_VALUE
from utxo_ledger.core import UTXO_ID_SALT

from tests.fake_remote import TOKEN, ALICE, BOB


NULLIFIER = "0x" + "ab" * 32
OUT_NULLIFIER = "0x" + "cd" * 32
SOURCE_ID = "0x" + "01" * 32


def _addr(address: str) -> bytes:
    return bytes.fromhex(to_checksum_address(address)[2:])


def _u256(value: int) -> bytes:
    return value.to_bytes(32, "big")


def _b32(value: str) -> bytes:
    return bytes.fromhex(value[2:])


def _h(data: bytes) -> str:
    return "0x" + keccak(data).hex()


@pytest.fixture
def commitment():
    return CommitmentEngine().commit(1_000_000_000, 98765)


class TestDepositHash:

    def test_layout(self, commitment):
        expected = _h(
            _addr(TOKEN) + _u256(commitment.x) + _u256(commitment.y)
            + _b32(NULLIFIER) + _u256(1_000_000_000) + _addr(ALICE)
        )
        assert CanonicalHasher.deposit(TOKEN, commitment, NULLIFIER, 1_000_000_000, ALICE) == expected

    def test_address_casing_does_not_matter(self, commitment):
        a = CanonicalHasher.deposit(TOKEN.lower(), commitment, NULLIFIER, 5, ALICE.lower())
        b = CanonicalHasher.deposit(TOKEN, commitment, NULLIFIER, 5, ALICE)
        assert a == b

    def test_amount_above_ceiling(self, commitment):
        with pytest.raises(RangeError):
            CanonicalHasher.deposit(TOKEN, commitment, NULLIFIER, MAX_VALUE + 1, ALICE)

    def test_malformed_nullifier(self, commitment):
        with pytest.raises(ValueError):
            CanonicalHasher.deposit(TOKEN, commitment, "0xabc", 5, ALICE)


class TestSplitHash:

    def test_layout_is_plain_concatenation(self):
        expected = _h(_b32(SOURCE_ID) + _b32(NULLIFIER) + _b32(OUT_NULLIFIER))
        assert CanonicalHasher.split(SOURCE_ID, [NULLIFIER, OUT_NULLIFIER]) == expected

    def test_output_order_matters(self):
        assert (CanonicalHasher.split(SOURCE_ID, [NULLIFIER, OUT_NULLIFIER])
                != CanonicalHasher.split(SOURCE_ID, [OUT_NULLIFIER, NULLIFIER]))

    def test_no_outputs(self):
        with pytest.raises(ValueError):
            CanonicalHasher.split(SOURCE_ID, [])


class TestTransferHash:

    def test_layout(self):
        expected = _h(_b32(SOURCE_ID) + _addr(BOB) + _b32(OUT_NULLIFIER))
        assert CanonicalHasher.transfer(SOURCE_ID, BOB, OUT_NULLIFIER) == expected


class TestWithdrawHash:

    def test_layout(self):
        expected = _h(_b32(NULLIFIER) + _u256(400) + _addr(TOKEN) + _addr(BOB))
        assert CanonicalHasher.withdraw(NULLIFIER, 400, TOKEN, BOB) == expected

    def test_negative_amount(self):
        with pytest.raises(RangeError):
            CanonicalHasher.withdraw(NULLIFIER, -1, TOKEN, BOB)


class TestMessageHash:

    def test_layout(self):
        data_hash = "0x" + "ef" * 32
        expected = _h(b"SPLIT" + _b32(data_hash) + _u256(7) + _u256(1_700_000_000))
        assert CanonicalHasher.message(Operation.SPLIT, data_hash, 7, 1_700_000_000) == expected

    def test_operation_name_is_bound(self):
        data_hash = "0x" + "ef" * 32
        assert (CanonicalHasher.message(Operation.SPLIT, data_hash, 1, 1)
                != CanonicalHasher.message(Operation.TRANSFER, data_hash, 1, 1))


class TestUtxoId:

    def test_layout(self, commitment):
        expected = _h(
            _addr(TOKEN) + _u256(commitment.x) + _u256(commitment.y)
            + _b32(NULLIFIER) + UTXO_ID_SALT.encode()
        )
        assert CanonicalHasher.utxo_id(TOKEN, commitment, NULLIFIER) == expected

    def test_nullifier_changes_id(self, commitment):
        assert (CanonicalHasher.utxo_id(TOKEN, commitment, NULLIFIER)
                != CanonicalHasher.utxo_id(TOKEN, commitment, OUT_NULLIFIER))


class TestForOperation:

    def test_dispatch_matches_direct_calls(self, commitment):
        assert CanonicalHasher.for_operation(Operation.DEPOSIT, {
            "token_address": TOKEN, "commitment": commitment, "nullifier_hash": NULLIFIER,
            "amount": 10, "sender": ALICE,
        }) == CanonicalHasher.deposit(TOKEN, commitment, NULLIFIER, 10, ALICE)
        assert CanonicalHasher.for_operation(Operation.SPLIT, {
            "source_utxo_id": SOURCE_ID, "output_nullifiers": [NULLIFIER],
        }) == CanonicalHasher.split(SOURCE_ID, [NULLIFIER])
        assert CanonicalHasher.for_operation(Operation.TRANSFER, {
            "source_utxo_id": SOURCE_ID, "recipient": BOB, "output_nullifier": OUT_NULLIFIER,
        }) == CanonicalHasher.transfer(SOURCE_ID, BOB, OUT_NULLIFIER)
        assert CanonicalHasher.for_operation(Operation.WITHDRAW, {
            "nullifier_hash": NULLIFIER, "amount": 10, "token_address": TOKEN, "recipient": BOB,
        }) == CanonicalHasher.withdraw(NULLIFIER, 10, TOKEN, BOB)

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            CanonicalHasher.for_operation("MINT", {})
