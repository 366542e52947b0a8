"""
hashing.py - Canonical Operation Hashes

Builds the exact keccak256(abi.encodePacked(...)) digests the vault contract
recomputes before it accepts an attestation. Field order, integer width and
address checksum normalization all matter: a single deviation produces a
different digest and the attestation is rejected.

Field orders:
    Deposit:  (address token, uint256 cx, uint256 cy, bytes32 nullifier,
               uint256 amount, address sender)
    Split:    (bytes32 sourceUTXOId, bytes32[] outputNullifiers)
    Transfer: (bytes32 sourceUTXOId, address recipient, bytes32 outputNullifier)
    Withdraw: (bytes32 nullifier, uint256 amount, address token, address recipient)
    Message:  (string operation, bytes32 dataHash, uint256 nonce, uint256 timestamp)
"""

from __future__ import annotations
from typing import Any, List, Mapping, Sequence

from eth_abi.packed import encode_packed
from eth_utils import keccak, to_checksum_address

from .core import (
    Bytes32, Commitment, Operation,
    MAX_VALUE, UTXO_ID_SALT,
    RangeError, require_bytes32,
)


def _b32(value: str, name: str) -> bytes:
    return bytes.fromhex(require_bytes32(value, name)[2:])


def _uint256(value: int, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0 or value >= 2**256:
        raise RangeError(f"{name} must fit uint256, got {value!r}")
    return value


def _digest(types: List[str], values: List[Any]) -> Bytes32:
    return "0x" + keccak(encode_packed(types, values)).hex()


class CanonicalHasher:
    """
    Per-operation data hashes, bit-for-bit compatible with the vault contract.

    All methods are pure. Addresses may be given in any casing; they are
    checksum-normalized before packing.
    """

    @staticmethod
    def deposit(
        token_address: str,
        commitment: Commitment,
        nullifier_hash: Bytes32,
        amount: int,
        sender_address: str,
    ) -> Bytes32:
        if amount > MAX_VALUE:
            raise RangeError(f"deposit amount {amount} exceeds {MAX_VALUE}")
        return _digest(
            ["address", "uint256", "uint256", "bytes32", "uint256", "address"],
            [
                to_checksum_address(token_address),
                _uint256(commitment.x, "commitment.x"),
                _uint256(commitment.y, "commitment.y"),
                _b32(nullifier_hash, "nullifier_hash"),
                _uint256(amount, "amount"),
                to_checksum_address(sender_address),
            ],
        )

    @staticmethod
    def split(source_utxo_id: Bytes32, output_nullifiers: Sequence[Bytes32]) -> Bytes32:
        """Amounts are intentionally excluded; a split attestation reveals no values."""
        if not output_nullifiers:
            raise ValueError("split requires at least one output nullifier")
        # abi.encodePacked(bytes32[]) is the plain concatenation of the elements
        types = ["bytes32"] * (1 + len(output_nullifiers))
        values = [_b32(source_utxo_id, "source_utxo_id")]
        values += [_b32(n, f"output_nullifiers[{i}]") for i, n in enumerate(output_nullifiers)]
        return _digest(types, values)

    @staticmethod
    def transfer(source_utxo_id: Bytes32, recipient_address: str, output_nullifier: Bytes32) -> Bytes32:
        return _digest(
            ["bytes32", "address", "bytes32"],
            [
                _b32(source_utxo_id, "source_utxo_id"),
                to_checksum_address(recipient_address),
                _b32(output_nullifier, "output_nullifier"),
            ],
        )

    @staticmethod
    def withdraw(nullifier_hash: Bytes32, amount: int, token_address: str, recipient_address: str) -> Bytes32:
        return _digest(
            ["bytes32", "uint256", "address", "address"],
            [
                _b32(nullifier_hash, "nullifier_hash"),
                _uint256(amount, "amount"),
                to_checksum_address(token_address),
                to_checksum_address(recipient_address),
            ],
        )

    @staticmethod
    def message(operation: Operation, data_hash: Bytes32, nonce: int, timestamp: int) -> Bytes32:
        """Attestation message hash; this is what the attestor signs."""
        return _digest(
            ["string", "bytes32", "uint256", "uint256"],
            [
                operation.value,
                _b32(data_hash, "data_hash"),
                _uint256(nonce, "nonce"),
                _uint256(timestamp, "timestamp"),
            ],
        )

    @classmethod
    def for_operation(cls, operation: Operation, params: Mapping[str, Any]) -> Bytes32:
        """
        Dispatch on the operation with named parameters, the shape in which
        the contract's calculate*DataHash views receive them.
        """
        if operation == Operation.DEPOSIT:
            return cls.deposit(
                params["token_address"], params["commitment"], params["nullifier_hash"],
                params["amount"], params["sender"],
            )
        if operation == Operation.SPLIT:
            return cls.split(params["source_utxo_id"], params["output_nullifiers"])
        if operation == Operation.TRANSFER:
            return cls.transfer(params["source_utxo_id"], params["recipient"], params["output_nullifier"])
        if operation == Operation.WITHDRAW:
            return cls.withdraw(
                params["nullifier_hash"], params["amount"], params["token_address"], params["recipient"],
            )
        raise ValueError(f"unknown operation: {operation!r}")

    @staticmethod
    def utxo_id(token_address: str, commitment: Commitment, nullifier_hash: Bytes32) -> Bytes32:
        """
        Public identifier of a UTXO. The amount is never an input.
        """
        return _digest(
            ["address", "uint256", "uint256", "bytes32", "string"],
            [
                to_checksum_address(token_address),
                commitment.x,
                commitment.y,
                _b32(nullifier_hash, "nullifier_hash"),
                UTXO_ID_SALT,
            ],
        )
