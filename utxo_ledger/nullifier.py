"""
nullifier.py - Deterministic Spend Markers

A nullifier is keccak256 over a domain tag, the commitment coordinates and
keccak256(owner secret). The owner's public address is never an input on its
own, so nullifiers cannot be guessed or linked from chain data.

Outputs of a split additionally mix in the parent nullifier and the output
index, so two outputs of one split never collide and re-splitting a spent
UTXO cannot reproduce an existing nullifier.
"""

from __future__ import annotations
from typing import Optional, Union

from eth_abi.packed import encode_packed
from eth_utils import keccak

from .core import Commitment, DerivationError, Bytes32, is_bytes32, MAX_SPLIT_OUTPUTS


NULLIFIER_TAG = "utxo-nullifier:v1"
OUTPUT_NULLIFIER_TAG = "utxo-output-nullifier:v1"

KeyMaterial = Union[bytes, str]


def _secret_digest(owner_key_material: Optional[KeyMaterial]) -> bytes:
    if owner_key_material is None:
        raise DerivationError("owner key material is required to derive a nullifier")
    if isinstance(owner_key_material, str):
        text = owner_key_material[2:] if owner_key_material.startswith("0x") else owner_key_material
        try:
            raw = bytes.fromhex(text)
        except ValueError as e:
            raise DerivationError("owner key material must be hex or bytes") from e
    else:
        raw = bytes(owner_key_material)
    if not raw or not any(raw):
        raise DerivationError("owner key material is empty")
    return keccak(raw)


class NullifierDeriver:
    """
    Derives nullifiers from commitments and owner-bound secret material.

    Example:
        deriver = NullifierDeriver()
        n0 = deriver.derive(commitment, session.secret)
        n1 = deriver.derive_output(out_commitment, session.secret, n0, index=0)
    """

    def derive(self, commitment: Commitment, owner_key_material: Optional[KeyMaterial]) -> Bytes32:
        """Nullifier of a fresh (deposited) commitment."""
        secret = _secret_digest(owner_key_material)
        packed = encode_packed(
            ["string", "uint256", "uint256", "bytes32"],
            [NULLIFIER_TAG, commitment.x, commitment.y, secret],
        )
        return "0x" + keccak(packed).hex()

    def derive_output(
        self,
        commitment: Commitment,
        owner_key_material: Optional[KeyMaterial],
        parent_nullifier: Bytes32,
        index: int,
    ) -> Bytes32:
        """
        Nullifier of output `index` of a split or transfer.

        Raises:
            DerivationError: If key material is missing, the parent nullifier
                             is malformed, or the index is out of range
        """
        secret = _secret_digest(owner_key_material)
        if not is_bytes32(parent_nullifier):
            raise DerivationError(f"parent nullifier is malformed: {parent_nullifier!r}")
        if not 0 <= index < MAX_SPLIT_OUTPUTS:
            raise DerivationError(f"output index {index} outside [0, {MAX_SPLIT_OUTPUTS})")
        packed = encode_packed(
            ["string", "uint256", "uint256", "bytes32", "bytes32", "uint256"],
            [
                OUTPUT_NULLIFIER_TAG,
                commitment.x,
                commitment.y,
                secret,
                bytes.fromhex(parent_nullifier[2:]),
                index,
            ],
        )
        return "0x" + keccak(packed).hex()
