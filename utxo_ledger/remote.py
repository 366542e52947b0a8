"""
remote.py - Capability Interfaces of the Vault Ledger

The vault contract is an external collaborator. The engine never holds an
untyped contract handle: each operation depends only on the narrow capability
it needs (DepositLedger, SplitLedger, ...). A concrete adapter (a web3
contract wrapper, or SimulatedVault in simulated.py) implements the union.

Call parameters and results are immutable records defined here.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

from .core import Attestation, Bytes32, Commitment, Operation


# ============================================================================
# CALL PARAMETERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class OutputSpec:
    """Public part of a UTXO created by a split or transfer."""
    utxo_id: Bytes32
    nullifier_hash: Bytes32
    owner: str
    commitment: Commitment


@dataclass(frozen=True, slots=True)
class DepositParams:
    utxo_id: Bytes32
    token_address: str
    commitment: Commitment
    nullifier_hash: Bytes32
    amount: int
    sender: str
    attestation: Attestation


@dataclass(frozen=True, slots=True)
class SplitParams:
    source_utxo_id: Bytes32
    input_nullifier: Bytes32
    outputs: Tuple[OutputSpec, ...]
    attestation: Attestation


@dataclass(frozen=True, slots=True)
class TransferParams:
    source_utxo_id: Bytes32
    input_nullifier: Bytes32
    output: OutputSpec
    recipient: str
    attestation: Attestation


@dataclass(frozen=True, slots=True)
class WithdrawParams:
    nullifier_hash: Bytes32
    token_address: str
    amount: int
    recipient: str
    attestation: Attestation


# ============================================================================
# CALL RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Receipt:
    """
    Outcome of a mined transaction.

    success=False means the transaction reverted; revert_reason carries the
    contract's reason string when available.
    """
    tx_hash: str
    success: bool
    block_number: int = 0
    revert_reason: Optional[str] = None
    created_ids: Tuple[Bytes32, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class RemoteUTXO:
    """Minimal on-chain view of a UTXO: identifier and spent flag."""
    utxo_id: Bytes32
    is_spent: bool
    spent_tx_hash: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ContractStats:
    total_tokens: int
    current_nonce: int
    backend: str
    is_paused: bool


# Revert reason the contract uses when an attestation nonce is stale.
NONCE_REVERT_REASON = "Invalid nonce"


# ============================================================================
# CAPABILITIES
# ============================================================================

@runtime_checkable
class NonceSource(Protocol):
    """Source of the last attestation nonce the ledger consumed."""

    def last_nonce(self) -> int:
        ...


@runtime_checkable
class ReceiptSource(Protocol):

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        """
        Block until the transaction is mined.

        Raises:
            TimeoutError: If no receipt is available within `timeout` seconds
        """
        ...

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        """Receipt if mined, None if still unknown."""
        ...


@runtime_checkable
class ReadLedger(Protocol):
    """Read-only queries used by pre-checks and reconciliation."""

    def is_nullifier_used(self, nullifier_hash: Bytes32) -> bool:
        ...

    def does_utxo_exist(self, utxo_id: Bytes32) -> bool:
        ...

    def is_token_registered(self, token_address: str) -> bool:
        ...

    def get_user_utxos(self, owner: str) -> List[RemoteUTXO]:
        ...

    def get_user_unspent_utxos(self, owner: str) -> List[RemoteUTXO]:
        ...

    def get_contract_stats(self) -> ContractStats:
        ...


@runtime_checkable
class HashOracle(Protocol):
    """View functions through which the contract recomputes data hashes."""

    def calculate_data_hash(self, operation: Operation, params: Dict[str, object]) -> Bytes32:
        ...


@runtime_checkable
class DepositLedger(NonceSource, ReceiptSource, Protocol):

    def deposit(self, params: DepositParams) -> str:
        """Submit a deposit; returns the transaction hash."""
        ...


@runtime_checkable
class SplitLedger(NonceSource, ReceiptSource, Protocol):

    def pre_validate_split(
        self,
        source_utxo_id: Bytes32,
        source_nullifier: Bytes32,
        output_commitments: List[Optional[Commitment]],
        output_nullifiers: List[Bytes32],
    ) -> Tuple[bool, int]:
        """Dry-run: no state change, no gas. Returns (ok, SplitCode)."""
        ...

    def split(self, params: SplitParams) -> str:
        ...


@runtime_checkable
class TransferLedger(NonceSource, ReceiptSource, Protocol):

    def pre_validate_transfer(
        self,
        source_utxo_id: Bytes32,
        source_nullifier: Bytes32,
        output_commitment: Optional[Commitment],
        output_nullifier: Bytes32,
        recipient: str,
    ) -> Tuple[bool, int]:
        ...

    def transfer(self, params: TransferParams) -> str:
        ...


@runtime_checkable
class WithdrawLedger(NonceSource, ReceiptSource, Protocol):

    def pre_validate_withdraw(
        self,
        nullifier_hash: Bytes32,
        token_address: str,
        amount: int,
        recipient: str,
    ) -> Tuple[bool, int]:
        ...

    def withdraw(self, params: WithdrawParams) -> str:
        ...


@runtime_checkable
class VaultLedger(DepositLedger, SplitLedger, TransferLedger, WithdrawLedger, ReadLedger, HashOracle, Protocol):
    """Every capability the engine can use."""
    pass
