"""
simulated.py - In-Memory Vault Ledger

SimulatedVault implements every capability in remote.py with the same rules
the deployed vault contract enforces, so the engine can be exercised end to
end without a network:

    - Attestations: trusted signer, matching operation, recomputed data
      hash, nonce == last + 1
    - UTXO registry: id -> (owner, token, commitment, nullifier, spent flag)
    - Nullifier registry: registered and used nullifiers
    - Public token balances with custody in the vault wallet; deposits and
      withdrawals move tokens, splits and transfers never do
    - Dry-run pre-validation with the contract's numeric codes

Every submitted call produces a receipt. A rejected call is a reverted
receipt and leaves state untouched; the nonce is consumed only on success.

Thread Safety:
    Not thread-safe. Tests that drive several sessions share one vault from a
    single thread.
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from eth_utils import keccak

from .core import (
    Attestation, Bytes32, Commitment, Operation,
    SplitCode, TransferCode, WithdrawCode,
    MAX_SPLIT_OUTPUTS, ZERO_ADDRESS,
    validation_message, normalize_address, owner_key, is_bytes32,
)
from .commitment import CommitmentEngine
from .hashing import CanonicalHasher
from .attestation import AttestationSigner
from .remote import (
    ContractStats, DepositParams, SplitParams, TransferParams, WithdrawParams,
    OutputSpec, Receipt, RemoteUTXO, NONCE_REVERT_REASON,
)

logger = logging.getLogger(__name__)

# Wallet holding the tokens backing all private UTXOs.
CUSTODY_WALLET = "vault"


@dataclass
class _VaultEntry:
    """On-chain record of one UTXO. Amounts are never stored."""
    utxo_id: Bytes32
    owner: str
    token_address: str
    commitment: Commitment
    nullifier_hash: Bytes32
    is_spent: bool = False
    spent_tx_hash: Optional[str] = None


class _Revert(Exception):
    """Internal: aborts a call; becomes a reverted receipt."""
    pass


class SimulatedVault:
    """
    In-memory vault ledger with full validation and an audit log.

    Example:
        vault = SimulatedVault("local", trusted_signer=attestor.address, test_mode=True)
        vault.register_token(TOKEN)
        vault.set_balance(alice, TOKEN, 10**12)
    """

    def __init__(
        self,
        name: str,
        trusted_signer: str,
        verbose: bool = False,
        test_mode: bool = False,
    ):
        """
        Create a vault.

        Args:
            name: Vault identifier (part of every transaction hash)
            trusted_signer: The single attestor address accepted
            verbose: Print rejected calls (default: False)
            test_mode: Allow set_balance() for funding wallets (default: False)
        """
        self.name = name
        self.trusted_signer = normalize_address(trusted_signer)
        self.verbose = verbose
        self._test_mode = test_mode
        self.paused = False
        self.balances: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.registered_tokens: Set[str] = set()
        self.utxos: Dict[Bytes32, _VaultEntry] = {}
        self._by_nullifier: Dict[Bytes32, Bytes32] = {}
        self._by_owner: Dict[str, List[Bytes32]] = defaultdict(list)
        self.used_nullifiers: Set[Bytes32] = set()
        self.nonce = 0
        self.receipts: Dict[str, Receipt] = {}
        self.transaction_log: List[Tuple[Operation, Receipt]] = []
        self._minted: Dict[str, int] = defaultdict(int)
        self._commitments = CommitmentEngine()
        # Monotonic sequence counter for transaction hashes
        self._next_sequence = 0

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def register_token(self, token_address: str) -> str:
        token = normalize_address(token_address)
        self.registered_tokens.add(token)
        return token

    def set_balance(self, wallet: str, token_address: str, amount: int) -> None:
        """Fund a public wallet. Only available in test mode."""
        if not self._test_mode:
            raise RuntimeError("set_balance() is only available in test_mode")
        token = normalize_address(token_address)
        key = self._wallet_key(wallet)
        self._minted[token] += amount - self.balances[key][token]
        self.balances[key][token] = amount

    def set_paused(self, paused: bool) -> None:
        self.paused = paused

    # ========================================================================
    # READ-ONLY QUERIES
    # ========================================================================

    def get_balance(self, wallet: str, token_address: str) -> int:
        return self.balances[self._wallet_key(wallet)][normalize_address(token_address)]

    def custody_balance(self, token_address: str) -> int:
        return self.balances[CUSTODY_WALLET][normalize_address(token_address)]

    def total_supply(self, token_address: str) -> int:
        token = normalize_address(token_address)
        return sum(wallet.get(token, 0) for wallet in self.balances.values())

    def verify_conservation(self) -> Dict[str, object]:
        """
        Check that every token's total supply equals what was minted.

        Returns:
            Dict with 'valid' and 'discrepancies' {token: (minted, actual)}
        """
        discrepancies = {}
        for token in set(self._minted) | self.registered_tokens:
            actual = self.total_supply(token)
            if actual != self._minted[token]:
                discrepancies[token] = (self._minted[token], actual)
        return {"valid": not discrepancies, "discrepancies": discrepancies}

    def last_nonce(self) -> int:
        return self.nonce

    def is_nullifier_used(self, nullifier_hash: Bytes32) -> bool:
        return nullifier_hash.lower() in self.used_nullifiers

    def does_utxo_exist(self, utxo_id: Bytes32) -> bool:
        return utxo_id.lower() in self.utxos

    def is_token_registered(self, token_address: str) -> bool:
        try:
            return normalize_address(token_address) in self.registered_tokens
        except ValueError:
            return False

    def get_user_utxos(self, owner: str) -> List[RemoteUTXO]:
        return [self._remote_view(self.utxos[i]) for i in self._by_owner.get(owner_key(owner), [])]

    def get_user_unspent_utxos(self, owner: str) -> List[RemoteUTXO]:
        return [u for u in self.get_user_utxos(owner) if not u.is_spent]

    def get_contract_stats(self) -> ContractStats:
        return ContractStats(
            total_tokens=len(self.registered_tokens),
            current_nonce=self.nonce,
            backend=self.trusted_signer,
            is_paused=self.paused,
        )

    def calculate_data_hash(self, operation: Operation, params: Dict[str, object]) -> Bytes32:
        return CanonicalHasher.for_operation(operation, params)

    # ========================================================================
    # RECEIPTS
    # ========================================================================

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise TimeoutError(f"no receipt for {tx_hash} within {timeout}s")
        return receipt

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    # ========================================================================
    # DRY-RUN VALIDATION
    # ========================================================================

    def pre_validate_split(
        self,
        source_utxo_id: Bytes32,
        source_nullifier: Bytes32,
        output_commitments: List[Optional[Commitment]],
        output_nullifiers: List[Bytes32],
    ) -> Tuple[bool, int]:
        code = self._validate_split(source_utxo_id, source_nullifier, output_commitments, output_nullifiers)
        return code == SplitCode.OK, int(code)

    def pre_validate_transfer(
        self,
        source_utxo_id: Bytes32,
        source_nullifier: Bytes32,
        output_commitment: Optional[Commitment],
        output_nullifier: Bytes32,
        recipient: str,
    ) -> Tuple[bool, int]:
        code = self._validate_transfer(
            source_utxo_id, source_nullifier, output_commitment, output_nullifier, recipient
        )
        return code == TransferCode.OK, int(code)

    def pre_validate_withdraw(
        self,
        nullifier_hash: Bytes32,
        token_address: str,
        amount: int,
        recipient: str,
    ) -> Tuple[bool, int]:
        code = self._validate_withdraw(nullifier_hash, token_address, amount, recipient)
        return code == WithdrawCode.OK, int(code)

    def _validate_split(self, source_utxo_id, source_nullifier, output_commitments, output_nullifiers) -> SplitCode:
        entry = self.utxos.get(str(source_utxo_id).lower())
        if entry is None:
            return SplitCode.SOURCE_NOT_FOUND
        if entry.is_spent:
            return SplitCode.ALREADY_SPENT
        if (not output_commitments or len(output_commitments) != len(output_nullifiers)
                or len(output_commitments) > MAX_SPLIT_OUTPUTS):
            return SplitCode.MALFORMED_OUTPUTS
        if any(c is None for c in output_commitments):
            return SplitCode.EMPTY_COMMITMENT
        if not self._commitments.verify_sum([entry.commitment], list(output_commitments)):
            return SplitCode.NOT_CONSERVED
        if str(source_nullifier).lower() != entry.nullifier_hash:
            return SplitCode.INVALID_NULLIFIER
        if self._nullifiers_taken(output_nullifiers):
            return SplitCode.NULLIFIER_USED
        return SplitCode.OK

    def _validate_transfer(self, source_utxo_id, source_nullifier, output_commitment,
                           output_nullifier, recipient) -> TransferCode:
        if not is_bytes32(source_utxo_id) or not is_bytes32(output_nullifier):
            return TransferCode.MALFORMED
        entry = self.utxos.get(source_utxo_id.lower())
        if entry is None:
            return TransferCode.SOURCE_NOT_FOUND
        if entry.is_spent:
            return TransferCode.ALREADY_SPENT
        if str(source_nullifier).lower() != entry.nullifier_hash:
            return TransferCode.INVALID_NULLIFIER
        if output_commitment is None:
            return TransferCode.EMPTY_COMMITMENT
        if output_commitment != entry.commitment:
            return TransferCode.NOT_CONSERVED
        if not self._valid_recipient(recipient):
            return TransferCode.INVALID_RECIPIENT
        if self._nullifiers_taken([output_nullifier]):
            return TransferCode.NULLIFIER_USED
        return TransferCode.OK

    def _validate_withdraw(self, nullifier_hash, token_address, amount, recipient) -> WithdrawCode:
        if not is_bytes32(nullifier_hash) or not isinstance(amount, int):
            return WithdrawCode.MALFORMED
        nullifier = nullifier_hash.lower()
        if nullifier in self.used_nullifiers:
            return WithdrawCode.NULLIFIER_USED
        utxo_id = self._by_nullifier.get(nullifier)
        if utxo_id is None:
            return WithdrawCode.INVALID_NULLIFIER
        entry = self.utxos[utxo_id]
        if entry.is_spent:
            return WithdrawCode.ALREADY_SPENT
        if amount <= 0:
            return WithdrawCode.INVALID_AMOUNT
        if not self._valid_recipient(recipient):
            return WithdrawCode.INVALID_RECIPIENT
        if not self.is_token_registered(token_address) or \
                normalize_address(token_address) != entry.token_address:
            return WithdrawCode.MALFORMED
        if self.custody_balance(token_address) < amount:
            return WithdrawCode.NOT_CONSERVED
        return WithdrawCode.OK

    # ========================================================================
    # STATE-CHANGING CALLS
    # ========================================================================

    def deposit(self, params: DepositParams) -> str:
        def apply(tx_hash: str) -> Tuple[Bytes32, ...]:
            if self.paused:
                raise _Revert("Contract is paused")
            token = normalize_address(params.token_address)
            if token not in self.registered_tokens:
                raise _Revert("Token not registered")
            self._check_attestation(params.attestation, Operation.DEPOSIT, CanonicalHasher.deposit(
                token, params.commitment, params.nullifier_hash, params.amount, params.sender,
            ))
            if params.amount <= 0:
                raise _Revert("Amount must be greater than zero")
            if self.get_balance(params.sender, token) < params.amount:
                raise _Revert("Insufficient token balance")
            expected_id = CanonicalHasher.utxo_id(token, params.commitment, params.nullifier_hash)
            if params.utxo_id.lower() != expected_id:
                raise _Revert("UTXO id does not match commitment")
            if self.does_utxo_exist(params.utxo_id):
                raise _Revert("UTXO already exists")
            if self._nullifiers_taken([params.nullifier_hash]):
                raise _Revert("Nullifier already registered")

            self.nonce += 1
            self._move(params.sender, CUSTODY_WALLET, token, params.amount)
            self._create(OutputSpec(params.utxo_id, params.nullifier_hash, params.sender, params.commitment), token)
            return (params.utxo_id.lower(),)

        return self._submit(Operation.DEPOSIT, apply)

    def split(self, params: SplitParams) -> str:
        def apply(tx_hash: str) -> Tuple[Bytes32, ...]:
            self._check_attestation(params.attestation, Operation.SPLIT, CanonicalHasher.split(
                params.source_utxo_id, [o.nullifier_hash for o in params.outputs],
            ))
            code = self._validate_split(
                params.source_utxo_id, params.input_nullifier,
                [o.commitment for o in params.outputs], [o.nullifier_hash for o in params.outputs],
            )
            if code != SplitCode.OK:
                raise _Revert(validation_message(Operation.SPLIT, code))
            entry = self.utxos[params.source_utxo_id.lower()]
            self._check_output_ids(params.outputs, entry.token_address)

            self.nonce += 1
            self._spend(entry, tx_hash)
            for output in params.outputs:
                self._create(output, entry.token_address)
            return tuple(o.utxo_id.lower() for o in params.outputs)

        return self._submit(Operation.SPLIT, apply)

    def transfer(self, params: TransferParams) -> str:
        def apply(tx_hash: str) -> Tuple[Bytes32, ...]:
            self._check_attestation(params.attestation, Operation.TRANSFER, CanonicalHasher.transfer(
                params.source_utxo_id, params.recipient, params.output.nullifier_hash,
            ))
            code = self._validate_transfer(
                params.source_utxo_id, params.input_nullifier, params.output.commitment,
                params.output.nullifier_hash, params.recipient,
            )
            if code != TransferCode.OK:
                raise _Revert(validation_message(Operation.TRANSFER, code))
            if owner_key(params.output.owner) != owner_key(params.recipient):
                raise _Revert("Output owner is not the recipient")
            entry = self.utxos[params.source_utxo_id.lower()]
            self._check_output_ids((params.output,), entry.token_address)

            self.nonce += 1
            self._spend(entry, tx_hash)
            self._create(params.output, entry.token_address)
            return (params.output.utxo_id.lower(),)

        return self._submit(Operation.TRANSFER, apply)

    def withdraw(self, params: WithdrawParams) -> str:
        def apply(tx_hash: str) -> Tuple[Bytes32, ...]:
            if self.paused:
                raise _Revert("Contract is paused")
            self._check_attestation(params.attestation, Operation.WITHDRAW, CanonicalHasher.withdraw(
                params.nullifier_hash, params.amount, params.token_address, params.recipient,
            ))
            code = self._validate_withdraw(
                params.nullifier_hash, params.token_address, params.amount, params.recipient,
            )
            if code != WithdrawCode.OK:
                raise _Revert(validation_message(Operation.WITHDRAW, code))

            self.nonce += 1
            entry = self.utxos[self._by_nullifier[params.nullifier_hash.lower()]]
            self._spend(entry, tx_hash)
            self._move(CUSTODY_WALLET, params.recipient, entry.token_address, params.amount)
            return ()

        return self._submit(Operation.WITHDRAW, apply)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _submit(self, operation: Operation, apply: Callable[[str], Tuple[Bytes32, ...]]) -> str:
        sequence = self._next_sequence
        self._next_sequence += 1
        tx_hash = "0x" + keccak(text=f"{self.name}:{operation.value}:{sequence}").hex()
        try:
            created = apply(tx_hash)
            receipt = Receipt(tx_hash=tx_hash, success=True, block_number=sequence + 1, created_ids=created)
            logger.info("%s %s applied, created=%s", self.name, operation.value, list(created))
        except _Revert as e:
            receipt = Receipt(tx_hash=tx_hash, success=False, block_number=sequence + 1, revert_reason=str(e))
            logger.info("%s %s reverted: %s", self.name, operation.value, e)
            if self.verbose:
                print(f"✗ REVERTED {operation.value}: {e}")
        self.receipts[tx_hash] = receipt
        self.transaction_log.append((operation, receipt))
        return tx_hash

    def _check_attestation(self, attestation: Attestation, operation: Operation, data_hash: Bytes32) -> None:
        if attestation.operation != operation:
            raise _Revert("Attestation operation mismatch")
        if AttestationSigner.recover(attestation) != self.trusted_signer:
            raise _Revert("Invalid attestation signature")
        if attestation.data_hash.lower() != data_hash:
            raise _Revert("Data hash mismatch")
        if attestation.nonce != self.nonce + 1:
            raise _Revert(NONCE_REVERT_REASON)

    def _check_output_ids(self, outputs, token_address: str) -> None:
        for output in outputs:
            expected = CanonicalHasher.utxo_id(token_address, output.commitment, output.nullifier_hash)
            if output.utxo_id.lower() != expected:
                raise _Revert("UTXO id does not match commitment")
            if self.does_utxo_exist(output.utxo_id):
                raise _Revert("UTXO already exists")

    def _nullifiers_taken(self, nullifiers) -> bool:
        lowered = [str(n).lower() for n in nullifiers]
        if len(set(lowered)) != len(lowered):
            return True
        return any(n in self._by_nullifier or n in self.used_nullifiers for n in lowered)

    def _valid_recipient(self, recipient: str) -> bool:
        try:
            return normalize_address(recipient) != ZERO_ADDRESS
        except ValueError:
            return False

    def _create(self, output: OutputSpec, token_address: str) -> None:
        entry = _VaultEntry(
            utxo_id=output.utxo_id.lower(),
            owner=normalize_address(output.owner),
            token_address=token_address,
            commitment=output.commitment,
            nullifier_hash=output.nullifier_hash.lower(),
        )
        self.utxos[entry.utxo_id] = entry
        self._by_nullifier[entry.nullifier_hash] = entry.utxo_id
        self._by_owner[owner_key(entry.owner)].append(entry.utxo_id)

    def _spend(self, entry: _VaultEntry, tx_hash: str) -> None:
        entry.is_spent = True
        entry.spent_tx_hash = tx_hash
        self.used_nullifiers.add(entry.nullifier_hash)

    def _move(self, source: str, dest: str, token: str, amount: int) -> None:
        self.balances[self._wallet_key(source)][token] -= amount
        self.balances[self._wallet_key(dest)][token] += amount

    @staticmethod
    def _wallet_key(wallet: str) -> str:
        return wallet if wallet == CUSTODY_WALLET else owner_key(wallet)

    @staticmethod
    def _remote_view(entry: _VaultEntry) -> RemoteUTXO:
        return RemoteUTXO(utxo_id=entry.utxo_id, is_spent=entry.is_spent, spent_tx_hash=entry.spent_tx_hash)
