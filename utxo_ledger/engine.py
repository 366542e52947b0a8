"""
engine.py - Private-UTXO Operation State Machine

UTXOLedgerEngine is the only component that submits state-changing calls to
the vault. Every operation follows the same sequence:

    local checks -> commitments/nullifiers -> canonical hash
        -> remote dry-run (split/transfer/withdraw)
        -> attest -> submit -> receipt -> local store update -> channel event

Key responsibilities:
    - Enforces exact value conservation before anything leaves the process
    - Pre-validates against the vault so invalid calls never cost gas
    - Marks inputs SPENT only on a receipt that confirms success
    - Journals submissions whose receipt timed out (outcome unknown)
    - Retries nonce conflicts by re-signing, never by resubmitting a stale
      attestation

UTXO lifecycle:
    PENDING_CONFIRM -> UNSPENT -> SPENT (terminal)
    RECOVERED is a tag set only by recover_utxo(), an administrative action.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .core import (
    # Types
    Attestation, Bytes32, Operation, PrivateUTXO, PendingOperation,
    SplitOutput, UTXOKind, UTXOStatus,
    # Codes
    DepositCode, SplitCode, TransferCode, WithdrawCode,
    # Constants
    MAX_VALUE, ZERO_ADDRESS,
    # Exceptions
    ConfigError, LedgerError, HashMismatchError, NonceConflictError, PreValidationError,
    RangeError, ReceiptTimeoutError, RecoveryRefused, SubmissionError,
    # Helpers
    normalize_address, now_ts,
)
from .attestation import AttestationSigner
from .commitment import CommitmentEngine
from .config import EngineConfig, MODE_ZK
from .events import DepositConfirmed, EngineChannels, SpendConfirmed
from .hashing import CanonicalHasher
from .nullifier import NullifierDeriver
from .remote import (
    DepositParams, HashOracle, OutputSpec, Receipt, SplitParams, TransferParams, VaultLedger,
    WithdrawParams, NONCE_REVERT_REASON,
)
from .session import OwnerSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OperationResult:
    """
    Outcome of a confirmed operation.

    Attributes:
        operation: The operation performed
        tx_hash: Confirming transaction
        input_id: Consumed UTXO (None for deposits)
        created: Records written by the operation, in output order
        nonce_retries: Re-signings caused by nonce conflicts
    """
    operation: Operation
    tx_hash: str
    input_id: Optional[Bytes32]
    created: Tuple[PrivateUTXO, ...] = field(default_factory=tuple)
    nonce_retries: int = 0


# Code reported when an input is already spent in the local store.
_LOCALLY_SPENT_CODE = {
    Operation.SPLIT: SplitCode.ALREADY_SPENT,
    Operation.TRANSFER: TransferCode.ALREADY_SPENT,
    Operation.WITHDRAW: WithdrawCode.NULLIFIER_USED,
}

_NOT_FOUND_CODE = {
    Operation.SPLIT: SplitCode.SOURCE_NOT_FOUND,
    Operation.TRANSFER: TransferCode.SOURCE_NOT_FOUND,
    Operation.WITHDRAW: WithdrawCode.SOURCE_NOT_FOUND,
}

_CALL_FAILED_CODE = {
    Operation.DEPOSIT: DepositCode.CALL_FAILED,
    Operation.SPLIT: SplitCode.CALL_FAILED,
    Operation.TRANSFER: TransferCode.CALL_FAILED,
    Operation.WITHDRAW: WithdrawCode.CALL_FAILED,
}


class UTXOLedgerEngine:
    """
    Deposit, split, transfer and withdraw private UTXOs against a vault ledger.

    The engine holds no per-owner state; every call receives the owner's
    OwnerSession. Each operation of one owner runs under the session lock,
    from the input check to the receipt.

    Example:
        engine = UTXOLedgerEngine(vault, signer, EngineConfig())
        session = OwnerSession(alice, secret, store)
        deposit = engine.deposit(session, TOKEN, 1_000_000_000)
        engine.split(session, deposit.created[0].id, [
            SplitOutput(600_000_000, alice),
            SplitOutput(400_000_000, bob),
        ])
    """

    mode = MODE_ZK

    def __init__(
        self,
        ledger: VaultLedger,
        signer: AttestationSigner,
        config: Optional[EngineConfig] = None,
        channels: Optional[EngineChannels] = None,
        verbose: bool = False,
        clock: Callable[[], int] = now_ts,
    ):
        """
        Args:
            ledger: Vault capabilities (any object implementing VaultLedger)
            signer: Attestation signer holding the authorized key
            config: Engine configuration (default: EngineConfig())
            channels: Channels to publish confirmations to
            verbose: Print a result line per confirmed operation (default: False)
            clock: Source of unix timestamps for created_at

        Raises:
            ConfigError: If remote hash verification is on and the ledger
                cannot recompute data hashes
        """
        self.ledger = ledger
        self.signer = signer
        self.config = config or EngineConfig()
        if self.config.verify_hashes_remotely and not isinstance(ledger, HashOracle):
            raise ConfigError(
                f"verify_hashes_remotely requires a ledger with calculate_data_hash; "
                f"{type(ledger).__name__} has none"
            )
        self.channels = channels or EngineChannels()
        self.verbose = verbose
        self._clock = clock
        self.commitments = CommitmentEngine()
        self.nullifiers = NullifierDeriver()
        self.hasher = CanonicalHasher()

    # ========================================================================
    # DEPOSIT
    # ========================================================================

    def deposit(self, session: OwnerSession, token_address: str, amount: int) -> OperationResult:
        """
        Move `amount` public tokens into a fresh private UTXO.

        The record is stored PENDING_CONFIRM before submission and becomes
        UNSPENT when the receipt confirms it.

        Raises:
            RangeError: Amount negative or above MAX_VALUE
            PreValidationError: Token unregistered, zero amount or nullifier in use
            SubmissionError: The transaction reverted (pending record discarded,
                as on any other failure before a receipt)
            ReceiptTimeoutError: Outcome unknown (record stays PENDING_CONFIRM)
        """
        operation = Operation.DEPOSIT
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0 or amount > MAX_VALUE:
            raise RangeError(f"deposit amount {amount!r} outside [0, {MAX_VALUE}]")
        if amount == 0:
            raise PreValidationError(operation, DepositCode.INVALID_AMOUNT)
        token = normalize_address(token_address)
        if not self._remote_check(operation, lambda: self.ledger.is_token_registered(token)):
            raise PreValidationError(operation, DepositCode.TOKEN_NOT_REGISTERED, token)

        blinding = self.commitments.random_blinding()
        commitment = self.commitments.commit(amount, blinding)
        nullifier = self.nullifiers.derive(commitment, session.key_material)
        utxo_id = self.hasher.utxo_id(token, commitment, nullifier)
        if self._remote_check(operation, lambda: self.ledger.is_nullifier_used(nullifier)):
            raise PreValidationError(operation, DepositCode.NULLIFIER_USED)

        data_hash = self.hasher.deposit(token, commitment, nullifier, amount, session.owner)
        self._cross_check(operation, data_hash, {
            "token_address": token, "commitment": commitment, "nullifier_hash": nullifier,
            "amount": amount, "sender": session.owner,
        })

        record = PrivateUTXO(
            id=utxo_id,
            owner=session.owner,
            token_address=token,
            value=amount,
            commitment=commitment,
            blinding_factor=blinding,
            nullifier_hash=nullifier,
            kind=UTXOKind.DEPOSIT,
            status=UTXOStatus.PENDING_CONFIRM,
            created_at=self._clock(),
        )

        def submit(attestation: Attestation) -> str:
            return self.ledger.deposit(DepositParams(
                utxo_id=utxo_id,
                token_address=token,
                commitment=commitment,
                nullifier_hash=nullifier,
                amount=amount,
                sender=session.owner,
                attestation=attestation,
            ))

        with session.lock:
            session.store.save(session.owner, record)
            try:
                receipt, retries = self._attest_and_submit(
                    session, operation, data_hash, submit, input_id=None, outputs=(record,),
                )
            except ReceiptTimeoutError:
                raise
            except Exception:
                # No receipt will ever confirm the record
                session.store.discard(session.owner, utxo_id)
                raise
            written = session.apply_confirmed(operation, None, (record,), receipt.tx_hash)

        self.channels.deposit_confirmed.publish(DepositConfirmed(
            owner=session.owner, utxo_id=utxo_id, token_address=token,
            amount=amount, tx_hash=receipt.tx_hash,
        ))
        result = OperationResult(operation, receipt.tx_hash, None, tuple(written), retries)
        self._report(result)
        return result

    # ========================================================================
    # SPLIT / TRANSFER
    # ========================================================================

    def split(
        self,
        session: OwnerSession,
        utxo_id: Bytes32,
        outputs: Sequence[Union[SplitOutput, Tuple[int, str]]],
    ) -> OperationResult:
        """
        Consume one UTXO and create N outputs, possibly for other owners.

        Requires 1 <= N <= max_split_outputs, every amount positive and the
        amounts summing exactly to the input value. Output blindings sum to
        the input blinding, so the output commitments sum to the input
        commitment and the vault can check conservation on points alone.

        Raises:
            PreValidationError: Local check or vault dry-run failed (nothing submitted)
            SubmissionError: The transaction reverted (nothing marked spent)
            ReceiptTimeoutError: Outcome unknown; reconcile later
        """
        operation = Operation.SPLIT
        requested = [o if isinstance(o, SplitOutput) else SplitOutput(*o) for o in outputs]
        with session.lock:
            source = self._spendable_input(session, operation, utxo_id)

            if not requested or len(requested) > self.config.max_split_outputs:
                raise PreValidationError(operation, SplitCode.MALFORMED_OUTPUTS,
                                         f"{len(requested)} outputs, allowed 1..{self.config.max_split_outputs}")
            if any(o.amount <= 0 for o in requested):
                raise PreValidationError(operation, SplitCode.MALFORMED_OUTPUTS, "output amounts must be positive")
            total = sum(o.amount for o in requested)
            if total != source.value:
                raise PreValidationError(operation, SplitCode.NOT_CONSERVED,
                                         f"outputs sum to {total}, input holds {source.value}")

            records = self._derive_outputs(session, source, requested, UTXOKind.SPLIT)
            commitments = [r.commitment for r in records]
            nullifiers = [r.nullifier_hash for r in records]
            if not self.commitments.verify_sum([source.commitment], commitments):
                raise PreValidationError(operation, SplitCode.NOT_CONSERVED, "output commitments do not sum to input")

            ok, code = self._remote_check(operation, lambda: self.ledger.pre_validate_split(
                source.id, source.nullifier_hash, commitments, nullifiers,
            ))
            if not ok:
                raise PreValidationError(operation, code)

            data_hash = self.hasher.split(source.id, nullifiers)
            self._cross_check(operation, data_hash, {"source_utxo_id": source.id, "output_nullifiers": nullifiers})

            def submit(attestation: Attestation) -> str:
                return self.ledger.split(SplitParams(
                    source_utxo_id=source.id,
                    input_nullifier=source.nullifier_hash,
                    outputs=tuple(self._output_spec(r) for r in records),
                    attestation=attestation,
                ))

            return self._spend(session, operation, source, records, data_hash, submit)

    def transfer(self, session: OwnerSession, utxo_id: Bytes32, recipient: str) -> OperationResult:
        """
        Hand a whole UTXO to `recipient`: a split with one full-value output.

        Raises:
            PreValidationError: Invalid recipient, local check or dry-run failure
            SubmissionError: The transaction reverted
            ReceiptTimeoutError: Outcome unknown; reconcile later
        """
        operation = Operation.TRANSFER
        with session.lock:
            source = self._spendable_input(session, operation, utxo_id)
            recipient = self._valid_recipient(operation, recipient, TransferCode.INVALID_RECIPIENT)

            requested = [SplitOutput(source.value, recipient)]
            if sum(o.amount for o in requested) != source.value:
                raise PreValidationError(operation, TransferCode.NOT_CONSERVED)
            (record,) = self._derive_outputs(session, source, requested, UTXOKind.TRANSFER)

            ok, code = self._remote_check(operation, lambda: self.ledger.pre_validate_transfer(
                source.id, source.nullifier_hash, record.commitment, record.nullifier_hash, recipient,
            ))
            if not ok:
                raise PreValidationError(operation, code)

            data_hash = self.hasher.transfer(source.id, recipient, record.nullifier_hash)
            self._cross_check(operation, data_hash, {
                "source_utxo_id": source.id, "recipient": recipient, "output_nullifier": record.nullifier_hash,
            })

            def submit(attestation: Attestation) -> str:
                return self.ledger.transfer(TransferParams(
                    source_utxo_id=source.id,
                    input_nullifier=source.nullifier_hash,
                    output=self._output_spec(record),
                    recipient=recipient,
                    attestation=attestation,
                ))

            return self._spend(session, operation, source, [record], data_hash, submit)

    # ========================================================================
    # WITHDRAW
    # ========================================================================

    def withdraw(self, session: OwnerSession, utxo_id: Bytes32, recipient: Optional[str] = None) -> OperationResult:
        """
        Redeem a UTXO for public tokens. The amount becomes public.

        Args:
            recipient: Address receiving the tokens (default: the session owner)
        """
        operation = Operation.WITHDRAW
        with session.lock:
            source = self._spendable_input(session, operation, utxo_id)
            recipient = self._valid_recipient(operation, recipient or session.owner, WithdrawCode.INVALID_RECIPIENT)
            if source.value <= 0:
                raise PreValidationError(operation, WithdrawCode.INVALID_AMOUNT)

            ok, code = self._remote_check(operation, lambda: self.ledger.pre_validate_withdraw(
                source.nullifier_hash, source.token_address, source.value, recipient,
            ))
            if not ok:
                raise PreValidationError(operation, code)

            data_hash = self.hasher.withdraw(source.nullifier_hash, source.value, source.token_address, recipient)
            self._cross_check(operation, data_hash, {
                "nullifier_hash": source.nullifier_hash, "amount": source.value,
                "token_address": source.token_address, "recipient": recipient,
            })

            def submit(attestation: Attestation) -> str:
                return self.ledger.withdraw(WithdrawParams(
                    nullifier_hash=source.nullifier_hash,
                    token_address=source.token_address,
                    amount=source.value,
                    recipient=recipient,
                    attestation=attestation,
                ))

            return self._spend(session, operation, source, [], data_hash, submit)

    # ========================================================================
    # ADMINISTRATION / QUERIES
    # ========================================================================

    def recover_utxo(self, session: OwnerSession, utxo_id: Bytes32, reason: str) -> PrivateUTXO:
        """
        Administrative override: restore a SPENT record to UNSPENT.

        Allowed only while the vault reports the record's nullifier unused
        and the UTXO unspent, i.e. when the local spent flag is wrong.

        Raises:
            RecoveryRefused: If the vault shows the UTXO consumed
        """
        with session.lock:
            record = session.store.require(session.owner, utxo_id)
            if self.ledger.is_nullifier_used(record.nullifier_hash):
                raise RecoveryRefused(f"nullifier of {utxo_id} is used on the ledger")
            remote = {u.utxo_id: u for u in self.ledger.get_user_utxos(session.owner)}
            entry = remote.get(record.id)
            if entry is None or entry.is_spent:
                raise RecoveryRefused(f"UTXO {utxo_id} is not unspent on the ledger")
            return session.store.recover(session.owner, utxo_id, reason)

    def get_balance(self, session: OwnerSession, token_address: Optional[str] = None):
        return session.store.balance(session.owner, token_address)

    def list_utxos(self, session: OwnerSession) -> List[PrivateUTXO]:
        return session.store.list(session.owner)

    def list_unspent(self, session: OwnerSession, token_address: Optional[str] = None) -> List[PrivateUTXO]:
        return session.store.list_unspent(session.owner, token_address)

    def get_utxo(self, session: OwnerSession, utxo_id: Bytes32) -> Optional[PrivateUTXO]:
        return session.store.get(session.owner, utxo_id)

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _spendable_input(self, session: OwnerSession, operation: Operation, utxo_id: Bytes32) -> PrivateUTXO:
        record = session.store.get(session.owner, utxo_id)
        if record is None:
            raise PreValidationError(operation, _NOT_FOUND_CODE[operation], f"{utxo_id} not in local store")
        if record.is_spent:
            raise PreValidationError(operation, _LOCALLY_SPENT_CODE[operation], utxo_id)
        if record.status == UTXOStatus.PENDING_CONFIRM:
            raise PreValidationError(operation, _NOT_FOUND_CODE[operation], f"{utxo_id} is not confirmed yet")
        return record

    def _valid_recipient(self, operation: Operation, recipient: str, code: int) -> str:
        try:
            address = normalize_address(recipient)
        except ValueError as e:
            raise PreValidationError(operation, code, repr(recipient)) from e
        if address == ZERO_ADDRESS:
            raise PreValidationError(operation, code, "zero address")
        return address

    def _derive_outputs(
        self,
        session: OwnerSession,
        source: PrivateUTXO,
        requested: List[SplitOutput],
        kind: UTXOKind,
    ) -> List[PrivateUTXO]:
        blindings = self.commitments.split_blindings(source.blinding_factor, len(requested))
        created_at = self._clock()
        records = []
        for index, (output, blinding) in enumerate(zip(requested, blindings)):
            commitment = self.commitments.commit(output.amount, blinding)
            nullifier = self.nullifiers.derive_output(
                commitment, session.key_material, source.nullifier_hash, index,
            )
            records.append(PrivateUTXO(
                id=self.hasher.utxo_id(source.token_address, commitment, nullifier),
                owner=output.owner,
                token_address=source.token_address,
                value=output.amount,
                commitment=commitment,
                blinding_factor=blinding,
                nullifier_hash=nullifier,
                kind=kind,
                status=UTXOStatus.PENDING_CONFIRM,
                parent_id=source.id,
                created_at=created_at,
            ))
        return records

    @staticmethod
    def _output_spec(record: PrivateUTXO) -> OutputSpec:
        return OutputSpec(
            utxo_id=record.id,
            nullifier_hash=record.nullifier_hash,
            owner=record.owner,
            commitment=record.commitment,
        )

    def _spend(
        self,
        session: OwnerSession,
        operation: Operation,
        source: PrivateUTXO,
        records: List[PrivateUTXO],
        data_hash: Bytes32,
        submit: Callable[[Attestation], str],
    ) -> OperationResult:
        receipt, retries = self._attest_and_submit(
            session, operation, data_hash, submit, input_id=source.id, outputs=tuple(records),
        )
        written = session.apply_confirmed(operation, source.id, tuple(records), receipt.tx_hash)

        self.channels.spend_confirmed.publish(SpendConfirmed(
            owner=session.owner,
            operation=operation,
            input_id=source.id,
            output_ids=tuple(r.id for r in written),
            tx_hash=receipt.tx_hash,
        ))
        result = OperationResult(operation, receipt.tx_hash, source.id, tuple(written), retries)
        self._report(result)
        return result

    def _attest_and_submit(
        self,
        session: OwnerSession,
        operation: Operation,
        data_hash: Bytes32,
        submit: Callable[[Attestation], str],
        input_id: Optional[Bytes32],
        outputs: Tuple[PrivateUTXO, ...],
    ) -> Tuple[Receipt, int]:
        """
        Sign, submit and wait for the receipt, re-signing on nonce conflicts.

        Returns:
            (successful receipt, number of nonce retries)
        """
        ids = tuple(i for i in ((input_id,) + tuple(o.id for o in outputs)) if i is not None)
        retries = 0
        while True:
            attestation = self.signer.sign(operation, data_hash)
            tx_hash = submit(attestation)
            try:
                receipt = self.ledger.wait_for_receipt(tx_hash, self.config.receipt_timeout)
            except OSError as e:
                session.journal(PendingOperation(
                    operation=operation,
                    tx_hash=tx_hash,
                    owner=session.owner,
                    input_id=input_id,
                    outputs=outputs,
                    submitted_at=self._clock(),
                ))
                logger.warning("%s receipt unavailable tx=%s ids=%s (%s); outcome unknown",
                               operation.value, tx_hash, list(ids), e)
                raise ReceiptTimeoutError(operation, ids, tx_hash) from e

            if receipt.success:
                return receipt, retries
            if receipt.revert_reason == NONCE_REVERT_REASON:
                if retries >= self.config.nonce_retry_limit:
                    raise NonceConflictError(operation, attestation.nonce, tx_hash)
                retries += 1
                logger.warning("%s nonce %d consumed concurrently; re-signing (retry %d/%d)",
                               operation.value, attestation.nonce, retries, self.config.nonce_retry_limit)
                continue
            logger.error("%s reverted tx=%s: %s", operation.value, tx_hash, receipt.revert_reason)
            raise SubmissionError(operation, ids, tx_hash, receipt.revert_reason or "transaction reverted")

    def _remote_check(self, operation: Operation, call: Callable[[], object]):
        """Run a read-only vault call; transport failures map to the CALL_FAILED code."""
        try:
            return call()
        except OSError as e:
            raise PreValidationError(operation, _CALL_FAILED_CODE[operation], str(e)) from e

    def _cross_check(self, operation: Operation, local_hash: Bytes32, params: Dict[str, object]) -> None:
        if not self.config.verify_hashes_remotely:
            return
        remote_hash = self._remote_check(
            operation, lambda: self.ledger.calculate_data_hash(operation, params),
        )
        if str(remote_hash).lower() != local_hash.lower():
            logger.critical("%s canonical hash mismatch local=%s remote=%s",
                            operation.value, local_hash, remote_hash)
            raise HashMismatchError(operation, local_hash, str(remote_hash))

    def _report(self, result: OperationResult) -> None:
        logger.info("%s confirmed tx=%s input=%s created=%s",
                    result.operation.value, result.tx_hash, result.input_id,
                    [r.id for r in result.created])
        if self.verbose:
            created = ", ".join(f"{r.id[:10]}…={r.value}->{r.owner[:8]}" for r in result.created)
            print(f"✓ {result.operation.value:<8} tx={result.tx_hash[:12]}… "
                  f"in={result.input_id[:10] + '…' if result.input_id else '-'} out=[{created}]")


# Canonical implementation per configured mode.
_IMPLEMENTATIONS = {
    MODE_ZK: UTXOLedgerEngine,
}


def create_engine(
    ledger: VaultLedger,
    config: EngineConfig,
    channels: Optional[EngineChannels] = None,
    verbose: bool = False,
) -> UTXOLedgerEngine:
    """
    Build the engine selected by `config.mode`, with a signer from the config.

    Raises:
        LedgerError: If the mode has no implementation
    """
    engine_cls = _IMPLEMENTATIONS.get(config.mode)
    if engine_cls is None:
        raise LedgerError(f"no engine implementation for mode {config.mode!r}")
    signer = AttestationSigner(config.attestor_key, ledger, config.trusted_signer)
    return engine_cls(ledger, signer, config, channels=channels, verbose=verbose)
