"""
test_engine_operations.py - Unit tests for UTXOLedgerEngine

Tests:
- deposit / split / transfer / withdraw happy paths and store effects
- Local pre-validation codes (no transaction sent)
- Remote dry-run codes and transport failures (CALL_FAILED)
- Reverts, receipt timeouts, nonce retries and exhaustion
- Canonical hash cross-check, signing failures, transport failures
- Concurrent spends of one input by the same owner
- Administrative recovery, queries, create_engine()
"""

import threading

import pytest

from utxo_ledger import (
    AttestationSigner, ConfigError, EngineConfig, OwnerSession, SplitOutput, UTXOLedgerEngine,
    Operation, UTXOKind, UTXOStatus,
    DepositCode, SplitCode, TransferCode, WithdrawCode,
    HashMismatchError, LedgerError, NonceConflictError, PreValidationError, RangeError,
    ReceiptTimeoutError, RecoveryRefused, SigningError, SubmissionError,
    create_engine, MAX_VALUE,
)

from tests.fake_remote import (
    ATTESTOR, ATTESTOR_KEY, ALICE, BOB, CAROL, TOKEN, OTHER_TOKEN, UNREGISTERED_TOKEN,
    INITIAL_BALANCE, fixed_clock,
)


ZERO = "0x0000000000000000000000000000000000000000"


class WithoutHashOracle:
    """Vault adapter exposing every capability except calculate_data_hash."""

    def __init__(self, inner):
        self._inner = inner

    def __getattr__(self, name):
        if name == "calculate_data_hash":
            raise AttributeError(name)
        return getattr(self._inner, name)


# =============================================================================
# DEPOSIT
# =============================================================================

class TestDeposit:

    def test_deposit_creates_unspent_utxo(self, engine, vault, alice):
        result = engine.deposit(alice, TOKEN, 1_000_000_000)
        (utxo,) = result.created
        assert result.operation == Operation.DEPOSIT
        assert result.input_id is None
        assert utxo.status == UTXOStatus.UNSPENT
        assert utxo.kind == UTXOKind.DEPOSIT
        assert utxo.value == 1_000_000_000
        assert utxo.confirmed_tx_hash == result.tx_hash
        assert utxo.created_at == 1_700_000_000
        assert engine.commitments.verify(utxo.commitment, utxo.value, utxo.blinding_factor)
        assert alice.store.get(ALICE, utxo.id) == utxo
        assert vault.does_utxo_exist(utxo.id)
        assert vault.get_balance(ALICE, TOKEN) == INITIAL_BALANCE - 1_000_000_000
        assert vault.last_nonce() == 1

    def test_deposit_publishes_event(self, engine, channels, alice):
        seen = []
        channels.deposit_confirmed.subscribe(seen.append)
        result = engine.deposit(alice, TOKEN, 5)
        assert len(seen) == 1
        assert seen[0].utxo_id == result.created[0].id
        assert seen[0].amount == 5

    def test_zero_amount(self, engine, vault, alice):
        with pytest.raises(PreValidationError) as exc:
            engine.deposit(alice, TOKEN, 0)
        assert exc.value.code == DepositCode.INVALID_AMOUNT
        assert vault.submitted == 0

    @pytest.mark.parametrize("amount", [-1, MAX_VALUE + 1])
    def test_out_of_range(self, engine, vault, alice, amount):
        with pytest.raises(RangeError):
            engine.deposit(alice, TOKEN, amount)
        assert vault.submitted == 0

    def test_unregistered_token(self, engine, vault, alice):
        with pytest.raises(PreValidationError) as exc:
            engine.deposit(alice, UNREGISTERED_TOKEN, 10)
        assert exc.value.code == DepositCode.TOKEN_NOT_REGISTERED
        assert vault.submitted == 0

    def test_used_nullifier(self, engine, vault, alice):
        engine.commitments.random_blinding = lambda: 123_456_789
        first = engine.deposit(alice, TOKEN, 50).created[0]
        engine.withdraw(alice, first.id)
        submitted = vault.submitted
        with pytest.raises(PreValidationError) as exc:
            engine.deposit(alice, TOKEN, 50)
        assert exc.value.code == DepositCode.NULLIFIER_USED
        assert vault.submitted == submitted

    def test_transport_failure_maps_to_call_failed(self, engine, vault, alice):
        vault.fail_reads = True
        with pytest.raises(PreValidationError) as exc:
            engine.deposit(alice, TOKEN, 10)
        assert exc.value.code == DepositCode.CALL_FAILED

    def test_revert_discards_pending_record(self, engine, vault, alice):
        vault.revert_next = "Insufficient token balance"
        with pytest.raises(SubmissionError) as exc:
            engine.deposit(alice, TOKEN, 10)
        assert exc.value.reason == "Insufficient token balance"
        assert exc.value.tx_hash is not None
        assert alice.store.list(ALICE) == []
        assert vault.get_balance(ALICE, TOKEN) == INITIAL_BALANCE

    def test_timeout_keeps_pending_and_journals(self, engine, vault, alice):
        vault.withhold_receipts = 1
        with pytest.raises(ReceiptTimeoutError) as exc:
            engine.deposit(alice, TOKEN, 10)
        (record,) = alice.store.list(ALICE)
        assert record.status == UTXOStatus.PENDING_CONFIRM
        assert exc.value.utxo_ids == (record.id,)
        (pending,) = alice.pending()
        assert pending.tx_hash == exc.value.tx_hash
        assert pending.output_ids == (record.id,)

    def test_pending_deposit_is_not_spendable(self, engine, vault, alice):
        vault.withhold_receipts = 1
        with pytest.raises(ReceiptTimeoutError):
            engine.deposit(alice, TOKEN, 10)
        (record,) = alice.store.list(ALICE)
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, record.id, [(10, BOB)])
        assert exc.value.code == SplitCode.SOURCE_NOT_FOUND
        assert engine.get_balance(alice, TOKEN) == 0


# =============================================================================
# ATTESTATION / SUBMISSION
# =============================================================================

class TestSubmission:

    def test_nonce_race_is_retried(self, engine, vault, alice):
        vault.nonce_races = 2
        result = engine.deposit(alice, TOKEN, 10)
        assert result.nonce_retries == 2
        assert vault.submitted == 3
        assert result.created[0].status == UTXOStatus.UNSPENT

    def test_nonce_retries_exhausted(self, engine, vault, alice):
        vault.nonce_races = 4
        with pytest.raises(NonceConflictError):
            engine.deposit(alice, TOKEN, 10)
        assert vault.submitted == 4
        assert alice.store.list(ALICE) == []

    def test_zero_retry_limit(self, vault, signer, alice):
        engine = UTXOLedgerEngine(vault, signer, EngineConfig(nonce_retry_limit=0), clock=fixed_clock)
        vault.nonce_races = 1
        with pytest.raises(NonceConflictError):
            engine.deposit(alice, TOKEN, 10)
        assert vault.submitted == 1

    def test_hash_cross_check(self, vault, signer, alice):
        engine = UTXOLedgerEngine(vault, signer, EngineConfig(verify_hashes_remotely=True), clock=fixed_clock)
        engine.deposit(alice, TOKEN, 10)
        vault.hash_drift = True
        with pytest.raises(HashMismatchError) as exc:
            engine.deposit(alice, TOKEN, 10)
        assert exc.value.operation == Operation.DEPOSIT
        assert vault.submitted == 1

    def test_cross_check_disabled_by_default(self, engine, vault, alice):
        vault.hash_drift = True
        engine.deposit(alice, TOKEN, 10)

    def test_missing_attestor_key(self, vault, alice):
        signer = AttestationSigner(None, vault, trusted_signer=ATTESTOR)
        engine = UTXOLedgerEngine(vault, signer, clock=fixed_clock)
        with pytest.raises(SigningError):
            engine.deposit(alice, TOKEN, 10)
        assert vault.submitted == 0
        assert alice.store.list(ALICE) == []

    def test_transport_failure_on_submit_discards_pending_deposit(self, engine, vault, alice):
        vault.fail_submits = True
        with pytest.raises(ConnectionError):
            engine.deposit(alice, TOKEN, 10)
        assert vault.submitted == 0
        assert alice.store.list(ALICE) == []
        assert alice.pending() == []
        assert engine.deposit(alice, TOKEN, 10).created[0].status == UTXOStatus.UNSPENT

    def test_transport_failure_on_submit_leaves_input_unspent(self, engine, vault, alice, funded_utxo):
        vault.fail_submits = True
        with pytest.raises(ConnectionError):
            engine.split(alice, funded_utxo.id, [(funded_utxo.value, BOB)])
        assert engine.get_utxo(alice, funded_utxo.id).is_spendable
        assert vault.submitted == 1

    def test_transport_failure_on_receipt_is_journaled(self, engine, vault, alice, reconciler):
        vault.fail_receipts = 1
        with pytest.raises(ReceiptTimeoutError) as exc:
            engine.deposit(alice, TOKEN, 10)
        (pending,) = alice.pending()
        assert pending.tx_hash == exc.value.tx_hash
        (record,) = alice.store.list(ALICE)
        assert record.status == UTXOStatus.PENDING_CONFIRM

        report = reconciler.reconcile(alice)
        assert report.settled_pending == (exc.value.tx_hash,)
        assert engine.get_balance(alice, TOKEN) == 10

    def test_cross_check_requires_hash_oracle(self, vault, signer, alice):
        ledger = WithoutHashOracle(vault)
        with pytest.raises(ConfigError):
            UTXOLedgerEngine(ledger, signer, EngineConfig(verify_hashes_remotely=True))
        engine = UTXOLedgerEngine(ledger, signer, EngineConfig(), clock=fixed_clock)
        assert engine.deposit(alice, TOKEN, 10).created[0].value == 10


# =============================================================================
# SPLIT
# =============================================================================

class TestSplit:

    def test_split_spends_input_and_creates_outputs(self, engine, vault, alice, bob, funded_utxo):
        result = engine.split(alice, funded_utxo.id, [
            SplitOutput(600_000_000, ALICE),
            SplitOutput(400_000_000, BOB),
        ])
        mine, theirs = result.created
        assert result.input_id == funded_utxo.id
        assert alice.store.get(ALICE, funded_utxo.id).is_spent
        assert alice.store.get(ALICE, funded_utxo.id).spent_tx_hash == result.tx_hash
        assert mine.owner == ALICE and mine.value == 600_000_000
        assert theirs.owner == BOB and theirs.value == 400_000_000
        assert bob.store.get(BOB, theirs.id) == theirs
        assert alice.store.get(ALICE, theirs.id) is None
        assert {r.kind for r in result.created} == {UTXOKind.SPLIT}
        assert {r.parent_id for r in result.created} == {funded_utxo.id}
        assert engine.commitments.verify_sum([funded_utxo.commitment], [mine.commitment, theirs.commitment])
        assert vault.utxos[funded_utxo.id].is_spent

    def test_split_accepts_tuples(self, engine, alice, funded_utxo):
        result = engine.split(alice, funded_utxo.id, [(500_000_000, ALICE), (500_000_000, ALICE)])
        assert [r.value for r in result.created] == [500_000_000, 500_000_000]

    def test_split_into_ten(self, engine, alice, funded_utxo):
        result = engine.split(alice, funded_utxo.id, [(100_000_000, ALICE)] * 10)
        assert len({r.id for r in result.created}) == 10
        assert len({r.nullifier_hash for r in result.created}) == 10

    def test_single_output_split(self, engine, alice, funded_utxo):
        (output,) = engine.split(alice, funded_utxo.id, [(1_000_000_000, ALICE)]).created
        assert output.id != funded_utxo.id
        assert output.commitment == funded_utxo.commitment

    def test_publishes_spend_event(self, engine, channels, alice, funded_utxo):
        seen = []
        channels.spend_confirmed.subscribe(seen.append)
        result = engine.split(alice, funded_utxo.id, [(1, ALICE), (999_999_999, ALICE)])
        assert seen[0].operation == Operation.SPLIT
        assert seen[0].output_ids == tuple(r.id for r in result.created)

    @pytest.mark.parametrize("outputs", [
        [],
        [(100_000_000, ALICE)] * 11,
        [(1_000_000_000, ALICE), (0, BOB)],
        [(1_000_000_001, ALICE), (-1, BOB)],
    ])
    def test_malformed_outputs(self, engine, vault, alice, funded_utxo, outputs):
        submitted = vault.submitted
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, funded_utxo.id, outputs)
        assert exc.value.code == SplitCode.MALFORMED_OUTPUTS
        assert vault.submitted == submitted

    def test_configured_output_limit(self, vault, signer, alice):
        engine = UTXOLedgerEngine(vault, signer, EngineConfig(max_split_outputs=2), clock=fixed_clock)
        utxo = engine.deposit(alice, TOKEN, 3).created[0]
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, utxo.id, [(1, ALICE)] * 3)
        assert exc.value.code == SplitCode.MALFORMED_OUTPUTS

    def test_unknown_source(self, engine, alice):
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, "0x" + "12" * 32, [(1, ALICE)])
        assert exc.value.code == SplitCode.SOURCE_NOT_FOUND

    def test_other_owners_utxo_is_not_found(self, engine, bob, funded_utxo):
        with pytest.raises(PreValidationError) as exc:
            engine.split(bob, funded_utxo.id, [(1_000_000_000, BOB)])
        assert exc.value.code == SplitCode.SOURCE_NOT_FOUND

    def test_spent_source(self, engine, alice, funded_utxo):
        engine.split(alice, funded_utxo.id, [(1_000_000_000, ALICE)])
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, funded_utxo.id, [(1_000_000_000, ALICE)])
        assert exc.value.code == SplitCode.ALREADY_SPENT

    def test_spent_out_of_band_caught_by_dry_run(self, engine, vault, alice, funded_utxo):
        vault.force_spend(funded_utxo.id)
        submitted = vault.submitted
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, funded_utxo.id, [(1_000_000_000, ALICE)])
        assert exc.value.code == SplitCode.ALREADY_SPENT
        assert vault.dry_runs == 1
        assert vault.submitted == submitted

    def test_dry_run_transport_failure(self, engine, vault, alice, funded_utxo):
        vault.fail_reads = True
        with pytest.raises(PreValidationError) as exc:
            engine.split(alice, funded_utxo.id, [(1_000_000_000, ALICE)])
        assert exc.value.code == SplitCode.CALL_FAILED
        assert exc.value.message == "Validation call failed"

    def test_revert_leaves_input_unspent(self, engine, vault, alice, bob, funded_utxo):
        vault.revert_next = "Contract is paused"
        with pytest.raises(SubmissionError) as exc:
            engine.split(alice, funded_utxo.id, [(600_000_000, ALICE), (400_000_000, BOB)])
        assert funded_utxo.id in exc.value.utxo_ids
        assert alice.store.get(ALICE, funded_utxo.id).status == UTXOStatus.UNSPENT
        assert len(alice.store.list(ALICE)) == 1
        assert bob.store.list(BOB) == []
        assert not vault.utxos[funded_utxo.id].is_spent

    def test_timeout_leaves_input_unspent_and_journals_outputs(self, engine, vault, alice, bob, funded_utxo):
        vault.withhold_receipts = 1
        with pytest.raises(ReceiptTimeoutError):
            engine.split(alice, funded_utxo.id, [(600_000_000, ALICE), (400_000_000, BOB)])
        assert alice.store.get(ALICE, funded_utxo.id).status == UTXOStatus.UNSPENT
        assert bob.store.list(BOB) == []
        (pending,) = alice.pending()
        assert pending.input_id == funded_utxo.id
        assert [o.value for o in pending.outputs] == [600_000_000, 400_000_000]


# =============================================================================
# TRANSFER
# =============================================================================

class TestTransfer:

    def test_transfer_moves_whole_utxo(self, engine, vault, alice, bob, funded_utxo):
        result = engine.transfer(alice, funded_utxo.id, BOB)
        (received,) = result.created
        assert received.owner == BOB
        assert received.value == funded_utxo.value
        assert received.kind == UTXOKind.TRANSFER
        assert received.parent_id == funded_utxo.id
        assert received.id != funded_utxo.id
        assert received.commitment == funded_utxo.commitment
        assert bob.store.get(BOB, received.id).status == UTXOStatus.UNSPENT
        assert alice.store.get(ALICE, funded_utxo.id).is_spent
        assert engine.get_balance(alice, TOKEN) == 0
        assert engine.get_balance(bob, TOKEN) == 1_000_000_000

    def test_recipient_can_spend(self, engine, alice, bob, funded_utxo):
        (received,) = engine.transfer(alice, funded_utxo.id, BOB).created
        result = engine.withdraw(bob, received.id)
        assert result.input_id == received.id

    @pytest.mark.parametrize("recipient", ["bob", ZERO, "0x1234"])
    def test_invalid_recipient(self, engine, vault, alice, funded_utxo, recipient):
        submitted = vault.submitted
        with pytest.raises(PreValidationError) as exc:
            engine.transfer(alice, funded_utxo.id, recipient)
        assert exc.value.code == TransferCode.INVALID_RECIPIENT
        assert vault.submitted == submitted

    def test_spent_source(self, engine, alice, funded_utxo):
        engine.transfer(alice, funded_utxo.id, BOB)
        with pytest.raises(PreValidationError) as exc:
            engine.transfer(alice, funded_utxo.id, CAROL)
        assert exc.value.code == TransferCode.ALREADY_SPENT


# =============================================================================
# WITHDRAW
# =============================================================================

class TestWithdraw:

    def test_withdraw_releases_public_tokens(self, engine, vault, alice, funded_utxo):
        result = engine.withdraw(alice, funded_utxo.id)
        assert result.created == ()
        assert vault.get_balance(ALICE, TOKEN) == INITIAL_BALANCE
        assert vault.custody_balance(TOKEN) == 0
        assert alice.store.get(ALICE, funded_utxo.id).is_spent
        assert vault.verify_conservation()["valid"]

    def test_withdraw_to_other_recipient(self, engine, vault, alice, funded_utxo):
        engine.withdraw(alice, funded_utxo.id, recipient=CAROL)
        assert vault.get_balance(CAROL, TOKEN) == INITIAL_BALANCE + 1_000_000_000

    def test_withdraw_twice(self, engine, vault, alice, funded_utxo):
        engine.withdraw(alice, funded_utxo.id)
        submitted = vault.submitted
        with pytest.raises(PreValidationError) as exc:
            engine.withdraw(alice, funded_utxo.id)
        assert exc.value.code == WithdrawCode.NULLIFIER_USED
        assert exc.value.message == "Nullifier has already been used"
        assert vault.submitted == submitted

    def test_invalid_recipient(self, engine, alice, funded_utxo):
        with pytest.raises(PreValidationError) as exc:
            engine.withdraw(alice, funded_utxo.id, recipient=ZERO)
        assert exc.value.code == WithdrawCode.INVALID_RECIPIENT

    def test_dry_run_transport_failure(self, engine, vault, alice, funded_utxo):
        vault.fail_reads = True
        with pytest.raises(PreValidationError) as exc:
            engine.withdraw(alice, funded_utxo.id)
        assert exc.value.code == WithdrawCode.CALL_FAILED


# =============================================================================
# RECOVERY / QUERIES / FACTORY
# =============================================================================

class TestRecovery:

    def test_recover_refused_when_spent_on_ledger(self, engine, alice, funded_utxo):
        engine.withdraw(alice, funded_utxo.id)
        with pytest.raises(RecoveryRefused):
            engine.recover_utxo(alice, funded_utxo.id, "operator request")
        assert alice.store.get(ALICE, funded_utxo.id).is_spent

    def test_recover_when_local_flag_is_wrong(self, engine, alice, funded_utxo):
        alice.store.mark_spent(ALICE, funded_utxo.id, "0xlost")
        restored = engine.recover_utxo(alice, funded_utxo.id, "local flag set without receipt")
        assert restored.status == UTXOStatus.UNSPENT
        assert restored.recovered
        assert engine.list_unspent(alice, TOKEN) == [restored]


class TestQueries:

    def test_balance_and_listing(self, engine, alice, bob):
        a = engine.deposit(alice, TOKEN, 300).created[0]
        engine.deposit(alice, OTHER_TOKEN, 70)
        engine.split(alice, a.id, [(100, ALICE), (200, BOB)])
        assert engine.get_balance(alice, TOKEN) == 100
        assert engine.get_balance(alice) == {TOKEN: 100, OTHER_TOKEN: 70}
        assert engine.get_balance(bob, TOKEN) == 200
        assert len(engine.list_utxos(alice)) == 3
        assert len(engine.list_unspent(alice)) == 2
        assert engine.get_utxo(alice, a.id).is_spent


class TestFactory:

    def test_create_engine(self, vault, alice):
        config = EngineConfig(attestor_key=ATTESTOR_KEY, trusted_signer=ATTESTOR)
        engine = create_engine(vault, config)
        assert isinstance(engine, UTXOLedgerEngine)
        assert engine.mode == "zk"
        assert engine.deposit(alice, TOKEN, 10).created[0].value == 10

    def test_unknown_mode(self, vault):
        config = EngineConfig(attestor_key=ATTESTOR_KEY)
        config.mode = "transparent"
        with pytest.raises(LedgerError):
            create_engine(vault, config)

    def test_verbose_report(self, vault, signer, alice, capsys):
        engine = UTXOLedgerEngine(vault, signer, verbose=True, clock=fixed_clock)
        engine.deposit(alice, TOKEN, 10)
        assert "DEPOSIT" in capsys.readouterr().out


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrentSpends:

    @staticmethod
    def run_together(session, *calls):
        """Start every call while the session lock is held, then release it."""
        outcomes = []

        def run(call):
            try:
                call()
                outcomes.append("ok")
            except PreValidationError as e:
                outcomes.append(e.code)

        threads = [threading.Thread(target=run, args=(call,)) for call in calls]
        with session.lock:
            for t in threads:
                t.start()
        for t in threads:
            t.join(timeout=30)
        return outcomes

    def test_same_input_split_twice_sends_one_transaction(self, engine, vault, alice, funded_utxo):
        submitted = vault.submitted
        outcomes = self.run_together(
            alice,
            lambda: engine.split(alice, funded_utxo.id, [(funded_utxo.value, ALICE)]),
            lambda: engine.split(alice, funded_utxo.id, [(funded_utxo.value, BOB)]),
        )
        assert len(outcomes) == 2
        assert outcomes.count("ok") == 1
        assert SplitCode.ALREADY_SPENT in outcomes
        assert vault.submitted == submitted + 1
        assert all(receipt.success for _, receipt in vault.transaction_log)

    def test_transfer_and_withdraw_race_for_one_input(self, engine, vault, alice, funded_utxo):
        submitted = vault.submitted
        outcomes = self.run_together(
            alice,
            lambda: engine.transfer(alice, funded_utxo.id, BOB),
            lambda: engine.withdraw(alice, funded_utxo.id),
        )
        assert len(outcomes) == 2
        assert outcomes.count("ok") == 1
        assert set(outcomes) - {"ok"} <= {TransferCode.ALREADY_SPENT, WithdrawCode.NULLIFIER_USED}
        assert vault.submitted == submitted + 1
        assert vault.custody_balance(TOKEN) + vault.get_balance(ALICE, TOKEN) == INITIAL_BALANCE
