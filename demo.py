#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Private UTXOs Step by Step

A walk through the private-UTXO engine against an in-memory vault.
Each step builds on the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Foundation   - Commitments, the vault, sessions and the store
  4-6:  Operations   - Deposit, split between owners, transfer
  7-8:  Rejections   - Unbalanced splits and double spends never reach the vault
  9-10: Consistency  - Reconciling a stale device, auditing, withdrawing

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
import sys

from eth_account import Account

from utxo_ledger import (
    AttestationSigner, CommitmentEngine, EncryptedLocalStore, EngineConfig, OwnerSession,
    PreValidationError, ReconciliationService, SimulatedVault, SplitOutput, UTXOLedgerEngine,
    normalize_address,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    attestor_key: str = "0x" + "4c" * 32
    alice_key: str = "0x" + "a1" * 32
    bob_key: str = "0x" + "b0" * 32
    token: str = "0x" + "7e" * 20
    store_secret: bytes = b"demo-store-master-secret-32bytes"

    initial_public_balance: int = 5_000_000_000
    deposit_amount: int = 1_000_000_000
    alice_share: int = 600_000_000
    bob_share: int = 400_000_000


CONFIG = DemoConfig()
TOKEN = normalize_address(CONFIG.token)

# Global state for interactive mode
QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def short(value: str) -> str:
    return value[:10] + "…"


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_commitments():
    """Pedersen commitments hide amounts but still add up."""
    step_header(1, "Commitments",
        "See that C(a) + C(b) == C(a + b) when the blindings add up too.")

    ce = CommitmentEngine()
    r1, r2 = ce.random_blinding(), ce.random_blinding()
    c1 = ce.commit(600, r1)
    c2 = ce.commit(400, r2)
    total = ce.commit(1_000, r1 + r2)

    print(">>> c1 = ce.commit(600, r1); c2 = ce.commit(400, r2)")
    print(f"c1.x = {hex(c1.x)[:18]}…")
    print(f"c2.x = {hex(c2.x)[:18]}…")
    print(f"\nc1 + c2 == commit(1000, r1 + r2): {c1 + c2 == total}")
    print(f"c1 + c2 == commit(1001, r1 + r2): {c1 + c2 == ce.commit(1_001, r1 + r2)}")

    section_header("Key Insight")
    print("""
    The vault never learns 600 or 400. It only checks that the output
    points add up to the input point, which is enough to prove that a
    split created no value.
    """)


def step_02_vault():
    """Create the vault, register a token and fund two public wallets."""
    step_header(2, "The Vault",
        "The vault holds custody of deposited tokens and trusts one attestor.")

    attestor = Account.from_key(CONFIG.attestor_key).address
    alice = Account.from_key(CONFIG.alice_key).address
    bob = Account.from_key(CONFIG.bob_key).address

    print(">>> vault = SimulatedVault('tutorial', trusted_signer=attestor, verbose=True, test_mode=True)")
    vault = SimulatedVault("tutorial", trusted_signer=attestor, verbose=True, test_mode=True)
    vault.register_token(TOKEN)
    vault.set_balance(alice, TOKEN, CONFIG.initial_public_balance)
    vault.set_balance(bob, TOKEN, CONFIG.initial_public_balance)

    stats = vault.get_contract_stats()
    section_header("Initial State")
    print(f"Trusted signer:   {stats.backend}")
    print(f"Registered tokens: {stats.total_tokens}")
    print(f"Nonce:            {stats.current_nonce}")
    print(f"Alice public:     {vault.get_balance(alice, TOKEN):,}")
    print(f"Custody:          {vault.custody_balance(TOKEN):,}")
    return vault


def step_03_sessions(vault: SimulatedVault):
    """Open owner sessions over one encrypted store."""
    step_header(3, "Sessions and the Encrypted Store",
        "Each owner's records live in their own encrypted partition.")

    store = EncryptedLocalStore(CONFIG.store_secret)
    alice = OwnerSession.from_private_key(CONFIG.alice_key, store)
    bob = OwnerSession.from_private_key(CONFIG.bob_key, store)
    signer = AttestationSigner(CONFIG.attestor_key, vault)
    engine = UTXOLedgerEngine(vault, signer, EngineConfig(receipt_timeout=5.0), verbose=True)

    print(">>> alice = OwnerSession.from_private_key(ALICE_KEY, store)")
    print(f"Alice: {alice.owner}")
    print(f"Bob:   {bob.owner}")
    print(f"Next attestation nonce: {signer.next_nonce()}")
    return engine, store, alice, bob


# ============================================================================
# PHASE 2: OPERATIONS (Steps 4-6)
# ============================================================================

def step_04_deposit(engine: UTXOLedgerEngine, alice: OwnerSession):
    step_header(4, "Deposit",
        "Public tokens move into custody; Alice receives a private UTXO.")

    print(f">>> engine.deposit(alice, TOKEN, {CONFIG.deposit_amount:,})")
    result = engine.deposit(alice, TOKEN, CONFIG.deposit_amount)
    (utxo,) = result.created

    section_header("Alice's Record (private)")
    print(f"id:        {utxo.id}")
    print(f"value:     {utxo.value:,}")
    print(f"status:    {utxo.status.value}")
    print(f"nullifier: {utxo.nullifier_hash}")

    section_header("What the Vault Sees")
    print(f"custody balance: {engine.ledger.custody_balance(TOKEN):,}")
    print(f"utxo exists:     {engine.ledger.does_utxo_exist(utxo.id)}")
    print("amount of this UTXO: not stored")
    return utxo


def step_05_split(engine: UTXOLedgerEngine, alice: OwnerSession, bob: OwnerSession, utxo):
    step_header(5, "Split Between Owners",
        "One input becomes two outputs; only the owners know the amounts.")

    print(f">>> engine.split(alice, utxo.id, [SplitOutput({CONFIG.alice_share:,}, alice.owner),")
    print(f"...                                SplitOutput({CONFIG.bob_share:,}, bob.owner)])")
    result = engine.split(alice, utxo.id, [
        SplitOutput(CONFIG.alice_share, alice.owner),
        SplitOutput(CONFIG.bob_share, bob.owner),
    ])

    section_header("Balances")
    print(f"Alice private: {engine.get_balance(alice, TOKEN):,}")
    print(f"Bob private:   {engine.get_balance(bob, TOKEN):,}")
    print(f"Input status:  {engine.get_utxo(alice, utxo.id).status.value}")
    print(f"Nonce now:     {engine.ledger.last_nonce()}")
    return result.created


def step_06_transfer(engine: UTXOLedgerEngine, alice: OwnerSession, bob: OwnerSession):
    step_header(6, "Transfer",
        "A transfer hands a whole UTXO to another owner.")

    (mine,) = engine.list_unspent(alice, TOKEN)
    print(f">>> engine.transfer(alice, {short(mine.id)}, bob.owner)")
    (moved,) = engine.transfer(alice, mine.id, bob.owner).created

    print(f"\nSame commitment: {moved.commitment == mine.commitment}")
    print(f"New nullifier:   {moved.nullifier_hash != mine.nullifier_hash}")
    print(f"Bob private:     {engine.get_balance(bob, TOKEN):,}")


# ============================================================================
# PHASE 3: REJECTIONS (Steps 7-8)
# ============================================================================

def step_07_unbalanced_split(engine: UTXOLedgerEngine, bob: OwnerSession):
    step_header(7, "Unbalanced Split",
        "Outputs that do not add up to the input are rejected before submission.")

    utxo = engine.list_unspent(bob, TOKEN)[0]
    nonce_before = engine.ledger.last_nonce()
    short_by = utxo.value // 10
    print(f">>> engine.split(bob, {short(utxo.id)}, [({utxo.value - short_by:,}, bob.owner)])")
    try:
        engine.split(bob, utxo.id, [(utxo.value - short_by, bob.owner)])
    except PreValidationError as e:
        print(f"\nRejected: [{e.code}] {e.message}")
    print(f"Nonce unchanged: {engine.ledger.last_nonce() == nonce_before}")


def step_08_double_spend(engine: UTXOLedgerEngine, alice: OwnerSession, first_input):
    step_header(8, "Double Spend",
        "A spent UTXO's nullifier is used; withdrawing it again is refused.")

    print(f">>> engine.withdraw(alice, {short(first_input.id)})")
    try:
        engine.withdraw(alice, first_input.id)
    except PreValidationError as e:
        print(f"\nRejected: [{e.code}] {e.message}")


# ============================================================================
# PHASE 4: CONSISTENCY (Steps 9-10)
# ============================================================================

def step_09_stale_device(engine: UTXOLedgerEngine, store: EncryptedLocalStore, bob: OwnerSession):
    step_header(9, "Reconciling a Stale Device",
        "A second device restored from an old backup learns what was spent.")

    backup = store.export_owner(bob.owner)
    laptop = OwnerSession.from_private_key(CONFIG.bob_key, EncryptedLocalStore(CONFIG.store_secret))
    laptop.store.import_owner(bob.owner, backup)

    utxo = engine.list_unspent(bob, TOKEN)[0]
    print(f">>> engine.withdraw(bob, {short(utxo.id)})     # on the phone")
    engine.withdraw(bob, utxo.id)
    print(f"Laptop still thinks unspent: {laptop.store.get(bob.owner, utxo.id).is_spendable}")

    service = ReconciliationService(engine.ledger)
    report = service.reconcile(laptop)
    print("\n>>> service.reconcile(laptop)")
    print(f"marked_spent: {[short(i) for i in report.marked_spent]}")
    print(f"Laptop balance now: {engine.get_balance(laptop, TOKEN):,}")
    print(f"Audit consistent:   {service.audit(laptop).consistent}")


def step_10_withdraw_all(engine: UTXOLedgerEngine, bob: OwnerSession):
    step_header(10, "Withdraw Everything",
        "Withdrawals move tokens back out of custody; conservation holds throughout.")

    for utxo in engine.list_unspent(bob, TOKEN):
        engine.withdraw(bob, utxo.id)

    vault = engine.ledger
    check = vault.verify_conservation()
    print(f"Bob public:     {vault.get_balance(bob.owner, TOKEN):,}")
    print(f"Custody:        {vault.custody_balance(TOKEN):,}")
    print(f"Conservation:   {'valid' if check['valid'] else 'BROKEN'}")


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       PRIVATE UTXO LEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")

    wait_for_enter()

    step_01_commitments()
    wait_for_enter()

    vault = step_02_vault()
    wait_for_enter()

    engine, store, alice, bob = step_03_sessions(vault)
    wait_for_enter()

    deposit = step_04_deposit(engine, alice)
    wait_for_enter()

    step_05_split(engine, alice, bob, deposit)
    wait_for_enter()

    step_06_transfer(engine, alice, bob)
    wait_for_enter()

    step_07_unbalanced_split(engine, bob)
    wait_for_enter()

    step_08_double_spend(engine, alice, deposit)
    wait_for_enter()

    step_09_stale_device(engine, store, bob)
    wait_for_enter()

    step_10_withdraw_all(engine, bob)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See utxo_ledger/engine.py for the operation flow
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
