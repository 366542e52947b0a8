"""
conftest.py - Shared pytest fixtures for utxo_ledger tests

Provides common fixtures used across unit, conformance and functional tests:
- A funded FaultyVault (a SimulatedVault with fault injection)
- An in-memory encrypted store and one session per owner
- An engine and a reconciliation service sharing one set of channels
"""

import pytest

from utxo_ledger import (
    AttestationSigner,
    EncryptedLocalStore,
    EngineChannels,
    EngineConfig,
    OwnerSession,
    ReconciliationService,
    UTXOLedgerEngine,
)

from tests.fake_remote import (
    FaultyVault,
    ATTESTOR, ATTESTOR_KEY, ALICE, ALICE_KEY, BOB, BOB_KEY, CAROL, CAROL_KEY,
    TOKEN, OTHER_TOKEN, STORE_SECRET, INITIAL_BALANCE, fixed_clock,
)


# =============================================================================
# VAULT AND SIGNER
# =============================================================================

@pytest.fixture
def vault():
    """Vault trusting ATTESTOR, with both tokens registered and every owner funded."""
    v = FaultyVault("test", trusted_signer=ATTESTOR, test_mode=True)
    v.register_token(TOKEN)
    v.register_token(OTHER_TOKEN)
    for owner in (ALICE, BOB, CAROL):
        v.set_balance(owner, TOKEN, INITIAL_BALANCE)
        v.set_balance(owner, OTHER_TOKEN, INITIAL_BALANCE)
    return v


@pytest.fixture
def signer(vault):
    return AttestationSigner(ATTESTOR_KEY, vault, clock=fixed_clock)


# =============================================================================
# ENGINE
# =============================================================================

@pytest.fixture
def channels():
    return EngineChannels()


@pytest.fixture
def config():
    return EngineConfig(receipt_timeout=1.0, nonce_retry_limit=3)


@pytest.fixture
def engine(vault, signer, config, channels):
    return UTXOLedgerEngine(vault, signer, config, channels=channels, clock=fixed_clock)


@pytest.fixture
def reconciler(vault, channels):
    return ReconciliationService(vault, channels=channels, clock=fixed_clock)


# =============================================================================
# STORE AND SESSIONS
# =============================================================================

@pytest.fixture
def store():
    return EncryptedLocalStore(STORE_SECRET)


@pytest.fixture
def alice(store):
    return OwnerSession.from_private_key(ALICE_KEY, store)


@pytest.fixture
def bob(store):
    return OwnerSession.from_private_key(BOB_KEY, store)


@pytest.fixture
def carol(store):
    return OwnerSession.from_private_key(CAROL_KEY, store)


@pytest.fixture
def funded_utxo(engine, alice):
    """Alice's confirmed 1,000,000,000 deposit."""
    return engine.deposit(alice, TOKEN, 1_000_000_000).created[0]
