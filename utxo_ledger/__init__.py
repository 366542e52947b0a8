"""
utxo_ledger - Private-UTXO Cryptographic Accounting Engine

Converts public token balances into private UTXOs: amounts hidden in
Pedersen commitments, double spends prevented by nullifiers, and every
state change authorized by a signed attestation.

Usage:
    from utxo_ledger import (
        EncryptedLocalStore, OwnerSession, SimulatedVault, AttestationSigner,
        UTXOLedgerEngine, ReconciliationService, SplitOutput,
    )

    vault = SimulatedVault("local", trusted_signer=attestor_address, test_mode=True)
    vault.register_token(TOKEN)
    vault.set_balance(alice, TOKEN, 10**12)

    store = EncryptedLocalStore(master_secret)
    alice_session = OwnerSession(alice, alice_secret, store)
    engine = UTXOLedgerEngine(vault, AttestationSigner(attestor_key, vault))

    deposit = engine.deposit(alice_session, TOKEN, 1_000_000_000)
    engine.split(alice_session, deposit.created[0].id, [
        SplitOutput(600_000_000, alice),
        SplitOutput(400_000_000, bob),
    ])

    ReconciliationService(vault).reconcile(alice_session)
"""

# Core types
from .core import (
    Operation,
    UTXOStatus,
    UTXOKind,
    DepositCode,
    SplitCode,
    TransferCode,
    WithdrawCode,
    Commitment,
    PrivateUTXO,
    Attestation,
    SplitOutput,
    PendingOperation,
    validation_message,
    normalize_address,
    owner_key,
    MAX_VALUE,
    MAX_SPLIT_OUTPUTS,
    OUT_OF_BAND_TX,
    # Exceptions
    LedgerError,
    RangeError,
    DerivationError,
    HashMismatchError,
    SigningError,
    PreValidationError,
    NonceConflictError,
    SubmissionError,
    ReceiptTimeoutError,
    IrrecoverableUTXOError,
    RecoveryRefused,
    UTXONotFound,
    OwnershipError,
    StoreError,
    ConfigError,
)

# Cryptographic building blocks
from .commitment import CommitmentEngine
from .nullifier import NullifierDeriver
from .hashing import CanonicalHasher
from .attestation import AttestationSigner

# Vault capabilities
from .remote import (
    NonceSource,
    ReceiptSource,
    ReadLedger,
    HashOracle,
    DepositLedger,
    SplitLedger,
    TransferLedger,
    WithdrawLedger,
    VaultLedger,
    DepositParams,
    SplitParams,
    TransferParams,
    WithdrawParams,
    OutputSpec,
    Receipt,
    RemoteUTXO,
    ContractStats,
)
from .simulated import SimulatedVault, CUSTODY_WALLET

# Storage, sessions, engine
from .store import EncryptedLocalStore
from .session import OwnerSession
from .events import (
    Channel,
    EngineChannels,
    DepositConfirmed,
    SpendConfirmed,
    ReconciliationCompleted,
)
from .engine import UTXOLedgerEngine, OperationResult, create_engine
from .reconciliation import ReconciliationService, ReconciliationReport, AuditReport
from .config import EngineConfig, configure_logging

__all__ = [
    # Core
    'Operation', 'UTXOStatus', 'UTXOKind',
    'DepositCode', 'SplitCode', 'TransferCode', 'WithdrawCode',
    'Commitment', 'PrivateUTXO', 'Attestation', 'SplitOutput', 'PendingOperation',
    'validation_message', 'normalize_address', 'owner_key',
    'MAX_VALUE', 'MAX_SPLIT_OUTPUTS', 'OUT_OF_BAND_TX',
    # Exceptions
    'LedgerError', 'RangeError', 'DerivationError', 'HashMismatchError', 'SigningError',
    'PreValidationError', 'NonceConflictError', 'SubmissionError', 'ReceiptTimeoutError',
    'IrrecoverableUTXOError', 'RecoveryRefused', 'UTXONotFound', 'OwnershipError',
    'StoreError', 'ConfigError',
    # Crypto
    'CommitmentEngine', 'NullifierDeriver', 'CanonicalHasher', 'AttestationSigner',
    # Vault capabilities
    'NonceSource', 'ReceiptSource', 'ReadLedger', 'HashOracle',
    'DepositLedger', 'SplitLedger', 'TransferLedger', 'WithdrawLedger', 'VaultLedger',
    'DepositParams', 'SplitParams', 'TransferParams', 'WithdrawParams', 'OutputSpec',
    'Receipt', 'RemoteUTXO', 'ContractStats',
    'SimulatedVault', 'CUSTODY_WALLET',
    # Storage, sessions, engine
    'EncryptedLocalStore', 'OwnerSession',
    'Channel', 'EngineChannels', 'DepositConfirmed', 'SpendConfirmed', 'ReconciliationCompleted',
    'UTXOLedgerEngine', 'OperationResult', 'create_engine',
    'ReconciliationService', 'ReconciliationReport', 'AuditReport',
    'EngineConfig', 'configure_logging',
]

__version__ = '1.0.0'
