"""
Core types and pure functions for the private-UTXO ledger engine.

This module provides the foundational data structures of the engine:
1. Constants: value ceiling, split limits, hashing salts
2. Enums: Operation, UTXOStatus, UTXOKind and per-operation validation codes
3. Exceptions: LedgerError and the error taxonomy of the engine
4. Immutable records: Commitment, PrivateUTXO, Attestation, SplitOutput,
   PendingOperation
5. Address helpers: checksum normalization and store partition keys

Records are frozen. State changes produce new records through
dataclasses.replace(); nothing in this module talks to the network or disk.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
import re
import time
from typing import Dict, Optional, Tuple, Any, Mapping

from ecdsa import SECP256k1, ellipticcurve
from eth_utils import is_address, to_checksum_address


# ============================================================================
# CONSTANTS
# ============================================================================

# Ceiling of a committed value. The ledger range-checks amounts as uint64.
MAX_VALUE = 2**64 - 1

# Maximum number of outputs of a single split.
MAX_SPLIT_OUTPUTS = 10

# Order of the secp256k1 scalar field.
CURVE_ORDER = SECP256k1.order

# Salt mixed into every UTXO identifier.
UTXO_ID_SALT = "utxo_id_salt"

# Marker stored as spent_tx_hash when the spending transaction is not known
# locally (spent out of band and discovered by reconciliation).
OUT_OF_BAND_TX = "out-of-band"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# 0x-prefixed, 32-byte hex string (utxo ids, nullifiers, data hashes).
Bytes32 = str

# Lower-cased owner address used as store partition key.
OwnerKey = str

# Serialized record as written to the encrypted store.
RecordDict = Dict[str, Any]


# ============================================================================
# ENUMS
# ============================================================================

class Operation(Enum):
    """State-changing operations accepted by the vault."""
    DEPOSIT = "DEPOSIT"
    SPLIT = "SPLIT"
    TRANSFER = "TRANSFER"
    WITHDRAW = "WITHDRAW"


class UTXOStatus(Enum):
    """
    Lifecycle status of a private UTXO.

    PENDING_CONFIRM: Submitted, receipt not yet confirmed.
    UNSPENT: Confirmed on the ledger and spendable.
    SPENT: Consumed by a confirmed split, transfer or withdraw (terminal).
    """
    PENDING_CONFIRM = "PENDING_CONFIRM"
    UNSPENT = "UNSPENT"
    SPENT = "SPENT"


class UTXOKind(Enum):
    """How a UTXO came into existence."""
    DEPOSIT = "DEPOSIT"
    SPLIT = "SPLIT"
    TRANSFER = "TRANSFER"


class DepositCode(IntEnum):
    OK = 0
    TOKEN_NOT_REGISTERED = 1
    INVALID_AMOUNT = 2
    NULLIFIER_USED = 3
    CALL_FAILED = 255


class SplitCode(IntEnum):
    OK = 0
    SOURCE_NOT_FOUND = 1
    ALREADY_SPENT = 2
    MALFORMED_OUTPUTS = 3
    EMPTY_COMMITMENT = 4
    NOT_CONSERVED = 5
    INVALID_NULLIFIER = 6
    NULLIFIER_USED = 7
    CALL_FAILED = 255


class TransferCode(IntEnum):
    OK = 0
    MALFORMED = 1
    SOURCE_NOT_FOUND = 2
    ALREADY_SPENT = 3
    INVALID_NULLIFIER = 4
    EMPTY_COMMITMENT = 5
    NOT_CONSERVED = 6
    INVALID_RECIPIENT = 7
    NULLIFIER_USED = 8
    CALL_FAILED = 255


class WithdrawCode(IntEnum):
    OK = 0
    MALFORMED = 1
    SOURCE_NOT_FOUND = 2
    ALREADY_SPENT = 3
    INVALID_NULLIFIER = 4
    NOT_CONSERVED = 5
    INVALID_RECIPIENT = 6
    INVALID_AMOUNT = 7
    NULLIFIER_USED = 8
    CALL_FAILED = 255


# Human-readable messages for every code the ledger dry-run can return.
DEPOSIT_VALIDATION_MESSAGES: Dict[int, str] = {
    DepositCode.OK: "Validation passed",
    DepositCode.TOKEN_NOT_REGISTERED: "Token is not registered",
    DepositCode.INVALID_AMOUNT: "Deposit amount must be greater than zero",
    DepositCode.NULLIFIER_USED: "Nullifier has already been used",
    DepositCode.CALL_FAILED: "Validation call failed",
}

SPLIT_VALIDATION_MESSAGES: Dict[int, str] = {
    SplitCode.OK: "Validation passed",
    SplitCode.SOURCE_NOT_FOUND: "Source UTXO does not exist",
    SplitCode.ALREADY_SPENT: "Source UTXO is already spent",
    SplitCode.MALFORMED_OUTPUTS: "Output arrays are malformed or empty",
    SplitCode.EMPTY_COMMITMENT: "Output commitment cannot be empty",
    SplitCode.NOT_CONSERVED: "Balance is not conserved",
    SplitCode.INVALID_NULLIFIER: "Source nullifier is invalid",
    SplitCode.NULLIFIER_USED: "Nullifier has already been used",
    SplitCode.CALL_FAILED: "Validation call failed",
}

TRANSFER_VALIDATION_MESSAGES: Dict[int, str] = {
    TransferCode.OK: "Validation passed",
    TransferCode.MALFORMED: "Transfer arrays are malformed",
    TransferCode.SOURCE_NOT_FOUND: "Source UTXO does not exist",
    TransferCode.ALREADY_SPENT: "Source UTXO is already spent",
    TransferCode.INVALID_NULLIFIER: "Source nullifier is invalid",
    TransferCode.EMPTY_COMMITMENT: "Output commitment cannot be empty",
    TransferCode.NOT_CONSERVED: "Balance is not conserved",
    TransferCode.INVALID_RECIPIENT: "Recipient address is invalid",
    TransferCode.NULLIFIER_USED: "Nullifier has already been used",
    TransferCode.CALL_FAILED: "Validation call failed",
}

WITHDRAW_VALIDATION_MESSAGES: Dict[int, str] = {
    WithdrawCode.OK: "Validation passed",
    WithdrawCode.MALFORMED: "Withdraw parameters are malformed",
    WithdrawCode.SOURCE_NOT_FOUND: "Source UTXO does not exist",
    WithdrawCode.ALREADY_SPENT: "Source UTXO is already spent",
    WithdrawCode.INVALID_NULLIFIER: "Nullifier is invalid",
    WithdrawCode.NOT_CONSERVED: "Balance is not conserved",
    WithdrawCode.INVALID_RECIPIENT: "Recipient address is invalid",
    WithdrawCode.INVALID_AMOUNT: "Withdraw amount must be greater than zero",
    WithdrawCode.NULLIFIER_USED: "Nullifier has already been used",
    WithdrawCode.CALL_FAILED: "Validation call failed",
}

VALIDATION_MESSAGES: Dict[Operation, Dict[int, str]] = {
    Operation.DEPOSIT: DEPOSIT_VALIDATION_MESSAGES,
    Operation.SPLIT: SPLIT_VALIDATION_MESSAGES,
    Operation.TRANSFER: TRANSFER_VALIDATION_MESSAGES,
    Operation.WITHDRAW: WITHDRAW_VALIDATION_MESSAGES,
}


def validation_message(operation: Operation, code: int) -> str:
    """Map a dry-run code to its message; unknown codes are reported verbatim."""
    table = VALIDATION_MESSAGES.get(operation, {})
    return table.get(int(code), f"Unknown validation error code {int(code)}")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all engine errors."""
    pass


class RangeError(LedgerError, ValueError):
    """Raised when a value or scalar lies outside its permitted range."""
    pass


class DerivationError(LedgerError):
    """Raised when owner key material needed to derive a nullifier is missing."""
    pass


class HashMismatchError(LedgerError):
    """
    Raised when the locally computed canonical hash disagrees with the one the
    ledger recomputes. Fatal: the operation is aborted before submission.
    """

    def __init__(self, operation: Operation, local_hash: str, remote_hash: str):
        self.operation = operation
        self.local_hash = local_hash
        self.remote_hash = remote_hash
        super().__init__(
            f"{operation.value} data hash mismatch: local={local_hash} remote={remote_hash}"
        )


class SigningError(LedgerError):
    """Raised when the authorized attestor key is unavailable or signs as the wrong address."""
    pass


class PreValidationError(LedgerError):
    """Raised when local checks or the ledger dry-run reject an operation."""

    def __init__(self, operation: Operation, code: int, detail: Optional[str] = None):
        self.operation = operation
        self.code = int(code)
        self.message = validation_message(operation, code)
        text = f"{operation.value} pre-validation failed [{self.code}]: {self.message}"
        if detail:
            text += f" ({detail})"
        super().__init__(text)


class NonceConflictError(LedgerError):
    """Raised when the attestation nonce was consumed before the transaction landed."""

    def __init__(self, operation: Operation, nonce: int, tx_hash: Optional[str] = None):
        self.operation = operation
        self.nonce = nonce
        self.tx_hash = tx_hash
        super().__init__(f"{operation.value} nonce {nonce} already consumed")


class SubmissionError(LedgerError):
    """Raised when a submitted transaction reverted. Local state is left untouched."""

    def __init__(
        self,
        operation: Operation,
        utxo_ids: Tuple[str, ...] = (),
        tx_hash: Optional[str] = None,
        reason: str = "",
    ):
        self.operation = operation
        self.utxo_ids = tuple(utxo_ids)
        self.tx_hash = tx_hash
        self.reason = reason
        super().__init__(
            f"{operation.value} failed (tx={tx_hash}, ids={list(self.utxo_ids)}): {reason}"
        )


class ReceiptTimeoutError(LedgerError):
    """Raised when no receipt arrived in time. The outcome is unknown until reconciled."""

    def __init__(self, operation: Operation, utxo_ids: Tuple[str, ...], tx_hash: str):
        self.operation = operation
        self.utxo_ids = tuple(utxo_ids)
        self.tx_hash = tx_hash
        super().__init__(
            f"{operation.value} receipt timed out (tx={tx_hash}, ids={list(self.utxo_ids)}); "
            f"reconcile to learn the outcome"
        )


class IrrecoverableUTXOError(LedgerError):
    """
    A UTXO exists on the ledger but no private data for it exists locally.

    Reported as an audit finding, never raised in the middle of an operation.
    """

    def __init__(self, owner: str, utxo_id: str):
        self.owner = owner
        self.utxo_id = utxo_id
        super().__init__(f"UTXO {utxo_id} of {owner} has no local private data")


class RecoveryRefused(LedgerError):
    """Raised when an administrative recovery is refused because the ledger shows the UTXO consumed."""
    pass


class UTXONotFound(LedgerError):
    """Raised when a UTXO id is not present in the owner's store partition."""
    pass


class OwnershipError(LedgerError):
    """Raised when a session operates on a UTXO it does not own."""
    pass


class StoreError(LedgerError):
    """Raised when the encrypted store cannot be read, decrypted or written."""
    pass


class ConfigError(LedgerError):
    """Raised for invalid engine configuration."""
    pass


# ============================================================================
# ADDRESS / HEX HELPERS
# ============================================================================

def normalize_address(address: str) -> str:
    """
    Return the EIP-55 checksum form of an address.

    Raises:
        ValueError: If the value is not a 20-byte hex address
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValueError(f"invalid address: {address!r}")
    return to_checksum_address(address)


def owner_key(address: str) -> OwnerKey:
    """Partition key for an owner: the lower-cased address."""
    return normalize_address(address).lower()


def is_bytes32(value: Any) -> bool:
    return isinstance(value, str) and bool(_BYTES32_RE.match(value))


def require_bytes32(value: Any, name: str) -> Bytes32:
    if not is_bytes32(value):
        raise ValueError(f"{name} must be a 0x-prefixed 32-byte hex string, got {value!r}")
    return value.lower()


def now_ts() -> int:
    """Current unix time in whole seconds."""
    return int(time.time())


# ============================================================================
# COMMITMENT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Commitment:
    """
    Affine secp256k1 point {x, y} representing value*G + blinding*H.

    Points support addition, which is how conservation of split outputs is
    checked without opening any commitment.
    """
    x: int
    y: int

    def __post_init__(self):
        if not isinstance(self.x, int) or not isinstance(self.y, int):
            raise ValueError("commitment coordinates must be integers")
        if not SECP256k1.curve.contains_point(self.x, self.y):
            raise ValueError(f"commitment ({self.x}, {self.y}) is not on secp256k1")

    def to_point(self) -> ellipticcurve.PointJacobi:
        return ellipticcurve.PointJacobi(SECP256k1.curve, self.x, self.y, 1, CURVE_ORDER)

    @classmethod
    def from_point(cls, point) -> Commitment:
        if point == ellipticcurve.INFINITY:
            raise RangeError("commitment is the point at infinity")
        return cls(int(point.x()), int(point.y()))

    def __add__(self, other: Commitment) -> Commitment:
        if not isinstance(other, Commitment):
            return NotImplemented
        return Commitment.from_point(self.to_point() + other.to_point())

    def to_dict(self) -> Dict[str, str]:
        return {"x": str(self.x), "y": str(self.y)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Commitment:
        return cls(int(data["x"]), int(data["y"]))


# ============================================================================
# PRIVATE UTXO
# ============================================================================

@dataclass(frozen=True, slots=True)
class PrivateUTXO:
    """
    A private UTXO record as held in the owner's encrypted store.

    The ledger only ever sees the id, the nullifier and the commitment point;
    value and blinding_factor exist nowhere else.

    Attributes:
        id: Public identifier (bytes32 hex)
        owner: Checksum address of the owner
        token_address: Checksum address of the token
        value: Committed amount, 0 <= value <= MAX_VALUE
        commitment: Pedersen commitment to (value, blinding_factor)
        blinding_factor: Blinding scalar of the commitment
        nullifier_hash: Spend marker registered on the ledger
        kind: DEPOSIT, SPLIT or TRANSFER
        status: PENDING_CONFIRM, UNSPENT or SPENT
        parent_id: Id of the consumed UTXO for derived records
        created_at: Unix seconds
        confirmed_tx_hash: Transaction that created the record
        spent_tx_hash: Transaction that consumed the record
        recovered: Set by the administrative recovery override only
    """
    id: Bytes32
    owner: str
    token_address: str
    value: int
    commitment: Commitment
    blinding_factor: int
    nullifier_hash: Bytes32
    kind: UTXOKind
    status: UTXOStatus = UTXOStatus.UNSPENT
    parent_id: Optional[Bytes32] = None
    created_at: int = 0
    confirmed_tx_hash: Optional[str] = None
    spent_tx_hash: Optional[str] = None
    recovered: bool = False
    recovery_reason: Optional[str] = None
    last_reconciled_at: Optional[int] = None

    def __post_init__(self):
        require_bytes32(self.id, "id")
        require_bytes32(self.nullifier_hash, "nullifier_hash")
        if self.parent_id is not None:
            require_bytes32(self.parent_id, "parent_id")
        if not isinstance(self.value, int) or isinstance(self.value, bool):
            raise ValueError(f"value must be an integer, got {type(self.value).__name__}")
        if self.value < 0 or self.value > MAX_VALUE:
            raise RangeError(f"value {self.value} outside [0, {MAX_VALUE}]")
        if not 0 <= self.blinding_factor < CURVE_ORDER:
            raise RangeError("blinding factor outside the scalar field")
        if self.status == UTXOStatus.SPENT and not self.spent_tx_hash:
            raise ValueError(f"spent UTXO {self.id} must carry spent_tx_hash")
        if self.kind != UTXOKind.DEPOSIT and self.parent_id is None:
            raise ValueError(f"{self.kind.value} UTXO {self.id} requires parent_id")
        # Normalize addresses without breaking immutability
        object.__setattr__(self, "owner", normalize_address(self.owner))
        object.__setattr__(self, "token_address", normalize_address(self.token_address))
        object.__setattr__(self, "id", self.id.lower())
        object.__setattr__(self, "nullifier_hash", self.nullifier_hash.lower())

    @property
    def is_spent(self) -> bool:
        return self.status == UTXOStatus.SPENT

    @property
    def is_spendable(self) -> bool:
        return self.status == UTXOStatus.UNSPENT

    def confirmed(self, tx_hash: str) -> PrivateUTXO:
        """Return a copy moved from PENDING_CONFIRM to UNSPENT."""
        if self.status != UTXOStatus.PENDING_CONFIRM:
            raise ValueError(f"UTXO {self.id} is {self.status.value}, not PENDING_CONFIRM")
        return replace(self, status=UTXOStatus.UNSPENT, confirmed_tx_hash=tx_hash)

    def spent(self, tx_hash: str) -> PrivateUTXO:
        """Return a copy marked SPENT by the given transaction."""
        if self.is_spent:
            return self
        return replace(self, status=UTXOStatus.SPENT, spent_tx_hash=tx_hash)

    def to_dict(self) -> RecordDict:
        """Serialize with every integer as a decimal string."""
        return {
            "id": self.id,
            "owner": self.owner,
            "tokenAddress": self.token_address,
            "value": str(self.value),
            "commitment": self.commitment.to_dict(),
            "blindingFactor": str(self.blinding_factor),
            "nullifierHash": self.nullifier_hash,
            "kind": self.kind.value,
            "status": self.status.value,
            "isSpent": self.is_spent,
            "parentId": self.parent_id,
            "createdAt": str(self.created_at),
            "confirmedTxHash": self.confirmed_tx_hash,
            "spentTxHash": self.spent_tx_hash,
            "recovered": self.recovered,
            "recoveryReason": self.recovery_reason,
            "lastReconciledAt": (
                str(self.last_reconciled_at) if self.last_reconciled_at is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PrivateUTXO:
        """Rehydrate a record; decimal strings become exact integers."""
        reconciled = data.get("lastReconciledAt")
        return cls(
            id=data["id"],
            owner=data["owner"],
            token_address=data["tokenAddress"],
            value=int(data["value"]),
            commitment=Commitment.from_dict(data["commitment"]),
            blinding_factor=int(data["blindingFactor"]),
            nullifier_hash=data["nullifierHash"],
            kind=UTXOKind(data["kind"]),
            status=UTXOStatus(data["status"]),
            parent_id=data.get("parentId"),
            created_at=int(data.get("createdAt", 0)),
            confirmed_tx_hash=data.get("confirmedTxHash"),
            spent_tx_hash=data.get("spentTxHash"),
            recovered=bool(data.get("recovered", False)),
            recovery_reason=data.get("recoveryReason"),
            last_reconciled_at=int(reconciled) if reconciled is not None else None,
        )


# ============================================================================
# ATTESTATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class Attestation:
    """
    Signed statement from the authorized attestor.

    The ledger accepts it only if signer_address is its trusted signer and
    nonce equals its last consumed nonce + 1.
    """
    operation: Operation
    data_hash: Bytes32
    nonce: int
    timestamp: int
    signature: str
    signer_address: str

    def __post_init__(self):
        require_bytes32(self.data_hash, "data_hash")
        if self.nonce < 1:
            raise ValueError(f"nonce must be positive, got {self.nonce}")
        object.__setattr__(self, "signer_address", normalize_address(self.signer_address))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "dataHash": self.data_hash,
            "nonce": str(self.nonce),
            "timestamp": str(self.timestamp),
            "signature": self.signature,
            "signerAddress": self.signer_address,
        }


# ============================================================================
# OPERATION INPUTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class SplitOutput:
    """One requested output of a split: an amount and the address receiving it."""
    amount: int
    owner: str

    def __post_init__(self):
        if not isinstance(self.amount, int) or isinstance(self.amount, bool):
            raise ValueError(f"amount must be an integer, got {type(self.amount).__name__}")
        object.__setattr__(self, "owner", normalize_address(self.owner))


# ============================================================================
# PENDING OPERATION JOURNAL
# ============================================================================

@dataclass(frozen=True, slots=True)
class PendingOperation:
    """
    Journal entry for a submitted transaction whose receipt was not seen.

    Holds the full output records so that a later reconciliation can apply
    the outcome without regenerating any private data.
    """
    operation: Operation
    tx_hash: str
    owner: str
    input_id: Optional[Bytes32] = None
    outputs: Tuple[PrivateUTXO, ...] = field(default_factory=tuple)
    submitted_at: int = 0

    @property
    def output_ids(self) -> Tuple[str, ...]:
        return tuple(o.id for o in self.outputs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "txHash": self.tx_hash,
            "owner": self.owner,
            "inputId": self.input_id,
            "outputs": [o.to_dict() for o in self.outputs],
            "submittedAt": str(self.submitted_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PendingOperation:
        return cls(
            operation=Operation(data["operation"]),
            tx_hash=data["txHash"],
            owner=data["owner"],
            input_id=data.get("inputId"),
            outputs=tuple(PrivateUTXO.from_dict(o) for o in data.get("outputs", [])),
            submitted_at=int(data.get("submittedAt", 0)),
        )
